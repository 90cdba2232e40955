"""Pages, route persistence and the URL flow-marker contract."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from lostfound.storage.models import ROLE_ADMIN

CURRENT_PAGE_KEY = "lostfound_current_page"


class Page(str, Enum):
    LANDING = "landing"
    LOGIN = "login"
    REGISTER = "register"
    FORGOT_PASSWORD = "forgot-password"
    RESET_PASSWORD = "reset-password"
    EMAIL_VERIFIED = "email-verified"
    BOARD = "board"
    REPORT = "report"
    CLAIM = "claim"
    PROFILE = "profile"
    ADMIN = "admin"


class FlowKind(str, Enum):
    RECOVERY = "recovery"
    EMAIL_VERIFY = "email-verify"


PERSISTED_PAGES = frozenset(
    {
        Page.LOGIN,
        Page.REGISTER,
        Page.FORGOT_PASSWORD,
        Page.BOARD,
        Page.REPORT,
        Page.CLAIM,
        Page.PROFILE,
        Page.ADMIN,
    }
)
AUTHENTICATED_PAGES = frozenset(
    {Page.BOARD, Page.REPORT, Page.CLAIM, Page.PROFILE, Page.ADMIN}
)
# A SIGNED_IN push never authenticates a tab sitting on one of these
FLOW_PAGES = frozenset({Page.FORGOT_PASSWORD, Page.RESET_PASSWORD, Page.EMAIL_VERIFIED})

_FLOW_MARKERS = {
    "recovery": FlowKind.RECOVERY,
    "email": FlowKind.EMAIL_VERIFY,
    "signup": FlowKind.EMAIL_VERIFY,
    "email-verify": FlowKind.EMAIL_VERIFY,
}


def _fragment_params(fragment: str) -> Dict[str, list]:
    if not fragment:
        return {}
    if "?" in fragment:
        fragment = fragment.split("?", 1)[1]
    return parse_qs(fragment.lstrip("#/"))


def _url_param(url: Optional[str], name: str) -> Optional[str]:
    if not url:
        return None
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    if query.get(name):
        return query[name][0]
    fragment = _fragment_params(parts.fragment)
    if fragment.get(name):
        return fragment[name][0]
    return None


def parse_flow_marker(url: Optional[str]) -> Optional[FlowKind]:
    """Read ``type`` from the query string, falling back to the fragment."""
    marker = _url_param(url, "type")
    if not marker:
        return None
    return _FLOW_MARKERS.get(marker.strip().lower())


def parse_flow_token(url: Optional[str]) -> Optional[str]:
    return _url_param(url, "token")


def default_page_for(role: Optional[str]) -> Page:
    return Page.ADMIN if role == ROLE_ADMIN else Page.BOARD


def can_access(page: Page, role: Optional[str]) -> bool:
    """``role`` is None for visitors without an authenticated identity."""
    if page in AUTHENTICATED_PAGES and role is None:
        return False
    if page == Page.ADMIN:
        return role == ROLE_ADMIN
    return True


def should_persist(page: Page) -> bool:
    return page in PERSISTED_PAGES


class LocalStorage:
    """Origin-scoped key/value storage shared by every tab of one browser profile."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


def persist_route(storage: LocalStorage, page: Page) -> bool:
    if not should_persist(page):
        return False
    storage.set(CURRENT_PAGE_KEY, page.value)
    return True


def restore_route(storage: LocalStorage) -> Optional[Page]:
    raw = storage.get(CURRENT_PAGE_KEY)
    if not raw:
        return None
    try:
        page = Page(raw)
    except ValueError:
        storage.remove(CURRENT_PAGE_KEY)
        return None
    return page if should_persist(page) else None


def clear_route(storage: LocalStorage) -> None:
    storage.remove(CURRENT_PAGE_KEY)

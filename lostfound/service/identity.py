from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from lostfound.logging import get_logger
from lostfound.service.auth import AuthContext, AuthService
from lostfound.service.errors import ValidationError
from lostfound.storage.models import User

logger = get_logger(__name__)


class SessionEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_UPDATED = "USER_UPDATED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    INITIAL_SESSION = "INITIAL_SESSION"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    user_id: Optional[str] = None
    session_id: Optional[str] = None


SessionEventHandler = Callable[[SessionEvent], Awaitable[None]]


class IdentityClient:
    """Identity provider handle for one browser profile.

    Every tab of the profile shares the same client, so a sign-in or sign-out
    performed by one tab is pushed to all of them. Handlers are awaited in
    subscription order.
    """

    def __init__(self, auth: AuthService, *, user_agent: Optional[str] = None) -> None:
        self.auth = auth
        self.user_agent = user_agent
        self.session_id: Optional[str] = None
        self._handlers: List[SessionEventHandler] = []
        self._handlers_lock = threading.Lock()

    def on_session_event(self, handler: SessionEventHandler) -> Callable[[], None]:
        with self._handlers_lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._handlers_lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    async def _emit(self, kind: SessionEventKind, user_id: Optional[str] = None) -> None:
        event = SessionEvent(kind=kind, user_id=user_id, session_id=self.session_id)
        with self._handlers_lock:
            handlers = list(self._handlers)
        logger.debug("session_event_emitted", kind=kind.value, subscribers=len(handlers))
        for handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                logger.error(
                    "session_event_handler_failed",
                    kind=kind.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def get_session(self) -> Optional[AuthContext]:
        if not self.session_id:
            return None
        ctx = await self.auth.resolve_session(self.session_id)
        if ctx is None:
            self.session_id = None
        return ctx

    async def fetch_profile(self, user_id: str) -> User:
        return self.auth.get_profile(user_id)

    async def sign_in(self, identity_key: str, password: str) -> User:
        user, session = await self.auth.sign_in(
            identity_key, password, user_agent=self.user_agent
        )
        self.session_id = session.id
        await self._emit(SessionEventKind.SIGNED_IN, user.id)
        return user

    async def sign_out(self) -> None:
        session_id = self.session_id
        if not session_id:
            return
        self.session_id = None
        await self.auth.sign_out(session_id)
        await self._emit(SessionEventKind.SIGNED_OUT)

    async def begin_recovery(self, token: str) -> User:
        """Open the provider session carried by a recovery link."""
        user, session = await self.auth.open_recovery_session(token)
        self.session_id = session.id
        await self._emit(SessionEventKind.SIGNED_IN, user.id)
        return user

    async def update_password(self, token: str, new_password: str) -> None:
        if not await self.auth.complete_password_reset(token, new_password):
            raise ValidationError("This reset link is invalid or has expired.")
        await self._emit(SessionEventKind.USER_UPDATED)

    async def confirm_email(self, token: str) -> bool:
        return await self.auth.complete_email_verification(token)

    async def refresh_session(self) -> None:
        ctx = await self.get_session()
        if ctx:
            await self._emit(SessionEventKind.TOKEN_REFRESHED, ctx.user_id)

    async def notify_user_updated(self) -> None:
        ctx = await self.get_session()
        await self._emit(SessionEventKind.USER_UPDATED, ctx.user_id if ctx else None)

    async def restore(self) -> None:
        ctx = await self.get_session()
        await self._emit(SessionEventKind.INITIAL_SESSION, ctx.user_id if ctx else None)

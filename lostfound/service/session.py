"""Per-tab session state machine.

``transition`` is a pure reducer: it maps (state, event) to the next state plus
the effects to run. ``SessionOrchestrator`` owns one tab's state, turns provider
pushes and user actions into events, and interprets the effects (provider
calls, flow announcements, navigation).
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from lostfound.logging import get_logger
from lostfound.service.coordination import (
    AUTH_FLOW_END,
    AUTH_FLOW_START,
    ChannelMessage,
    CrossTabCoordinator,
)
from lostfound.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ForbiddenError,
    ProfileNotFoundError,
    ProviderUnavailableError,
    ServiceError,
)
from lostfound.service.identity import IdentityClient, SessionEvent, SessionEventKind
from lostfound.service.navigation import (
    FLOW_PAGES,
    FlowKind,
    LocalStorage,
    Page,
    can_access,
    clear_route,
    default_page_for,
    parse_flow_marker,
    parse_flow_token,
    persist_route,
    restore_route,
)
from lostfound.storage.models import ACCOUNT_INACTIVE, ROLE_ADMIN, User

logger = get_logger(__name__)

ERROR_PROVIDER_UNAVAILABLE = "provider_unavailable"
ERROR_PROFILE_NOT_FOUND = "profile_not_found"
ERROR_ACCOUNT_INACTIVE = "account_inactive"
ERROR_SESSION_EXPIRED = "session_expired"

SOURCE_BOOT = "boot"
SOURCE_PUSH = "push"
SOURCE_SIGN_IN = "sign_in"
SOURCE_REFRESH = "refresh"


@dataclass(frozen=True)
class Identity:
    identity_id: str
    email: str
    full_name: str
    role: str
    email_confirmed: bool
    account_status: str
    student_id: Optional[str] = None
    contact_number: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            identity_id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            email_confirmed=user.email_confirmed,
            account_status=user.status,
            student_id=user.student_id,
            contact_number=user.contact_number,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_inactive(self) -> bool:
        return self.account_status == ACCOUNT_INACTIVE


# states


@dataclass(frozen=True)
class Anonymous:
    error: Optional[str] = None


@dataclass(frozen=True)
class Initializing:
    restore: Optional[Page] = None


@dataclass(frozen=True)
class InAuthFlow:
    kind: FlowKind


@dataclass(frozen=True)
class Authenticated:
    identity: Identity


@dataclass(frozen=True)
class SignedOut:
    error: Optional[str] = None


SessionState = Union[Anonymous, Initializing, InAuthFlow, Authenticated, SignedOut]


# events


@dataclass(frozen=True)
class Boot:
    url: Optional[str] = None
    restored_route: Optional[Page] = None
    sibling_flow_active: bool = False


@dataclass(frozen=True)
class SessionResolved:
    user_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProfileLoaded:
    identity: Identity
    source: str
    flow_active: bool = False


@dataclass(frozen=True)
class ProfileFailed:
    error: str
    source: str


@dataclass(frozen=True)
class BootTimedOut:
    pass


@dataclass(frozen=True)
class ProviderPush:
    kind: SessionEventKind
    user_id: Optional[str] = None
    flow_active: bool = False
    url_flow: Optional[FlowKind] = None
    route: Optional[Page] = None


@dataclass(frozen=True)
class SignInStarted:
    pass


@dataclass(frozen=True)
class SignInFailed:
    error: str


@dataclass(frozen=True)
class SignOutRequested:
    pass


@dataclass(frozen=True)
class FlowCompleted:
    pass


@dataclass(frozen=True)
class ValidationFailed:
    error: str


@dataclass(frozen=True)
class NavigateRequested:
    page: Page


# effects


class EffectKind(str, Enum):
    QUERY_SESSION = "query_session"
    FETCH_PROFILE = "fetch_profile"
    PROVIDER_SIGN_OUT = "provider_sign_out"
    ANNOUNCE_FLOW = "announce_flow"
    RETRACT_FLOW = "retract_flow"
    BEGIN_RECOVERY = "begin_recovery"
    CONFIRM_EMAIL = "confirm_email"
    NAVIGATE = "navigate"
    PERSIST_ROUTE = "persist_route"
    CLEAR_ROUTE = "clear_route"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    page: Optional[Page] = None
    flow: Optional[FlowKind] = None
    user_id: Optional[str] = None
    source: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    state: SessionState
    effects: Tuple[Effect, ...] = field(default_factory=tuple)


def _navigate(page: Page) -> Tuple[Effect, ...]:
    return (Effect(EffectKind.NAVIGATE, page=page), Effect(EffectKind.PERSIST_ROUTE, page=page))


def _leave_to_landing() -> Tuple[Effect, ...]:
    return (Effect(EffectKind.CLEAR_ROUTE), Effect(EffectKind.NAVIGATE, page=Page.LANDING))


def _force_sign_out(error: Optional[str]) -> Transition:
    return Transition(
        SignedOut(error),
        (Effect(EffectKind.PROVIDER_SIGN_OUT),) + _leave_to_landing(),
    )


def _landing_page(identity: Identity, restore: Optional[Page]) -> Page:
    if restore is not None and restore not in FLOW_PAGES and can_access(restore, identity.role):
        if restore not in (Page.LOGIN, Page.REGISTER):
            return restore
    return default_page_for(identity.role)


def _authenticate(identity: Identity, restore: Optional[Page] = None) -> Transition:
    if identity.is_inactive:
        return _force_sign_out(ERROR_ACCOUNT_INACTIVE)
    return Transition(Authenticated(identity), _navigate(_landing_page(identity, restore)))


def _on_boot(state: SessionState, event: Boot) -> Transition:
    if not isinstance(state, Initializing):
        return Transition(state)
    flow = parse_flow_marker(event.url)
    token = parse_flow_token(event.url)
    if flow == FlowKind.RECOVERY:
        effects: List[Effect] = [Effect(EffectKind.ANNOUNCE_FLOW, flow=flow)]
        if token:
            effects.append(Effect(EffectKind.BEGIN_RECOVERY, token=token))
        effects.append(Effect(EffectKind.NAVIGATE, page=Page.RESET_PASSWORD))
        return Transition(InAuthFlow(flow), tuple(effects))
    if flow == FlowKind.EMAIL_VERIFY:
        effects = [Effect(EffectKind.ANNOUNCE_FLOW, flow=flow)]
        if token:
            effects.append(Effect(EffectKind.CONFIRM_EMAIL, token=token))
        effects.append(Effect(EffectKind.PROVIDER_SIGN_OUT))
        effects.append(Effect(EffectKind.NAVIGATE, page=Page.EMAIL_VERIFIED))
        return Transition(InAuthFlow(flow), tuple(effects))
    if event.sibling_flow_active:
        return Transition(Anonymous(), _anonymous_landing(event.restored_route))
    return Transition(
        Initializing(restore=event.restored_route), (Effect(EffectKind.QUERY_SESSION),)
    )


def _anonymous_landing(restore: Optional[Page]) -> Tuple[Effect, ...]:
    if restore is not None and can_access(restore, None):
        return (Effect(EffectKind.NAVIGATE, page=restore),)
    return _leave_to_landing()


def _on_session_resolved(state: SessionState, event: SessionResolved) -> Transition:
    if not isinstance(state, Initializing):
        return Transition(state)
    if event.error:
        return Transition(Anonymous(event.error), (Effect(EffectKind.NAVIGATE, page=Page.LANDING),))
    if event.user_id is None:
        return Transition(Anonymous(), _anonymous_landing(state.restore))
    return Transition(
        state,
        (Effect(EffectKind.FETCH_PROFILE, user_id=event.user_id, source=SOURCE_BOOT),),
    )


def _on_profile_loaded(state: SessionState, event: ProfileLoaded) -> Transition:
    if event.source in (SOURCE_BOOT, SOURCE_SIGN_IN):
        if isinstance(state, Initializing):
            return _authenticate(event.identity, state.restore)
        return Transition(state)
    if event.source == SOURCE_PUSH:
        # Suppression is re-checked here; the flow may have started while the profile loaded
        if isinstance(state, (Anonymous, SignedOut)) and not event.flow_active:
            return _authenticate(event.identity)
        return Transition(state)
    if event.source == SOURCE_REFRESH and isinstance(state, Authenticated):
        if event.identity.is_inactive:
            return _force_sign_out(ERROR_ACCOUNT_INACTIVE)
        return Transition(Authenticated(event.identity))
    return Transition(state)


def _on_profile_failed(state: SessionState, event: ProfileFailed) -> Transition:
    if isinstance(state, Initializing) and event.source in (SOURCE_BOOT, SOURCE_SIGN_IN):
        effects: Tuple[Effect, ...] = _leave_to_landing()
        if event.error == ERROR_PROFILE_NOT_FOUND:
            effects = (Effect(EffectKind.PROVIDER_SIGN_OUT),) + effects
        return Transition(Anonymous(event.error), effects)
    if isinstance(state, Authenticated) and event.error == ERROR_PROFILE_NOT_FOUND:
        return _force_sign_out(event.error)
    if isinstance(state, (Anonymous, SignedOut)) and event.source == SOURCE_PUSH:
        return Transition(Anonymous(event.error))
    return Transition(state)


def _on_provider_push(state: SessionState, event: ProviderPush) -> Transition:
    if event.kind == SessionEventKind.SIGNED_IN:
        if isinstance(state, (Initializing, Authenticated, InAuthFlow)):
            return Transition(state)
        if event.flow_active or event.url_flow is not None or event.route in FLOW_PAGES:
            return Transition(state)
        if not event.user_id:
            return Transition(state)
        return Transition(
            state,
            (Effect(EffectKind.FETCH_PROFILE, user_id=event.user_id, source=SOURCE_PUSH),),
        )
    if event.kind == SessionEventKind.SIGNED_OUT:
        if isinstance(state, (Authenticated, Initializing)):
            return Transition(SignedOut(), _leave_to_landing())
        return Transition(state)
    if event.kind == SessionEventKind.USER_UPDATED and isinstance(state, Authenticated):
        return Transition(
            state,
            (
                Effect(
                    EffectKind.FETCH_PROFILE,
                    user_id=state.identity.identity_id,
                    source=SOURCE_REFRESH,
                ),
            ),
        )
    return Transition(state)


def _on_navigate(state: SessionState, event: NavigateRequested) -> Transition:
    page = event.page
    if isinstance(state, (Initializing, InAuthFlow)):
        return Transition(state)
    if isinstance(state, Authenticated):
        role = state.identity.role
        if page in (Page.LOGIN, Page.REGISTER, Page.LANDING) or page in FLOW_PAGES:
            return Transition(state, _navigate(default_page_for(role)))
        if not can_access(page, role):
            return Transition(state, _navigate(default_page_for(role)))
        return Transition(state, _navigate(page))
    if not can_access(page, None):
        return Transition(state, _navigate(Page.LOGIN))
    return Transition(state, _navigate(page))


def transition(state: SessionState, event) -> Transition:
    """Pure state transition. Events that do not apply leave the state untouched."""
    if isinstance(event, Boot):
        return _on_boot(state, event)
    if isinstance(event, SessionResolved):
        return _on_session_resolved(state, event)
    if isinstance(event, ProfileLoaded):
        return _on_profile_loaded(state, event)
    if isinstance(event, ProfileFailed):
        return _on_profile_failed(state, event)
    if isinstance(event, BootTimedOut):
        if isinstance(state, Initializing):
            return Transition(
                Anonymous(ERROR_PROVIDER_UNAVAILABLE),
                (Effect(EffectKind.NAVIGATE, page=Page.LANDING),),
            )
        return Transition(state)
    if isinstance(event, ProviderPush):
        return _on_provider_push(state, event)
    if isinstance(event, SignInStarted):
        if isinstance(state, (Anonymous, SignedOut)):
            return Transition(Initializing())
        return Transition(state)
    if isinstance(event, SignInFailed):
        if isinstance(state, Initializing):
            return Transition(Anonymous(event.error))
        return Transition(state)
    if isinstance(event, SignOutRequested):
        if isinstance(state, InAuthFlow):
            return Transition(
                SignedOut(),
                (Effect(EffectKind.RETRACT_FLOW), Effect(EffectKind.PROVIDER_SIGN_OUT))
                + _leave_to_landing(),
            )
        return _force_sign_out(None)
    if isinstance(event, FlowCompleted):
        if isinstance(state, InAuthFlow):
            return Transition(
                Anonymous(),
                (
                    Effect(EffectKind.RETRACT_FLOW),
                    Effect(EffectKind.PROVIDER_SIGN_OUT),
                )
                + _navigate(Page.LOGIN),
            )
        return Transition(state)
    if isinstance(event, ValidationFailed):
        if isinstance(state, Authenticated):
            return _force_sign_out(event.error)
        return Transition(state)
    if isinstance(event, NavigateRequested):
        return _on_navigate(state, event)
    raise TypeError(f"unknown session event: {type(event).__name__}")


StateHandler = Callable[[SessionState], None]


class SessionOrchestrator:
    """Owns the session state of one tab.

    An announced auth flow is held through ``CrossTabCoordinator.hold``; use the
    orchestrator as ``async with`` so the flag is released on every exit path.
    """

    def __init__(
        self,
        tab_id: str,
        identity: IdentityClient,
        coordinator: CrossTabCoordinator,
        storage: LocalStorage,
        *,
        url: Optional[str] = None,
        boot_timeout: float = 5.0,
    ) -> None:
        self.tab_id = tab_id
        self.identity = identity
        self.coordinator = coordinator
        self.storage = storage
        self.url = url
        self.boot_timeout = boot_timeout
        self.state: SessionState = Initializing()
        self.route: Optional[Page] = None
        self._flow_token: Optional[str] = None
        self._remote_flows: dict[str, datetime] = {}
        self._flow_hold: Optional[contextlib.AsyncExitStack] = None
        self._subscribers: List[StateHandler] = []
        self._unsubscribe_identity = identity.on_session_event(self._on_provider_event)
        self._unsubscribe_channel = coordinator.subscribe(self._on_channel_message)

    def subscribe(self, handler: StateHandler) -> Callable[[], None]:
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    async def dispatch(self, event) -> SessionState:
        result = transition(self.state, event)
        if result.state != self.state:
            previous = self.state
            self.state = result.state
            logger.info(
                "session_state_changed",
                tab_id=self.tab_id,
                previous=type(previous).__name__,
                state=type(result.state).__name__,
                trigger=type(event).__name__,
            )
            for handler in list(self._subscribers):
                handler(result.state)
        for effect in result.effects:
            await self._run_effect(effect)
        return self.state

    async def _run_effect(self, effect: Effect) -> None:
        kind = effect.kind
        if kind == EffectKind.QUERY_SESSION:
            await self._query_session()
        elif kind == EffectKind.FETCH_PROFILE:
            await self._fetch_profile(effect.user_id or "", effect.source or SOURCE_PUSH)
        elif kind == EffectKind.PROVIDER_SIGN_OUT:
            try:
                await self.identity.sign_out()
            except Exception as exc:
                logger.warning("provider_sign_out_failed", tab_id=self.tab_id, error=str(exc))
        elif kind == EffectKind.ANNOUNCE_FLOW and effect.flow is not None:
            await self._hold_flow(effect.flow)
        elif kind == EffectKind.RETRACT_FLOW:
            await self._release_flow()
            self._flow_token = None
        elif kind == EffectKind.BEGIN_RECOVERY and effect.token:
            self._flow_token = effect.token
            try:
                await self.identity.begin_recovery(effect.token)
            except ServiceError as exc:
                logger.warning("recovery_link_rejected", tab_id=self.tab_id, error=exc.message)
        elif kind == EffectKind.CONFIRM_EMAIL and effect.token:
            confirmed = await self.identity.confirm_email(effect.token)
            logger.info("email_confirmation_processed", tab_id=self.tab_id, confirmed=confirmed)
        elif kind == EffectKind.NAVIGATE and effect.page is not None:
            self.route = effect.page
        elif kind == EffectKind.PERSIST_ROUTE and effect.page is not None:
            persist_route(self.storage, effect.page)
        elif kind == EffectKind.CLEAR_ROUTE:
            clear_route(self.storage)

    async def _query_session(self) -> None:
        try:
            ctx = await self.identity.get_session()
        except Exception as exc:
            logger.warning("session_query_failed", tab_id=self.tab_id, error=str(exc))
            await self.dispatch(SessionResolved(error=ERROR_PROVIDER_UNAVAILABLE))
            return
        await self.dispatch(SessionResolved(user_id=ctx.user_id if ctx else None))

    async def _fetch_profile(self, user_id: str, source: str) -> None:
        try:
            user = await self.identity.fetch_profile(user_id)
        except ProfileNotFoundError:
            await self.dispatch(ProfileFailed(ERROR_PROFILE_NOT_FOUND, source))
            return
        except Exception as exc:
            logger.warning("profile_fetch_failed", tab_id=self.tab_id, error=str(exc))
            await self.dispatch(ProfileFailed(ERROR_PROVIDER_UNAVAILABLE, source))
            return
        flow_active = await self._flow_suppressed() if source == SOURCE_PUSH else False
        await self.dispatch(ProfileLoaded(Identity.from_user(user), source, flow_active))

    async def _flow_suppressed(self) -> bool:
        now = datetime.now(timezone.utc)
        for origin, seen_at in list(self._remote_flows.items()):
            if now - seen_at >= self.coordinator.stale_after:
                self._remote_flows.pop(origin, None)
        if self._remote_flows:
            return True
        try:
            return await self.coordinator.active_flow(exclude_self=False) is not None
        except Exception as exc:
            logger.warning("auth_flow_check_failed", tab_id=self.tab_id, error=str(exc))
            return True

    async def _on_provider_event(self, event: SessionEvent) -> None:
        if event.kind in (SessionEventKind.INITIAL_SESSION, SessionEventKind.TOKEN_REFRESHED):
            return
        flow_active = False
        if event.kind == SessionEventKind.SIGNED_IN and isinstance(self.state, (Anonymous, SignedOut)):
            flow_active = await self._flow_suppressed()
        await self.dispatch(
            ProviderPush(
                kind=event.kind,
                user_id=event.user_id,
                flow_active=flow_active,
                url_flow=parse_flow_marker(self.url),
                route=self.route,
            )
        )

    async def _on_channel_message(self, message: ChannelMessage) -> None:
        if message.kind == AUTH_FLOW_START:
            self._remote_flows[message.origin_tab] = datetime.now(timezone.utc)
        elif message.kind == AUTH_FLOW_END:
            self._remote_flows.pop(message.origin_tab, None)

    # tab operations

    async def boot(self, url: Optional[str] = None) -> SessionState:
        if url is not None:
            self.url = url
        restored = restore_route(self.storage)
        try:
            sibling = await self.coordinator.active_flow(exclude_self=True) is not None
        except Exception as exc:
            logger.warning("auth_flow_check_failed", tab_id=self.tab_id, error=str(exc))
            sibling = False
        try:
            await asyncio.wait_for(
                self.dispatch(Boot(url=self.url, restored_route=restored, sibling_flow_active=sibling)),
                timeout=self.boot_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("session_boot_timed_out", tab_id=self.tab_id, timeout=self.boot_timeout)
            await self.dispatch(BootTimedOut())
        return self.state

    async def sign_in(self, identity_key: str, password: str) -> SessionState:
        await self.dispatch(SignInStarted())
        if not isinstance(self.state, Initializing):
            return self.state
        try:
            user = await self.identity.sign_in(identity_key, password)
        except ServiceError as exc:
            await self.dispatch(SignInFailed(exc.error_code))
            raise
        except Exception as exc:
            logger.warning("sign_in_provider_failed", tab_id=self.tab_id, error=str(exc))
            await self.dispatch(SignInFailed(ERROR_PROVIDER_UNAVAILABLE))
            raise
        return await self.dispatch(
            ProfileLoaded(Identity.from_user(user), SOURCE_SIGN_IN)
        )

    async def sign_out(self) -> SessionState:
        return await self.dispatch(SignOutRequested())

    async def complete_flow(self, new_password: Optional[str] = None) -> SessionState:
        """Finish the current auth flow and land on the login page.

        For recovery, ``new_password`` is applied with the link's token first;
        a rejected password leaves the tab inside the flow.
        """
        if not isinstance(self.state, InAuthFlow):
            return self.state
        if self.state.kind == FlowKind.RECOVERY and new_password is not None:
            token = self._flow_token or parse_flow_token(self.url)
            await self.identity.update_password(token or "", new_password)
        return await self.dispatch(FlowCompleted())

    async def ensure_valid(self, required_role: Optional[str] = None) -> Identity:
        """Re-resolve session and profile before a user-initiated action."""
        if not isinstance(self.state, Authenticated):
            raise AuthenticationError("Please sign in to continue.")
        current = self.state.identity
        try:
            ctx = await self.identity.get_session()
        except Exception as exc:
            logger.warning("session_validation_unavailable", tab_id=self.tab_id, error=str(exc))
            raise ProviderUnavailableError()
        if ctx is None or ctx.user_id != current.identity_id:
            reason = ERROR_SESSION_EXPIRED
            if ctx is None:
                reason = await self._session_lost_reason(current.identity_id)
            await self.dispatch(ValidationFailed(reason))
            if reason == ERROR_ACCOUNT_INACTIVE:
                raise AccountInactiveError()
            raise AuthenticationError("Your session has expired. Please sign in again.")
        try:
            user = await self.identity.fetch_profile(ctx.user_id)
        except ProfileNotFoundError:
            await self.dispatch(ValidationFailed(ERROR_PROFILE_NOT_FOUND))
            raise
        refreshed = Identity.from_user(user)
        if refreshed.is_inactive:
            await self.dispatch(ValidationFailed(ERROR_ACCOUNT_INACTIVE))
            raise AccountInactiveError()
        await self.dispatch(ProfileLoaded(refreshed, SOURCE_REFRESH))
        if required_role == ROLE_ADMIN and not refreshed.is_admin:
            raise ForbiddenError("Administrator access required.")
        return refreshed

    async def _session_lost_reason(self, user_id: str) -> str:
        # Deactivation revokes sessions, so a vanished session may mean an inactive account
        try:
            user = await self.identity.fetch_profile(user_id)
        except ServiceError:
            return ERROR_SESSION_EXPIRED
        return ERROR_ACCOUNT_INACTIVE if user.status == ACCOUNT_INACTIVE else ERROR_SESSION_EXPIRED

    async def navigate(self, page: Page) -> Optional[Page]:
        await self.dispatch(NavigateRequested(page))
        return self.route

    async def _hold_flow(self, flow: FlowKind) -> None:
        await self._release_flow()
        stack = contextlib.AsyncExitStack()
        await stack.enter_async_context(self.coordinator.hold(flow))
        self._flow_hold = stack

    async def _release_flow(self) -> None:
        stack, self._flow_hold = self._flow_hold, None
        if stack is not None:
            await stack.aclose()

    async def close(self) -> None:
        self._unsubscribe_identity()
        self._unsubscribe_channel()
        await self._release_flow()

    async def __aenter__(self) -> "SessionOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

"""Several tabs of one browser profile sharing a provider client, flag store and channel."""

import asyncio

import pytest

from lostfound.service.coordination import (
    CrossTabCoordinator,
    LocalBroadcastChannel,
    LocalFlagStore,
)
from lostfound.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialError,
    ValidationError,
)
from lostfound.service.identity import IdentityClient
from lostfound.service.navigation import FlowKind, LocalStorage, Page, persist_route
from lostfound.service.session import (
    ERROR_ACCOUNT_INACTIVE,
    ERROR_PROVIDER_UNAVAILABLE,
    ERROR_SESSION_EXPIRED,
    Anonymous,
    Authenticated,
    InAuthFlow,
    SessionOrchestrator,
    SignedOut,
)
from lostfound.storage.models import ACCOUNT_INACTIVE, ROLE_ADMIN

PASSWORD = "CorrectHorse9"
SITE = "https://lf.plv.edu.ph/"


class _SilentChannel:
    """A channel that never delivers; only the durable flag is left."""

    def subscribe(self, tab_id, handler):
        return lambda: None

    async def post(self, message):
        return None


class _SlowIdentity(IdentityClient):
    async def get_session(self):
        await asyncio.sleep(1)
        return await super().get_session()


class _BrokenIdentity(IdentityClient):
    async def get_session(self):
        raise ConnectionError("provider offline")


class _FlakyIdentity(IdentityClient):
    async def sign_in(self, identity_key, password):
        raise ConnectionError("provider offline")


class _Browser:
    def __init__(self, auth, *, identity=None, channel=None, stale_after=900):
        self.identity = identity or IdentityClient(auth)
        self.flags = LocalFlagStore()
        self.channel = channel or LocalBroadcastChannel()
        self.storage = LocalStorage()
        self.stale_after = stale_after

    def tab(self, tab_id, **kwargs):
        coordinator = CrossTabCoordinator(
            tab_id, self.flags, self.channel, stale_after=self.stale_after
        )
        return SessionOrchestrator(tab_id, self.identity, coordinator, self.storage, **kwargs)


@pytest.fixture
def browser(auth):
    return _Browser(auth)


class TestBoot:
    async def test_no_session_lands_anonymous(self, browser):
        tab = browser.tab("t1")
        assert await tab.boot(SITE) == Anonymous()
        assert tab.route == Page.LANDING

    async def test_existing_session_restores_route(self, browser, make_user):
        user = make_user()
        await browser.identity.sign_in(user.email, PASSWORD)
        persist_route(browser.storage, Page.CLAIM)

        tab = browser.tab("t1")
        state = await tab.boot(SITE)

        assert isinstance(state, Authenticated)
        assert state.identity.identity_id == user.id
        assert tab.route == Page.CLAIM

    async def test_recovery_link_wins_over_existing_session(self, browser, make_user, auth):
        user = make_user()
        await browser.identity.sign_in(user.email, PASSWORD)
        token = await auth.initiate_password_reset(user.email)

        tab = browser.tab("t1")
        state = await tab.boot(f"{SITE}?type=recovery&token={token}")

        assert state == InAuthFlow(FlowKind.RECOVERY)
        assert tab.route == Page.RESET_PASSWORD
        assert tab.coordinator.owned_flow == FlowKind.RECOVERY

    async def test_email_link_confirms_and_stays_signed_out(self, browser, auth, store):
        user = await auth.sign_up("maria@plv.edu.ph", PASSWORD, full_name="Maria", student_id="23-1234")
        token = await auth.resend_verification(user.email)

        tab = browser.tab("t1")
        state = await tab.boot(f"{SITE}#type=signup&token={token}")

        assert state == InAuthFlow(FlowKind.EMAIL_VERIFY)
        assert tab.route == Page.EMAIL_VERIFIED
        assert store.get_user(user.id).email_confirmed
        assert browser.identity.session_id is None

        await tab.complete_flow()
        assert tab.state == Anonymous()
        assert tab.route == Page.LOGIN

    async def test_boot_times_out(self, auth):
        browser = _Browser(auth, identity=_SlowIdentity(auth))
        tab = browser.tab("t1", boot_timeout=0.05)

        assert await tab.boot(SITE) == Anonymous(ERROR_PROVIDER_UNAVAILABLE)
        assert tab.route == Page.LANDING

    async def test_provider_failure(self, auth):
        browser = _Browser(auth, identity=_BrokenIdentity(auth))
        tab = browser.tab("t1")
        assert await tab.boot(SITE) == Anonymous(ERROR_PROVIDER_UNAVAILABLE)


class TestRecoveryAcrossTabs:
    async def test_recovery_link_does_not_sign_in_open_tab(self, browser, make_user, auth):
        user = make_user()
        tab_b = browser.tab("tab-b")
        await tab_b.boot(SITE)

        token = await auth.initiate_password_reset(user.email)
        tab_a = browser.tab("tab-a")
        await tab_a.boot(f"{SITE}?type=recovery&token={token}")

        assert tab_a.state == InAuthFlow(FlowKind.RECOVERY)
        # the recovery link opened a provider session and pushed SIGNED_IN to every tab
        assert browser.identity.session_id is not None
        assert tab_b.state == Anonymous()

        await tab_a.complete_flow("BrandNewPass7")

        assert tab_a.state == Anonymous()
        assert tab_a.route == Page.LOGIN
        assert browser.identity.session_id is None
        assert await tab_a.coordinator.active_flow(exclude_self=False) is None
        assert tab_b.state == Anonymous()

        await tab_b.sign_in(user.email, "BrandNewPass7")
        assert isinstance(tab_b.state, Authenticated)

    async def test_durable_flag_suppresses_without_channel(self, auth, make_user):
        browser = _Browser(auth, channel=_SilentChannel())
        user = make_user()
        tab_b = browser.tab("tab-b")
        await tab_b.boot(SITE)

        token = await auth.initiate_password_reset(user.email)
        await browser.tab("tab-a").boot(f"{SITE}?type=recovery&token={token}")

        assert tab_b.state == Anonymous()

    async def test_tab_opened_during_flow_stays_anonymous(self, browser, make_user, auth):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)
        await browser.tab("tab-a").boot(f"{SITE}?type=recovery&token={token}")

        tab_c = browser.tab("tab-c")
        assert await tab_c.boot(SITE) == Anonymous()

    async def test_stale_flag_no_longer_suppresses(self, auth, make_user):
        browser = _Browser(auth, stale_after=0)
        user = make_user()
        tab_b = browser.tab("tab-b")
        await tab_b.boot(SITE)

        token = await auth.initiate_password_reset(user.email)
        await browser.tab("tab-a").boot(f"{SITE}?type=recovery&token={token}")

        assert isinstance(tab_b.state, Authenticated)

    async def test_rejected_password_keeps_flow(self, browser, make_user, auth):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)
        tab = browser.tab("tab-a")
        await tab.boot(f"{SITE}?type=recovery&token={token}")

        with pytest.raises(ValidationError):
            await tab.complete_flow("short")

        assert tab.state == InAuthFlow(FlowKind.RECOVERY)
        assert await tab.coordinator.active_flow(exclude_self=False) is not None

    async def test_close_retracts_flag(self, browser, make_user, auth):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)
        tab = browser.tab("tab-a")
        await tab.boot(f"{SITE}?type=recovery&token={token}")

        await tab.close()

        assert await tab.coordinator.active_flow(exclude_self=False) is None

    async def test_flow_released_when_tab_exits_abnormally(self, browser, make_user, auth):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)

        with pytest.raises(RuntimeError):
            async with browser.tab("tab-a") as tab_a:
                await tab_a.boot(f"{SITE}?type=recovery&token={token}")
                assert tab_a.state == InAuthFlow(FlowKind.RECOVERY)
                raise RuntimeError("tab crashed")

        tab_b = browser.tab("tab-b")
        assert await tab_b.coordinator.active_flow(exclude_self=False) is None

    async def test_flow_released_when_tab_task_is_cancelled(self, browser, make_user, auth):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)
        entered = asyncio.Event()

        async def _tab_lifetime():
            async with browser.tab("tab-a") as tab_a:
                await tab_a.boot(f"{SITE}?type=recovery&token={token}")
                entered.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(_tab_lifetime())
        await entered.wait()
        assert await browser.tab("tab-b").coordinator.active_flow() is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await browser.tab("tab-c").coordinator.active_flow() is None


class TestSignInAndOut:
    async def test_sign_in_reaches_every_tab(self, browser, make_user):
        user = make_user()
        tab_a = browser.tab("tab-a")
        tab_b = browser.tab("tab-b")
        await tab_a.boot(SITE)
        await tab_b.boot(SITE)
        seen = []
        tab_b.subscribe(seen.append)

        await tab_a.sign_in(user.email, PASSWORD)

        assert isinstance(tab_a.state, Authenticated)
        assert tab_a.route == Page.BOARD
        assert isinstance(tab_b.state, Authenticated)
        assert isinstance(seen[-1], Authenticated)

    async def test_failed_sign_in(self, browser, make_user):
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)

        with pytest.raises(InvalidCredentialError):
            await tab.sign_in(user.email, "WrongPassword1")
        assert tab.state == Anonymous("invalid_credential")

    async def test_provider_error_during_sign_in_does_not_strand_tab(self, auth):
        browser = _Browser(auth, identity=_FlakyIdentity(auth))
        tab = browser.tab("t1")
        await tab.boot(SITE)

        with pytest.raises(ConnectionError):
            await tab.sign_in("ana@plv.edu.ph", PASSWORD)

        assert tab.state == Anonymous(ERROR_PROVIDER_UNAVAILABLE)

    async def test_sign_out_reaches_every_tab(self, browser, make_user):
        user = make_user()
        tab_a = browser.tab("tab-a")
        tab_b = browser.tab("tab-b")
        await tab_a.boot(SITE)
        await tab_b.boot(SITE)
        await tab_a.sign_in(user.email, PASSWORD)

        await tab_a.sign_out()

        assert tab_a.state == SignedOut()
        assert tab_b.state == SignedOut()
        assert tab_a.route == Page.LANDING

    async def test_navigation_respects_role(self, browser, make_user):
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)
        await tab.sign_in(user.email, PASSWORD)

        assert await tab.navigate(Page.ADMIN) == Page.BOARD
        assert await tab.navigate(Page.REPORT) == Page.REPORT


class TestEnsureValid:
    async def test_refreshes_identity(self, browser, make_user, store):
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)
        await tab.sign_in(user.email, PASSWORD)
        user.full_name = "Ana R. Reyes"

        identity = await tab.ensure_valid()

        assert identity.full_name == "Ana R. Reyes"
        assert tab.state.identity.full_name == "Ana R. Reyes"

    async def test_requires_authentication(self, browser):
        tab = browser.tab("t1")
        await tab.boot(SITE)
        with pytest.raises(AuthenticationError):
            await tab.ensure_valid()

    async def test_expired_session_signs_out(self, browser, make_user, auth):
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)
        await tab.sign_in(user.email, PASSWORD)
        await auth.sign_out(browser.identity.session_id)

        with pytest.raises(AuthenticationError):
            await tab.ensure_valid()
        assert tab.state == SignedOut(ERROR_SESSION_EXPIRED)

    async def test_deactivated_account_signs_out(self, browser, make_user, auth):
        admin = make_user("Records Office", role=ROLE_ADMIN)
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)
        await tab.sign_in(user.email, PASSWORD)
        await auth.set_user_status(user.id, ACCOUNT_INACTIVE, actor_id=admin.id)

        with pytest.raises(AccountInactiveError):
            await tab.ensure_valid()
        assert tab.state == SignedOut(ERROR_ACCOUNT_INACTIVE)

    async def test_admin_role_required(self, browser, make_user):
        user = make_user()
        tab = browser.tab("t1")
        await tab.boot(SITE)
        await tab.sign_in(user.email, PASSWORD)

        with pytest.raises(ForbiddenError):
            await tab.ensure_valid(ROLE_ADMIN)

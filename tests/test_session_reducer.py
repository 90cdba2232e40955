"""Pure session transitions; no provider or storage involved."""

import pytest

from lostfound.service.identity import SessionEventKind
from lostfound.service.navigation import FlowKind, Page
from lostfound.service.session import (
    ERROR_ACCOUNT_INACTIVE,
    ERROR_PROFILE_NOT_FOUND,
    ERROR_PROVIDER_UNAVAILABLE,
    SOURCE_BOOT,
    SOURCE_PUSH,
    SOURCE_REFRESH,
    SOURCE_SIGN_IN,
    Anonymous,
    Authenticated,
    Boot,
    BootTimedOut,
    EffectKind,
    FlowCompleted,
    Identity,
    InAuthFlow,
    Initializing,
    NavigateRequested,
    ProfileFailed,
    ProfileLoaded,
    ProviderPush,
    SessionResolved,
    SignedOut,
    SignInFailed,
    SignInStarted,
    SignOutRequested,
    ValidationFailed,
    transition,
)


def _identity(role="finder", status="active") -> Identity:
    return Identity(
        identity_id="u1",
        email="ana@plv.edu.ph",
        full_name="Ana Reyes",
        role=role,
        email_confirmed=True,
        account_status=status,
    )


def _kinds(result):
    return [effect.kind for effect in result.effects]


def _pages(result, kind=EffectKind.NAVIGATE):
    return [effect.page for effect in result.effects if effect.kind == kind]


class TestBoot:
    def test_plain_boot_queries_session(self):
        result = transition(Initializing(), Boot(url="https://lf.plv.edu.ph/", restored_route=Page.CLAIM))
        assert result.state == Initializing(restore=Page.CLAIM)
        assert _kinds(result) == [EffectKind.QUERY_SESSION]

    def test_recovery_marker_enters_flow(self):
        result = transition(
            Initializing(), Boot(url="https://lf.plv.edu.ph/?type=recovery&token=abc")
        )
        assert result.state == InAuthFlow(FlowKind.RECOVERY)
        assert _kinds(result) == [
            EffectKind.ANNOUNCE_FLOW,
            EffectKind.BEGIN_RECOVERY,
            EffectKind.NAVIGATE,
        ]
        assert result.effects[1].token == "abc"
        assert _pages(result) == [Page.RESET_PASSWORD]

    def test_recovery_marker_in_fragment(self):
        result = transition(Initializing(), Boot(url="https://lf.plv.edu.ph/#type=recovery"))
        assert result.state == InAuthFlow(FlowKind.RECOVERY)
        assert EffectKind.BEGIN_RECOVERY not in _kinds(result)

    def test_email_marker_confirms_and_signs_out(self):
        result = transition(
            Initializing(), Boot(url="https://lf.plv.edu.ph/?type=signup&token=t1")
        )
        assert result.state == InAuthFlow(FlowKind.EMAIL_VERIFY)
        assert _kinds(result) == [
            EffectKind.ANNOUNCE_FLOW,
            EffectKind.CONFIRM_EMAIL,
            EffectKind.PROVIDER_SIGN_OUT,
            EffectKind.NAVIGATE,
        ]
        assert _pages(result) == [Page.EMAIL_VERIFIED]

    def test_sibling_flow_keeps_tab_anonymous(self):
        result = transition(
            Initializing(), Boot(url="https://lf.plv.edu.ph/", sibling_flow_active=True)
        )
        assert result.state == Anonymous()
        assert EffectKind.QUERY_SESSION not in _kinds(result)

    def test_boot_outside_initializing_is_ignored(self):
        state = Authenticated(_identity())
        assert transition(state, Boot(url="https://lf.plv.edu.ph/?type=recovery")).state == state

    def test_timeout_leaves_anonymous_with_error(self):
        result = transition(Initializing(), BootTimedOut())
        assert result.state == Anonymous(ERROR_PROVIDER_UNAVAILABLE)
        assert _pages(result) == [Page.LANDING]
        assert transition(Anonymous(), BootTimedOut()).state == Anonymous()


class TestSessionResolution:
    def test_no_session_lands_anonymous(self):
        result = transition(Initializing(restore=Page.CLAIM), SessionResolved(user_id=None))
        assert result.state == Anonymous()
        assert _pages(result) == [Page.LANDING]

    def test_anonymous_restore_of_public_page(self):
        result = transition(Initializing(restore=Page.REGISTER), SessionResolved(user_id=None))
        assert _pages(result) == [Page.REGISTER]

    def test_session_fetches_profile(self):
        result = transition(Initializing(), SessionResolved(user_id="u1"))
        assert result.state == Initializing()
        assert result.effects[0].kind == EffectKind.FETCH_PROFILE
        assert result.effects[0].source == SOURCE_BOOT

    def test_profile_restores_route(self):
        result = transition(
            Initializing(restore=Page.CLAIM), ProfileLoaded(_identity(), SOURCE_BOOT)
        )
        assert result.state == Authenticated(_identity())
        assert _pages(result) == [Page.CLAIM]
        assert _pages(result, EffectKind.PERSIST_ROUTE) == [Page.CLAIM]

    @pytest.mark.parametrize("restore", [Page.LOGIN, Page.ADMIN, Page.FORGOT_PASSWORD, None])
    def test_profile_falls_back_to_role_default(self, restore):
        result = transition(Initializing(restore=restore), ProfileLoaded(_identity(), SOURCE_BOOT))
        assert _pages(result) == [Page.BOARD]

    def test_admin_lands_on_dashboard(self):
        admin = _identity(role="admin")
        result = transition(Initializing(restore=Page.ADMIN), ProfileLoaded(admin, SOURCE_BOOT))
        assert _pages(result) == [Page.ADMIN]

    def test_inactive_profile_forces_sign_out(self):
        result = transition(
            Initializing(), ProfileLoaded(_identity(status="inactive"), SOURCE_SIGN_IN)
        )
        assert result.state == SignedOut(ERROR_ACCOUNT_INACTIVE)
        assert EffectKind.PROVIDER_SIGN_OUT in _kinds(result)

    def test_missing_profile_signs_provider_out(self):
        result = transition(Initializing(), ProfileFailed(ERROR_PROFILE_NOT_FOUND, SOURCE_BOOT))
        assert result.state == Anonymous(ERROR_PROFILE_NOT_FOUND)
        assert _kinds(result)[0] == EffectKind.PROVIDER_SIGN_OUT

    def test_provider_error_is_reported(self):
        result = transition(Initializing(), SessionResolved(error=ERROR_PROVIDER_UNAVAILABLE))
        assert result.state == Anonymous(ERROR_PROVIDER_UNAVAILABLE)


class TestProviderPush:
    def test_sign_in_push_fetches_profile_for_anonymous_tab(self):
        result = transition(Anonymous(), ProviderPush(SessionEventKind.SIGNED_IN, user_id="u1"))
        assert result.state == Anonymous()
        assert result.effects[0].source == SOURCE_PUSH

    @pytest.mark.parametrize(
        "push",
        [
            ProviderPush(SessionEventKind.SIGNED_IN, user_id="u1", flow_active=True),
            ProviderPush(SessionEventKind.SIGNED_IN, user_id="u1", url_flow=FlowKind.RECOVERY),
            ProviderPush(SessionEventKind.SIGNED_IN, user_id="u1", route=Page.RESET_PASSWORD),
            ProviderPush(SessionEventKind.SIGNED_IN, user_id="u1", route=Page.FORGOT_PASSWORD),
            ProviderPush(SessionEventKind.SIGNED_IN, user_id=None),
        ],
    )
    def test_sign_in_push_suppressed(self, push):
        result = transition(Anonymous(), push)
        assert result.state == Anonymous()
        assert result.effects == ()

    @pytest.mark.parametrize(
        "state",
        [Initializing(), InAuthFlow(FlowKind.RECOVERY), Authenticated(_identity())],
    )
    def test_sign_in_push_ignored_outside_anonymous(self, state):
        result = transition(state, ProviderPush(SessionEventKind.SIGNED_IN, user_id="u2"))
        assert result.state == state
        assert result.effects == ()

    def test_push_profile_rechecks_flow(self):
        suppressed = transition(Anonymous(), ProfileLoaded(_identity(), SOURCE_PUSH, flow_active=True))
        assert suppressed.state == Anonymous()

        accepted = transition(SignedOut(), ProfileLoaded(_identity(), SOURCE_PUSH))
        assert accepted.state == Authenticated(_identity())

    def test_push_profile_never_interrupts_flow(self):
        state = InAuthFlow(FlowKind.RECOVERY)
        assert transition(state, ProfileLoaded(_identity(), SOURCE_PUSH)).state == state

    def test_sign_out_push(self):
        result = transition(Authenticated(_identity()), ProviderPush(SessionEventKind.SIGNED_OUT))
        assert result.state == SignedOut()
        assert _pages(result) == [Page.LANDING]
        assert transition(Anonymous(), ProviderPush(SessionEventKind.SIGNED_OUT)).state == Anonymous()

    def test_user_updated_refreshes_profile(self):
        result = transition(Authenticated(_identity()), ProviderPush(SessionEventKind.USER_UPDATED))
        assert result.effects[0].source == SOURCE_REFRESH

    def test_refresh_to_inactive_signs_out(self):
        result = transition(
            Authenticated(_identity()), ProfileLoaded(_identity(status="inactive"), SOURCE_REFRESH)
        )
        assert result.state == SignedOut(ERROR_ACCOUNT_INACTIVE)


class TestUserActions:
    def test_sign_in_lifecycle(self):
        assert transition(Anonymous("x"), SignInStarted()).state == Initializing()
        assert transition(Initializing(), SignInFailed("invalid_credential")).state == Anonymous(
            "invalid_credential"
        )
        assert transition(Authenticated(_identity()), SignInStarted()).state == Authenticated(_identity())

    def test_sign_out_from_flow_retracts(self):
        result = transition(InAuthFlow(FlowKind.RECOVERY), SignOutRequested())
        assert result.state == SignedOut()
        assert _kinds(result)[:2] == [EffectKind.RETRACT_FLOW, EffectKind.PROVIDER_SIGN_OUT]

    def test_complete_flow_lands_on_login(self):
        result = transition(InAuthFlow(FlowKind.RECOVERY), FlowCompleted())
        assert result.state == Anonymous()
        assert _kinds(result) == [
            EffectKind.RETRACT_FLOW,
            EffectKind.PROVIDER_SIGN_OUT,
            EffectKind.NAVIGATE,
            EffectKind.PERSIST_ROUTE,
        ]
        assert _pages(result) == [Page.LOGIN]
        assert transition(Anonymous(), FlowCompleted()).effects == ()

    def test_validation_failure_signs_out(self):
        result = transition(Authenticated(_identity()), ValidationFailed("session_expired"))
        assert result.state == SignedOut("session_expired")

    def test_navigation_guards(self):
        finder = Authenticated(_identity())
        assert _pages(transition(finder, NavigateRequested(Page.ADMIN))) == [Page.BOARD]
        assert _pages(transition(finder, NavigateRequested(Page.LOGIN))) == [Page.BOARD]
        assert _pages(transition(finder, NavigateRequested(Page.PROFILE))) == [Page.PROFILE]
        assert _pages(transition(Anonymous(), NavigateRequested(Page.REPORT))) == [Page.LOGIN]
        assert _pages(transition(Anonymous(), NavigateRequested(Page.REGISTER))) == [Page.REGISTER]
        assert transition(InAuthFlow(FlowKind.RECOVERY), NavigateRequested(Page.BOARD)).effects == ()

    def test_unknown_event(self):
        with pytest.raises(TypeError):
            transition(Anonymous(), object())

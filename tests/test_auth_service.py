"""Account registration, sign-in gating and one-time token flows."""

from datetime import datetime, timedelta, timezone

import pytest

from lostfound.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    EmailUnverifiedError,
    ForbiddenError,
    InvalidCredentialError,
    NotFoundError,
    ProfileNotFoundError,
    ValidationError,
)
from lostfound.storage.models import ACCOUNT_ACTIVE, ACCOUNT_INACTIVE, ROLE_ADMIN, ROLE_FINDER

PASSWORD = "CorrectHorse9"


class _RecordingLogger:
    def __init__(self):
        self.calls = []

    def __getattr__(self, level):
        def _log(event, **fields):
            self.calls.append((level, event, fields))

        return _log


class TestSignUp:
    async def test_creates_unconfirmed_finder(self, auth):
        user = await auth.sign_up(
            "Maria.Santos@PLV.edu.ph",
            PASSWORD,
            full_name="  Maria Santos ",
            student_id="23-1234",
        )
        assert user.email == "maria.santos@plv.edu.ph"
        assert user.full_name == "Maria Santos"
        assert user.role == ROLE_FINDER
        assert not user.email_confirmed

    async def test_rejects_outside_domain(self, auth):
        with pytest.raises(ValidationError) as excinfo:
            await auth.sign_up("maria@gmail.com", PASSWORD, full_name="Maria", student_id="23-1234")
        assert excinfo.value.detail["field"] == "email"

    async def test_rejects_malformed_student_id(self, auth):
        with pytest.raises(ValidationError) as excinfo:
            await auth.sign_up("maria@plv.edu.ph", PASSWORD, full_name="Maria", student_id="2023-1")
        assert "23-1234" in excinfo.value.message

    async def test_rejects_short_password(self, auth):
        with pytest.raises(ValidationError):
            await auth.sign_up("maria@plv.edu.ph", "short", full_name="Maria", student_id="23-1234")

    async def test_duplicate_student_id_conflicts(self, auth):
        await auth.sign_up("maria@plv.edu.ph", PASSWORD, full_name="Maria", student_id="23-1234")
        with pytest.raises(ConflictError) as excinfo:
            await auth.sign_up("pedro@plv.edu.ph", PASSWORD, full_name="Pedro", student_id="23-1234")
        assert excinfo.value.detail["field"] == "student_id"

    async def test_duplicate_email_conflicts(self, auth):
        await auth.sign_up("maria@plv.edu.ph", PASSWORD, full_name="Maria", student_id="23-1234")
        with pytest.raises(ConflictError) as excinfo:
            await auth.sign_up("MARIA@plv.edu.ph", PASSWORD, full_name="Maria", student_id="23-5678")
        assert excinfo.value.detail["field"] == "email"

    async def test_email_verification_confirms_account(self, auth):
        await auth.sign_up("maria@plv.edu.ph", PASSWORD, full_name="Maria", student_id="23-1234")
        token = await auth.resend_verification("maria@plv.edu.ph")

        assert await auth.complete_email_verification(token)
        assert auth.store.get_user_by_email("maria@plv.edu.ph").email_confirmed
        # tokens are single use
        assert not await auth.complete_email_verification(token)
        assert await auth.resend_verification("maria@plv.edu.ph") is None


class TestSignIn:
    async def test_by_email_and_student_id(self, auth, make_user):
        user = make_user()
        signed_in, session = await auth.sign_in(user.email.upper(), PASSWORD)
        assert signed_in.id == user.id
        assert session.user_id == user.id

        by_id, _ = await auth.sign_in(user.student_id, PASSWORD)
        assert by_id.id == user.id

    async def test_wrong_password_reports_remaining_attempts(self, auth, make_user):
        user = make_user()
        with pytest.raises(InvalidCredentialError) as excinfo:
            await auth.sign_in(user.email, "WrongPassword1")
        assert excinfo.value.remaining_attempts == 4
        assert "4 attempts remaining" in excinfo.value.message

    async def test_fifth_failure_locks_even_correct_password(self, auth, make_user):
        user = make_user()
        for _ in range(4):
            with pytest.raises(InvalidCredentialError):
                await auth.sign_in(user.email, "WrongPassword1")
        with pytest.raises(AccountLockedError) as excinfo:
            await auth.sign_in(user.email, "WrongPassword1")
        assert excinfo.value.remaining_minutes == 5
        assert "5 minutes" in excinfo.value.message

        with pytest.raises(AccountLockedError):
            await auth.sign_in(user.email, PASSWORD)

    async def test_student_id_failures_lock_the_account_email(self, auth, make_user):
        user = make_user()
        for _ in range(4):
            with pytest.raises(InvalidCredentialError):
                await auth.sign_in(user.student_id, "WrongPassword1")
        with pytest.raises(AccountLockedError):
            await auth.sign_in(user.student_id, "WrongPassword1")

        with pytest.raises(AccountLockedError):
            await auth.sign_in(user.email, PASSWORD)

    async def test_unknown_identity_counts_failures(self, auth):
        with pytest.raises(InvalidCredentialError) as excinfo:
            await auth.sign_in("ghost@plv.edu.ph", PASSWORD)
        assert excinfo.value.remaining_attempts == 4

    async def test_success_resets_failures(self, auth, make_user):
        user = make_user()
        for _ in range(3):
            with pytest.raises(InvalidCredentialError):
                await auth.sign_in(user.email, "WrongPassword1")
        await auth.sign_in(user.email, PASSWORD)

        with pytest.raises(InvalidCredentialError) as excinfo:
            await auth.sign_in(user.email, "WrongPassword1")
        assert excinfo.value.remaining_attempts == 4

    async def test_correct_password_succeeds_once_lock_expires(self, auth, make_user):
        user = make_user()
        now = [datetime.now(timezone.utc)]
        auth.ledger._now = lambda: now[0]
        for _ in range(4):
            with pytest.raises(InvalidCredentialError):
                await auth.sign_in(user.email, "WrongPassword1")
        with pytest.raises(AccountLockedError):
            await auth.sign_in(user.email, "WrongPassword1")

        now[0] += timedelta(seconds=301)
        signed_in, session = await auth.sign_in(user.email, PASSWORD)

        assert signed_in.id == user.id
        assert session.user_id == user.id

    async def test_ledger_write_failure_is_logged_and_does_not_block(
        self, auth, make_user, monkeypatch
    ):
        user = make_user()
        logged = _RecordingLogger()
        monkeypatch.setattr(auth, "logger", logged)

        def _unavailable(*args, **kwargs):
            raise OSError("attempt ledger unavailable")

        monkeypatch.setattr(auth.store, "append_login_attempt", _unavailable)
        monkeypatch.setattr(auth.store, "clear_login_attempts", _unavailable)

        with pytest.raises(InvalidCredentialError) as excinfo:
            await auth.sign_in(user.email, "WrongPassword1")
        assert excinfo.value.remaining_attempts is None

        signed_in, _ = await auth.sign_in(user.email, PASSWORD)

        assert signed_in.id == user.id
        failures = [
            (level, fields["successful"])
            for level, event, fields in logged.calls
            if event == "login_ledger_write_failed"
        ]
        assert failures == [("error", False), ("error", True)]

    async def test_unverified_email_rejected_after_password_check(self, auth, make_user):
        user = make_user(confirmed=False)
        with pytest.raises(EmailUnverifiedError):
            await auth.sign_in(user.email, PASSWORD)

    async def test_inactive_account_rejected(self, auth, make_user, store):
        user = make_user()
        store.set_user_status(user.id, ACCOUNT_INACTIVE)
        with pytest.raises(AccountInactiveError):
            await auth.sign_in(user.email, PASSWORD)

    async def test_missing_fields(self, auth):
        with pytest.raises(ValidationError):
            await auth.sign_in("", PASSWORD)


class TestSessions:
    async def test_resolve_and_sign_out(self, auth, make_user):
        user = make_user()
        _, session = await auth.sign_in(user.email, PASSWORD)

        ctx = await auth.resolve_session(session.id)
        assert ctx.user_id == user.id
        assert not ctx.is_admin

        await auth.sign_out(session.id)
        assert await auth.resolve_session(session.id) is None

    async def test_authenticate_prefers_bearer_token(self, auth, make_user):
        user = make_user()
        _, session = await auth.sign_in(user.email, PASSWORD)
        ctx = await auth.authenticate(f"Bearer {session.id}", "bogus")
        assert ctx.session_id == session.id

    async def test_required_role_filters_finders(self, auth, make_user):
        user = make_user()
        _, session = await auth.sign_in(user.email, PASSWORD)
        assert await auth.resolve_session(session.id, required_role=ROLE_ADMIN) is None

    async def test_deactivation_invalidates_sessions(self, auth, make_user):
        admin = make_user("Records Office", role=ROLE_ADMIN)
        user = make_user()
        _, session = await auth.sign_in(user.email, PASSWORD)

        await auth.set_user_status(user.id, ACCOUNT_INACTIVE, actor_id=admin.id)

        assert await auth.resolve_session(session.id) is None

    def test_profile_lookup(self, auth, make_user):
        user = make_user()
        assert auth.get_profile(user.id).email == user.email
        with pytest.raises(ProfileNotFoundError):
            auth.get_profile("missing")


class TestPasswordReset:
    async def test_reset_changes_password_and_clears_state(self, auth, make_user, store):
        user = make_user()
        _, session = await auth.sign_in(user.email, PASSWORD)
        for _ in range(2):
            with pytest.raises(InvalidCredentialError):
                await auth.sign_in(user.email, "WrongPassword1")

        token = await auth.initiate_password_reset(user.email)
        assert await auth.complete_password_reset(token, "BrandNewPass7")

        assert await auth.resolve_session(session.id) is None
        assert store.list_login_attempts(user.email) == []
        with pytest.raises(InvalidCredentialError):
            await auth.sign_in(user.email, PASSWORD)
        await auth.sign_in(user.email, "BrandNewPass7")

    async def test_token_is_single_use(self, auth, make_user):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)
        assert await auth.complete_password_reset(token, "BrandNewPass7")
        assert not await auth.complete_password_reset(token, "AnotherPass8")

    async def test_unknown_email(self, auth):
        with pytest.raises(NotFoundError):
            await auth.initiate_password_reset("ghost@plv.edu.ph")

    async def test_recovery_session_keeps_token_usable(self, auth, make_user):
        user = make_user()
        token = await auth.initiate_password_reset(user.email)

        recovered, session = await auth.open_recovery_session(token)
        assert recovered.id == user.id
        assert session.meta == {"purpose": "recovery"}
        assert await auth.complete_password_reset(token, "BrandNewPass7")

    async def test_recovery_session_rejects_bad_token(self, auth):
        with pytest.raises(ValidationError):
            await auth.open_recovery_session("not-a-token")


class TestAdministration:
    async def test_admin_create_user_generates_password(self, auth, store):
        user, password = await auth.admin_create_user(
            email="Staff@plv.edu.ph", full_name="Records Office", created_by="bootstrap"
        )
        assert user.role == ROLE_ADMIN
        assert user.email_confirmed
        assert auth.verify_password(user.id, password)

        with pytest.raises(ConflictError):
            await auth.admin_create_user(
                email="staff@plv.edu.ph", full_name="Again", created_by="bootstrap"
            )

    async def test_cannot_deactivate_or_delete_self(self, auth, make_user):
        admin = make_user("Records Office", role=ROLE_ADMIN)
        with pytest.raises(ForbiddenError):
            await auth.set_user_status(admin.id, ACCOUNT_INACTIVE, actor_id=admin.id)
        with pytest.raises(ForbiddenError):
            await auth.delete_user(admin.id, actor_id=admin.id)

    async def test_status_round_trip_and_unknown_user(self, auth, make_user):
        admin = make_user("Records Office", role=ROLE_ADMIN)
        user = make_user()
        await auth.set_user_status(user.id, ACCOUNT_INACTIVE, actor_id=admin.id)
        reactivated = await auth.set_user_status(user.id, ACCOUNT_ACTIVE, actor_id=admin.id)
        assert reactivated.is_active

        with pytest.raises(NotFoundError):
            await auth.set_user_status("missing", ACCOUNT_ACTIVE, actor_id=admin.id)
        with pytest.raises(ValidationError):
            await auth.set_user_status(user.id, "suspended", actor_id=admin.id)

    async def test_delete_user(self, auth, make_user, store):
        admin = make_user("Records Office", role=ROLE_ADMIN)
        user = make_user()
        assert await auth.delete_user(user.id, actor_id=admin.id)
        assert store.get_user(user.id) is None
        assert not await auth.delete_user(user.id, actor_id=admin.id)

from __future__ import annotations

import contextlib
import hashlib
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from lostfound.config import Settings
from lostfound.logging import get_logger
from lostfound.service.email import EmailService
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
from lostfound.service.ledger import LockState, LoginAttemptLedger, normalize_identity_key
from lostfound.storage.errors import ConstraintViolation
from lostfound.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_INACTIVE,
    ROLE_ADMIN,
    ROLE_FINDER,
    Session,
    User,
)

logger = get_logger(__name__)

STUDENT_ID_PATTERN = re.compile(r"^\d{2}-\d{4}$")
MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        full_name: str = "",
        student_id: Optional[str] = None,
        contact_number: Optional[str] = None,
        role: str = ROLE_FINDER,
        status: str = ACCOUNT_ACTIVE,
        email_confirmed: bool = False,
        created_by: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_student_id(self, student_id: str) -> Optional[User]: ...

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]: ...

    def set_email_confirmed(self, user_id: str, confirmed: bool = True) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_user_sessions(self, user_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class AuthService:
    """Accounts, credentials and server sessions.

    Sign-in is gated by the login attempt ledger. Reset and verification
    tokens live in Redis when a cache is configured and in lock-protected
    dictionaries otherwise.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        ledger: Optional[LoginAttemptLedger] = None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.ledger = ledger or LoginAttemptLedger(
            store,
            max_failures=settings.login_max_failures,
            window_seconds=settings.login_window_seconds,
            lockout_seconds=settings.login_lockout_seconds,
        )
        self.email_service = email_service
        self.logger = logger
        self._state_lock = threading.Lock()
        self._password_reset_tokens: dict[str, tuple[dict, datetime]] = {}
        self._email_verification_tokens: dict[str, tuple[dict, datetime]] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    def _generate_password(self) -> str:
        return secrets.token_urlsafe(12)

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                detail={"field": "password"},
            )

    def _validate_email_domain(self, email: str) -> None:
        domain = self.settings.allowed_email_domain
        if domain and not email.endswith(f"@{domain}"):
            raise ValidationError(
                f"Only PLV student accounts (@{domain}) are allowed to register.",
                detail={"field": "email"},
            )

    # registration
    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        full_name: str,
        student_id: str,
        contact_number: Optional[str] = None,
    ) -> User:
        normalized = normalize_identity_key(email)
        self._validate_email_domain(normalized)
        self._validate_password(password)
        if not STUDENT_ID_PATTERN.match(student_id or ""):
            raise ValidationError(
                "Invalid student ID format. Use: 23-1234", detail={"field": "student_id"}
            )
        if self.store.get_user_by_student_id(student_id):
            raise ConflictError(
                "This Student ID is already registered. Please use a different ID or login.",
                detail={"field": "student_id"},
            )
        try:
            user = self.store.create_user(
                normalized,
                full_name=full_name.strip(),
                student_id=student_id,
                contact_number=contact_number,
                role=ROLE_FINDER,
                email_confirmed=False,
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            message = (
                "This Student ID is already registered. Please use a different ID or login."
                if field == "student_id"
                else "An account with this email already exists."
            )
            raise ConflictError(message, detail={"field": field})
        self.save_password(user.id, password)
        await self.request_email_verification(user)
        self.logger.info("user_signed_up", user_id=user.id)
        return user

    # sign-in
    def _resolve_identity(self, key: str) -> Optional[User]:
        if STUDENT_ID_PATTERN.match(key):
            return self.store.get_user_by_student_id(key)
        return self.store.get_user_by_email(key)

    def _record_attempt(self, identity_key: str, successful: bool) -> Optional[LockState]:
        try:
            return self.ledger.record_attempt(identity_key, successful)
        except Exception as exc:
            self.logger.error(
                "login_ledger_write_failed",
                identity_key=identity_key,
                successful=successful,
                error=str(exc),
            )
            return None

    def _raise_if_locked(self, identity_key: str) -> None:
        state = self.ledger.check_lock(identity_key)
        if state.locked and state.unlock_at is not None:
            self.logger.info("sign_in_rejected_locked", identity_key=identity_key)
            raise AccountLockedError(state.unlock_at)

    async def sign_in(
        self,
        identity_key: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session]:
        """Authenticate by email or student ID and issue a session.

        The lock is checked on the submitted key before the account lookup,
        then again on the resolved email, so a locked identity learns nothing
        about credential correctness.
        """
        submitted = normalize_identity_key(identity_key)
        if not submitted or not password:
            raise ValidationError("Email/student ID and password are required.")
        self._raise_if_locked(submitted)

        user = self._resolve_identity(submitted)
        ledger_key = user.email if user else submitted
        if ledger_key != submitted:
            self._raise_if_locked(ledger_key)

        if not user or not self.verify_password(user.id, password):
            state = self._record_attempt(ledger_key, False)
            if state is not None and state.locked and state.unlock_at is not None:
                raise AccountLockedError(state.unlock_at)
            raise InvalidCredentialError(
                remaining_attempts=state.remaining_attempts if state else None
            )
        if not user.email_confirmed:
            raise EmailUnverifiedError()
        if not user.is_active:
            raise AccountInactiveError()

        self._record_attempt(ledger_key, True)
        if ledger_key != submitted:
            self._record_attempt(submitted, True)
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        if self.cache:
            await self.cache.cache_session(session.id, user.id, session.expires_at)
        self.logger.info("sign_in_succeeded", user_id=user.id, role=user.role)
        return user, session

    async def sign_out(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)
        self.logger.info("signed_out", session_id=session_id)

    async def revoke_all_user_sessions(self, user_id: str) -> None:
        self.store.revoke_user_sessions(user_id)
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(user_id)
            except Exception as exc:
                self.logger.warning(
                    "revoke_user_sessions_cache_clear_failed",
                    user_id=user_id,
                    error=str(exc),
                )

    async def resolve_session(
        self,
        session_id: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.expires_at <= self._now():
            self.store.revoke_session(sess.id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        if required_role and not self._role_allows(user.role, required_role):
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=sess.id)

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        return await self.resolve_session(token or session_id, required_role=required_role)

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise ProfileNotFoundError()
        return user

    # one-time tokens
    async def _store_token(self, kind: str, payload: dict, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        if self.cache:
            await self.cache.set_token(kind, token, payload, int(ttl.total_seconds()))
        else:
            tokens = (
                self._password_reset_tokens if kind == "reset" else self._email_verification_tokens
            )
            with self._with_state_lock():
                tokens[token] = (payload, self._now() + ttl)
        return token

    async def _consume_token(self, kind: str, token: str) -> Optional[dict]:
        if not token:
            return None
        if self.cache:
            return await self.cache.pop_token(kind, token)
        tokens = self._password_reset_tokens if kind == "reset" else self._email_verification_tokens
        with self._with_state_lock():
            stored = tokens.pop(token, None)
        if not stored:
            return None
        payload, expires_at = stored
        if expires_at <= self._now():
            return None
        return payload

    async def _peek_token(self, kind: str, token: str) -> Optional[dict]:
        if not token:
            return None
        if self.cache:
            return await self.cache.get_token(kind, token)
        tokens = self._password_reset_tokens if kind == "reset" else self._email_verification_tokens
        with self._with_state_lock():
            stored = tokens.get(token)
        if not stored or stored[1] <= self._now():
            return None
        return stored[0]

    async def open_recovery_session(self, token: str) -> Tuple[User, Session]:
        """Sign the browser in from a recovery link without consuming the token.

        The reset form still needs the token; the session only lets the
        recovery page talk to the provider.
        """
        payload = await self._peek_token("reset", token)
        user = self.store.get_user(payload.get("user_id", "")) if payload else None
        if not user:
            raise ValidationError("This reset link is invalid or has expired.")
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
            meta={"purpose": "recovery"},
        )
        if self.cache:
            await self.cache.cache_session(session.id, user.id, session.expires_at)
        self.logger.info("recovery_session_opened", user_id=user.id)
        return user, session

    async def initiate_password_reset(self, email: str) -> str:
        normalized = normalize_identity_key(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError(
                "No account found with this email address. Please check your email or register."
            )
        ttl_minutes = self.settings.password_reset_ttl_minutes
        token = await self._store_token(
            "reset", {"user_id": user.id}, timedelta(minutes=ttl_minutes)
        )
        if self.email_service:
            self.email_service.send_password_reset(user.email, token, ttl_minutes)
        self.logger.info(
            "password_reset_requested",
            email_hash=hashlib.sha256(normalized.encode()).hexdigest(),
        )
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        self._validate_password(new_password)
        payload = await self._consume_token("reset", token)
        if not payload:
            self.logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            return False
        user = self.store.get_user(payload.get("user_id", ""))
        if not user:
            self.logger.warning("password_reset_user_missing", user_id=payload.get("user_id"))
            return False
        self.save_password(user.id, new_password)
        await self.revoke_all_user_sessions(user.id)
        try:
            self.ledger.clear(user.email)
            if user.student_id:
                self.ledger.clear(user.student_id)
        except Exception as exc:
            self.logger.error("login_ledger_write_failed", user_id=user.id, error=str(exc))
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    async def request_email_verification(self, user: User) -> str:
        ttl_hours = self.settings.email_verification_ttl_hours
        token = await self._store_token(
            "verify", {"user_id": user.id}, timedelta(hours=ttl_hours)
        )
        if self.email_service:
            self.email_service.send_email_verification(user.email, token, ttl_hours)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def resend_verification(self, email: str) -> Optional[str]:
        user = self.store.get_user_by_email(normalize_identity_key(email))
        if not user or user.email_confirmed:
            return None
        return await self.request_email_verification(user)

    async def complete_email_verification(self, token: str) -> bool:
        payload = await self._consume_token("verify", token)
        if not payload:
            self.logger.warning("email_verification_invalid_token", token_prefix=(token or "")[:8])
            return False
        user = self.store.set_email_confirmed(payload.get("user_id", ""), True)
        if not user:
            self.logger.warning("email_verification_missing_user", user_id=payload.get("user_id"))
            return False
        self.logger.info("email_verified", user_id=user.id)
        return True

    # administration
    async def admin_create_user(
        self,
        *,
        email: str,
        full_name: str,
        created_by: str,
        password: Optional[str] = None,
        contact_number: Optional[str] = None,
    ) -> tuple[User, str]:
        pwd = password or self._generate_password()
        self._validate_password(pwd)
        try:
            user = self.store.create_user(
                normalize_identity_key(email),
                full_name=full_name.strip(),
                contact_number=contact_number,
                role=ROLE_ADMIN,
                email_confirmed=True,
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this email already exists.", detail=exc.detail
            )
        self.save_password(user.id, pwd)
        if self.email_service and not password:
            self.email_service.send_admin_invitation(user.email, pwd)
        self.logger.info("admin_user_created", user_id=user.id, created_by=created_by)
        return user, pwd

    async def set_user_status(self, user_id: str, status: str, *, actor_id: str) -> User:
        if status not in (ACCOUNT_ACTIVE, ACCOUNT_INACTIVE):
            raise ValidationError("status must be active or inactive", detail={"field": "status"})
        if user_id == actor_id and status == ACCOUNT_INACTIVE:
            raise ForbiddenError("You cannot deactivate your own account.")
        user = self.store.set_user_status(user_id, status)
        if not user:
            raise NotFoundError("User not found.")
        if status == ACCOUNT_INACTIVE:
            await self.revoke_all_user_sessions(user_id)
        self.logger.info("user_status_updated", user_id=user_id, status=status, actor_id=actor_id)
        return user

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> list[User]:
        return self.store.list_users(role=role, limit=limit)

    async def delete_user(self, user_id: str, *, actor_id: str) -> bool:
        if user_id == actor_id:
            raise ForbiddenError("You cannot delete your own account.")
        await self.revoke_all_user_sessions(user_id)
        deleted = bool(self.store.delete_user(user_id))
        if deleted:
            self.logger.info("user_deleted", user_id=user_id, actor_id=actor_id)
        return deleted

    # credentials
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        return role == ROLE_ADMIN and required in {ROLE_ADMIN, ROLE_FINDER}

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from lostfound.logging import get_logger
from lostfound.storage.common import (
    build_answer_cipher,
    deserialize_questions,
    item_matches,
    newest_first,
    serialize_questions,
)
from lostfound.storage.errors import ConstraintViolation, TransitionConflict
from lostfound.storage.models import (
    ACCOUNT_ACTIVE,
    CLAIM_APPROVED,
    CLAIM_PENDING,
    CLAIM_REJECTED,
    ITEM_CLAIMED,
    ITEM_VERIFIED,
    ROLE_FINDER,
    ActivityRecord,
    Claim,
    LoginAttempt,
    LostItem,
    Session,
    User,
    normalize_role,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process store persisted as a JSON snapshot under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/lostfound", *, encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.items: Dict[str, LostItem] = {}
        self.claims: Dict[str, Claim] = {}
        self.activity: List[ActivityRecord] = []
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_answer_cipher(encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
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
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized_email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if student_id and any(
                existing.student_id == student_id for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "student ID already registered", {"field": "student_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                full_name=full_name,
                student_id=student_id,
                contact_number=contact_number,
                role=normalize_role(role),
                status=status,
                email_confirmed=email_confirmed,
                created_by=created_by,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_student_id(self, student_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.student_id == student_id), None
            )

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = [u for u in self.users.values() if not role or u.role == role]
        return newest_first(users)[:limit]

    def set_email_confirmed(self, user_id: str, confirmed: bool = True) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_confirmed = confirmed
            self._persist_state()
            return user

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for sid in [sid for sid, s in self.sessions.items() if s.user_id == user_id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None):
                self._persist_state()

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()

    # login attempt ledger
    def append_login_attempt(
        self, attempt: LoginAttempt, *, prune_before: Optional[datetime] = None
    ) -> None:
        """Append one attempt; rows that aged out before ``prune_before`` are dropped."""
        with self._data_lock:
            if prune_before is not None:
                self.login_attempts = [
                    a
                    for a in self.login_attempts
                    if max(a.attempted_at, a.locked_until or a.attempted_at) >= prune_before
                ]
            self.login_attempts.append(attempt)
            self._persist_state()

    def list_login_attempts(
        self, identity_key: str, since: Optional[datetime] = None
    ) -> List[LoginAttempt]:
        with self._data_lock:
            rows = [
                a
                for a in self.login_attempts
                if a.identity_key == identity_key
                and (since is None or a.attempted_at >= since or a.locked_until is not None)
            ]
        return sorted(rows, key=lambda a: a.attempted_at)

    def clear_login_attempts(self, identity_key: str) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [
                a for a in self.login_attempts if a.identity_key != identity_key
            ]
            removed = before - len(self.login_attempts)
            if removed:
                self._persist_state()
            return removed

    # items
    def create_item(
        self, item: LostItem, records: Optional[List[ActivityRecord]] = None
    ) -> LostItem:
        with self._data_lock:
            if item.reporter_id not in self.users:
                raise ConstraintViolation(
                    "reporter does not exist", {"reporter_id": item.reporter_id}
                )
            self.items[item.id] = item
            self.activity.extend(records or [])
            self._persist_state()
            return item

    def get_item(self, item_id: str) -> Optional[LostItem]:
        with self._data_lock:
            return self.items.get(item_id)

    def list_items(
        self,
        *,
        status: Optional[str] = None,
        item_type: Optional[str] = None,
        location: Optional[str] = None,
        search: Optional[str] = None,
        reporter_id: Optional[str] = None,
    ) -> List[LostItem]:
        with self._data_lock:
            rows = [
                item
                for item in self.items.values()
                if item_matches(
                    item,
                    status=status,
                    item_type=item_type,
                    location=location,
                    search=search,
                    reporter_id=reporter_id,
                )
            ]
        return newest_first(rows)

    def transition_item(
        self,
        item_id: str,
        expected_status: str,
        new_status: str,
        *,
        reviewed_by: str,
        records: Optional[List[ActivityRecord]] = None,
    ) -> Optional[LostItem]:
        """Compare-and-set the item status and append records in one step."""
        with self._data_lock:
            item = self.items.get(item_id)
            if not item:
                return None
            if item.status != expected_status:
                raise TransitionConflict("item", item_id, item.status)
            item.status = new_status
            item.reviewed_by = reviewed_by
            item.reviewed_at = _now()
            self.activity.extend(records or [])
            self._persist_state()
            return item

    # claims
    def create_claim(
        self, claim: Claim, records: Optional[List[ActivityRecord]] = None
    ) -> Claim:
        with self._data_lock:
            if claim.item_id not in self.items:
                raise ConstraintViolation("item does not exist", {"item_id": claim.item_id})
            if any(c.code == claim.code for c in self.claims.values()):
                raise ConstraintViolation("claim code already exists", {"field": "code"})
            if any(
                c.item_id == claim.item_id
                and c.claimant_id == claim.claimant_id
                and c.status == CLAIM_PENDING
                for c in self.claims.values()
            ):
                raise ConstraintViolation(
                    "pending claim already exists", {"field": "pending_claim"}
                )
            self.claims[claim.id] = claim
            self.activity.extend(records or [])
            self._persist_state()
            return claim

    def get_claim(self, claim_id: str) -> Optional[Claim]:
        with self._data_lock:
            return self.claims.get(claim_id)

    def get_claim_by_code(self, code: str) -> Optional[Claim]:
        normalized = code.strip().upper()
        with self._data_lock:
            return next((c for c in self.claims.values() if c.code == normalized), None)

    def list_claims(
        self,
        *,
        status: Optional[str] = None,
        item_id: Optional[str] = None,
        claimant_id: Optional[str] = None,
    ) -> List[Claim]:
        with self._data_lock:
            rows = [
                c
                for c in self.claims.values()
                if (not status or c.status == status)
                and (not item_id or c.item_id == item_id)
                and (not claimant_id or c.claimant_id == claimant_id)
            ]
        return newest_first(rows)

    def decide_claim(
        self,
        claim_id: str,
        approve: bool,
        *,
        reviewed_by: str,
        records: Optional[List[ActivityRecord]] = None,
    ) -> Optional[tuple[Claim, LostItem]]:
        """Apply a claim decision and, on approval, the item transition together."""
        with self._data_lock:
            claim = self.claims.get(claim_id)
            if not claim:
                return None
            item = self.items.get(claim.item_id)
            if not item:
                return None
            if claim.status != CLAIM_PENDING:
                raise TransitionConflict("claim", claim_id, claim.status)
            if approve and item.status != ITEM_VERIFIED:
                raise TransitionConflict("item", item.id, item.status)
            now = _now()
            claim.status = CLAIM_APPROVED if approve else CLAIM_REJECTED
            claim.reviewed_by = reviewed_by
            claim.reviewed_at = now
            if approve:
                item.status = ITEM_CLAIMED
                item.reviewed_by = reviewed_by
                item.reviewed_at = now
            self.activity.extend(records or [])
            self._persist_state()
            return claim, item

    # activity
    def append_activity(self, record: ActivityRecord) -> ActivityRecord:
        with self._data_lock:
            self.activity.append(record)
            self._persist_state()
            return record

    def list_notifications(self, user_id: str) -> List[ActivityRecord]:
        with self._data_lock:
            rows = [
                r
                for r in self.activity
                if r.notify_user_id == user_id and user_id not in r.cleared_by_users
            ]
        return newest_first(rows)

    def list_user_activity(self, user_id: str) -> List[ActivityRecord]:
        with self._data_lock:
            rows = [
                r
                for r in self.activity
                if user_id in (r.actor_id, r.notify_user_id)
                and user_id not in r.cleared_by_users
            ]
        return newest_first(rows)

    def count_unviewed(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for r in self.activity
                if r.notify_user_id == user_id
                and not r.viewed
                and user_id not in r.cleared_by_users
            )

    def mark_notifications_viewed(self, user_id: str) -> int:
        with self._data_lock:
            updated = 0
            for record in self.activity:
                if record.notify_user_id == user_id and not record.viewed:
                    record.viewed = True
                    updated += 1
            if updated:
                self._persist_state()
            return updated

    def list_audit(
        self,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        item_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[ActivityRecord]:
        with self._data_lock:
            rows = [
                r
                for r in self.activity
                if not r.cleared_by_admin
                and (not action or r.action == action)
                and (not actor_id or r.actor_id == actor_id)
                and (not item_id or r.item_id == item_id)
                and (since is None or r.created_at >= since)
            ]
        return newest_first(rows)[:limit]

    def clear_activity_for_admin(self) -> int:
        with self._data_lock:
            updated = 0
            for record in self.activity:
                if not record.cleared_by_admin:
                    record.cleared_by_admin = True
                    updated += 1
            if updated:
                self._persist_state()
            return updated

    def clear_activity_for_user(self, user_id: str) -> int:
        with self._data_lock:
            updated = 0
            for record in self.activity:
                if user_id in (record.actor_id, record.notify_user_id) and (
                    user_id not in record.cleared_by_users
                ):
                    record.cleared_by_users.append(user_id)
                    updated += 1
            if updated:
                self._persist_state()
            return updated

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "login_attempts": [
                self._serialize_login_attempt(a) for a in self.login_attempts
            ],
            "items": [self._serialize_item(i) for i in self.items.values()],
            "claims": [self._serialize_claim(c) for c in self.claims.values()],
            "activity": [self._serialize_activity(r) for r in self.activity],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.login_attempts = [
            self._deserialize_login_attempt(a) for a in data.get("login_attempts", [])
        ]
        self.items = {i["id"]: self._deserialize_item(i) for i in data.get("items", [])}
        self.claims = {c["id"]: self._deserialize_claim(c) for c in data.get("claims", [])}
        self.activity = [self._deserialize_activity(r) for r in data.get("activity", [])]
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "student_id": user.student_id,
            "contact_number": user.contact_number,
            "role": user.role,
            "status": user.status,
            "email_confirmed": user.email_confirmed,
            "created_at": self._serialize_datetime(user.created_at),
            "created_by": user.created_by,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name", ""),
            student_id=data.get("student_id"),
            contact_number=data.get("contact_number"),
            role=normalize_role(data.get("role")),
            status=data.get("status", ACCOUNT_ACTIVE),
            email_confirmed=bool(data.get("email_confirmed", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or _now(),
            created_by=data.get("created_by"),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    def _serialize_login_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "identity_key": attempt.identity_key,
            "attempted_at": self._serialize_datetime(attempt.attempted_at),
            "successful": attempt.successful,
            "locked_until": self._serialize_datetime(attempt.locked_until),
        }

    def _deserialize_login_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=data["id"],
            identity_key=data["identity_key"],
            attempted_at=self._deserialize_datetime(data["attempted_at"]),
            successful=bool(data.get("successful", False)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
        )

    def _serialize_item(self, item: LostItem) -> dict:
        return {
            "id": item.id,
            "item_type": item.item_type,
            "location": item.location,
            "found_at": self._serialize_datetime(item.found_at),
            "reporter_id": item.reporter_id,
            "security_questions": serialize_questions(
                item.security_questions, self._cipher
            ),
            "photo_ref": item.photo_ref,
            "description": item.description,
            "status": item.status,
            "created_at": self._serialize_datetime(item.created_at),
            "reviewed_by": item.reviewed_by,
            "reviewed_at": self._serialize_datetime(item.reviewed_at),
        }

    def _deserialize_item(self, data: dict) -> LostItem:
        return LostItem(
            id=data["id"],
            item_type=data["item_type"],
            location=data["location"],
            found_at=self._deserialize_datetime(data["found_at"]),
            reporter_id=data["reporter_id"],
            security_questions=deserialize_questions(
                data.get("security_questions"), self._cipher
            ),
            photo_ref=data.get("photo_ref"),
            description=data.get("description"),
            status=data.get("status", "pending"),
            created_at=self._deserialize_datetime(data.get("created_at")) or _now(),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=self._deserialize_datetime(data.get("reviewed_at")),
        )

    def _serialize_claim(self, claim: Claim) -> dict:
        return {
            "id": claim.id,
            "item_id": claim.item_id,
            "claimant_id": claim.claimant_id,
            "code": claim.code,
            "answers": [self._cipher.encrypt(a) for a in claim.answers],
            "proof_photo_ref": claim.proof_photo_ref,
            "status": claim.status,
            "created_at": self._serialize_datetime(claim.created_at),
            "reviewed_by": claim.reviewed_by,
            "reviewed_at": self._serialize_datetime(claim.reviewed_at),
        }

    def _deserialize_claim(self, data: dict) -> Claim:
        return Claim(
            id=data["id"],
            item_id=data["item_id"],
            claimant_id=data["claimant_id"],
            code=data["code"],
            answers=[self._cipher.decrypt(a) for a in data.get("answers", [])],
            proof_photo_ref=data.get("proof_photo_ref"),
            status=data.get("status", CLAIM_PENDING),
            created_at=self._deserialize_datetime(data.get("created_at")) or _now(),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=self._deserialize_datetime(data.get("reviewed_at")),
        )

    def _serialize_activity(self, record: ActivityRecord) -> dict:
        return {
            "id": record.id,
            "action": record.action,
            "actor_id": record.actor_id,
            "actor_name": record.actor_name,
            "details": record.details,
            "item_id": record.item_id,
            "item_type": record.item_type,
            "notify_user_id": record.notify_user_id,
            "viewed": record.viewed,
            "cleared_by_admin": record.cleared_by_admin,
            "cleared_by_users": list(record.cleared_by_users),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_activity(self, data: dict) -> ActivityRecord:
        return ActivityRecord(
            id=data["id"],
            action=data["action"],
            actor_id=data["actor_id"],
            actor_name=data.get("actor_name", ""),
            details=data.get("details", ""),
            item_id=data.get("item_id"),
            item_type=data.get("item_type"),
            notify_user_id=data.get("notify_user_id"),
            viewed=bool(data.get("viewed", False)),
            cleared_by_admin=bool(data.get("cleared_by_admin", False)),
            cleared_by_users=list(data.get("cleared_by_users", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or _now(),
        )

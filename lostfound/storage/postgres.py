from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from lostfound.logging import get_logger
from lostfound.storage.common import (
    build_answer_cipher,
    deserialize_questions,
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

_ACTIVITY_COLUMNS = (
    "id, action, actor_id, actor_name, details, item_id, item_type, notify_user_id, "
    "viewed, cleared_by_admin, cleared_by_users, created_at"
)


class PostgresStore:
    """Postgres-backed store. Multi-row transitions share one transaction."""

    def __init__(self, dsn: str, fs_root: str, *, encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_answer_cipher(encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        required_tables = [
            "app_user",
            "user_auth_credential",
            "auth_session",
            "login_attempt",
            "lost_item",
            "claim",
            "activity_record",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # row mapping
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            student_id=row.get("student_id"),
            contact_number=row.get("contact_number"),
            role=normalize_role(row.get("role")),
            status=row.get("status") or ACCOUNT_ACTIVE,
            email_confirmed=bool(row.get("email_confirmed")),
            created_at=row["created_at"],
            created_by=row.get("created_by"),
            meta=row.get("meta"),
        )

    def _row_to_session(self, row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            meta=row.get("meta"),
        )

    def _row_to_attempt(self, row: Dict[str, Any]) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            identity_key=row["identity_key"],
            attempted_at=row["attempted_at"],
            successful=bool(row["successful"]),
            locked_until=row.get("locked_until"),
        )

    def _row_to_item(self, row: Dict[str, Any]) -> LostItem:
        questions = row.get("security_questions")
        if isinstance(questions, str):
            questions = json.loads(questions)
        return LostItem(
            id=str(row["id"]),
            item_type=row["item_type"],
            location=row["location"],
            found_at=row["found_at"],
            reporter_id=str(row["reporter_id"]),
            security_questions=deserialize_questions(questions, self._cipher),
            photo_ref=row.get("photo_ref"),
            description=row.get("description"),
            status=row["status"],
            created_at=row["created_at"],
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=row.get("reviewed_at"),
        )

    def _row_to_claim(self, row: Dict[str, Any]) -> Claim:
        return Claim(
            id=str(row["id"]),
            item_id=str(row["item_id"]),
            claimant_id=str(row["claimant_id"]),
            code=row["code"],
            answers=[self._cipher.decrypt(a) for a in row.get("answers") or []],
            proof_photo_ref=row.get("proof_photo_ref"),
            status=row["status"],
            created_at=row["created_at"],
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=row.get("reviewed_at"),
        )

    def _row_to_activity(self, row: Dict[str, Any]) -> ActivityRecord:
        return ActivityRecord(
            id=str(row["id"]),
            action=row["action"],
            actor_id=str(row["actor_id"]),
            actor_name=row.get("actor_name") or "",
            details=row.get("details") or "",
            item_id=row.get("item_id"),
            item_type=row.get("item_type"),
            notify_user_id=row.get("notify_user_id"),
            viewed=bool(row.get("viewed")),
            cleared_by_admin=bool(row.get("cleared_by_admin")),
            cleared_by_users=list(row.get("cleared_by_users") or []),
            created_at=row["created_at"],
        )

    def _insert_activity(self, conn, records: Optional[List[ActivityRecord]]) -> None:
        for record in records or []:
            conn.execute(
                f"""
                INSERT INTO activity_record ({_ACTIVITY_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.action,
                    record.actor_id,
                    record.actor_name,
                    record.details,
                    record.item_id,
                    record.item_type,
                    record.notify_user_id,
                    record.viewed,
                    record.cleared_by_admin,
                    list(record.cleared_by_users),
                    record.created_at,
                ),
            )

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
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            full_name=full_name,
            student_id=student_id,
            contact_number=contact_number,
            role=normalize_role(role),
            status=status,
            email_confirmed=email_confirmed,
            created_by=created_by,
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, student_id, contact_number,
                                          role, status, email_confirmed, created_at, created_by, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.full_name,
                        user.student_id,
                        user.contact_number,
                        user.role,
                        user.status,
                        user.email_confirmed,
                        user.created_at,
                        user.created_by,
                        json.dumps(user.meta) if user.meta else None,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "student_id" in constraint:
                raise ConstraintViolation(
                    "student ID already registered", {"field": "student_id"}
                )
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_student_id(self, student_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE student_id = %s", (student_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def set_email_confirmed(self, user_id: str, confirmed: bool = True) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_confirmed = %s WHERE id = %s RETURNING *",
                (confirmed, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.user_agent,
                        sess.ip_addr,
                        json.dumps(sess.meta) if sess.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))

    # login attempt ledger
    def append_login_attempt(
        self, attempt: LoginAttempt, *, prune_before: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            if prune_before is not None:
                conn.execute(
                    """
                    DELETE FROM login_attempt
                    WHERE attempted_at < %s AND (locked_until IS NULL OR locked_until < %s)
                    """,
                    (prune_before, prune_before),
                )
            conn.execute(
                """
                INSERT INTO login_attempt (id, identity_key, attempted_at, successful, locked_until)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identity_key,
                    attempt.attempted_at,
                    attempt.successful,
                    attempt.locked_until,
                ),
            )

    def list_login_attempts(
        self, identity_key: str, since: Optional[datetime] = None
    ) -> List[LoginAttempt]:
        with self._connect() as conn:
            if since is None:
                rows = conn.execute(
                    "SELECT * FROM login_attempt WHERE identity_key = %s ORDER BY attempted_at",
                    (identity_key,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM login_attempt
                    WHERE identity_key = %s AND (attempted_at >= %s OR locked_until IS NOT NULL)
                    ORDER BY attempted_at
                    """,
                    (identity_key, since),
                ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def clear_login_attempts(self, identity_key: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_attempt WHERE identity_key = %s", (identity_key,)
            )
            return result.rowcount

    # items
    def create_item(
        self, item: LostItem, records: Optional[List[ActivityRecord]] = None
    ) -> LostItem:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO lost_item (id, item_type, location, found_at, reporter_id,
                                           security_questions, photo_ref, description, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        item.id,
                        item.item_type,
                        item.location,
                        item.found_at,
                        item.reporter_id,
                        json.dumps(serialize_questions(item.security_questions, self._cipher)),
                        item.photo_ref,
                        item.description,
                        item.status,
                        item.created_at,
                    ),
                )
                self._insert_activity(conn, records)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "reporter does not exist", {"reporter_id": item.reporter_id}
            )
        return item

    def get_item(self, item_id: str) -> Optional[LostItem]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM lost_item WHERE id = %s", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(
        self,
        *,
        status: Optional[str] = None,
        item_type: Optional[str] = None,
        location: Optional[str] = None,
        search: Optional[str] = None,
        reporter_id: Optional[str] = None,
    ) -> List[LostItem]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = %s")
            params.append(status)
        if item_type:
            clauses.append("lower(item_type) = lower(%s)")
            params.append(item_type)
        if location:
            clauses.append("lower(location) = lower(%s)")
            params.append(location)
        if reporter_id:
            clauses.append("reporter_id = %s")
            params.append(reporter_id)
        if search:
            clauses.append(
                "(item_type ILIKE %s OR location ILIKE %s OR coalesce(description, '') ILIKE %s)"
            )
            pattern = f"%{search}%"
            params.extend([pattern, pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM lost_item {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def transition_item(
        self,
        item_id: str,
        expected_status: str,
        new_status: str,
        *,
        reviewed_by: str,
        records: Optional[List[ActivityRecord]] = None,
    ) -> Optional[LostItem]:
        with self._connect() as conn:
            current = conn.execute(
                "SELECT status FROM lost_item WHERE id = %s FOR UPDATE", (item_id,)
            ).fetchone()
            if not current:
                return None
            if current["status"] != expected_status:
                raise TransitionConflict("item", item_id, current["status"])
            row = conn.execute(
                """
                UPDATE lost_item SET status = %s, reviewed_by = %s, reviewed_at = now()
                WHERE id = %s RETURNING *
                """,
                (new_status, reviewed_by, item_id),
            ).fetchone()
            self._insert_activity(conn, records)
        return self._row_to_item(row)

    # claims
    def create_claim(
        self, claim: Claim, records: Optional[List[ActivityRecord]] = None
    ) -> Claim:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO claim (id, item_id, claimant_id, code, answers, proof_photo_ref,
                                       status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        claim.id,
                        claim.item_id,
                        claim.claimant_id,
                        claim.code,
                        [self._cipher.encrypt(a) for a in claim.answers],
                        claim.proof_photo_ref,
                        claim.status,
                        claim.created_at,
                    ),
                )
                self._insert_activity(conn, records)
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if constraint == "uq_claim_pending_pair":
                raise ConstraintViolation(
                    "pending claim already exists", {"field": "pending_claim"}
                )
            raise ConstraintViolation("claim code already exists", {"field": "code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("item does not exist", {"item_id": claim.item_id})
        return claim

    def get_claim(self, claim_id: str) -> Optional[Claim]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM claim WHERE id = %s", (claim_id,)).fetchone()
        return self._row_to_claim(row) if row else None

    def get_claim_by_code(self, code: str) -> Optional[Claim]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM claim WHERE code = %s", (code.strip().upper(),)
            ).fetchone()
        return self._row_to_claim(row) if row else None

    def list_claims(
        self,
        *,
        status: Optional[str] = None,
        item_id: Optional[str] = None,
        claimant_id: Optional[str] = None,
    ) -> List[Claim]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("status", status),
            ("item_id", item_id),
            ("claimant_id", claimant_id),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM claim {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [self._row_to_claim(row) for row in rows]

    def decide_claim(
        self,
        claim_id: str,
        approve: bool,
        *,
        reviewed_by: str,
        records: Optional[List[ActivityRecord]] = None,
    ) -> Optional[tuple[Claim, LostItem]]:
        with self._connect() as conn:
            claim_row = conn.execute(
                "SELECT * FROM claim WHERE id = %s FOR UPDATE", (claim_id,)
            ).fetchone()
            if not claim_row:
                return None
            item_row = conn.execute(
                "SELECT * FROM lost_item WHERE id = %s FOR UPDATE", (claim_row["item_id"],)
            ).fetchone()
            if not item_row:
                return None
            if claim_row["status"] != CLAIM_PENDING:
                raise TransitionConflict("claim", claim_id, claim_row["status"])
            if approve and item_row["status"] != ITEM_VERIFIED:
                raise TransitionConflict("item", str(item_row["id"]), item_row["status"])
            claim_row = conn.execute(
                """
                UPDATE claim SET status = %s, reviewed_by = %s, reviewed_at = now()
                WHERE id = %s RETURNING *
                """,
                (CLAIM_APPROVED if approve else CLAIM_REJECTED, reviewed_by, claim_id),
            ).fetchone()
            if approve:
                item_row = conn.execute(
                    """
                    UPDATE lost_item SET status = %s, reviewed_by = %s, reviewed_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (ITEM_CLAIMED, reviewed_by, item_row["id"]),
                ).fetchone()
            self._insert_activity(conn, records)
        return self._row_to_claim(claim_row), self._row_to_item(item_row)

    # activity
    def append_activity(self, record: ActivityRecord) -> ActivityRecord:
        with self._connect() as conn:
            self._insert_activity(conn, [record])
        return record

    def list_notifications(self, user_id: str) -> List[ActivityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ACTIVITY_COLUMNS} FROM activity_record
                WHERE notify_user_id = %s AND NOT (%s = ANY(cleared_by_users))
                ORDER BY created_at DESC
                """,
                (user_id, user_id),
            ).fetchall()
        return [self._row_to_activity(row) for row in rows]

    def list_user_activity(self, user_id: str) -> List[ActivityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ACTIVITY_COLUMNS} FROM activity_record
                WHERE (actor_id = %s OR notify_user_id = %s)
                  AND NOT (%s = ANY(cleared_by_users))
                ORDER BY created_at DESC
                """,
                (user_id, user_id, user_id),
            ).fetchall()
        return [self._row_to_activity(row) for row in rows]

    def count_unviewed(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total FROM activity_record
                WHERE notify_user_id = %s AND NOT viewed AND NOT (%s = ANY(cleared_by_users))
                """,
                (user_id, user_id),
            ).fetchone()
        return int(row["total"]) if row else 0

    def mark_notifications_viewed(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE activity_record SET viewed = true WHERE notify_user_id = %s AND NOT viewed",
                (user_id,),
            )
            return result.rowcount

    def list_audit(
        self,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        item_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[ActivityRecord]:
        clauses = ["NOT cleared_by_admin"]
        params: List[Any] = []
        for column, value in (("action", action), ("actor_id", actor_id), ("item_id", item_id)):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ACTIVITY_COLUMNS} FROM activity_record
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC LIMIT %s
                """,
                params,
            ).fetchall()
        return [self._row_to_activity(row) for row in rows]

    def clear_activity_for_admin(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE activity_record SET cleared_by_admin = true WHERE NOT cleared_by_admin"
            )
            return result.rowcount

    def clear_activity_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE activity_record
                SET cleared_by_users = array_append(cleared_by_users, %s)
                WHERE (actor_id = %s OR notify_user_id = %s)
                  AND NOT (%s = ANY(cleared_by_users))
                """,
                (user_id, user_id, user_id, user_id),
            )
            return result.rowcount

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLE_FINDER = "finder"
ROLE_ADMIN = "admin"

ACCOUNT_ACTIVE = "active"
ACCOUNT_INACTIVE = "inactive"

ITEM_PENDING = "pending"
ITEM_VERIFIED = "verified"
ITEM_REJECTED = "rejected"
ITEM_CLAIMED = "claimed"
ITEM_STATUSES = (ITEM_PENDING, ITEM_VERIFIED, ITEM_REJECTED, ITEM_CLAIMED)

CLAIM_PENDING = "pending"
CLAIM_APPROVED = "approved"
CLAIM_REJECTED = "rejected"
CLAIM_STATUSES = (CLAIM_PENDING, CLAIM_APPROVED, CLAIM_REJECTED)

ACTIVITY_ACTIONS = (
    "item_reported",
    "item_verified",
    "item_rejected",
    "claim_submitted",
    "claim_approved",
    "claim_rejected",
    "failed_claim_attempt",
    "item_status_changed",
    "item_claimed",
    "claim_rejected_on_item",
)


def normalize_role(role: Optional[str]) -> str:
    """Only ``admin`` is privileged; legacy roles (student, claimer) are finders."""
    return ROLE_ADMIN if role == ROLE_ADMIN else ROLE_FINDER


@dataclass
class User:
    id: str
    email: str
    full_name: str = ""
    student_id: Optional[str] = None
    contact_number: Optional[str] = None
    role: str = ROLE_FINDER
    status: str = ACCOUNT_ACTIVE
    email_confirmed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ACCOUNT_ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class LoginAttempt:
    id: str
    identity_key: str
    attempted_at: datetime
    successful: bool
    locked_until: Optional[datetime] = None


@dataclass
class SecurityQuestion:
    question: str
    answer: str


@dataclass
class LostItem:
    id: str
    item_type: str
    location: str
    found_at: datetime
    reporter_id: str
    security_questions: List[SecurityQuestion] = field(default_factory=list)
    photo_ref: Optional[str] = None
    description: Optional[str] = None
    status: str = ITEM_PENDING
    created_at: datetime = field(default_factory=_utcnow)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    @property
    def questions(self) -> List[str]:
        return [q.question for q in self.security_questions]

    def redacted(self) -> "LostItem":
        """Copy safe for claimants: questions kept, answers blanked."""
        return replace(
            self,
            security_questions=[
                SecurityQuestion(question=q.question, answer="")
                for q in self.security_questions
            ],
        )


@dataclass
class Claim:
    id: str
    item_id: str
    claimant_id: str
    code: str
    answers: List[str] = field(default_factory=list)
    proof_photo_ref: Optional[str] = None
    status: str = CLAIM_PENDING
    created_at: datetime = field(default_factory=_utcnow)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


@dataclass
class ActivityRecord:
    """One log entry, read as an audit row by staff and as a notification by
    ``notify_user_id``. Clearing only sets suppression flags."""

    id: str
    action: str
    actor_id: str
    actor_name: str
    details: str
    item_id: Optional[str] = None
    item_type: Optional[str] = None
    notify_user_id: Optional[str] = None
    viewed: bool = False
    cleared_by_admin: bool = False
    cleared_by_users: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        action: str,
        *,
        actor_id: str,
        actor_name: str,
        details: str,
        item_id: Optional[str] = None,
        item_type: Optional[str] = None,
        notify_user_id: Optional[str] = None,
    ) -> "ActivityRecord":
        if action not in ACTIVITY_ACTIONS:
            raise ValueError(f"unknown activity action: {action}")
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            actor_id=actor_id,
            actor_name=actor_name,
            details=details,
            item_id=item_id,
            item_type=item_type,
            notify_user_id=notify_user_id,
        )

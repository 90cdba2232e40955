from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from lostfound.storage.models import (
    ActivityRecord,
    Claim,
    LostItem,
    User,
)

MAX_SECURITY_QUESTIONS = 3
MAX_DESCRIPTION_LENGTH = 200


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "invalid_credential",
        "account_locked",
        "account_inactive",
        "email_unverified",
        "profile_not_found",
        "provider_unavailable",
        "self_claim",
        "duplicate_pending",
        "already_transitioned",
        "operation_in_progress",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# auth
class SignupRequest(BaseModel):
    email: str
    password: str
    full_name: str = Field(..., min_length=1, max_length=128)
    student_id: str = Field(..., max_length=16)
    contact_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("full_name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class SigninRequest(BaseModel):
    identity: str = Field(
        ..., min_length=1, max_length=254, description="Email address or student ID"
    )
    password: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    student_id: Optional[str] = None
    contact_number: Optional[str] = None
    role: str
    status: str
    email_confirmed: bool
    created_at: datetime
    created_by: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            student_id=user.student_id,
            contact_number=user.contact_number,
            role=user.role,
            status=user.status,
            email_confirmed=user.email_confirmed,
            created_at=user.created_at,
            created_by=user.created_by,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    session_expires_at: datetime
    default_page: str


class SessionResponse(BaseModel):
    user: UserResponse
    session_id: str


# admin
class AdminCreateUserRequest(BaseModel):
    email: str
    full_name: str = Field(..., min_length=1, max_length=128)
    password: Optional[str] = Field(
        default=None, description="If not provided, a random password is generated and emailed"
    )
    contact_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class AdminCreateUserResponse(UserResponse):
    password: str


class UserStatusRequest(BaseModel):
    status: Literal["active", "inactive"]


class UserListResponse(BaseModel):
    items: List[UserResponse]


# items
class SecurityQuestionIn(BaseModel):
    question: str = Field(..., min_length=1, max_length=256)
    answer: str = Field(..., min_length=1, max_length=256)


class SecurityQuestionOut(BaseModel):
    question: str
    answer: Optional[str] = None


class ReportItemRequest(BaseModel):
    item_type: str = Field(..., min_length=1, max_length=64)
    location: str = Field(..., min_length=1, max_length=128)
    found_at: datetime
    security_questions: List[SecurityQuestionIn] = Field(
        ..., min_length=1, max_length=MAX_SECURITY_QUESTIONS
    )
    photo_ref: Optional[str] = Field(default=None, max_length=1024)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)


class ItemResponse(BaseModel):
    id: str
    item_type: str
    location: str
    found_at: datetime
    reporter_id: str
    photo_ref: Optional[str] = None
    description: Optional[str] = None
    status: str
    security_questions: List[SecurityQuestionOut]
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: LostItem, *, include_answers: bool = False) -> "ItemResponse":
        return cls(
            id=item.id,
            item_type=item.item_type,
            location=item.location,
            found_at=item.found_at,
            reporter_id=item.reporter_id,
            photo_ref=item.photo_ref,
            description=item.description,
            status=item.status,
            security_questions=[
                SecurityQuestionOut(
                    question=q.question, answer=q.answer if include_answers else None
                )
                for q in item.security_questions
            ],
            created_at=item.created_at,
            reviewed_by=item.reviewed_by,
            reviewed_at=item.reviewed_at,
        )


class ItemListResponse(BaseModel):
    items: List[ItemResponse]


class DecisionRequest(BaseModel):
    approve: bool


# claims
class SubmitClaimRequest(BaseModel):
    answers: List[str] = Field(..., min_length=1, max_length=MAX_SECURITY_QUESTIONS)
    proof_photo_ref: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("answers")
    @classmethod
    def _validate_answers(cls, value: List[str]) -> List[str]:
        if any(len(answer) > 256 for answer in value):
            raise ValueError("answers must be at most 256 characters")
        return value


class FailedClaimAttemptRequest(BaseModel):
    reason: str = Field(default="", max_length=256)


class ClaimResponse(BaseModel):
    id: str
    item_id: str
    claimant_id: str
    code: str
    answers: Optional[List[str]] = None
    proof_photo_ref: Optional[str] = None
    status: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    @classmethod
    def from_claim(cls, claim: Claim, *, include_answers: bool = True) -> "ClaimResponse":
        return cls(
            id=claim.id,
            item_id=claim.item_id,
            claimant_id=claim.claimant_id,
            code=claim.code,
            answers=list(claim.answers) if include_answers else None,
            proof_photo_ref=claim.proof_photo_ref,
            status=claim.status,
            created_at=claim.created_at,
            reviewed_by=claim.reviewed_by,
            reviewed_at=claim.reviewed_at,
        )


class ClaimListResponse(BaseModel):
    items: List[ClaimResponse]


class ClaimDecisionResponse(BaseModel):
    claim: ClaimResponse
    item: ItemResponse


class ClaimLookupResponse(BaseModel):
    claim: ClaimResponse
    item: ItemResponse


# activity
class ActivityResponse(BaseModel):
    id: str
    action: str
    actor_id: str
    actor_name: str
    details: str
    item_id: Optional[str] = None
    item_type: Optional[str] = None
    notify_user_id: Optional[str] = None
    viewed: bool
    created_at: datetime

    @classmethod
    def from_record(cls, record: ActivityRecord) -> "ActivityResponse":
        return cls(
            id=record.id,
            action=record.action,
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            details=record.details,
            item_id=record.item_id,
            item_type=record.item_type,
            notify_user_id=record.notify_user_id,
            viewed=record.viewed,
            created_at=record.created_at,
        )


class ActivityListResponse(BaseModel):
    items: List[ActivityResponse]


class NotificationCountResponse(BaseModel):
    unviewed: int


class CountResponse(BaseModel):
    count: int


class AuditClearRequest(BaseModel):
    scope: Literal["admin", "user"]

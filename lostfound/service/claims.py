from __future__ import annotations

import contextlib
import secrets
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from lostfound.config import Settings
from lostfound.logging import get_logger
from lostfound.service.errors import (
    AlreadyTransitionedError,
    DuplicatePendingError,
    ForbiddenError,
    NotFoundError,
    OperationInProgressError,
    SelfClaimError,
    ValidationError,
)
from lostfound.storage.errors import ConstraintViolation, TransitionConflict
from lostfound.storage.models import (
    ITEM_PENDING,
    ITEM_REJECTED,
    ITEM_STATUSES,
    ITEM_VERIFIED,
    CLAIM_STATUSES,
    ActivityRecord,
    Claim,
    LostItem,
    SecurityQuestion,
    User,
)

logger = get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 5
MAX_SECURITY_QUESTIONS = 3
MAX_DESCRIPTION_LENGTH = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_claim_code(prefix: str = "CLM", *, year: Optional[int] = None) -> str:
    year = year or _now().year
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{prefix}-{year}-{body}"


class ProcessingGuard:
    """Rejects a second run of the same staff action while the first is in flight.

    Slots are keyed ``action:target_id`` and expire after ``ttl_seconds`` so a
    crashed worker cannot wedge an item forever.
    """

    def __init__(self, cache=None, *, ttl_seconds: int = 30) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._slots: Dict[str, Tuple[str, datetime]] = {}

    async def _acquire(self, key: str, owner: str) -> bool:
        if self.cache:
            return await self.cache.acquire_processing_slot(key, owner, self.ttl_seconds)
        now = _now()
        with self._lock:
            current = self._slots.get(key)
            if current and current[1] > now:
                return False
            self._slots[key] = (owner, now + timedelta(seconds=self.ttl_seconds))
            return True

    async def _release(self, key: str, owner: str) -> None:
        if self.cache:
            await self.cache.release_processing_slot(key, owner)
            return
        with self._lock:
            current = self._slots.get(key)
            if current and current[0] == owner:
                self._slots.pop(key, None)

    @contextlib.asynccontextmanager
    async def hold(self, action: str, target_id: str) -> AsyncIterator[str]:
        key = f"{action}:{target_id}"
        owner = str(uuid.uuid4())
        if not await self._acquire(key, owner):
            logger.info("processing_guard_rejected", operation=key)
            raise OperationInProgressError(key)
        try:
            yield key
        finally:
            await self._release(key, owner)


class ClaimWorkflow:
    """Item reports, staff verification and claim adjudication.

    Every decision is handed to the store together with its notification and
    audit records so the status change and its side effects land as one unit.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        guard: Optional[ProcessingGuard] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.guard = guard or ProcessingGuard(
            cache, ttl_seconds=settings.processing_guard_ttl_seconds
        )

    @staticmethod
    def _require_admin(actor: User) -> None:
        if not actor.is_admin:
            raise ForbiddenError("admin access required")

    # reporting
    async def report_item(
        self,
        reporter: User,
        *,
        item_type: str,
        location: str,
        found_at: datetime,
        security_questions: Sequence[SecurityQuestion],
        photo_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LostItem:
        item_type = (item_type or "").strip()
        location = (location or "").strip()
        if not item_type or not location:
            raise ValidationError("item type and location are required")
        questions = [
            SecurityQuestion(question=q.question.strip(), answer=q.answer.strip())
            for q in security_questions
        ]
        if not 1 <= len(questions) <= MAX_SECURITY_QUESTIONS:
            raise ValidationError(
                f"provide between 1 and {MAX_SECURITY_QUESTIONS} security questions"
            )
        if any(not q.question or not q.answer for q in questions):
            raise ValidationError("every security question needs a question and an answer")
        description = (description or "").strip() or None
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        if found_at.tzinfo is None:
            found_at = found_at.replace(tzinfo=timezone.utc)
        item = LostItem(
            id=str(uuid.uuid4()),
            item_type=item_type,
            location=location,
            found_at=found_at,
            reporter_id=reporter.id,
            security_questions=questions,
            photo_ref=photo_ref,
            description=description,
        )
        record = ActivityRecord.new(
            "item_reported",
            actor_id=reporter.id,
            actor_name=reporter.full_name,
            details=f"Reported found item: {item_type} at {location}",
            item_id=item.id,
            item_type=item_type,
        )
        try:
            created = self.store.create_item(item, [record])
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info("item_reported", item_id=created.id, reporter_id=reporter.id)
        return created

    def list_items(
        self,
        *,
        status: Optional[str] = None,
        item_type: Optional[str] = None,
        location: Optional[str] = None,
        search: Optional[str] = None,
        include_answers: bool = False,
    ) -> List[LostItem]:
        if status and status not in ITEM_STATUSES:
            raise ValidationError(f"unknown item status: {status}")
        items = self.store.list_items(
            status=status, item_type=item_type, location=location, search=search
        )
        return items if include_answers else [item.redacted() for item in items]

    def get_item(self, item_id: str, *, include_answers: bool = False) -> LostItem:
        item = self.store.get_item(item_id)
        if not item:
            raise NotFoundError("item not found", detail={"item_id": item_id})
        return item if include_answers else item.redacted()

    # staff verification
    async def verify_item(self, admin: User, item_id: str, approve: bool) -> LostItem:
        self._require_admin(admin)
        async with self.guard.hold("verify_item", item_id):
            item = self.store.get_item(item_id)
            if not item:
                raise NotFoundError("item not found", detail={"item_id": item_id})
            if item.status != ITEM_PENDING:
                raise AlreadyTransitionedError("item", item.status)
            action = "item_verified" if approve else "item_rejected"
            message = (
                f'Your reported item "{item.item_type}" has been verified and published to the Lost & Found Board'
                if approve
                else f'Your reported item "{item.item_type}" was rejected'
            )
            records = [
                ActivityRecord.new(
                    action,
                    actor_id=admin.id,
                    actor_name=admin.full_name,
                    details=message,
                    item_id=item.id,
                    item_type=item.item_type,
                    notify_user_id=item.reporter_id,
                ),
                ActivityRecord.new(
                    action,
                    actor_id=admin.id,
                    actor_name=admin.full_name,
                    details=(
                        f"{'Verified' if approve else 'Rejected'} {item.item_type} "
                        f"found at {item.location}"
                    ),
                    item_id=item.id,
                    item_type=item.item_type,
                ),
            ]
            try:
                updated = self.store.transition_item(
                    item_id,
                    ITEM_PENDING,
                    ITEM_VERIFIED if approve else ITEM_REJECTED,
                    reviewed_by=admin.id,
                    records=records,
                )
            except TransitionConflict as exc:
                raise AlreadyTransitionedError("item", exc.current_status) from exc
            if updated is None:
                raise NotFoundError("item not found", detail={"item_id": item_id})
        logger.info("item_decided", item_id=item_id, admin_id=admin.id, approved=approve)
        return updated

    # claims
    async def submit_claim(
        self,
        item_id: str,
        claimant: User,
        answers: Sequence[str],
        proof_photo_ref: Optional[str] = None,
    ) -> Claim:
        item = self.store.get_item(item_id)
        if not item:
            raise NotFoundError("item not found", detail={"item_id": item_id})
        if item.status != ITEM_VERIFIED:
            raise AlreadyTransitionedError("item", item.status)
        if item.reporter_id == claimant.id:
            raise SelfClaimError()
        cleaned = [(answer or "").strip() for answer in answers]
        if len(cleaned) != len(item.security_questions):
            raise ValidationError(
                "answer every security question",
                detail={"expected": len(item.security_questions), "received": len(cleaned)},
            )
        if any(not answer for answer in cleaned):
            raise ValidationError("answers cannot be empty")
        async with self.guard.hold("submit_claim", f"{item_id}:{claimant.id}"):
            for attempt in range(MAX_CODE_ATTEMPTS):
                code = generate_claim_code(self.settings.claim_code_prefix)
                claim = Claim(
                    id=str(uuid.uuid4()),
                    item_id=item.id,
                    claimant_id=claimant.id,
                    code=code,
                    answers=cleaned,
                    proof_photo_ref=proof_photo_ref,
                )
                record = ActivityRecord.new(
                    "claim_submitted",
                    actor_id=claimant.id,
                    actor_name=claimant.full_name,
                    details=f"Submitted claim for {item.item_type} (Code: {code})",
                    item_id=item.id,
                    item_type=item.item_type,
                )
                try:
                    created = self.store.create_claim(claim, [record])
                except ConstraintViolation as exc:
                    field = exc.detail.get("field")
                    if field == "pending_claim":
                        raise DuplicatePendingError() from exc
                    if field == "code":
                        logger.warning("claim_code_collision", attempt=attempt + 1)
                        continue
                    raise ValidationError(exc.message, detail=exc.detail) from exc
                logger.info(
                    "claim_submitted",
                    claim_id=created.id,
                    item_id=item.id,
                    claimant_id=claimant.id,
                )
                return created
        raise ValidationError("could not allocate a unique claim code, please retry")

    async def decide_claim(
        self, admin: User, claim_id: str, approve: bool
    ) -> Tuple[Claim, LostItem]:
        self._require_admin(admin)
        async with self.guard.hold("decide_claim", claim_id):
            claim = self.store.get_claim(claim_id)
            item = self.store.get_item(claim.item_id) if claim else None
            if not claim or not item:
                raise NotFoundError("claim not found", detail={"claim_id": claim_id})
            records = self._claim_decision_records(admin, claim, item, approve)
            try:
                result = self.store.decide_claim(
                    claim_id, approve, reviewed_by=admin.id, records=records
                )
            except TransitionConflict as exc:
                raise AlreadyTransitionedError(exc.entity, exc.current_status) from exc
            if result is None:
                raise NotFoundError("claim not found", detail={"claim_id": claim_id})
        logger.info(
            "claim_decided", claim_id=claim_id, admin_id=admin.id, approved=approve
        )
        return result

    @staticmethod
    def _claim_decision_records(
        admin: User, claim: Claim, item: LostItem, approve: bool
    ) -> List[ActivityRecord]:
        def record(action: str, details: str, notify: Optional[str] = None) -> ActivityRecord:
            return ActivityRecord.new(
                action,
                actor_id=admin.id,
                actor_name=admin.full_name,
                details=details,
                item_id=item.id,
                item_type=item.item_type,
                notify_user_id=notify,
            )

        if approve:
            return [
                record(
                    "claim_approved",
                    f'Your claim for "{item.item_type}" has been approved! (Code: {claim.code})',
                    claim.claimant_id,
                ),
                record(
                    "item_claimed",
                    f'Your reported item "{item.item_type}" has been claimed and released',
                    item.reporter_id,
                ),
                record(
                    "claim_approved",
                    f"Approved claim {claim.code} for {item.item_type}",
                ),
            ]
        return [
            record(
                "claim_rejected",
                f'Your claim for "{item.item_type}" was rejected (Code: {claim.code})',
                claim.claimant_id,
            ),
            record(
                "claim_rejected_on_item",
                f'A claim for your reported item "{item.item_type}" was rejected',
                item.reporter_id,
            ),
        ]

    async def record_failed_claim_attempt(
        self, admin: User, claim_id: str, reason: str
    ) -> ActivityRecord:
        self._require_admin(admin)
        claim = self.store.get_claim(claim_id)
        item = self.store.get_item(claim.item_id) if claim else None
        if not claim or not item:
            raise NotFoundError("claim not found", detail={"claim_id": claim_id})
        reason = (reason or "").strip() or "answers did not match"
        record = ActivityRecord.new(
            "failed_claim_attempt",
            actor_id=admin.id,
            actor_name=admin.full_name,
            details=f"Failed claim attempt for {item.item_type} (Code: {claim.code}): {reason}",
            item_id=item.id,
            item_type=item.item_type,
            notify_user_id=claim.claimant_id,
        )
        self.store.append_activity(record)
        logger.info("failed_claim_attempt_recorded", claim_id=claim_id, admin_id=admin.id)
        return record

    def lookup_by_code(self, code: str) -> Tuple[Claim, LostItem]:
        claim = self.store.get_claim_by_code(code or "")
        item = self.store.get_item(claim.item_id) if claim else None
        if not claim or not item:
            raise NotFoundError("claim code not found", detail={"code": code})
        return claim, item.redacted()

    def get_claim(self, claim_id: str) -> Claim:
        claim = self.store.get_claim(claim_id)
        if not claim:
            raise NotFoundError("claim not found", detail={"claim_id": claim_id})
        return claim

    def list_claims(self, *, status: Optional[str] = None, item_id: Optional[str] = None) -> List[Claim]:
        if status and status not in CLAIM_STATUSES:
            raise ValidationError(f"unknown claim status: {status}")
        return self.store.list_claims(status=status, item_id=item_id)

    def list_user_items(self, user_id: str) -> List[LostItem]:
        return self.store.list_items(reporter_id=user_id)

    def list_user_claims(self, user_id: str) -> List[Claim]:
        return self.store.list_claims(claimant_id=user_id)

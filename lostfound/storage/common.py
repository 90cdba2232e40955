"""Storage utilities shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from lostfound.logging import get_logger
from lostfound.storage.models import LostItem, SecurityQuestion

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class AnswerCipher:
    """Fernet wrapper for security-question answers at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("answer cipher requires key material")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("answer_decrypt_failed")
            return ""


def build_answer_cipher(key_material: Optional[str] = None) -> AnswerCipher:
    if not key_material:
        from lostfound.config import get_settings

        key_material = get_settings().secret_key
    return AnswerCipher(key_material)


def serialize_questions(
    questions: Iterable[SecurityQuestion], cipher: AnswerCipher
) -> List[dict]:
    return [
        {"question": q.question, "answer": cipher.encrypt(q.answer)} for q in questions
    ]


def deserialize_questions(raw: Optional[list], cipher: AnswerCipher) -> List[SecurityQuestion]:
    questions: List[SecurityQuestion] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            continue
        questions.append(
            SecurityQuestion(
                question=str(entry.get("question", "")),
                answer=cipher.decrypt(str(entry.get("answer", ""))),
            )
        )
    return questions


def item_matches(
    item: LostItem,
    *,
    status: Optional[str] = None,
    item_type: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    reporter_id: Optional[str] = None,
) -> bool:
    """Filter predicate used by the memory store; mirrors the SQL in postgres."""
    if status and item.status != status:
        return False
    if item_type and item.item_type.lower() != item_type.lower():
        return False
    if location and item.location.lower() != location.lower():
        return False
    if reporter_id and item.reporter_id != reporter_id:
        return False
    if search:
        needle = search.lower()
        haystack = " ".join(
            filter(None, [item.item_type, item.location, item.description])
        ).lower()
        if needle not in haystack:
            return False
    return True


def newest_first(rows: list, key: str = "created_at") -> list:
    return sorted(rows, key=lambda row: getattr(row, key) or _EPOCH, reverse=True)

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from lostfound.logging import get_logger
from lostfound.service.errors import ValidationError
from lostfound.storage.models import ACTIVITY_ACTIONS, ActivityRecord

logger = get_logger(__name__)

SCOPE_ADMIN = "admin"
SCOPE_USER = "user"
MAX_AUDIT_LIMIT = 1000


class ActivityService:
    """Reads the shared activity log as notifications and as an audit trail.

    Clearing never deletes: the admin scope hides records from the audit view
    and the user scope hides them from that user's notifications and history.
    """

    def __init__(self, store) -> None:
        self.store = store

    def get_notifications(self, user_id: str) -> List[ActivityRecord]:
        return self.store.list_notifications(user_id)

    def unviewed_count(self, user_id: str) -> int:
        return self.store.count_unviewed(user_id)

    def ack_notifications(self, user_id: str) -> int:
        updated = self.store.mark_notifications_viewed(user_id)
        logger.debug("notifications_acknowledged", user_id=user_id, count=updated)
        return updated

    def get_user_activity(self, user_id: str) -> List[ActivityRecord]:
        return self.store.list_user_activity(user_id)

    def get_audit_log(
        self,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        item_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[ActivityRecord]:
        if action and action not in ACTIVITY_ACTIONS:
            raise ValidationError(f"unknown activity action: {action}")
        limit = max(1, min(limit, MAX_AUDIT_LIMIT))
        return self.store.list_audit(
            action=action, actor_id=actor_id, item_id=item_id, since=since, limit=limit
        )

    def clear_audit_log(self, scope: str, user_id: Optional[str] = None) -> int:
        if scope == SCOPE_ADMIN:
            cleared = self.store.clear_activity_for_admin()
        elif scope == SCOPE_USER:
            if not user_id:
                raise ValidationError("user scope requires a user id")
            cleared = self.store.clear_activity_for_user(user_id)
        else:
            raise ValidationError(f"unknown clear scope: {scope}")
        logger.info("activity_cleared", scope=scope, user_id=user_id, count=cleared)
        return cleared

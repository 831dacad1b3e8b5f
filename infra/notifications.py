"""Fire-and-forget notification and user-stats sink backed by the settlement store."""

import uuid
from typing import Any, Dict, Optional
import logging

from core.models import Notification, NotificationType, utc_now

logger = logging.getLogger(__name__)


class NotificationSink:
    """
    Persists user-facing events and per-user game results.

    Neither method raises: a notification is never allowed to undo or block
    the state change that produced it.
    """

    def __init__(self, store):
        self.store = store

    def emit(
        self,
        user_id: str,
        type: NotificationType,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        if not user_id:
            return None
        try:
            notification = Notification(
                notification_id=uuid.uuid4().hex,
                user_id=user_id,
                type=type.value,
                message=message,
                metadata=dict(metadata or {}),
                created_at=utc_now(),
            )
            self.store.add_notification(notification)
            logger.debug(f"Notification {type.value} for user {user_id}")
            return notification
        except Exception as e:
            logger.error(f"Failed to emit {type.value} notification for user {user_id}: {e}")
            return None

    def record_game_result(
        self,
        user_id: str,
        game_id: int,
        portfolio_id: int,
        performance: float,
        earnings: int,
        rank: int,
    ) -> None:
        try:
            user = self.store.record_game_result(user_id, game_id, portfolio_id, performance, earnings, rank)
            if user is None:
                logger.warning(f"User {user_id} not found; stats for portfolio {portfolio_id} not recorded")
        except Exception as e:
            logger.error(f"Failed to update stats for user {user_id}: {e}")

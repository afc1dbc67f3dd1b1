from typing import Any, Dict, Optional

from logger import setup_logger
from models.notification_models import Notification, NotificationPreferences, NotificationType

logger = setup_logger(__name__)


class NotificationDispatcher:
    """Persists swap order lifecycle notifications for the notification bell."""

    def __init__(self, database):
        self.db = database

    async def notify(self, user_id: str, type: NotificationType, title: str, message: str,
                     data: Optional[Dict[str, Any]] = None) -> Optional[str]:
        # Respect the user's notification preferences
        stored = await self.db.notification_preferences.find_one({"user_id": user_id})
        if stored:
            preferences = NotificationPreferences(**stored)
            if not preferences.notification_types.get(NotificationType(type), True):
                logger.debug("Notification %s disabled by user %s", type, user_id)
                return None

        notification = Notification(user_id=user_id, type=type, title=title, message=message, data=data)
        result = await self.db.notifications.insert_one(notification.model_dump())
        return str(result.inserted_id)

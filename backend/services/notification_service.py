"""
Notification sink: stores in-app notifications and pushes them via Firebase Cloud Messaging.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging

from config import settings
from database import DocumentStore
from models.notification import Notification

logger = logging.getLogger(__name__)

# Collection holding the recipient's FCM token, per recipient type
RECIPIENT_COLLECTIONS = {
    "client": "clients",
    "driver": "drivers",
    "helper": "helpers",
}


def _init_firebase() -> bool:
    """Initialises the default Firebase app once. Returns False when unavailable."""
    if firebase_admin._apps:
        return True
    try:
        if os.path.exists(settings.FIREBASE_CREDENTIALS):
            firebase_admin.initialize_app(credentials.Certificate(settings.FIREBASE_CREDENTIALS))
        else:
            # Application default credentials (Cloud Run, GKE)
            firebase_admin.initialize_app()
        return True
    except Exception as e:
        logger.error(f"Firebase Admin initialisation failed: {e}")
        return False


class NotificationService:
    def __init__(self, store: DocumentStore, push_enabled: bool = True):
        self.store = store
        self.push_enabled = push_enabled

    async def create(self, notification: Notification) -> str:
        """Stores the notification, then attempts a push. Push failures are only logged."""
        doc = notification.model_dump(mode="python")
        doc["created_at"] = doc.get("created_at") or datetime.now(timezone.utc)
        notif_id = await self.store.add("notifications", doc)

        if self.push_enabled:
            await self._push(notification, notif_id)
        return notif_id

    async def _push(self, notification: Notification, notif_id: str) -> None:
        collection = RECIPIENT_COLLECTIONS.get(notification.recipient_type)
        if not collection:
            return
        recipient = await self.store.get(collection, notification.recipient_id)
        fcm_token: Optional[str] = recipient.get("fcm_token") if recipient else None
        if not fcm_token or not _init_firebase():
            return

        try:
            message = messaging.Message(
                notification=messaging.Notification(
                    title=notification.title,
                    body=notification.message,
                ),
                data={
                    "notification_id": notif_id,
                    "type":            notification.type,
                    "delivery_id":     notification.delivery_id or "",
                },
                token=fcm_token,
            )
            messaging.send(message)
            logger.info(f"FCM push sent to {notification.recipient_id}")
        except Exception as e:
            logger.warning(f"FCM push to {notification.recipient_id} failed: {e}")

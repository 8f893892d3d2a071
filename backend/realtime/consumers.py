"""WebSocket consumer delivering notifications to signed-in users."""

import logging
from typing import Any, Dict

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncJsonWebsocketConsumer):
    """
    Joins the caller's personal group (user_<id>) and forwards every
    ``notification`` event sent to it by realtime.notifications.push_to_user.
    """

    async def connect(self):
        self.user = self.scope["user"]

        if self.user.is_anonymous:
            await self.close()
            return

        self.user_id = getattr(self.user, "id", None)
        self.role = getattr(self.user, "role", None)
        self.user_group = f"user_{self.user_id}"
        await self.channel_layer.group_add(self.user_group, self.channel_name)

        await self.accept()
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        try:
            if hasattr(self, "user_group"):
                await self.channel_layer.group_discard(self.user_group, self.channel_name)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))

    async def receive_json(self, data: Dict[str, Any]):
        msg_type = data.get("type")
        if msg_type == "ping":
            await self.send_json({"type": "pong"})
            return
        await self.send_json({
            "type": "error",
            "message": f"Unknown message type: {msg_type}" if msg_type else "Message type is required",
        })

    async def notification(self, event):
        """Sent by server code through push_to_user."""
        await self.send_json({
            "type": "notification",
            "id": event.get("id"),
            "title": event.get("title"),
            "message": event.get("message"),
            "notification_type": event.get("notification_type"),
            "data": event.get("data", {}),
        })

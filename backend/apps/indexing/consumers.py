"""
WebSocket consumer for ingestion progress events.

Admins connect to /ws/ingestion?token=<jwt> to receive real-time progress
for the documents they upload.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.indexing.publisher import group_for_user

logger = logging.getLogger(__name__)


class IngestionProgressConsumer(AsyncJsonWebsocketConsumer):
    """
    1. Rejects connections without an authenticated user (set by JWTAuthMiddleware)
    2. Joins the user's channel group
    3. Forwards ingest_progress / ingest_complete / ingest_failed events
    """

    async def connect(self):
        self.user = self.scope.get("user")

        if not self.user:
            logger.warning("Rejecting unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        self.user_id = self.user["id"]
        self.group_name = group_for_user(self.user_id)

        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

        logger.info(f"WebSocket connected for user {self.user_id}")

        await self.send_json({
            "type": "connected",
            "message": "Connected to ingestion progress stream",
            "userId": self.user_id
        })

    async def disconnect(self, close_code):
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)
            logger.info(f"WebSocket disconnected for user {self.user_id} (code={close_code})")

    async def receive_json(self, content):
        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def ingest_progress(self, event):
        await self.send_json({"type": "ingest_progress", "data": event["data"]})

    async def ingest_complete(self, event):
        await self.send_json({"type": "ingest_complete", "data": event["data"]})

    async def ingest_failed(self, event):
        await self.send_json({"type": "ingest_failed", "data": event["data"]})

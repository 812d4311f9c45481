"""
Event publisher for ingestion progress.

Publishes events to the Django Channels layer for broadcast to the
uploading admin's WebSocket connections.
"""
import logging
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from apps.indexing.events import IngestionProgress, ProgressCallback

logger = logging.getLogger(__name__)


def group_for_user(user_id: str) -> str:
    """Channel group holding all of a user's WebSocket connections."""
    return f"ingest_{user_id}"


def publish_progress(user_id: str, event: IngestionProgress) -> None:
    """
    Send a progress event to all WebSocket connections for a user.

    Publishing is best effort; a broken channel layer never fails ingestion.
    """
    try:
        channel_layer = get_channel_layer()

        if channel_layer is None:
            logger.warning("Channel layer not available, cannot send event")
            return

        group_name = group_for_user(user_id)

        async_to_sync(channel_layer.group_send)(
            group_name,
            {
                "type": event.event_type.value,
                "data": event.to_dict()
            }
        )

        logger.debug(f"Published {event.event_type.value} to {group_name}: step={event.step.value}, progress={event.progress}")

    except Exception as e:
        logger.warning(f"Failed to publish event: {e}")


def progress_publisher(user_id: str) -> ProgressCallback:
    """Build a pipeline progress callback bound to a user's group."""
    def callback(event: IngestionProgress) -> None:
        publish_progress(user_id, event)
    return callback

"""
Chat message persistence and deduplication.
"""
import logging
from typing import List, Optional

from django.db import DatabaseError, IntegrityError, transaction

from apps.chat.models import ChatMessage

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a message cannot be written."""
    pass


class DuplicateMessageError(PersistenceError):
    """Raised when a message with the same id was stored concurrently."""
    pass


def get_message_by_id(message_id) -> Optional[ChatMessage]:
    return ChatMessage.objects.filter(id=message_id).first()


def is_duplicate(message_id) -> bool:
    return ChatMessage.objects.filter(id=message_id).exists()


def save_message(
    message_id,
    session_id,
    role: str,
    content: str,
    citations: Optional[list] = None,
) -> ChatMessage:
    """
    Insert a message. Never updates an existing row.

    Raises:
        DuplicateMessageError: If the id already exists
        PersistenceError: On any other database error
    """
    try:
        with transaction.atomic():
            return ChatMessage.objects.create(
                id=message_id,
                session_id=session_id,
                role=role,
                content=content,
                citations=citations or None,
            )
    except IntegrityError as e:
        if ChatMessage.objects.filter(id=message_id).exists():
            raise DuplicateMessageError(f"Message {message_id} already exists") from e
        logger.error(f"Failed to save message {message_id}: {e}")
        raise PersistenceError(f"Persistence failure: {e}") from e
    except DatabaseError as e:
        logger.error(f"Failed to save message {message_id}: {e}")
        raise PersistenceError(f"Persistence failure: {e}") from e


def get_session_messages(session_id) -> List[ChatMessage]:
    """All messages of a session, oldest first."""
    return list(ChatMessage.objects.filter(session_id=session_id).order_by('created_at'))

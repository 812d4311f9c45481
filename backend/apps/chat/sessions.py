"""
Chat session lifecycle.

A session is reused only when it exists AND belongs to the caller;
otherwise a fresh one is created, so a guessed session id never exposes
another user's conversation.
"""
import logging
from typing import List, Optional

from django.utils import timezone

from apps.chat.models import ChatSession

logger = logging.getLogger(__name__)

DEFAULT_TITLE = 'New Conversation'
TITLE_LENGTH = 80


def title_from_message(message: Optional[str]) -> str:
    """First 80 characters of the message, with an ellipsis when cut."""
    if not message or not message.strip():
        return DEFAULT_TITLE
    text = message.strip()
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + '…'
    return text


def get_owned_session(user_id: str, session_id) -> Optional[ChatSession]:
    """The session if it exists and belongs to user_id, else None."""
    if not session_id:
        return None
    return ChatSession.objects.filter(id=session_id, user_id=user_id).first()


def get_or_create_session(
    user_id: str,
    session_id: Optional[str] = None,
    first_message: Optional[str] = None,
) -> str:
    """
    Reuse the caller's session (touching updated_at) or create a new one.

    Returns:
        The session id as a string
    """
    session = get_owned_session(user_id, session_id)
    if session is not None:
        ChatSession.objects.filter(pk=session.pk).update(updated_at=timezone.now())
        return str(session.id)

    if session_id:
        logger.info(f"Session {session_id} not found for user {user_id}; creating a new one")

    session = ChatSession.objects.create(user_id=user_id, title=title_from_message(first_message))
    logger.debug(f"Created session {session.id} for user {user_id}")
    return str(session.id)


def get_latest_session(user_id: str) -> Optional[ChatSession]:
    return ChatSession.objects.filter(user_id=user_id).order_by('-updated_at').first()


def list_sessions(user_id: str, limit: int = 50) -> List[ChatSession]:
    return list(ChatSession.objects.filter(user_id=user_id).order_by('-updated_at')[:limit])

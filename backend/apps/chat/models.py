"""
Chat session and message models.
"""
import uuid
from django.db import models


class ChatSession(models.Model):
    """
    One conversation. user_id is set at creation and never changes;
    every read and write checks it.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Token subject of the owner"
    )

    title = models.CharField(max_length=255, default='New Conversation')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'chat_sessions'
        ordering = ['-updated_at']
        indexes = [
            models.Index(fields=['user_id', 'updated_at']),
        ]

    def __str__(self):
        return f"{self.title} ({self.user_id})"

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'title': self.title,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class MessageRole(models.TextChoices):
    USER = 'user', 'User'
    ASSISTANT = 'assistant', 'Assistant'


class ChatMessage(models.Model):
    """
    A message in a session. The id is supplied by the client and doubles
    as the idempotency key.
    """
    id = models.UUIDField(primary_key=True, editable=False)

    session = models.ForeignKey(
        ChatSession,
        on_delete=models.CASCADE,
        related_name='messages',
    )

    role = models.CharField(max_length=16, choices=MessageRole.choices)

    content = models.TextField()

    # List of citation dicts, null for user messages and greetings
    citations = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'chat_messages'
        ordering = ['created_at']

    def __str__(self):
        return f"{self.role}: {self.content[:50]}"

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'session_id': str(self.session_id),
            'role': self.role,
            'content': self.content,
            'citations': self.citations,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

"""
Knowledge-base document model.

A Document is created when an upload starts; the ingestion pipeline only
ever mutates its status (and page count / error metadata).
"""
import uuid
from django.db import models


class DocumentStatus(models.TextChoices):
    """Status of a document in the ingestion pipeline."""
    UPLOADING = 'uploading', 'Uploading'
    PROCESSING = 'processing', 'Processing'
    READY = 'ready', 'Ready'
    FAILED = 'failed', 'Failed'


class Document(models.Model):
    """
    A source document in the knowledge base.

    Deleting a document cascades to its chunks and embeddings.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(
        max_length=255,
        help_text="Original filename"
    )

    status = models.CharField(
        max_length=20,
        choices=DocumentStatus.choices,
        default=DocumentStatus.UPLOADING,
        db_index=True,
        help_text="Current status in the ingestion pipeline"
    )

    # Disabled documents stay indexed but are excluded from retrieval
    enabled = models.BooleanField(default=True)

    storage_path = models.CharField(
        max_length=500,
        blank=True,
        help_text="Path to file in storage (relative to upload root)"
    )

    checksum = models.CharField(
        max_length=64,
        db_index=True,
        help_text="SHA-256 hex digest of the uploaded bytes"
    )

    # file_size, page_count, error, url
    meta = models.JSONField(default=dict, blank=True)

    # Subject of the admin who uploaded the document
    uploaded_by = models.CharField(max_length=255, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'kb_documents'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.name} ({self.status})"

    @property
    def page_count(self):
        return (self.meta or {}).get('page_count')

    def to_dict(self, chunk_count=None) -> dict:
        data = {
            'id': str(self.id),
            'name': self.name,
            'status': self.status,
            'enabled': self.enabled,
            'storagePath': self.storage_path,
            'checksum': self.checksum,
            'meta': self.meta or {},
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }
        if chunk_count is not None:
            data['chunkCount'] = chunk_count
        return data

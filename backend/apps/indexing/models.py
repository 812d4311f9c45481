"""
Chunk and embedding models for storing document text with vectors.
"""
import uuid
from django.db import models
from pgvector.django import VectorField

from apps.docs.models import Document
from apps.indexing.embedder import EMBEDDING_DIMENSIONS


class Chunk(models.Model):
    """
    A sentence-aligned slice of a document's extracted text.

    Chunks are immutable; reprocessing a document deletes and recreates them.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    document = models.ForeignKey(
        Document,
        on_delete=models.CASCADE,
        related_name='chunks',
        help_text="The source document"
    )

    # Chunk ordering (0-indexed, contiguous per document)
    chunk_index = models.PositiveIntegerField(
        help_text="Index of this chunk within the document (0-based)"
    )

    content = models.TextField(
        help_text="The text content of this chunk"
    )

    # {pages: [int], charStart: int, charEnd: int}
    meta = models.JSONField(default=dict)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'kb_chunks'
        ordering = ['document', 'chunk_index']
        constraints = [
            models.UniqueConstraint(
                fields=['document', 'chunk_index'],
                name='unique_document_chunk'
            )
        ]

    def __str__(self):
        preview = self.content[:50] + '...' if len(self.content) > 50 else self.content
        return f"Chunk {self.chunk_index} of {self.document_id}: {preview}"


class Embedding(models.Model):
    """
    Vector for one chunk under one embedding model version.
    """
    chunk = models.ForeignKey(
        Chunk,
        on_delete=models.CASCADE,
        related_name='embeddings',
    )

    vector = VectorField(
        dimensions=EMBEDDING_DIMENSIONS,
        help_text="L2-normalized all-MiniLM-L6-v2 embedding"
    )

    model = models.CharField(max_length=200)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'kb_embeddings'
        constraints = [
            models.UniqueConstraint(
                fields=['chunk', 'model'],
                name='unique_chunk_embedding_model'
            )
        ]

    def __str__(self):
        return f"Embedding of chunk {self.chunk_id} ({self.model})"

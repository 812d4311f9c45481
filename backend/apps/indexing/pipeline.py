"""
Ingestion pipeline - turns an uploaded file into searchable chunks.

Steps:
1. UPLOADING: Store the raw bytes and create the Document row (processing)
2. EXTRACTING: Extract per-page text (scanned PDFs are rejected)
3. CHUNKING: Split text into overlapping, sentence-aligned chunks
4. EMBEDDING: Embed every chunk with the shared embedding model
5. SAVING: Insert chunks, then embeddings, then flip the document to ready

Any failure after the Document row exists marks it failed before the
original error is re-raised, so no document is left in processing.
"""
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings
from django.db import transaction

from apps.authn.audit import audit_ingestion_started, audit_ingestion_completed, audit_ingestion_failed
from apps.docs.models import Document, DocumentStatus
from apps.docs.storage import FileStorage, StorageError
from apps.indexing.chunker import chunk_pages, validate_options, TextChunk
from apps.indexing.embedder import EmbeddingModel, EmbeddingError
from apps.indexing.events import (
    IngestionProgress,
    IngestionStep,
    ProgressCallback,
    ignore_progress,
    percent,
)
from apps.indexing.extractor import ExtractionError, extract_pages, is_scanned
from apps.indexing.models import Chunk, Embedding

logger = logging.getLogger(__name__)


class ScannedDocumentError(ExtractionError):
    """Raised when a document has (almost) no extractable text."""
    pass


class DocumentSourceMissing(Exception):
    """Raised when a document cannot be reprocessed because its file is gone."""
    pass


@dataclass
class IngestionResult:
    """Outcome of a successful ingestion."""
    document_id: str
    chunk_count: int
    page_count: int

    def to_dict(self) -> dict:
        return {
            'documentId': self.document_id,
            'chunkCount': self.chunk_count,
            'pageCount': self.page_count,
        }


def compute_checksum(data: bytes) -> str:
    """SHA-256 hex digest of the file content."""
    return hashlib.sha256(data).hexdigest()


def delete_document(document: Document, storage: FileStorage) -> None:
    """
    Delete a document, its chunks/embeddings (cascade) and its stored file.

    Storage removal is best effort; the database row is always removed.
    """
    if document.storage_path:
        try:
            storage.delete(document.storage_path)
        except StorageError as e:
            logger.warning(f"Storage removal failed for {document.id}: {e}")
    document.delete()
    logger.info(f"Deleted document {document.id} ({document.name})")


class IngestionPipeline:
    """
    Stage machine for ingesting one document at a time.

    A single pipeline instance may be used from several threads; each call
    works on its own document.
    """

    def __init__(
        self,
        storage: FileStorage,
        embedding_model: EmbeddingModel,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_text_chars: Optional[int] = None,
    ):
        self.storage = storage
        self.embedding_model = embedding_model
        self.chunk_size = chunk_size if chunk_size is not None else settings.CHUNK_SIZE
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else settings.CHUNK_OVERLAP
        self.min_text_chars = (
            min_text_chars if min_text_chars is not None else settings.MIN_EXTRACTED_CHARS
        )

        # Fail at startup rather than on the first upload
        validate_options(self.chunk_size, self.chunk_overlap)

    def ingest(
        self,
        filename: str,
        data: bytes,
        on_progress: ProgressCallback = ignore_progress,
        uploaded_by: str = '',
    ) -> IngestionResult:
        """
        Run the full pipeline for an uploaded file.

        Returns:
            IngestionResult with document id, chunk count and page count
        """
        document = self.upload(filename, data, on_progress, uploaded_by=uploaded_by)
        return self.process(document, data, on_progress)

    def upload(
        self,
        filename: str,
        data: bytes,
        on_progress: ProgressCallback = ignore_progress,
        uploaded_by: str = '',
    ) -> Document:
        """Step 1: store the bytes and create the Document row in processing."""
        on_progress(IngestionProgress(IngestionStep.UPLOADING, 'Uploading file...', 0))

        storage_path = None
        try:
            storage_path = self.storage.save(filename, data)
            document = Document.objects.create(
                name=filename,
                status=DocumentStatus.PROCESSING,
                storage_path=storage_path,
                checksum=compute_checksum(data),
                meta={'file_size': len(data)},
                uploaded_by=uploaded_by,
            )
        except Exception as e:
            if storage_path is not None:
                self._discard_file(storage_path)
            on_progress(IngestionProgress(IngestionStep.ERROR, f"Upload failed: {e}", 0))
            raise

        on_progress(IngestionProgress(
            IngestionStep.UPLOADING, 'File uploaded', 100, document_id=str(document.id)
        ))
        logger.info(f"Stored upload {filename} as document {document.id}")
        return document

    def _discard_file(self, storage_path: str) -> None:
        """Best effort removal of a file whose Document row was never created."""
        try:
            self.storage.delete(storage_path)
        except StorageError as e:
            logger.warning(f"Could not remove orphaned upload {storage_path}: {e}")

    def replace(
        self,
        document: Document,
        data: bytes,
        on_progress: ProgressCallback = ignore_progress,
    ) -> Document:
        """
        Delete a document whose source is gone and upload fresh bytes in
        its place (step 1 only). The replacement gets a new id.
        """
        name, uploaded_by = document.name, document.uploaded_by
        logger.info(f"Source missing for {document.id}; replacing from supplied bytes")
        delete_document(document, self.storage)
        return self.upload(name, data, on_progress, uploaded_by=uploaded_by)

    def process(
        self,
        document: Document,
        data: bytes,
        on_progress: ProgressCallback = ignore_progress,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionResult:
        """
        Steps 2-5 for a document that already exists.

        Raises:
            The original error of whichever step failed, after marking the
            document failed
        """
        doc_id = str(document.id)

        def report(step: IngestionStep, message: str, progress: int) -> None:
            on_progress(IngestionProgress(step, message, progress, document_id=doc_id))

        audit_ingestion_started(doc_id, document.name, document.uploaded_by)

        try:
            result = self._run_steps(document, data, report, cancel_event)
        except Exception as e:
            logger.error(f"Ingestion of {document.name} ({doc_id}) failed: {e}")
            self._mark_failed(document, str(e))
            audit_ingestion_failed(doc_id, document.uploaded_by, str(e))
            report(IngestionStep.ERROR, str(e) or e.__class__.__name__, 0)
            raise

        audit_ingestion_completed(doc_id, document.uploaded_by, result.chunk_count)
        return result

    def _run_steps(self, document, data, report, cancel_event) -> IngestionResult:
        # Step 2: EXTRACT
        report(IngestionStep.EXTRACTING, 'Extracting text...', 0)

        extracted = extract_pages(
            data,
            document.name,
            on_progress=lambda current, total: report(
                IngestionStep.EXTRACTING,
                f"Extracting page {current}/{total}",
                percent(current, total),
            ),
        )

        if is_scanned(extracted, self.min_text_chars):
            raise ScannedDocumentError(
                "No text found - this appears to be a scanned PDF (image-only)."
            )

        meta = dict(document.meta or {})
        meta['page_count'] = extracted.page_count
        Document.objects.filter(pk=document.pk).update(meta=meta)
        document.meta = meta

        logger.info(f"Extracted {extracted.total_chars} characters from {document.name}")

        # Step 3: CHUNK
        report(IngestionStep.CHUNKING, 'Chunking text...', 0)

        chunks = chunk_pages(extracted.pages, self.chunk_size, self.chunk_overlap)
        if not chunks:
            raise ExtractionError("No chunks generated from text")

        report(IngestionStep.CHUNKING, f"Created {len(chunks)} chunks", 100)

        for chunk in chunks[:3]:
            preview = chunk.text[:100].replace('\n', ' ')
            logger.debug(f"  Chunk {chunk.index}: {preview}...")

        # Step 4: EMBED
        report(IngestionStep.EMBEDDING, 'Loading model...', 0)

        with self.embedding_model.lease():
            vectors = self.embedding_model.embed_batch(
                [c.text for c in chunks],
                on_progress=lambda completed, total: report(
                    IngestionStep.EMBEDDING,
                    f"Embedding chunk {completed}/{total}",
                    percent(completed, total),
                ),
                cancel_event=cancel_event,
            )

        if len(vectors) != len(chunks):
            raise EmbeddingError(
                f"Embedding count mismatch: {len(vectors)} vectors for {len(chunks)} chunks"
            )

        # Step 5: SAVE
        report(IngestionStep.SAVING, 'Saving to database...', 0)
        self._save(document, chunks, vectors, report)

        report(IngestionStep.DONE, 'Ingestion complete!', 100)
        logger.info(f"Ingested {document.name}: {len(chunks)} chunks, {extracted.page_count} pages")

        return IngestionResult(
            document_id=str(document.id),
            chunk_count=len(chunks),
            page_count=extracted.page_count,
        )

    def _save(self, document, chunks: List[TextChunk], vectors: List[List[float]], report) -> None:
        """Insert chunks, then their embeddings, then mark the document ready."""
        with transaction.atomic():
            inserted = Chunk.objects.bulk_create([
                Chunk(
                    document=document,
                    chunk_index=c.index,
                    content=c.text,
                    meta=c.meta,
                )
                for c in chunks
            ])

            report(IngestionStep.SAVING, 'Saving embeddings...', 50)

            by_index = {row.chunk_index: row for row in inserted}
            Embedding.objects.bulk_create([
                Embedding(
                    chunk=by_index[chunk.index],
                    vector=vector,
                    model=self.embedding_model.model_id,
                )
                for chunk, vector in zip(chunks, vectors)
            ])

            Document.objects.filter(pk=document.pk).update(status=DocumentStatus.READY)

        document.status = DocumentStatus.READY

    def _mark_failed(self, document: Document, reason: str) -> None:
        """Best effort: a failure to mark is logged, never raised."""
        try:
            meta = dict(document.meta or {})
            meta['error'] = reason[:500]
            Document.objects.filter(pk=document.pk).update(
                status=DocumentStatus.FAILED, meta=meta
            )
            document.status = DocumentStatus.FAILED
            document.meta = meta
        except Exception:
            logger.exception(f"Failed to mark document {document.pk} as failed")

    def reprocess(
        self,
        document_id,
        on_progress: ProgressCallback = ignore_progress,
        data: Optional[bytes] = None,
    ) -> IngestionResult:
        """
        Re-run ingestion for an existing document.

        - Source still in storage: delete its chunks (embeddings cascade) and
          re-run steps 2-5 in place.
        - Source missing but fresh bytes supplied: delete the whole document
          and ingest from step 1.
        - Otherwise: mark failed and raise DocumentSourceMissing.

        Raises:
            Document.DoesNotExist: If there is no such document
        """
        document = Document.objects.get(pk=document_id)

        if self.storage.exists(document.storage_path):
            source = self.storage.read(document.storage_path)
            with transaction.atomic():
                Chunk.objects.filter(document=document).delete()
                meta = {'file_size': len(source)}
                Document.objects.filter(pk=document.pk).update(
                    status=DocumentStatus.PROCESSING, meta=meta
                )
            document.refresh_from_db()
            logger.info(f"Reprocessing document {document.id} in place")
            return self.process(document, source, on_progress)

        if data is not None:
            replacement = self.replace(document, data, on_progress)
            return self.process(replacement, data, on_progress)

        reason = f"Source file missing from storage: {document.storage_path}"
        self._mark_failed(document, reason)
        on_progress(IngestionProgress(IngestionStep.ERROR, reason, 0, document_id=str(document.id)))
        raise DocumentSourceMissing(reason)

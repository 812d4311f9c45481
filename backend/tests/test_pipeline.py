"""
Tests for the ingestion pipeline: upload -> extract -> chunk -> embed -> save,
failure marking, and reprocessing.
"""
import hashlib
from unittest.mock import patch

import pytest
from django.db import DatabaseError

from apps.docs.models import Document, DocumentStatus
from apps.docs.storage import FileStorage
from apps.indexing.chunker import ChunkerConfigError
from apps.indexing.embedder import EmbeddingError, EmbeddingModel
from apps.indexing.events import IngestionStep
from apps.indexing.extractor import ExtractionError
from apps.indexing.models import Chunk, Embedding
from apps.indexing.pipeline import (
    DocumentSourceMissing,
    IngestionPipeline,
    ScannedDocumentError,
    delete_document,
)

STEP_ORDER = [
    IngestionStep.UPLOADING,
    IngestionStep.EXTRACTING,
    IngestionStep.CHUNKING,
    IngestionStep.EMBEDDING,
    IngestionStep.SAVING,
    IngestionStep.DONE,
]


@pytest.fixture
def storage(tmp_path):
    return FileStorage(tmp_path / 'uploads')


@pytest.fixture
def pipeline(storage, embedding_model):
    return IngestionPipeline(storage, embedding_model, chunk_size=150, chunk_overlap=40, min_text_chars=50)


@pytest.fixture
def events():
    return []


def distinct_steps(events):
    steps = []
    for event in events:
        if not steps or steps[-1] != event.step:
            steps.append(event.step)
    return steps


@pytest.mark.django_db
class TestIngest:

    def test_text_file_becomes_ready(self, pipeline, sample_text):
        data = sample_text.encode()

        result = pipeline.ingest('password-guide.txt', data, uploaded_by='admin-1')

        document = Document.objects.get(id=result.document_id)
        assert document.status == DocumentStatus.READY
        assert document.checksum == hashlib.sha256(data).hexdigest()
        assert document.page_count == 1
        assert document.meta['file_size'] == len(data)
        assert document.uploaded_by == 'admin-1'
        assert result.page_count == 1
        assert result.chunk_count > 1

    def test_every_chunk_has_one_embedding(self, pipeline, embedding_model, sample_text):
        result = pipeline.ingest('guide.txt', sample_text.encode())

        chunks = Chunk.objects.filter(document_id=result.document_id).order_by('chunk_index')
        assert [c.chunk_index for c in chunks] == list(range(result.chunk_count))
        assert Embedding.objects.filter(chunk__document_id=result.document_id).count() == result.chunk_count
        for chunk in chunks:
            embedding = chunk.embeddings.get()
            assert embedding.model == embedding_model.model_id
            assert len(embedding.vector) == embedding_model.dimension
            assert chunk.meta['pages'] == [1]

    def test_progress_steps_in_order(self, pipeline, sample_text, events):
        pipeline.ingest('guide.txt', sample_text.encode(), events.append)

        assert distinct_steps(events) == STEP_ORDER
        assert events[-1].progress == 100
        assert all(0 <= e.progress <= 100 for e in events)

    def test_progress_carries_document_id(self, pipeline, sample_text, events):
        result = pipeline.ingest('guide.txt', sample_text.encode(), events.append)

        assert events[0].document_id is None
        assert all(e.document_id == result.document_id for e in events[1:])

    def test_embedding_progress_counts_chunks(self, pipeline, sample_text, events):
        result = pipeline.ingest('guide.txt', sample_text.encode(), events.append)

        embedding_messages = [e.message for e in events if e.step == IngestionStep.EMBEDDING][1:]
        assert embedding_messages[-1] == f"Embedding chunk {result.chunk_count}/{result.chunk_count}"

    def test_stores_source_file(self, pipeline, storage, sample_text):
        result = pipeline.ingest('guide.txt', sample_text.encode())

        document = Document.objects.get(id=result.document_id)
        assert storage.read(document.storage_path) == sample_text.encode()

    def test_two_page_pdf_becomes_ready(self, pipeline, make_pdf):
        data = make_pdf(
            ['Open the account settings page to begin.', 'Choose the security tab from the menu.'],
            ['A reset link is sent to your email.', 'Follow the link within one hour.'],
        )

        result = pipeline.ingest('manual.pdf', data)

        document = Document.objects.get(id=result.document_id)
        assert document.status == DocumentStatus.READY
        assert result.page_count == 2
        assert document.page_count == 2
        assert result.chunk_count >= 1
        pages = {p for chunk in Chunk.objects.filter(document=document) for p in chunk.meta['pages']}
        assert pages == {1, 2}

    def test_identical_bytes_make_independent_documents(self, pipeline, sample_text):
        data = sample_text.encode()

        first = pipeline.ingest('guide.txt', data)
        second = pipeline.ingest('guide.txt', data)

        assert first.document_id != second.document_id
        documents = Document.objects.filter(id__in=[first.document_id, second.document_id])
        assert documents.count() == 2
        assert {d.checksum for d in documents} == {hashlib.sha256(data).hexdigest()}
        assert len({d.storage_path for d in documents}) == 2
        assert Chunk.objects.filter(document_id=first.document_id).count() == first.chunk_count
        assert Chunk.objects.filter(document_id=second.document_id).count() == second.chunk_count


@pytest.mark.django_db
class TestIngestFailures:

    def test_scanned_document_is_marked_failed(self, pipeline, events):
        with pytest.raises(ScannedDocumentError):
            pipeline.ingest('scan.txt', b'tiny', events.append)

        document = Document.objects.get()
        assert document.status == DocumentStatus.FAILED
        assert 'scanned' in document.meta['error']
        assert events[-1].step == IngestionStep.ERROR
        assert Chunk.objects.count() == 0

    def test_unsupported_format_is_marked_failed(self, pipeline, sample_text):
        with pytest.raises(ExtractionError):
            pipeline.ingest('slides.pptx', sample_text.encode())

        assert Document.objects.get().status == DocumentStatus.FAILED

    def test_embedding_failure_saves_nothing(self, storage, sample_text):
        class BrokenEncoder:
            def encode(self, text, normalize_embeddings=True):
                raise RuntimeError("model crashed")

        model = EmbeddingModel(loader=lambda m, p: BrokenEncoder())
        pipeline = IngestionPipeline(storage, model, chunk_size=150, chunk_overlap=40)

        with pytest.raises(EmbeddingError):
            pipeline.ingest('guide.txt', sample_text.encode())

        document = Document.objects.get()
        assert document.status == DocumentStatus.FAILED
        assert 'model crashed' in document.meta['error']
        assert Chunk.objects.count() == 0
        assert Embedding.objects.count() == 0

    def test_image_only_pdf_fails_as_scanned(self, pipeline, make_pdf, events):
        with pytest.raises(ScannedDocumentError, match='scanned PDF'):
            pipeline.ingest('scan.pdf', make_pdf([], []), events.append)

        document = Document.objects.get()
        assert document.status == DocumentStatus.FAILED
        assert 'scanned PDF' in document.meta['error']
        assert events[-1].step == IngestionStep.ERROR

    def test_failure_to_mark_failed_keeps_original_error(self, pipeline, events):
        with patch.object(Document.objects, 'filter', side_effect=DatabaseError('db gone')), \
                patch('apps.indexing.pipeline.logger') as logger:
            with pytest.raises(ScannedDocumentError):
                pipeline.ingest('scan.txt', b'tiny', events.append)

        logger.exception.assert_called_once()
        assert 'Failed to mark document' in logger.exception.call_args[0][0]
        assert Document.objects.get().status == DocumentStatus.PROCESSING
        assert events[-1].step == IngestionStep.ERROR

    def test_failed_row_insert_removes_stored_file(self, pipeline, storage, sample_text, events):
        with patch.object(Document.objects, 'create', side_effect=DatabaseError('db gone')):
            with pytest.raises(DatabaseError):
                pipeline.upload('guide.txt', sample_text.encode(), events.append)

        assert [p for p in storage.root.rglob('*') if p.is_file()] == []
        assert events[-1].step == IngestionStep.ERROR

    def test_invalid_chunk_options_fail_at_construction(self, storage, embedding_model):
        with pytest.raises(ChunkerConfigError):
            IngestionPipeline(storage, embedding_model, chunk_size=100, chunk_overlap=100)


@pytest.mark.django_db
class TestReprocess:

    def test_in_place_when_source_exists(self, pipeline, sample_text, events):
        first = pipeline.ingest('guide.txt', sample_text.encode())
        old_chunk_ids = set(Chunk.objects.values_list('id', flat=True))

        result = pipeline.reprocess(first.document_id, events.append)

        assert result.document_id == first.document_id
        assert result.chunk_count == first.chunk_count
        assert Document.objects.get(id=first.document_id).status == DocumentStatus.READY
        new_chunk_ids = set(Chunk.objects.values_list('id', flat=True))
        assert len(new_chunk_ids) == first.chunk_count
        assert not old_chunk_ids & new_chunk_ids
        assert distinct_steps(events) == STEP_ORDER[1:]

    def test_missing_source_without_bytes_fails(self, pipeline, storage, sample_text, events):
        first = pipeline.ingest('guide.txt', sample_text.encode())
        document = Document.objects.get(id=first.document_id)
        storage.delete(document.storage_path)

        with pytest.raises(DocumentSourceMissing):
            pipeline.reprocess(first.document_id, events.append)

        document.refresh_from_db()
        assert document.status == DocumentStatus.FAILED
        assert 'missing' in document.meta['error']
        assert events[-1].step == IngestionStep.ERROR

    def test_missing_source_with_bytes_reingests(self, pipeline, storage, sample_text):
        first = pipeline.ingest('guide.txt', sample_text.encode(), uploaded_by='admin-1')
        document = Document.objects.get(id=first.document_id)
        storage.delete(document.storage_path)

        result = pipeline.reprocess(first.document_id, data=sample_text.encode())

        assert result.document_id != first.document_id
        assert not Document.objects.filter(id=first.document_id).exists()
        replacement = Document.objects.get(id=result.document_id)
        assert replacement.name == 'guide.txt'
        assert replacement.uploaded_by == 'admin-1'
        assert replacement.status == DocumentStatus.READY

    def test_replace_uploads_under_new_id(self, pipeline, storage, sample_text):
        first = pipeline.ingest('guide.txt', sample_text.encode(), uploaded_by='admin-1')
        document = Document.objects.get(id=first.document_id)
        storage.delete(document.storage_path)

        replacement = pipeline.replace(document, sample_text.encode())

        assert not Document.objects.filter(id=first.document_id).exists()
        assert replacement.status == DocumentStatus.PROCESSING
        assert replacement.uploaded_by == 'admin-1'
        assert storage.read(replacement.storage_path) == sample_text.encode()

    def test_unknown_document(self, pipeline):
        with pytest.raises(Document.DoesNotExist):
            pipeline.reprocess('00000000-0000-0000-0000-000000000000')


@pytest.mark.django_db
class TestDeleteDocument:

    def test_removes_rows_and_file(self, pipeline, storage, sample_text):
        result = pipeline.ingest('guide.txt', sample_text.encode())
        document = Document.objects.get(id=result.document_id)
        path = document.storage_path

        delete_document(document, storage)

        assert not Document.objects.filter(id=result.document_id).exists()
        assert Chunk.objects.count() == 0
        assert Embedding.objects.count() == 0
        assert not storage.exists(path)

    def test_missing_file_still_deletes_row(self, pipeline, storage, sample_text):
        result = pipeline.ingest('guide.txt', sample_text.encode())
        document = Document.objects.get(id=result.document_id)
        storage.delete(document.storage_path)

        delete_document(document, storage)

        assert not Document.objects.filter(id=result.document_id).exists()

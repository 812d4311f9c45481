"""
Knowledge-base document views (admin only).

Provides endpoints for:
- POST /api/docs/upload - Upload a document and start ingestion
- GET /api/docs - List documents with chunk counts
- GET /api/docs/<id> - Document details
- DELETE /api/docs/<id> - Delete a document, its chunks and its file
- POST /api/docs/<id>/toggle - Enable/disable a document for retrieval
- POST /api/docs/<id>/reprocess - Re-run ingestion
- GET /api/docs/<id>/chunks/<index> - View one chunk (citation sources)

Ingestion runs on the ingestion thread pool; progress is published to the
uploading admin's WebSocket group.
"""
import json
import logging
from pathlib import Path

from django.conf import settings
from django.db import connection
from django.db.models import Count
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt

from apps.authn.middleware import admin_required
from apps.authn.ratelimit import rate_limited, check_upload_rate_limit
from apps.authn.audit import (
    audit_document_uploaded,
    audit_document_deleted,
    audit_document_reprocessed,
    audit_document_toggled,
)
from apps.indexing.models import Chunk
from apps.indexing.pipeline import DocumentSourceMissing, IngestionPipeline, delete_document
from apps.indexing.publisher import progress_publisher
from apps.rag.services import get_services
from .models import Document
from .storage import StorageError

logger = logging.getLogger(__name__)


def get_extension(filename: str) -> str:
    """Extract file extension from filename."""
    return Path(filename).suffix.lower()


def validate_extension(filename: str) -> bool:
    """Check if file extension is allowed."""
    return get_extension(filename) in settings.ALLOWED_EXTENSIONS


def not_found(what: str = 'Document') -> JsonResponse:
    return JsonResponse({'code': 'NOT_FOUND', 'message': f'{what} not found'}, status=404)


def run_ingestion_job(pipeline: IngestionPipeline, method: str, user_id: str, *args, **kwargs) -> None:
    """
    Body of a background ingestion job.

    The pipeline has already marked the document failed and reported the
    error by the time an exception reaches here.
    """
    try:
        getattr(pipeline, method)(*args, on_progress=progress_publisher(user_id), **kwargs)
    except Exception as e:
        logger.error(f"Background {method} failed: {e}")
    finally:
        connection.close()


def read_upload(uploaded_file):
    """
    Validate and read an uploaded file.

    Returns:
        (bytes, None) on success, (None, JsonResponse) on a validation failure
    """
    if uploaded_file.size > settings.MAX_UPLOAD_SIZE:
        max_mb = settings.MAX_UPLOAD_SIZE // (1024 * 1024)
        return None, JsonResponse(
            {
                'code': 'FILE_TOO_LARGE',
                'message': f'File too large. Maximum size is {max_mb}MB',
                'maxSize': settings.MAX_UPLOAD_SIZE
            },
            status=400
        )

    if not validate_extension(uploaded_file.name):
        return None, JsonResponse(
            {
                'code': 'INVALID_FILE_TYPE',
                'message': 'Invalid file type. Allowed: PDF, TXT, MD',
                'allowedExtensions': settings.ALLOWED_EXTENSIONS
            },
            status=400
        )

    return uploaded_file.read(), None


@csrf_exempt
@require_http_methods(["POST"])
@admin_required
@rate_limited(check_upload_rate_limit, 'upload')
def upload_document(request):
    """
    Upload a new document.

    POST /api/docs/upload

    Accepts multipart/form-data with a 'file' field. The file is stored and
    its Document row created before responding; extraction, chunking,
    embedding and saving continue in the background.

    Returns (201):
        {"document": {...}, "status": "processing"}
    """
    user_id = request.user_claims.sub

    if 'file' not in request.FILES:
        return JsonResponse({'code': 'MISSING_FILE', 'message': 'No file provided'}, status=400)

    uploaded_file = request.FILES['file']
    data, error = read_upload(uploaded_file)
    if error is not None:
        return error

    logger.info(f"Upload request: {uploaded_file.name}, {len(data)} bytes from user {user_id}")

    services = get_services()
    pipeline = services.pipeline
    on_progress = progress_publisher(user_id)

    try:
        document = pipeline.upload(uploaded_file.name, data, on_progress, uploaded_by=user_id)
    except StorageError as e:
        logger.error(f"Storage error during upload: {e}")
        return JsonResponse({'code': 'STORAGE_ERROR', 'message': 'Failed to store file'}, status=500)

    audit_document_uploaded(
        request,
        document_id=str(document.id),
        filename=document.name,
        size_bytes=len(data),
        checksum=document.checksum,
    )

    services.ingestion_executor.submit(run_ingestion_job, pipeline, 'process', user_id, document, data)

    return JsonResponse({'document': document.to_dict(), 'status': document.status}, status=201)


@require_http_methods(["GET"])
@admin_required
def list_documents(request):
    """
    GET /api/docs

    Returns:
        {"documents": [{..., "chunkCount": 12}]}
    """
    documents = Document.objects.annotate(chunk_total=Count('chunks')).order_by('-created_at')
    return JsonResponse({
        'documents': [doc.to_dict(chunk_count=doc.chunk_total) for doc in documents]
    })


@csrf_exempt
@require_http_methods(["GET", "DELETE"])
@admin_required
def document_detail(request, document_id):
    """
    GET /api/docs/<document_id> - details with chunk count
    DELETE /api/docs/<document_id> - delete document, chunks, embeddings and file
    """
    try:
        document = Document.objects.get(id=document_id)
    except Document.DoesNotExist:
        return not_found()

    if request.method == 'DELETE':
        delete_document(document, get_services().storage)
        audit_document_deleted(request, str(document_id))
        return JsonResponse({'deleted': True, 'id': str(document_id)})

    return JsonResponse(document.to_dict(chunk_count=document.chunks.count()))


@csrf_exempt
@require_http_methods(["POST"])
@admin_required
def toggle_document(request, document_id):
    """
    POST /api/docs/<document_id>/toggle

    Body: {"enabled": true|false}. Without a body the flag is flipped.
    Disabled documents stay indexed but are never retrieved.
    """
    try:
        document = Document.objects.get(id=document_id)
    except Document.DoesNotExist:
        return not_found()

    try:
        body = json.loads(request.body) if request.body else {}
    except json.JSONDecodeError:
        return JsonResponse({'code': 'INVALID_INPUT', 'message': 'Invalid JSON'}, status=400)

    if not isinstance(body, dict):
        return JsonResponse({'code': 'INVALID_INPUT', 'message': 'Body must be a JSON object'}, status=400)

    enabled = body.get('enabled', not document.enabled)
    if not isinstance(enabled, bool):
        return JsonResponse({'code': 'INVALID_INPUT', 'message': 'enabled must be a boolean'}, status=400)

    document.enabled = enabled
    document.save(update_fields=['enabled', 'updated_at'])
    audit_document_toggled(request, str(document.id), enabled)

    return JsonResponse(document.to_dict())


@csrf_exempt
@require_http_methods(["POST"])
@admin_required
def reprocess_document(request, document_id):
    """
    POST /api/docs/<document_id>/reprocess

    Optional multipart 'file' supplies fresh bytes for a document whose
    stored source is gone.

    Returns:
        202 {"documentId", "status": "processing"} when ingestion restarted
        409 SOURCE_MISSING when the source is gone and no file was supplied
    """
    user_id = request.user_claims.sub

    try:
        document = Document.objects.get(id=document_id)
    except Document.DoesNotExist:
        return not_found()

    data = None
    if 'file' in request.FILES:
        data, error = read_upload(request.FILES['file'])
        if error is not None:
            return error

    services = get_services()
    pipeline = services.pipeline
    on_progress = progress_publisher(user_id)

    if services.storage.exists(document.storage_path):
        audit_document_reprocessed(request, str(document.id))
        services.ingestion_executor.submit(run_ingestion_job, pipeline, 'reprocess', user_id, document.id)
        return JsonResponse({'documentId': str(document.id), 'status': 'processing'}, status=202)

    if data is None:
        try:
            pipeline.reprocess(document.id, on_progress)
        except DocumentSourceMissing as e:
            return JsonResponse({'code': 'SOURCE_MISSING', 'message': str(e)}, status=409)
        # The source reappeared and was processed in place
        audit_document_reprocessed(request, str(document.id))
        return JsonResponse({'documentId': str(document.id), 'status': 'processing'}, status=202)

    # Source gone: the replacement row exists before responding so its id is valid
    try:
        replacement = pipeline.replace(document, data, on_progress)
    except StorageError as e:
        logger.error(f"Storage error during reprocess: {e}")
        return JsonResponse({'code': 'STORAGE_ERROR', 'message': 'Failed to store file'}, status=500)

    audit_document_reprocessed(request, str(replacement.id))
    services.ingestion_executor.submit(run_ingestion_job, pipeline, 'process', user_id, replacement, data)

    return JsonResponse({'documentId': str(replacement.id), 'status': 'processing'}, status=202)


@require_http_methods(["GET"])
@admin_required
def get_chunk(request, document_id, chunk_index):
    """
    GET /api/docs/<document_id>/chunks/<chunk_index>

    Returns:
        {"documentId", "chunkId", "chunkIndex", "content", "meta", "name"}
    """
    try:
        document = Document.objects.get(id=document_id)
    except Document.DoesNotExist:
        return not_found()

    try:
        chunk = Chunk.objects.get(document=document, chunk_index=chunk_index)
    except Chunk.DoesNotExist:
        return not_found('Chunk')

    return JsonResponse({
        'documentId': str(document.id),
        'chunkId': str(chunk.id),
        'chunkIndex': chunk.chunk_index,
        'content': chunk.content,
        'meta': chunk.meta,
        'name': document.name,
    })

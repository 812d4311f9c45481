"""
RAG API views.

Provides endpoints for:
- POST /api/chat: grounded answer, streamed over SSE
- POST /api/rag/embed: server-side query embedding
"""
import json
import logging

from django.core.handlers.asgi import ASGIRequest
from django.http import JsonResponse, StreamingHttpResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.authn.audit import (
    audit_chat_duplicate,
    audit_chat_query,
    audit_chat_refused,
    audit_ratelimit_exceeded,
)
from apps.authn.middleware import auth_required, authenticate
from apps.indexing.embedder import EmbeddingError, EmbeddingTimeout
from apps.rag.errors import ChatAPIError, InternalError, InvalidInput, RateLimited
from apps.rag.orchestrator import MAX_MESSAGE_LENGTH, build_orchestrator
from apps.rag.services import get_services
from apps.rag.sse import EventStreamWriter

logger = logging.getLogger(__name__)


def error_response(error: ChatAPIError) -> JsonResponse:
    response = JsonResponse(error.to_dict(), status=error.status)
    if isinstance(error, RateLimited):
        response['Retry-After'] = str(error.retry_after_seconds)
    return response


def event_stream_response(request, events) -> StreamingHttpResponse:
    writer = EventStreamWriter()
    asgi = isinstance(request, ASGIRequest)
    # Django drains a synchronous iterator completely before sending under
    # ASGI, so ASGI requests get the async writer
    content = writer.astream(events) if asgi else writer.stream(events)

    response = StreamingHttpResponse(content, content_type='text/event-stream')
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    # WSGI servers reject hop-by-hop headers; ASGI servers pass them on
    if asgi:
        response['Connection'] = 'keep-alive'
    return response


@method_decorator(csrf_exempt, name='dispatch')
class ChatView(View):
    """
    POST /api/chat

    Request body:
        {
            "embedding": [384 floats],
            "message": "How do I reset my password?",
            "message_id": "uuid",
            "session_id": "uuid"  // optional
        }

    Responses:
        200 text/event-stream: answer_start, answer_delta*, sources, answer_end | error
        200 {"type": "answer", "text", "session_id", "message_id"}   greeting
        200 {"type": "refusal", "message", "suggestions"}            evidence too weak
        200 {"code": "DUPLICATE_MESSAGE", "message"}
        400 INVALID_INPUT, 401 UNAUTHORIZED, 429 RATE_LIMITED, 500 INTERNAL_ERROR
    """

    def post(self, request):
        try:
            payload = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response(InvalidInput("Invalid JSON"))

        try:
            claims = authenticate(request)
            orchestrator = build_orchestrator(get_services())
            outcome = orchestrator.handle(claims.sub if claims else None, payload)
        except RateLimited as e:
            audit_ratelimit_exceeded(request, 'chat', orchestrator.limiter.limit)
            return error_response(e)
        except ChatAPIError as e:
            return error_response(e)
        except Exception as e:
            logger.exception(f"Chat request failed: {e}")
            return error_response(InternalError())

        if outcome.kind == 'duplicate':
            audit_chat_duplicate(request, payload.get('message_id'))
        elif outcome.kind == 'refusal':
            audit_chat_refused(request, outcome.session_id, outcome.chunk_count)

        if outcome.kind != 'stream':
            return JsonResponse(outcome.body, status=200)

        audit_chat_query(
            request,
            session_id=outcome.session_id,
            message_length=len(payload.get('message', '')),
            citation_count=outcome.chunk_count,
        )
        return event_stream_response(request, outcome.events)


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
class EmbedView(View):
    """
    POST /api/rag/embed

    Embeds text with the same model used for document chunks, for clients
    that cannot embed locally.

    Request body:
        {"text": "How do I reset my password?"}

    Response:
        {"embedding": [...], "model": "sentence-transformers/all-MiniLM-L6-v2", "dimension": 384}
    """

    def post(self, request):
        try:
            body = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JsonResponse({'code': 'INVALID_INPUT', 'message': 'Invalid JSON'}, status=400)

        text = body.get('text') if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            return JsonResponse({'code': 'INVALID_INPUT', 'message': 'text is required'}, status=400)
        if len(text) > MAX_MESSAGE_LENGTH:
            return JsonResponse(
                {'code': 'INVALID_INPUT', 'message': f'text too long (max {MAX_MESSAGE_LENGTH} characters)'},
                status=400
            )

        model = get_services().embedding_model

        try:
            vector = model.embed_one(text.strip())
        except EmbeddingTimeout as e:
            logger.error(f"Query embedding timed out: {e}")
            return JsonResponse(
                {'code': e.code, 'message': 'The embedding model is still loading. Please try again.'},
                status=504
            )
        except EmbeddingError as e:
            logger.error(f"Query embedding failed: {e}")
            return JsonResponse(
                {'code': 'EMBEDDING_FAILED', 'message': 'Failed to process query'},
                status=503
            )

        return JsonResponse({
            'embedding': vector,
            'model': model.model_id,
            'dimension': len(vector),
        })

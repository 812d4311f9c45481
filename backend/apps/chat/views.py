"""
Chat history views.

Provides endpoints for:
- GET /api/chat/sessions - The caller's sessions, most recent first
- GET /api/chat/sessions/latest - The most recent session with its messages
- GET /api/chat/sessions/<id>/messages - Messages of one of the caller's sessions
"""
import logging

from django.http import JsonResponse
from django.views.decorators.http import require_http_methods

from apps.authn.middleware import auth_required
from .messages import get_session_messages
from .sessions import get_latest_session, get_owned_session, list_sessions

logger = logging.getLogger(__name__)


@require_http_methods(["GET"])
@auth_required
def session_list(request):
    """
    GET /api/chat/sessions

    Returns:
        {"sessions": [{"id", "title", "created_at", "updated_at"}]}
    """
    sessions = list_sessions(request.user_claims.sub)
    return JsonResponse({'sessions': [s.to_dict() for s in sessions]})


@require_http_methods(["GET"])
@auth_required
def latest_session(request):
    """
    GET /api/chat/sessions/latest

    Returns:
        {"session": {...} | null, "messages": [...]}
    """
    session = get_latest_session(request.user_claims.sub)
    if session is None:
        return JsonResponse({'session': None, 'messages': []})

    return JsonResponse({
        'session': session.to_dict(),
        'messages': [m.to_dict() for m in get_session_messages(session.id)],
    })


@require_http_methods(["GET"])
@auth_required
def session_messages(request, session_id):
    """
    GET /api/chat/sessions/<session_id>/messages

    Another user's session is reported as not found.
    """
    session = get_owned_session(request.user_claims.sub, session_id)
    if session is None:
        return JsonResponse(
            {'code': 'NOT_FOUND', 'message': 'Session not found'},
            status=404
        )

    return JsonResponse({
        'session': session.to_dict(),
        'messages': [m.to_dict() for m in get_session_messages(session.id)],
    })

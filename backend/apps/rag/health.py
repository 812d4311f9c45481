"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import redis
from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

from apps.rag.services import get_services

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_database() -> tuple[str, bool]:
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def redis_required() -> bool:
    return (
        settings.RATE_LIMIT_BACKEND == 'redis'
        or settings.CHANNEL_LAYER_BACKEND != 'memory'
    )


def check_redis() -> tuple[str, bool]:
    try:
        client = redis.from_url(settings.REDIS_URL, socket_timeout=3)
        client.ping()
        return 'ok', True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_embedding_model() -> tuple[str, bool]:
    """
    Report whether the embedding model is loaded. Not loaded yet is not a
    failure: it loads on first use.
    """
    model = get_services().embedding_model
    return ('loaded' if model.is_loaded else 'not_loaded'), True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    """
    checks = {}
    all_ok = True

    status, ok = check_database()
    checks['database'] = status
    all_ok = all_ok and ok

    # Redis is critical only when rate limits or channels live there
    if redis_required():
        status, ok = check_redis()
        checks['redis'] = status
        all_ok = all_ok and ok

    status, _ = check_embedding_model()
    checks['embedding_model'] = status

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)

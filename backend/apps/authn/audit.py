"""
Audit logging for security and compliance.

Structured JSON events on the dedicated `audit` logger. Events carry
metadata only: never message text, document content or tokens.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Auth events
    AUTH_TOKEN_REJECTED = 'auth.token_rejected'

    # Document events
    DOCUMENT_UPLOADED = 'document.uploaded'
    DOCUMENT_DELETED = 'document.deleted'
    DOCUMENT_REPROCESSED = 'document.reprocessed'
    DOCUMENT_TOGGLED = 'document.toggled'

    # Ingestion events
    INGESTION_STARTED = 'ingestion.started'
    INGESTION_COMPLETED = 'ingestion.completed'
    INGESTION_FAILED = 'ingestion.failed'

    # Chat events
    CHAT_QUERY = 'chat.query'
    CHAT_REFUSED = 'chat.refused'
    CHAT_DUPLICATE = 'chat.duplicate'

    # Rate limiting events
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # First IP in the chain is the client
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Token subject
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with request context auto-populated."""
    user_id = None
    if getattr(request, 'user_claims', None):
        user_id = getattr(request.user_claims, 'sub', None)

    log_audit(
        event_type=event_type,
        user_id=user_id,
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_document_uploaded(request, document_id: str, filename: str, size_bytes: int, checksum: str):
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_UPLOADED,
        metadata={
            'document_id': document_id,
            'filename': filename,
            'size_bytes': size_bytes,
            'checksum': checksum[:16] + '...',
        }
    )


def audit_document_deleted(request, document_id: str):
    log_audit_from_request(request, AuditEvent.DOCUMENT_DELETED, metadata={'document_id': document_id})


def audit_document_reprocessed(request, document_id: str):
    log_audit_from_request(request, AuditEvent.DOCUMENT_REPROCESSED, metadata={'document_id': document_id})


def audit_document_toggled(request, document_id: str, enabled: bool):
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_TOGGLED,
        metadata={'document_id': document_id, 'enabled': enabled}
    )


def audit_ingestion_started(document_id: str, filename: str, user_id: str):
    log_audit(
        AuditEvent.INGESTION_STARTED,
        user_id=user_id or None,
        metadata={'document_id': document_id, 'filename': filename}
    )


def audit_ingestion_completed(document_id: str, user_id: str, chunk_count: int):
    log_audit(
        AuditEvent.INGESTION_COMPLETED,
        user_id=user_id or None,
        metadata={'document_id': document_id, 'chunk_count': chunk_count}
    )


def audit_ingestion_failed(document_id: str, user_id: str, error: str):
    log_audit(
        AuditEvent.INGESTION_FAILED,
        user_id=user_id or None,
        outcome='failure',
        metadata={
            'document_id': document_id,
            'error': error[:200],  # Truncate error message
        }
    )


def audit_chat_query(request, session_id: str, message_length: int, citation_count: int):
    """Log a chat question (without the actual text)."""
    log_audit_from_request(
        request,
        AuditEvent.CHAT_QUERY,
        metadata={
            'session_id': session_id,
            'message_length': message_length,
            'citation_count': citation_count,
        }
    )


def audit_chat_refused(request, session_id: str, chunk_count: int):
    log_audit_from_request(
        request,
        AuditEvent.CHAT_REFUSED,
        metadata={'session_id': session_id, 'chunk_count': chunk_count}
    )


def audit_chat_duplicate(request, message_id: str):
    log_audit_from_request(request, AuditEvent.CHAT_DUPLICATE, metadata={'message_id': message_id})


def audit_ratelimit_exceeded(request, endpoint: str, limit: int):
    log_audit_from_request(
        request,
        AuditEvent.RATELIMIT_EXCEEDED,
        outcome='failure',
        metadata={'endpoint': endpoint, 'limit': limit}
    )


def audit_auth_rejected(request, reason: str):
    log_audit_from_request(
        request,
        AuditEvent.AUTH_TOKEN_REJECTED,
        outcome='failure',
        metadata={'reason': reason}
    )

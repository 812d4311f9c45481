"""
Authentication decorators for JWT-protected endpoints.
"""
import logging
from typing import Optional, Callable
from functools import wraps

from django.conf import settings
from django.http import JsonResponse, HttpRequest

from .audit import audit_auth_rejected
from .tokens import validate_token, TokenClaims, JWTValidationError

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = 'Please log in to use the chat.'


def get_token_from_request(request: HttpRequest) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Returns:
        The token string if found, None otherwise
    """
    auth_header = request.META.get('HTTP_AUTHORIZATION', '')

    if not auth_header:
        return None

    parts = auth_header.split()

    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None

    return parts[1]


def unauthorized_response(message: str = UNAUTHORIZED_MESSAGE) -> JsonResponse:
    return JsonResponse({'code': 'UNAUTHORIZED', 'message': message}, status=401)


def authenticate(request: HttpRequest) -> Optional[TokenClaims]:
    """
    Claims for the request's bearer token, or None when it is missing or
    invalid. Sets request.user_claims either way.
    """
    request.user_claims = None
    token = get_token_from_request(request)

    if not token:
        return None

    try:
        claims = validate_token(token)
    except JWTValidationError as e:
        logger.warning(f"JWT validation failed: {e}")
        audit_auth_rejected(request, str(e))
        return None

    request.user_claims = claims
    return claims


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires a valid JWT token.

    Validates the token and attaches the claims to request.user_claims.

    Usage:
        @auth_required
        def my_view(request):
            user_id = request.user_claims.sub
            ...
    """
    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        claims = authenticate(request)

        if claims is None:
            return unauthorized_response()

        logger.debug(
            f"Authenticated user: {claims.preferred_username} "
            f"(sub={claims.sub}, roles={claims.roles})"
        )
        return view_func(request, *args, **kwargs)

    return wrapper


def role_required(*required_roles: str) -> Callable:
    """
    Decorator that requires one of the given roles.

    Must be used after @auth_required.

    Usage:
        @auth_required
        @role_required('admin')
        def admin_only_view(request):
            ...
    """
    def decorator(view_func: Callable) -> Callable:
        @wraps(view_func)
        def wrapper(request: HttpRequest, *args, **kwargs):
            claims: Optional[TokenClaims] = getattr(request, 'user_claims', None)

            if not claims:
                return unauthorized_response()

            if not set(required_roles).intersection(claims.roles):
                logger.warning(
                    f"User {claims.preferred_username} lacks required roles. "
                    f"Has: {claims.roles}, Needs one of: {list(required_roles)}"
                )
                return JsonResponse(
                    {'code': 'FORBIDDEN', 'message': 'Insufficient permissions'},
                    status=403
                )

            return view_func(request, *args, **kwargs)

        return wrapper

    return decorator


def admin_required(view_func: Callable) -> Callable:
    """Shorthand for @auth_required + @role_required(settings.ADMIN_ROLE)."""
    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        return auth_required(role_required(settings.ADMIN_ROLE)(view_func))(request, *args, **kwargs)
    return wrapper

"""
Bearer token validation.

Tokens are RS256 JWTs issued by the OIDC provider and verified against its
JWKS endpoint. When AUTH_JWT_SECRET is set (local development, tests), HS256
tokens signed with that secret are accepted instead.
"""
import logging
import time
import threading
from dataclasses import dataclass
from typing import List, Optional, Dict, Any

import jwt
import requests
from jwt import PyJWK
from django.conf import settings

logger = logging.getLogger(__name__)


class JWTValidationError(Exception):
    """Raised when JWT validation fails."""
    pass


@dataclass
class TokenClaims:
    """Validated token claims."""
    sub: str  # Subject (user ID)
    preferred_username: str
    email: Optional[str]
    roles: List[str]
    raw_claims: Dict[str, Any]

    @property
    def is_admin(self) -> bool:
        return settings.ADMIN_ROLE in self.roles


class JWKSCache:
    """
    Thread-safe JWKS cache with TTL and a refetch on unknown key ids.
    """

    def __init__(self, jwks_url: str, cache_ttl: int = 600):
        self._jwks_url = jwks_url
        self._cache_ttl = cache_ttl
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._last_fetch: float = 0
        self._lock = threading.RLock()

    def _fetch_jwks(self) -> Dict[str, Dict[str, Any]]:
        """Fetch the JWKS and index it by kid."""
        try:
            logger.debug(f"Fetching JWKS from {self._jwks_url}")
            response = requests.get(self._jwks_url, timeout=10)
            response.raise_for_status()
            jwks = response.json()

            keys = {key['kid']: key for key in jwks.get('keys', []) if key.get('kid')}

            logger.info(f"Fetched {len(keys)} keys from JWKS endpoint")
            return keys

        except requests.RequestException as e:
            logger.error(f"Failed to fetch JWKS: {e}")
            raise JWTValidationError("Signing keys unavailable") from e

    def _is_cache_valid(self) -> bool:
        return (time.time() - self._last_fetch) < self._cache_ttl

    def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Get a public key by its key ID.

        If the kid is unknown the JWKS is refetched once (key rotation),
        debounced to one refetch every 5 seconds.
        """
        with self._lock:
            if not self._keys or not self._is_cache_valid():
                self._keys = self._fetch_jwks()
                self._last_fetch = time.time()

            if kid in self._keys:
                return self._keys[kid]

            if (time.time() - self._last_fetch) > 5:
                logger.info(f"Key {kid} not found, refetching JWKS for potential key rotation")
                self._keys = self._fetch_jwks()
                self._last_fetch = time.time()

                if kid in self._keys:
                    return self._keys[kid]

            logger.warning(f"Key {kid} not found in JWKS")
            return None

    def clear(self):
        """Clear the cache (useful for testing)."""
        with self._lock:
            self._keys = {}
            self._last_fetch = 0


_jwks_cache: Optional[JWKSCache] = None


def get_jwks_cache() -> JWKSCache:
    """Get the process-wide JWKS cache."""
    global _jwks_cache
    if _jwks_cache is None:
        _jwks_cache = JWKSCache(
            jwks_url=settings.AUTH_JWKS_URL,
            cache_ttl=settings.AUTH_JWKS_CACHE_TTL
        )
    return _jwks_cache


def extract_roles(claims: Dict[str, Any], client_id: str) -> List[str]:
    """
    Collect role names from the token.

    Roles may appear as a flat `roles` claim, under realm_access.roles, or
    under resource_access[client_id].roles.
    """
    roles = set(claims.get('roles', []) or [])
    roles.update(claims.get('realm_access', {}).get('roles', []))
    roles.update(claims.get('resource_access', {}).get(client_id, {}).get('roles', []))

    internal_roles = {'offline_access', 'uma_authorization'}
    return sorted(r for r in roles if r not in internal_roles and not r.startswith('default-roles-'))


def _decode_shared_secret(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.AUTH_JWT_SECRET,
        algorithms=['HS256'],
        options={'verify_aud': False},
    )


def _decode_jwks(token: str) -> Dict[str, Any]:
    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get('kid')

    if not kid:
        raise JWTValidationError("Token header missing 'kid'")

    jwk_data = get_jwks_cache().get_key(kid)
    if not jwk_data:
        raise JWTValidationError(f"Unknown key ID: {kid}")

    public_key = PyJWK.from_dict(jwk_data).key

    unverified_claims = jwt.decode(token, options={"verify_signature": False})
    token_issuer = unverified_claims.get('iss', '')

    if token_issuer not in settings.AUTH_VALID_ISSUERS:
        logger.warning(f"Invalid issuer: {token_issuer}, expected one of: {settings.AUTH_VALID_ISSUERS}")
        raise JWTValidationError("Invalid token issuer")

    return jwt.decode(
        token,
        public_key,
        algorithms=['RS256'],
        issuer=token_issuer,
        options={
            'verify_signature': True,
            'verify_exp': True,
            'verify_iss': True,
            'verify_aud': False,  # aud/azp checked below
        }
    )


def validate_token(token: str) -> TokenClaims:
    """
    Validate a bearer JWT.

    Raises:
        JWTValidationError: If validation fails for any reason
    """
    try:
        if settings.AUTH_JWT_SECRET:
            claims = _decode_shared_secret(token)
        else:
            claims = _decode_jwks(token)
    except JWTValidationError:
        raise
    except jwt.ExpiredSignatureError:
        raise JWTValidationError("Token has expired")
    except jwt.InvalidIssuerError:
        raise JWTValidationError("Invalid token issuer")
    except jwt.InvalidTokenError as e:
        raise JWTValidationError(f"Invalid token: {e}")

    audience = settings.AUTH_AUDIENCE
    aud = claims.get('aud', [])
    if isinstance(aud, str):
        aud = [aud]
    if audience not in aud and claims.get('azp', '') != audience:
        logger.debug(f"Token audience {aud} / azp {claims.get('azp')} does not name {audience}")

    if not claims.get('sub'):
        raise JWTValidationError("Token missing subject")

    return TokenClaims(
        sub=claims['sub'],
        preferred_username=claims.get('preferred_username', ''),
        email=claims.get('email'),
        roles=extract_roles(claims, audience),
        raw_claims=claims
    )

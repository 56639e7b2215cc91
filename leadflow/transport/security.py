# leadflow/transport/security.py
"""
Request authentication for the dispatch API.

Three callers reach this service:
- the document store / scheduler, calling /triggers/* with ``TRIGGER_TOKEN``
- the auth proxy, calling /rpc/* with ``AUTH_GATEWAY_TOKEN`` and forwarding
  the verified identity in ``X-Caller-Uid`` / ``X-Caller-Role`` / ``X-Caller-Team``
- monitoring, calling /metrics with ``METRICS_TOKEN`` or from an internal network

All token comparisons are constant-time.
"""
import hmac
import ipaddress
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from leadflow.config import settings
from leadflow.core.domain import CallerContext, Role
from leadflow.core.errors import UnauthenticatedError
from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

bearer_scheme = HTTPBearer(
    scheme_name="Service Token",
    description="Trigger or gateway token (without 'Bearer ' prefix)",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Returns a list of warnings (empty if the token looks strong).

    Checks minimum length, common weak patterns and character diversity.
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)
    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def check_configured_tokens() -> None:
    """Log a warning for every weak configured token. Called at startup."""
    for name, token in (
        ("TRIGGER_TOKEN", settings.trigger_token),
        ("AUTH_GATEWAY_TOKEN", settings.auth_gateway_token),
        ("METRICS_TOKEN", settings.metrics_token),
    ):
        if not token:
            continue
        for warning in validate_token_strength(token, name):
            logger.warning(f"SECURITY: {warning}")


def _token_matches(credentials: HTTPAuthorizationCredentials | None, expected: str) -> bool:
    if not credentials:
        return False
    return hmac.compare_digest(credentials.credentials.encode(), expected.encode())


# =============================================================================
# Trigger webhooks
# =============================================================================

def require_trigger_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for /triggers/*.

    With ``TRIGGER_TOKEN`` unset the webhooks are open (dev only;
    production refuses to start without it).
    """
    if not settings.trigger_token:
        return

    if not _token_matches(credentials, settings.trigger_token):
        logger.warning(
            "Rejected trigger call with missing or invalid token",
            extra={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# Caller identity (RPC)
# =============================================================================

def get_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Optional[CallerContext]:
    """
    Caller forwarded by the auth proxy.

    Returns None when no identity was forwarded; the RPC service turns
    that into ``unauthenticated``. A bad gateway token or an unknown role
    is rejected here.
    """
    if settings.auth_gateway_token and not _token_matches(credentials, settings.auth_gateway_token):
        logger.warning("RPC call without a valid gateway token", extra={"path": request.url.path})
        raise UnauthenticatedError("Invalid gateway credentials")

    uid = (request.headers.get("X-Caller-Uid") or "").strip()
    if not uid:
        return None

    raw_role = (request.headers.get("X-Caller-Role") or "").strip().lower()
    try:
        role = Role(raw_role)
    except ValueError:
        raise UnauthenticatedError(f"Unknown caller role: {raw_role or '<empty>'}")

    team_id = (request.headers.get("X-Caller-Team") or "").strip() or None
    return CallerContext(uid=uid, role=role, team_id=team_id)


# =============================================================================
# Monitoring
# =============================================================================

@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _get_client_ip(request: Request) -> str:
    """
    Client IP, honoring X-Forwarded-For / X-Real-IP only when
    ``TRUST_PROXY_HEADERS`` is set.
    """
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and not forwarded_for:
            client_ip = real_ip.strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        logger.warning(f"Invalid IP address format: {ip_str}")
        return False
    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    client_ip = _get_client_ip(request)
    if _is_internal_ip(client_ip):
        return

    logger.warning(
        f"Access denied from non-internal IP: {client_ip}",
        extra={"client_ip": client_ip},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Forbidden"
    )


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for /metrics.

    1. METRICS_TOKEN set: Bearer token required
    2. METRICS_TOKEN unset: internal network required
    """
    if settings.metrics_token:
        if not credentials:
            logger.warning("Metrics endpoint accessed without token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not _token_matches(credentials, settings.metrics_token):
            logger.warning("Invalid metrics token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    require_internal_network(request)


# =============================================================================
# Response hardening
# =============================================================================

class SecurityHeaders:
    """OWASP API response headers."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        if "Server" in response.headers:
            del response.headers["Server"]
        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Message for an unexpected error in a 500 response.
    In production: generic. In dev: the exception text.
    """
    if not is_production:
        return str(error)
    return "Internal error"

# fieldops/transport/security.py
"""
Security utilities for the HTTP API.

Security features:
- Constant-time token comparison (timing attack prevention)
- Token entropy validation (weak token detection)
- Security response headers
- Error message sanitization in production
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.middleware.base import BaseHTTPMiddleware

from fieldops.config import Settings
from fieldops.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
# Minimum entropy check - reject obviously weak tokens
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

# Security scheme for OpenAPI docs - shows "Authorize" button
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,  # We handle errors ourselves for better messages
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a token meets minimum security requirements.
    Returns list of warnings (empty if token is strong).
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


def check_configured_tokens(settings: Settings) -> None:
    """Log warnings for weak tokens. Call this from app startup."""
    for name, value in (
        ("ADMIN_TOKEN", settings.admin_token),
        ("TELEGRAM_WEBHOOK_SECRET", settings.telegram_webhook_secret),
    ):
        if not value:
            continue
        for warning in validate_token_strength(value, name):
            logger.warning(f"SECURITY: {warning}")


# =============================================================================
# Admin authentication
# =============================================================================

def _verify_bearer_token(
    credentials: HTTPAuthorizationCredentials | None,
    expected: str,
) -> tuple[bool, str | None]:
    """Verify Bearer token. Returns (is_valid, error_message)."""
    if not credentials:
        return False, "Missing Authorization header"

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        return False, "Invalid token"

    return True, None


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Bearer token authentication for admin endpoints.

    Header: Authorization: Bearer <ADMIN_TOKEN>

    Usage:
        @app.get("/admin/endpoint", dependencies=[Depends(require_admin_auth)])
        async def admin_endpoint():
            ...
    """
    settings: Settings = request.app.state.settings
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    valid, error = _verify_bearer_token(credentials, settings.admin_token)
    if not valid:
        logger.warning(f"Bearer auth failed: {error}", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug(f"Bearer auth successful for {request.method} {request.url.path}")


# =============================================================================
# Response hardening
# =============================================================================

class SecurityHeaders:
    """OWASP recommended security headers for an API."""

    @staticmethod
    def add_security_headers(response, *, hsts: bool = False):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        # HSTS (only in production/staging behind HTTPS)
        if hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response, hsts=self.hsts)


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    error_type = type(error).__name__

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(error_type, "An error occurred")

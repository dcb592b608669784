"""
Error taxonomy and the JSON error shape used by every HTTP response.

Every failure surfaced by this package is an AppError subclass carrying a
machine-readable ErrorCode. Clients receive code, message and details only;
tracebacks stay in the server log.

Error families:
- ConfigurationError: missing provider credentials (fatal, not retried)
- AuthenticationError / OAuthExchangeFailed: token lifecycle failures
- ValidationError / WebhookReplayError: rejected webhook deliveries
- TenantError: tenant gating (not found, inactive, suspended, quota)
- DecryptionFailed / EmptyInput: credential cipher failures

Status mapping: 400 malformed input or stale webhook, 401 bad signature or
token, 403 inactive or suspended tenant, 404 unknown tenant or provider,
409 webhook replay, 429 quota, 502 provider token endpoint, 503 cache.
"""

import enum
import logging
import uuid
from typing import Any, Optional

from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes shared by every integration error."""

    # Authentication
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_REFRESH_TOKEN_INVALID = "AUTH_REFRESH_TOKEN_INVALID"
    AUTH_OAUTH_FAILED = "AUTH_OAUTH_FAILED"
    AUTH_STATE_INVALID = "AUTH_STATE_INVALID"

    # Webhooks
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    WEBHOOK_REPLAY_ATTACK = "WEBHOOK_REPLAY_ATTACK"
    WEBHOOK_TIMESTAMP_INVALID = "WEBHOOK_TIMESTAMP_INVALID"

    # Providers
    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    PROVIDER_CONFIG_MISSING = "PROVIDER_CONFIG_MISSING"

    # Tenants
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    TENANT_INACTIVE = "TENANT_INACTIVE"
    TENANT_SUSPENDED = "TENANT_SUSPENDED"
    TENANT_QUOTA_EXCEEDED = "TENANT_QUOTA_EXCEEDED"
    TENANT_HAS_CREDENTIALS = "TENANT_HAS_CREDENTIALS"

    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_REQUIRED_FIELD = "VALIDATION_REQUIRED_FIELD"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"

    # Crypto
    CRYPTO_DECRYPTION_FAILED = "CRYPTO_DECRYPTION_FAILED"
    CRYPTO_EMPTY_INPUT = "CRYPTO_EMPTY_INPUT"

    # System
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    SYSTEM_CONFIG_MISSING = "SYSTEM_CONFIG_MISSING"


class AppError(Exception):
    """Root of the error hierarchy. `code` is stored as the plain string value."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.is_retryable = is_retryable

    def to_dict(self) -> dict:
        """JSON body: {"error": {"code", "message", "details"}}."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ConfigurationError(AppError):
    """Missing or invalid configuration (500). Never retried."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.PROVIDER_CONFIG_MISSING,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class AuthenticationError(AppError):
    """
    Credential lifecycle failure (401).

    AUTH_REFRESH_TOKEN_INVALID is terminal: the user must reconnect the
    integration. AUTH_TOKEN_EXPIRED is transient: the next call may refresh.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.AUTH_TOKEN_INVALID,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )

    @property
    def requires_reauth(self) -> bool:
        return self.code == ErrorCode.AUTH_REFRESH_TOKEN_INVALID.value


class OAuthExchangeFailed(AppError):
    """Authorization code exchange failed (502)."""

    def __init__(self, message: str, tenant_id: str, provider: str):
        super().__init__(
            code=ErrorCode.AUTH_OAUTH_FAILED,
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"tenant_id": tenant_id, "provider": provider},
        )
        self.tenant_id = tenant_id
        self.provider = provider


class NotFoundError(AppError):
    """Unknown tenant, provider or connection (404)."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        code: ErrorCode = ErrorCode.PROVIDER_NOT_FOUND,
    ):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ValidationError(AppError):
    """Validation error (400). Webhook signature failures use 401."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        status_code = status.HTTP_400_BAD_REQUEST
        if code == ErrorCode.WEBHOOK_SIGNATURE_INVALID:
            status_code = status.HTTP_401_UNAUTHORIZED
        merged = dict(details or {})
        if field:
            merged["field"] = field
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=merged,
        )
        self.field = field


class WebhookReplayError(AppError):
    """Duplicate webhook delivery (409). Fatal for the delivery, never retried."""

    def __init__(self, provider: str, delivery_id: str):
        super().__init__(
            code=ErrorCode.WEBHOOK_REPLAY_ATTACK,
            message="Webhook delivery is a duplicate or replay attack",
            status_code=status.HTTP_409_CONFLICT,
            details={"provider": provider, "delivery_id": delivery_id},
        )
        self.provider = provider
        self.delivery_id = delivery_id


_TENANT_ERROR_STATUS = {
    ErrorCode.TENANT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TENANT_INACTIVE: status.HTTP_403_FORBIDDEN,
    ErrorCode.TENANT_SUSPENDED: status.HTTP_403_FORBIDDEN,
    ErrorCode.TENANT_QUOTA_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.TENANT_HAS_CREDENTIALS: status.HTTP_409_CONFLICT,
}


class TenantError(AppError):
    """Tenant gating failure. Raised before any tenant-scoped work starts."""

    def __init__(self, message: str, code: ErrorCode, tenant_id: Optional[str] = None):
        super().__init__(
            code=code,
            message=message,
            status_code=_TENANT_ERROR_STATUS.get(code, status.HTTP_403_FORBIDDEN),
            details={"tenant_id": tenant_id} if tenant_id else {},
        )
        self.tenant_id = tenant_id


class DecryptionFailed(AppError):
    """
    Ciphertext could not be authenticated or decoded.

    Treated as data corruption: the owning credential is unusable.
    """

    def __init__(self, message: str = "Decryption failed: invalid or corrupted data"):
        super().__init__(
            code=ErrorCode.CRYPTO_DECRYPTION_FAILED,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class EmptyInput(AppError):
    """Refused to encrypt or decrypt an empty value."""

    def __init__(self, message: str = "Cannot encrypt an empty value"):
        super().__init__(
            code=ErrorCode.CRYPTO_EMPTY_INPUT,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class ReplayCacheUnavailable(AppError):
    """Replay cache backend could not be reached (503)."""

    def __init__(self, message: str = "Replay cache unavailable"):
        super().__init__(
            code=ErrorCode.CACHE_UNAVAILABLE,
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            is_retryable=True,
        )


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Inbound X-Correlation-ID, else one already assigned to this request, else a new UUID."""
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


def error_response(error: AppError, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers={"X-Correlation-ID": correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost middleware. Turns anything raised below it into the JSON error
    shape; unexpected exceptions become a generic 500 with the correlation id.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except AppError as e:
            logger.warning(
                "Application error",
                extra={
                    "correlation_id": correlation_id,
                    "error_code": e.code,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return error_response(e, correlation_id)

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": {
                        "code": "HTTP_ERROR",
                        "message": str(e.detail),
                        "details": {},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )

        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """FastAPI exception handler for AppError raised inside route handlers."""
    return error_response(exc, get_correlation_id(request))

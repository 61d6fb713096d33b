from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code carried in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class MissingDeviceContext(ValidationError):
    """A device-scoped operation was called without device id or user agent."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Username/password pair did not match a known user."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredOrUsedToken(AuthenticationError):
    """Any refresh or access token failure.

    Expired, revoked, already-used and wrong-device tokens all land here so
    the response body cannot be used as an oracle.
    """

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevoked(InvalidOrExpiredOrUsedToken):
    """Access token carries a blacklisted jti."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamProviderError(ServerError):
    """Token or userinfo fetch against the identity provider failed."""
    status_code = 502


class UpstreamTimeout(UpstreamProviderError):
    """The identity provider did not answer within the configured timeout."""
    status_code = 504


class OAuthError(Exception):
    """RFC 6749 protocol error returned by the identity provider.

    Rendered as ``{"error": ..., "error_description": ...}`` rather than the
    service envelope because OAuth clients parse that shape.
    """

    error: str = "invalid_request"
    status_code: int = 400

    def __init__(
        self,
        description: Optional[str] = None,
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(description or error or self.error)
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        self.description = description

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class PKCEVerificationFailed(InvalidGrant):
    def __init__(self, description: str = "PKCE verification failed", **kwargs) -> None:
        super().__init__(description, **kwargs)


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class AccessDenied(OAuthError):
    error = "access_denied"


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingDeviceContext",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidOrExpiredOrUsedToken",
    "TokenRevoked",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "UpstreamProviderError",
    "UpstreamTimeout",
    "OAuthError",
    "InvalidRequest",
    "InvalidClient",
    "InvalidGrant",
    "PKCEVerificationFailed",
    "UnsupportedGrantType",
    "AccessDenied",
    "InvalidToken",
]

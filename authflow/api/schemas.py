from __future__ import annotations

import re
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authflow.logging import get_correlation_id

_ERROR_CODE = re.compile(r"[a-z][a-z0-9_]*")


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable snake_case code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.fullmatch(value):
            raise ValueError("error code must be snake_case")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    """Wire models use the camelCase names the browser frontends expect."""

    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    # Missing credentials fall through to the generic 401
    username: str = ""
    password: str = Field("", repr=False)


class AccessTokenResponse(CamelModel):
    access_token: str = Field(..., alias="accessToken")


class MessageResponse(BaseModel):
    message: str


class DeviceInfoOut(CamelModel):
    user_agent: str = Field(..., alias="userAgent")
    platform: str
    os: str


class SessionOut(CamelModel):
    id: str
    device_info: DeviceInfoOut = Field(..., alias="deviceInfo")
    last_used_at: Optional[str] = Field(None, alias="lastUsedAt")
    expires_at: Optional[str] = Field(None, alias="expiresAt")
    is_revoked: bool = Field(False, alias="isRevoked")


class SessionListResponse(BaseModel):
    sessions: List[SessionOut]


class RevokeSessionRequest(CamelModel):
    device_id: Optional[str] = Field(None, alias="deviceId")
    session_id: Optional[str] = Field(None, alias="sessionId")


class InvalidateTokenRequest(BaseModel):
    token: Optional[str] = Field(None, repr=False)
    jti: Optional[str] = None


class RedirectUrlResponse(CamelModel):
    redirect_url: str = Field(..., alias="redirectUrl")
    code_verifier: Optional[str] = Field(None, alias="codeVerifier", repr=False)


class ProfileResponse(CamelModel):
    user_id: int = Field(..., alias="userId")
    username: str


class DirectoryUser(BaseModel):
    id: int
    name: str
    email: str


class Customer(BaseModel):
    id: int
    name: str
    email: str


class OAuthTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    id_token: str
    scope: str = ""


class OAuthUserInfoResponse(BaseModel):
    id: str
    email: str
    name: str
    provider: str


class HealthResponse(BaseModel):
    status: str
    version: str
    store_backend: str
    checks: dict[str, str] = Field(default_factory=dict)

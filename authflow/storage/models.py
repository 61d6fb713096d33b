from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from authflow.storage.common import format_ts, parse_ts


@dataclass
class DeviceInfo:
    user_agent: str
    platform: str = "unknown"
    os: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_public(self) -> Dict[str, Any]:
        return {"userAgent": self.user_agent, "platform": self.platform, "os": self.os}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            user_agent=data.get("user_agent", ""),
            platform=data.get("platform", "unknown"),
            os=data.get("os", "unknown"),
        )


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: int
    device_id: str
    device_info: DeviceInfo
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    is_used: bool = False

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now and not self.is_revoked and not self.is_used

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "device_info": self.device_info.to_dict(),
            "created_at": format_ts(self.created_at),
            "last_used_at": format_ts(self.last_used_at),
            "expires_at": format_ts(self.expires_at),
            "is_revoked": self.is_revoked,
            "is_used": self.is_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshTokenRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            device_id=data["device_id"],
            device_info=DeviceInfo.from_dict(data.get("device_info") or {}),
            created_at=parse_ts(data["created_at"]),
            last_used_at=parse_ts(data["last_used_at"]),
            expires_at=parse_ts(data["expires_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
            is_used=bool(data.get("is_used", False)),
        )


@dataclass
class SessionView:
    """What a user sees of one of their device sessions."""

    id: str
    device_info: DeviceInfo
    last_used_at: datetime
    expires_at: datetime
    is_revoked: bool = False

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionView":
        return cls(
            id=record.id,
            device_info=record.device_info,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
            is_revoked=record.is_revoked,
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceInfo": self.device_info.to_public(),
            "lastUsedAt": format_ts(self.last_used_at),
            "expiresAt": format_ts(self.expires_at),
            "isRevoked": self.is_revoked,
        }


@dataclass
class BlacklistEntry:
    jti_hash: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"jti_hash": self.jti_hash, "expires_at": format_ts(self.expires_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlacklistEntry":
        return cls(jti_hash=data["jti_hash"], expires_at=parse_ts(data["expires_at"]))


@dataclass
class NonceRecord:
    nonce: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"nonce": self.nonce, "created_at": format_ts(self.created_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NonceRecord":
        return cls(nonce=data["nonce"], created_at=parse_ts(data["created_at"]))


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    provider: str
    expires_at: datetime
    nonce: Optional[str] = None
    scope: str = ""
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = format_ts(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationCode":
        return cls(
            code=data["code"],
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            provider=data["provider"],
            expires_at=parse_ts(data["expires_at"]),
            nonce=data.get("nonce"),
            scope=data.get("scope") or "",
            code_challenge=data.get("code_challenge"),
            code_challenge_method=data.get("code_challenge_method"),
        )


@dataclass
class SSOSession:
    id_hash: str
    user_id: str
    provider: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_revoked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id_hash": self.id_hash,
            "user_id": self.user_id,
            "provider": self.provider,
            "created_at": format_ts(self.created_at),
            "last_used_at": format_ts(self.last_used_at),
            "expires_at": format_ts(self.expires_at),
            "is_revoked": self.is_revoked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SSOSession":
        return cls(
            id_hash=data["id_hash"],
            user_id=data["user_id"],
            provider=data["provider"],
            created_at=parse_ts(data["created_at"]),
            last_used_at=parse_ts(data["last_used_at"]),
            expires_at=parse_ts(data["expires_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
        )


@dataclass
class OAuthUserInfo:
    id: str
    email: str
    name: str
    provider: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthUserInfo":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or "",
            provider=data["provider"],
        )


@dataclass
class User:
    id: int
    username: str
    password_hash: str
    scope: List[str] = field(default_factory=lambda: ["read", "write"])

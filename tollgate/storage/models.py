from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(raw: Any) -> Optional[datetime]:
    if isinstance(raw, datetime):
        return raw
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISABLED = "disabled"


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    nickname: Optional[str] = None
    avatar_url: Optional[str] = None
    password_hash: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    recovery_codes: Optional[List[str]] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_disabled(self) -> bool:
        return self.status == UserStatus.DISABLED


# Fields TwoFactorService and AuthOrchestrator may write through UserStore.update_user
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "phone",
        "nickname",
        "avatar_url",
        "password_hash",
        "status",
        "mfa_enabled",
        "mfa_secret",
        "recovery_codes",
        "last_login_at",
        "last_login_ip",
    }
)


@dataclass
class PendingLogin:
    """A password-verified login waiting for its second factor."""

    user_id: str
    username: str
    expires_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "expires_at": _dt_to_str(self.expires_at),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PendingLogin":
        return cls(
            user_id=data["user_id"],
            username=data["username"],
            expires_at=_dt_from_str(data["expires_at"]),
        )


@dataclass
class OAuthClient:
    id: str
    client_id: str
    client_secret: str
    name: str
    redirect_uris: List[str]
    scopes: List[str]
    owner_user_id: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _dt_to_str(self.created_at)
        data["updated_at"] = _dt_to_str(self.updated_at)
        return data

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OAuthClient":
        return cls(
            id=data["id"],
            client_id=data["client_id"],
            client_secret=data["client_secret"],
            name=data["name"],
            redirect_uris=list(data.get("redirect_uris") or []),
            scopes=list(data.get("scopes") or []),
            owner_user_id=data["owner_user_id"],
            created_at=_dt_from_str(data.get("created_at")) or _utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or _utcnow(),
        )

    def public_view(self) -> Dict[str, Any]:
        """Client metadata without the secret."""
        data = self.to_payload()
        data.pop("client_secret", None)
        return data


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    user_id: str
    scopes: List[str]
    expires_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = _dt_to_str(self.expires_at)
        return data

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AuthorizationCode":
        return cls(
            code=data["code"],
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            user_id=data["user_id"],
            scopes=list(data.get("scopes") or []),
            expires_at=_dt_from_str(data["expires_at"]),
        )


@dataclass
class OAuthAccessToken:
    access_token: str
    client_id: str
    scopes: List[str]
    expires_at: datetime
    user_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = _dt_to_str(self.expires_at)
        return data

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OAuthAccessToken":
        return cls(
            access_token=data["access_token"],
            client_id=data["client_id"],
            scopes=list(data.get("scopes") or []),
            expires_at=_dt_from_str(data["expires_at"]),
            user_id=data.get("user_id"),
        )


@dataclass
class PasswordResetTicket:
    user_id: str
    expires_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "expires_at": _dt_to_str(self.expires_at)}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PasswordResetTicket":
        return cls(
            user_id=data["user_id"], expires_at=_dt_from_str(data["expires_at"])
        )

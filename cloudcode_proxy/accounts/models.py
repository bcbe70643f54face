"""Account data model for the credential pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class CredentialSource(str, Enum):
    """Where an account's access token comes from."""

    OAUTH = "oauth"  # refresh token exchanged at the OAuth token endpoint
    MANUAL = "manual"  # static key supplied by the operator
    DATABASE = "database"  # token extracted from a local IDE state database


@dataclass
class ModelRateLimit:
    """Per-model quota state of one account."""

    is_rate_limited: bool = False
    reset_time: Optional[int] = None  # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {"is_rate_limited": self.is_rate_limited, "reset_time": self.reset_time}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelRateLimit":
        return cls(
            is_rate_limited=bool(_pick(data, "is_rate_limited", "isRateLimited", default=False)),
            reset_time=_pick(data, "reset_time", "resetTime"),
        )


@dataclass
class DeviceFingerprint:
    """Client identity presented to the upstream on behalf of one account."""

    device_id: str
    session_token: str
    user_agent: str
    api_client: str
    client_metadata: dict[str, Any]
    quota_user: str
    created_at: int  # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "session_token": self.session_token,
            "user_agent": self.user_agent,
            "api_client": self.api_client,
            "client_metadata": dict(self.client_metadata),
            "quota_user": self.quota_user,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeviceFingerprint":
        return cls(
            device_id=_pick(data, "device_id", "deviceId", default=""),
            session_token=_pick(data, "session_token", "sessionToken", default=""),
            user_agent=_pick(data, "user_agent", "userAgent", default=""),
            api_client=_pick(data, "api_client", "apiClient", default=""),
            client_metadata=dict(_pick(data, "client_metadata", "clientMetadata", default={}) or {}),
            quota_user=_pick(data, "quota_user", "quotaUser", default=""),
            created_at=int(_pick(data, "created_at", "createdAt", default=0) or 0),
        )


@dataclass
class Account:
    """One credentialed upstream identity.

    Times are epoch milliseconds. ``model_rate_limits`` holds quota state per
    upstream model id; ``is_rate_limited`` is the account-wide limit.
    """

    email: str
    source: CredentialSource = CredentialSource.OAUTH
    refresh_token: Optional[str] = None
    api_key: Optional[str] = None
    db_path: Optional[str] = None
    auth_type: str = "antigravity"
    project_id: Optional[str] = None
    enabled: bool = True

    is_rate_limited: bool = False
    rate_limit_reset_time: Optional[int] = None
    model_rate_limits: dict[str, ModelRateLimit] = field(default_factory=dict)

    is_invalid: bool = False
    invalid_reason: Optional[str] = None
    invalid_at: Optional[int] = None

    fingerprint: Optional[DeviceFingerprint] = None
    added_at: Optional[int] = None
    last_used: Optional[int] = None

    def is_model_limited(self, model_id: Optional[str], now_ms: int) -> bool:
        if not model_id:
            return False
        limit = self.model_rate_limits.get(model_id)
        return bool(limit and limit.is_rate_limited and (limit.reset_time or 0) > now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "source": self.source.value,
            "refresh_token": self.refresh_token,
            "api_key": self.api_key,
            "db_path": self.db_path,
            "auth_type": self.auth_type,
            "project_id": self.project_id,
            "enabled": self.enabled,
            "is_rate_limited": self.is_rate_limited,
            "rate_limit_reset_time": self.rate_limit_reset_time,
            "model_rate_limits": {
                model_id: limit.to_dict() for model_id, limit in self.model_rate_limits.items()
            },
            "is_invalid": self.is_invalid,
            "invalid_reason": self.invalid_reason,
            "invalid_at": self.invalid_at,
            "fingerprint": self.fingerprint.to_dict() if self.fingerprint else None,
            "added_at": self.added_at,
            "last_used": self.last_used,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Account":
        """Build an account from a stored dict (snake_case or camelCase keys)."""
        email = data.get("email")
        if not email:
            raise ValueError("Account entry is missing 'email'")

        source_raw = data.get("source") or CredentialSource.OAUTH.value
        try:
            source = CredentialSource(source_raw)
        except ValueError:
            raise ValueError(f"Account {email} has unknown credential source: {source_raw}")

        limits_raw = _pick(data, "model_rate_limits", "modelRateLimits", default={}) or {}
        fingerprint_raw = data.get("fingerprint")

        return cls(
            email=email,
            source=source,
            refresh_token=_pick(data, "refresh_token", "refreshToken"),
            api_key=_pick(data, "api_key", "apiKey"),
            db_path=_pick(data, "db_path", "dbPath"),
            auth_type=_pick(data, "auth_type", "authType", default="antigravity"),
            project_id=_pick(data, "project_id", "projectId"),
            enabled=data.get("enabled", True) is not False,
            is_rate_limited=bool(_pick(data, "is_rate_limited", "isRateLimited", default=False)),
            rate_limit_reset_time=_pick(data, "rate_limit_reset_time", "rateLimitResetTime"),
            model_rate_limits={
                model_id: ModelRateLimit.from_dict(limit)
                for model_id, limit in limits_raw.items()
                if isinstance(limit, Mapping)
            },
            is_invalid=bool(_pick(data, "is_invalid", "isInvalid", default=False)),
            invalid_reason=_pick(data, "invalid_reason", "invalidReason"),
            invalid_at=_pick(data, "invalid_at", "invalidAt"),
            fingerprint=(
                DeviceFingerprint.from_dict(fingerprint_raw)
                if isinstance(fingerprint_raw, Mapping)
                else None
            ),
            added_at=_pick(data, "added_at", "addedAt"),
            last_used=_pick(data, "last_used", "lastUsed"),
        )


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default

"""Session DTOs shared across application layers."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

Role = Literal["CUSTOMER", "PROVIDER", "ADMIN"]
AccountStatus = Literal["ACTIVE", "BANNED"]
ProviderStatus = Literal["PENDING", "APPROVED", "REJECTED", "SUSPENDED"]

ROLES = ("CUSTOMER", "PROVIDER", "ADMIN")
ACCOUNT_STATUSES = ("ACTIVE", "BANNED")
PROVIDER_STATUSES = ("PENDING", "APPROVED", "REJECTED", "SUSPENDED")

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse backend timestamps into aware UTC datetimes. Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_expires_in(value: Any) -> Optional[int]:
    """
    Normalizes the backend's expiresIn to seconds.
    Accepts ints, digit strings and "15m" / "1h" / "7d" style durations.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid expiresIn: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid expiresIn: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit.lower()]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int] = None
    issued_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], issued_at: Optional[datetime] = None) -> "TokenPair":
        access_token = payload.get("accessToken")
        if not access_token:
            raise ValueError("Token payload has no accessToken")
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refreshToken"),
            expires_in=parse_expires_in(payload.get("expiresIn")),
            issued_at=issued_at or datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class IdentitySnapshot:
    id: str
    email: str
    name: str
    role: Role
    account_status: AccountStatus = "ACTIVE"
    ban_reason: Optional[str] = None
    banned_at: Optional[datetime] = None
    provider_id: Optional[str] = None
    provider_status: Optional[ProviderStatus] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IdentitySnapshot":
        """Build a snapshot from the backend's /users/me body (camelCase)."""
        if not payload or not payload.get("id") or not payload.get("email"):
            raise ValueError("Identity payload must carry id and email")

        role = str(payload.get("accountRole") or payload.get("role") or "CUSTOMER").upper()
        if role not in ROLES:
            raise ValueError(f"Unknown account role: {role}")

        account_status = payload.get("accountStatus")
        if account_status is None:
            account_status = "BANNED" if payload.get("isBanned") else "ACTIVE"
        account_status = str(account_status).upper()
        if account_status not in ACCOUNT_STATUSES:
            raise ValueError(f"Unknown account status: {account_status}")

        provider = payload.get("provider") or {}
        provider_status = payload.get("providerStatus") or provider.get("status")
        if provider_status is not None:
            provider_status = str(provider_status).upper()
            if provider_status not in PROVIDER_STATUSES:
                raise ValueError(f"Unknown provider status: {provider_status}")

        provider_id = payload.get("providerId") or provider.get("id")
        return cls(
            id=str(payload["id"]),
            email=payload["email"],
            name=payload.get("name") or "User",
            role=role,
            account_status=account_status,
            ban_reason=payload.get("banReason"),
            banned_at=parse_timestamp(payload.get("bannedAt")),
            provider_id=str(provider_id) if provider_id is not None else None,
            provider_status=provider_status,
            rejection_reason=payload.get("rejectionReason") or provider.get("rejectionReason"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "accountRole": self.role,
            "accountStatus": self.account_status,
            "banReason": self.ban_reason,
            "bannedAt": format_timestamp(self.banned_at),
            "providerId": self.provider_id,
            "providerStatus": self.provider_status,
            "rejectionReason": self.rejection_reason,
        }


def is_admin(user: IdentitySnapshot) -> bool:
    return user.role == "ADMIN"


def is_provider(user: IdentitySnapshot) -> bool:
    return user.role == "PROVIDER"


def is_banned(user: IdentitySnapshot) -> bool:
    return user.account_status == "BANNED"

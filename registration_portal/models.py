"""Data models for registration records and directory objects."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


_CN_PATTERN = re.compile(r"^CN=([^,]+)", re.IGNORECASE)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_email(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def group_name_from_dn(distinguished_name: str) -> str:
    match = _CN_PATTERN.match(distinguished_name or "")
    return match.group(1) if match else distinguished_name


class RegistrationStatus(IntEnum):
    """Lifecycle of a self-service registration."""

    PENDING = 0
    REGISTERED = 1

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, raw: Any) -> "RegistrationStatus":
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, int):
            return cls(raw)
        text = str(raw or "").strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown registration status '{raw}'") from exc


@dataclass
class RegistrationRecord:
    """A Google account email awaiting (or linked to) a directory account."""

    id: int
    google_email: str
    ad_user_principal_name: Optional[str] = None
    status: RegistrationStatus = RegistrationStatus.PENDING
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RegistrationStatus.PENDING

    @property
    def is_registered(self) -> bool:
        return self.status == RegistrationStatus.REGISTERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "google_email": self.google_email,
            "ad_user_principal_name": self.ad_user_principal_name,
            "status": int(self.status),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistrationRecord":
        return cls(
            id=int(data["id"]),
            google_email=str(data["google_email"]),
            ad_user_principal_name=data.get("ad_user_principal_name") or None,
            status=RegistrationStatus.parse(data.get("status", 0)),
            created_at=_parse_datetime(data.get("created_at")) or _utc_now(),
            updated_at=_parse_datetime(data.get("updated_at")),
        )

    def to_summary(self) -> Dict[str, Any]:
        """Shape returned to the browser extension."""

        return {
            "id": self.id,
            "googleEmail": self.google_email,
            "status": int(self.status),
        }


@dataclass(frozen=True)
class DirectoryGroup:
    """An Active Directory group."""

    distinguished_name: str
    name: str
    description: Optional[str] = None

    @classmethod
    def from_dn(cls, distinguished_name: str) -> "DirectoryGroup":
        return cls(distinguished_name=distinguished_name, name=group_name_from_dn(distinguished_name))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectoryGroup):
            return NotImplemented
        return self.distinguished_name.lower() == other.distinguished_name.lower()

    def __hash__(self) -> int:
        return hash(self.distinguished_name.lower())


@dataclass
class DirectoryAccount:
    """A user account as read from Active Directory."""

    user_principal_name: str
    sam_account_name: str
    display_name: str
    distinguished_name: str
    email: Optional[str] = None
    enabled: bool = True
    member_of: List[str] = field(default_factory=list)

    def is_member_of(self, group_dn: str) -> bool:
        lowered = group_dn.lower()
        return any(dn.lower() == lowered for dn in self.member_of)


@dataclass(frozen=True)
class AdminPrincipal:
    """The signed-in administrator, carried in the session cookie."""

    username: str
    display_name: str
    is_admin: bool = True

    def to_session(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "display_name": self.display_name,
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_session(cls, data: Optional[Dict[str, Any]]) -> Optional["AdminPrincipal"]:
        if not data or not data.get("username"):
            return None
        return cls(
            username=str(data["username"]),
            display_name=str(data.get("display_name") or data["username"]),
            is_admin=bool(data.get("is_admin")),
        )


@dataclass
class RegistrationDetail:
    """A registration record together with its live directory groups."""

    record: RegistrationRecord
    groups: List[DirectoryGroup] = field(default_factory=list)

    def is_member(self, group_dn: str) -> bool:
        lowered = group_dn.lower()
        return any(group.distinguished_name.lower() == lowered for group in self.groups)


__all__ = [
    "AdminPrincipal",
    "DirectoryAccount",
    "DirectoryGroup",
    "RegistrationDetail",
    "RegistrationRecord",
    "RegistrationStatus",
    "group_name_from_dn",
    "normalize_email",
]

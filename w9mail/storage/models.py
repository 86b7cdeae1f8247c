from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of user roles; raw strings are parsed at the store boundary."""

    ADMIN = "admin"
    DEV = "dev"
    USER = "user"

    @classmethod
    def parse(cls, value: object) -> Optional["Role"]:
        """Return the matching role, or None for anything unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class SenderKind(str, Enum):
    ACCOUNT = "account"
    ALIAS = "alias"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: Role = Role.USER
    must_change_password: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ApiToken:
    id: str
    user_id: str
    token_hash: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class PendingSignup:
    id: str
    email: str
    password_hash: str
    verification_token: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class Account:
    """Send-capable mailbox; ``password`` is its SMTP credential."""

    id: str
    email: str
    display_name: str
    password: str
    is_active: bool = True


@dataclass
class Alias:
    """Address routed through an Account's SMTP login."""

    id: str
    alias_email: str
    account_id: str
    display_name: Optional[str] = None
    is_active: bool = True


@dataclass
class DefaultSender:
    sender_type: SenderKind
    sender_id: str

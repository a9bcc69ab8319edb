from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    roles: List[str] = field(default_factory=lambda: ["Patient"])
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    refresh_token: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        roles: List[str],
        *,
        email_verified: bool = False,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            roles=list(roles),
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )


@dataclass
class PatientProfile:
    id: str
    account_id: str
    email: str
    first_name: str
    last_name: str
    created_at: datetime = field(default_factory=utcnow)


def normalize_email(email: str) -> str:
    """Canonical lookup key for an address: trimmed and lower-cased."""
    return email.strip().lower()

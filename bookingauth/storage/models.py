from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """Credential record: one row per registered email."""

    id: str
    email: str
    first_name: str
    last_name: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> "User":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            password_algo=password_algo,
            created_at=now,
            updated_at=now,
        )


@dataclass
class SessionRecord:
    """Value stored under a refresh session id in the session store."""

    session_id: str
    user_id: str
    email: str

    @classmethod
    def new(cls, user_id: str, email: str) -> "SessionRecord":
        return cls(session_id=str(uuid.uuid4()), user_id=user_id, email=email)

    def to_wire(self) -> dict[str, str]:
        return {"userID": self.user_id, "email": self.email}

    @classmethod
    def from_wire(cls, session_id: str, data: dict) -> Optional["SessionRecord"]:
        user_id = data.get("userID")
        email = data.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            return None
        return cls(session_id=session_id, user_id=user_id, email=email)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None


@dataclass
class AuthContext:
    user_id: str
    email: str

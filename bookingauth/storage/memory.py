from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from bookingauth.logging import get_logger
from bookingauth.storage.errors import ConstraintViolation
from bookingauth.storage.models import User


class MemoryStore:
    """In-memory credential store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while holding the lock
        self._data_lock = threading.RLock()

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                email,
                first_name,
                last_name,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.users[user.id] = user
            self._email_index[email] = user.id
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email)
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.updated_at = datetime.now(timezone.utc)

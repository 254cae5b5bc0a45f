from __future__ import annotations

import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookingauth.logging import get_logger, hash_email
from bookingauth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    ServerError,
)
from bookingauth.storage.errors import ConstraintViolation
from bookingauth.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str = PASSWORD_ALGO,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str = PASSWORD_ALGO
    ) -> None: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialVerifier:
    """Registration and password checks that do not leak which emails exist.

    Both the duplicate-email branch of :meth:`register` and the unknown-email
    branch of :meth:`verify_credentials` spend one argon2 computation, the same
    as the branches that touch a real hash.
    """

    def __init__(
        self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Computed once so the first unknown-email login is not measurably slower
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Check ``password`` against the user's stored hash."""
        if user.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", user_id=user.id, algo=user.password_algo
            )
            # Still burn the hash cost so the mismatch is not observable
            self._burn_dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    def _lookup(self, email: str) -> Optional[User]:
        try:
            return self.store.get_user_by_email(email)
        except Exception as exc:
            logger.error(
                "credential_lookup_failed",
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Credential store unavailable") from exc

    def register(
        self, email: str, first_name: str, last_name: str, password: str
    ) -> User:
        normalized = normalize_email(email)
        if self._lookup(normalized) is not None:
            # Equalize cost with the success path before rejecting
            self.hash_password(password)
            logger.info("registration_conflict", email_hash=hash_email(normalized))
            raise ConflictError("User with email already exists")

        password_hash = self.hash_password(password)
        try:
            user = self.store.create_user(
                normalized,
                first_name,
                last_name,
                password_hash=password_hash,
                password_algo=PASSWORD_ALGO,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            logger.info("registration_conflict", email_hash=hash_email(normalized))
            raise ConflictError("User with email already exists", detail=exc.detail)
        except Exception as exc:
            logger.error(
                "credential_create_failed",
                email_hash=hash_email(normalized),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to create user account") from exc
        logger.info("user_registered", user_id=user.id)
        return user

    def verify_credentials(self, email: str, password: str) -> User:
        """Return the user for a correct email/password pair.

        Raises:
            InvalidCredentialsError: for an unknown email and for a wrong
                password alike.
        """
        normalized = normalize_email(email)
        user = self._lookup(normalized)
        if user is None:
            self._burn_dummy_verify(password)
            logger.info("login_failed", email_hash=hash_email(normalized))
            raise InvalidCredentialsError("Invalid credentials")
        if not self.verify_password(user, password):
            logger.info("login_failed", email_hash=hash_email(normalized))
            raise InvalidCredentialsError("Invalid credentials")
        return user

    def set_password(self, user: User, new_password: str) -> None:
        password_hash = self.hash_password(new_password)
        try:
            self.store.update_password(user.id, password_hash, PASSWORD_ALGO)
        except Exception as exc:
            logger.error(
                "password_update_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to update password") from exc
        logger.info("password_updated", user_id=user.id)

from __future__ import annotations

import asyncio
from typing import Optional, Set

from bookingauth.config import Settings
from bookingauth.logging import get_logger, hash_email
from bookingauth.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from bookingauth.service.credentials import (
    CredentialStore,
    CredentialVerifier,
    normalize_email,
)
from bookingauth.service.email import Notifier
from bookingauth.service.errors import (
    AuthenticationError,
    InvalidOTPError,
    NotFoundError,
    ServerError,
)
from bookingauth.service.otp import OTPManager
from bookingauth.service.sessions import SessionRotator
from bookingauth.service.tokens import TokenCodec
from bookingauth.storage.models import AuthContext, TokenPair, User
from bookingauth.storage.redis_cache import RedisCache


class AuthService:
    """Registration, login, token refresh and password recovery.

    Every collaborator is passed in; the only state of its own is the set of
    in-flight reset-code deliveries. Failures are raised as ``ServiceError``
    subclasses.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: RedisCache,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        codec: Optional[TokenCodec] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)
        self.notifier = notifier
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        self.credentials = verifier or CredentialVerifier(store)
        self.sessions = SessionRotator(cache, self.codec, settings)
        self.otp = OTPManager(cache, settings)
        self._deliveries: Set[asyncio.Task] = set()

    async def register(self, request: RegisterRequest) -> User:
        return self.credentials.register(
            request.email, request.first_name, request.last_name, request.password
        )

    async def login(self, request: LoginRequest) -> TokenPair:
        user = self.credentials.verify_credentials(request.email, request.password)
        tokens = await self.sessions.start_session(user.id, user.email)
        self.logger.info("login_succeeded", user_id=user.id)
        return tokens

    async def logout(self, refresh_token: Optional[str]) -> None:
        await self.sessions.end_session(refresh_token)

    async def refresh_tokens(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError("Refresh token is missing")
        return await self.sessions.rotate(refresh_token)

    async def forgot_password(self, request: ForgotPasswordRequest) -> None:
        """Schedule a reset code when the email is registered.

        Unknown emails return silently so callers cannot enumerate accounts.
        Code storage and delivery run on a background task, so both branches
        return after the same single lookup.
        """
        email = normalize_email(request.email)
        try:
            user = self.store.get_user_by_email(email)
        except Exception as exc:
            self.logger.error(
                "password_reset_lookup_failed",
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Credential store unavailable") from exc
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        task = asyncio.create_task(self._deliver_reset_code(user))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver_reset_code(self, user: User) -> None:
        try:
            code = await self.otp.issue_otp(user.email)
        except ServerError as exc:
            self.logger.warning(
                "password_reset_code_not_stored", user_id=user.id, error=str(exc)
            )
            return
        if self.notifier is None:
            self.logger.warning("password_reset_notifier_missing", user_id=user.id)
            return
        # Run blocking SMTP in a thread to keep the event loop free
        try:
            delivered = await asyncio.to_thread(
                self.notifier.send_password_reset_otp, user.email, code
            )
        except Exception as exc:
            self.logger.error(
                "password_reset_delivery_error",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            # A fresh request overwrites the code
            self.logger.warning("password_reset_delivery_failed", user_id=user.id)
            return
        self.logger.info("password_reset_requested", email_hash=hash_email(user.email))

    async def drain_deliveries(self) -> None:
        """Wait for scheduled reset-code deliveries to finish."""
        pending = [task for task in self._deliveries if not task.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [task for task in self._deliveries if not task.done()]

    async def reset_password(self, request: ResetPasswordRequest) -> None:
        email = normalize_email(request.email)
        await self.otp.validate_otp(email, request.otp)
        try:
            user = self.store.get_user_by_email(email)
        except Exception as exc:
            self.logger.error(
                "password_reset_lookup_failed",
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Credential store unavailable") from exc
        if user is None:
            self.logger.warning("password_reset_user_missing", email_hash=hash_email(email))
            raise InvalidOTPError("Invalid or expired OTP")

        self.credentials.set_password(user, request.new_password)
        if self.settings.revoke_sessions_on_password_reset:
            try:
                await self.sessions.revoke_all(user.id)
            except ServerError as exc:
                self.logger.warning(
                    "revoke_sessions_failed", user_id=user.id, error=str(exc)
                )
        self.logger.info("password_reset_completed", user_id=user.id)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> str:
        if not authorization:
            raise AuthenticationError("Authorization header is missing")
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("Invalid authorization header format")
        return token

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer <access token>`` header.

        Refresh tokens are refused here because they carry no ``userID``.
        """
        token = self._extract_bearer(authorization)
        claims = self.codec.verify(token)
        user_id = claims.get("userID")
        email = claims.get("email")
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationError("Invalid token claims")
        if not isinstance(email, str):
            raise AuthenticationError("Invalid token claims")
        return AuthContext(user_id=user_id, email=email)

    async def get_user(self, user_id: str) -> User:
        try:
            user = self.store.get_user(user_id)
        except Exception as exc:
            self.logger.error(
                "user_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Credential store unavailable") from exc
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Callable, Mapping

from bookingauth.logging import get_logger
from bookingauth.service.errors import InvalidTokenError

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenCodec:
    """Signs and verifies compact HS256 JWTs.

    The signing secret, issuer and audience are process-wide configuration and
    are bound once at construction.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, claims: Mapping[str, Any], ttl: timedelta) -> str:
        """Return a signed token carrying ``claims`` plus iss/aud/iat/exp."""
        now = int(self._clock())
        payload = dict(claims)
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": now,
                "exp": now + int(ttl.total_seconds()),
            }
        )
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Decode ``token`` and return its claims.

        Raises:
            InvalidTokenError: on any structural, algorithm, signature, issuer,
                audience or expiry failure.
        """
        if not isinstance(token, str):
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token")

        # Reject anything but HS256 before touching the signature (alg confusion)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII signature segment
            signature_ok = False
        if not signature_ok:
            raise InvalidTokenError("Invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("Invalid token")

        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            raise InvalidTokenError("Invalid token")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError("Invalid token")
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise InvalidTokenError("Invalid token")
        return payload

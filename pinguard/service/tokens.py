from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from pinguard.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Token could not be accepted."""


class TokenInvalid(TokenError):
    """Malformed token, bad signature, wrong algorithm, issuer or audience."""


class TokenExpired(TokenError):
    """Signature is valid but ``exp`` has passed."""


class TokenSigner:
    """HS256 JWT encoder/decoder shared by access and biometric session tokens.

    Decoding checks the header algorithm before the signature to rule out
    algorithm confusion, compares signatures in constant time, then checks
    issuer, audience and expiry. Expiry is only reported once the signature
    is known to be good, so ``TokenExpired`` never leaks for forged tokens.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: float = 0.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock or time.time

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

    def encode(self, claims: dict[str, Any], *, ttl_seconds: float) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now),
            "exp": int(now + ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid("bad signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed payload")
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed payload")

        if payload.get("iss") != self.issuer:
            raise TokenInvalid("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalid("audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing expiry")
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpired("token expired")
        return payload

from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pinguard.logging import get_logger

logger = get_logger(__name__)

PIN_LENGTH = 4

COMMON_PINS = frozenset({str(d) * PIN_LENGTH for d in range(10)} | {"1234", "2580"})


def is_valid_pin_format(pin: object) -> bool:
    """Exactly four ASCII digits; full-width and other Unicode digits are rejected."""

    return (
        isinstance(pin, str)
        and len(pin) == PIN_LENGTH
        and pin.isascii()
        and pin.isdigit()
    )


def is_common_pin(pin: str) -> bool:
    return pin in COMMON_PINS


def generate_reset_code(digits: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(digits))


def hash_reset_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def reset_code_matches(code: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_reset_code(code), code_hash)


def mask_email(email: str) -> str:
    """Show the first three characters of the local part, e.g. ``abc***@example.com``."""

    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:3]}***@{domain}"


class PinHasher:
    """argon2id hashing for PINs, blocking; callers run it off the event loop."""

    algo = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, pin: str) -> str:
        return self._hasher.hash(pin)

    def verify(self, pin_hash: str, pin: str) -> bool:
        try:
            return self._hasher.verify(pin_hash, pin)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("pin_hash_unverifiable")
            return False

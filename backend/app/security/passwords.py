"""One-way password hashing backed by bcrypt."""

from __future__ import annotations

import logging
from typing import Optional

import bcrypt  # type: ignore[import]

from backend.app import config

logger = logging.getLogger("security.passwords")

# bcrypt only looks at the first 72 bytes of its input.
BCRYPT_MAX_PASSWORD_BYTES = 72

_DUMMY_PASSWORD = b"bookkeeping-dummy-password"


class PasswordHashingError(RuntimeError):
    """Raised when the hashing primitive fails; never recovered locally."""


class BcryptPasswordHasher:
    def __init__(self, rounds: Optional[int] = None) -> None:
        self._rounds = rounds if rounds is not None else config.BCRYPT_ROUNDS
        self._dummy_hash: Optional[bytes] = None

    @property
    def rounds(self) -> int:
        return self._rounds

    def hash(self, plaintext: str) -> str:
        encoded = plaintext.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
            raise PasswordHashingError(f"Password exceeds {BCRYPT_MAX_PASSWORD_BYTES} bytes")
        try:
            hashed = bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._rounds))
        except (TypeError, ValueError) as exc:
            raise PasswordHashingError("bcrypt failed to hash password") from exc
        return hashed.decode("ascii")

    def verify(self, plaintext: str, hashed: str) -> bool:
        encoded = plaintext.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except (TypeError, ValueError, UnicodeEncodeError):
            logger.debug("Stored password hash is not a valid bcrypt hash")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Spend one verification so unknown usernames cost as much as wrong passwords."""

        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(_DUMMY_PASSWORD, bcrypt.gensalt(rounds=self._rounds))
        encoded = plaintext.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
        bcrypt.checkpw(encoded, self._dummy_hash)
        return False


_password_hasher: Optional[BcryptPasswordHasher] = None


def get_password_hasher() -> BcryptPasswordHasher:
    global _password_hasher
    if _password_hasher is None:
        _password_hasher = BcryptPasswordHasher()
    return _password_hasher


def configure_password_hasher(hasher: Optional[BcryptPasswordHasher] = None) -> BcryptPasswordHasher:
    global _password_hasher
    _password_hasher = hasher or BcryptPasswordHasher()
    return _password_hasher


def hash_password(plaintext: str) -> str:
    return get_password_hasher().hash(plaintext)


def verify_password(plaintext: str, hashed: str) -> bool:
    return get_password_hasher().verify(plaintext, hashed)

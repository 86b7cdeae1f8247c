from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerifyMismatchError

from w9mail.logging import get_logger
from w9mail.service.errors import HashingError

logger = get_logger(__name__)


class CredentialHasher:
    """Argon2id password hashing.

    Encoded hashes carry their own parameters and salt, so ``verify`` works
    across parameter changes. Length policy belongs to the callers.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError("failed to hash password") from exc

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.warning("password_hash_malformed", error=str(exc))
            raise HashingError("stored password hash is malformed") from exc

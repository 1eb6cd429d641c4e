from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from passage.logging import get_logger
from passage.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 20
PASSWORD_SYMBOLS = "@$!%*?&#^()_+-=[]{}|;:,.<>/~"

# (rule name, pattern, message) checked in order; the first failure wins
_COMPOSITION_RULES = (
    ("uppercase", re.compile(r"[A-Z]"), "Password must contain an uppercase letter"),
    ("lowercase", re.compile(r"[a-z]"), "Password must contain a lowercase letter"),
    ("digit", re.compile(r"\d"), "Password must contain a digit"),
    (
        "symbol",
        re.compile("[" + re.escape(PASSWORD_SYMBOLS) + "]"),
        "Password must contain a symbol",
    ),
)


class PasswordHasher:
    """Argon2id password hashing with a strength policy applied before hashing.

    Default cost parameters land in the tens of milliseconds per hash on
    commodity hardware.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 2,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @staticmethod
    def ensure_strong(plaintext: str) -> None:
        """Raise ValidationError naming the first policy rule the password breaks."""
        if not isinstance(plaintext, str) or not (
            MIN_PASSWORD_LENGTH <= len(plaintext) <= MAX_PASSWORD_LENGTH
        ):
            raise ValidationError(
                f"Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters long",
                detail={"field": "password", "rule": "length"},
            )
        for rule, pattern, message in _COMPOSITION_RULES:
            if not pattern.search(plaintext):
                raise ValidationError(message, detail={"field": "password", "rule": rule})

    def hash(self, plaintext: str) -> str:
        self.ensure_strong(plaintext)
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash or not plaintext:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def rehash(self, plaintext: str) -> str:
        """Hash an already-verified password with current parameters, skipping the policy."""
        return self._hasher.hash(plaintext)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

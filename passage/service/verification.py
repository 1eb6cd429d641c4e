from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from passage.config import Settings
from passage.logging import get_logger
from passage.service.errors import (
    InvalidVerificationCodeError,
    ValidationError,
    VerificationAlreadyUsedError,
    VerificationAttemptsExceededError,
    VerificationExpiredError,
    VerificationNotFoundError,
)
from passage.service.store import AuthStore
from passage.service.tokens import hash_secret, secrets_match
from passage.storage.models import (
    CODE_KINDS,
    KIND_EMAIL,
    VerificationCode,
    new_id,
)

logger = get_logger(__name__)

CONTEXT_REGISTER = "register"
CONTEXT_RESEND = "resend"
CONTEXT_LOGIN = "login"
CONTEXT_PASSWORD_RESET = "password-reset"
CONTEXT_PHONE_OTP = "phone_otp_auth"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_phone(phone: str) -> str:
    return (phone or "").strip()


def normalize_target(kind: str, target: str) -> str:
    if kind == KIND_EMAIL:
        return normalize_email(target)
    return normalize_phone(target)


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime
    record: VerificationCode


class VerificationCodeService:
    """Numeric one-time codes for email and phone.

    Records form an append-only log per (target, kind[, context]); the newest
    record is the only one ``verify`` looks at, so issuing a new code
    supersedes earlier ones.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    def _ttl(self, kind: str) -> timedelta:
        if kind == KIND_EMAIL:
            return timedelta(minutes=self.settings.email_code_ttl_minutes)
        return timedelta(minutes=self.settings.phone_code_ttl_minutes)

    def _generate_code(self) -> str:
        digits = self.settings.verification_code_digits
        # Leading digit is never zero so the code keeps its length in any UI
        low = 10 ** (digits - 1)
        return str(low + secrets.randbelow(9 * low))

    @staticmethod
    def _require_kind(kind: str) -> None:
        if kind not in CODE_KINDS:
            raise ValidationError(
                f"Unsupported verification kind: {kind}", detail={"field": "kind"}
            )

    def issue(
        self,
        kind: str,
        target: str,
        account_id: Optional[str] = None,
        context: str = CONTEXT_REGISTER,
    ) -> IssuedCode:
        self._require_kind(kind)
        normalized = normalize_target(kind, target)
        if not normalized:
            raise ValidationError("Verification target is required", detail={"field": "target"})
        code = self._generate_code()
        now = self._now()
        record = self.store.add_verification_code(
            VerificationCode(
                id=new_id(),
                target=normalized,
                kind=kind,
                code_hash=hash_secret(code),
                context=context,
                expires_at=now + self._ttl(kind),
                account_id=account_id,
                created_at=now,
            )
        )
        self.logger.info(
            "verification_code_issued",
            kind=kind,
            context=context,
            account_id=account_id,
            record_id=record.id,
        )
        return IssuedCode(code=code, expires_at=record.expires_at, record=record)

    def verify(
        self,
        kind: str,
        target: str,
        code: str,
        context: Optional[str] = None,
    ) -> VerificationCode:
        self._require_kind(kind)
        normalized = normalize_target(kind, target)
        record = self.store.latest_verification_code(normalized, kind, context)
        if not record:
            raise VerificationNotFoundError("Verification code not found")
        if record.verified_at is not None:
            raise VerificationAlreadyUsedError("Verification code already used")
        now = self._now()
        if record.expires_at < now:
            raise VerificationExpiredError("Verification code expired")
        max_attempts = self.settings.verification_max_attempts
        if record.attempts >= max_attempts:
            raise VerificationAttemptsExceededError("Maximum verification attempts reached")

        if not secrets_match(hash_secret((code or "").strip()), record.code_hash):
            attempts = self.store.increment_verification_attempts(record.id, max_attempts)
            self.logger.warning(
                "verification_code_mismatch",
                kind=kind,
                record_id=record.id,
                attempts=attempts,
            )
            if attempts is None:
                # Another request used up the budget or consumed the record meanwhile
                raise VerificationAttemptsExceededError("Maximum verification attempts reached")
            raise InvalidVerificationCodeError("Invalid verification code")

        if not self.store.mark_verification_code_used(record.id, now):
            raise VerificationAlreadyUsedError("Verification code already used")
        record.verified_at = now
        self.logger.info("verification_code_verified", kind=kind, record_id=record.id)
        return record

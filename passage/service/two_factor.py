from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from passage.config import Settings
from passage.logging import get_logger
from passage.service.errors import BadRequestError, UnauthorizedError
from passage.service.store import AuthStore
from passage.service.tokens import hash_secret
from passage.storage.models import Account

logger = get_logger(__name__)

TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 5

_DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().lower()


class TwoFactorAuthenticator:
    """TOTP secret lifecycle plus single-use backup codes.

    States run Unset -> Pending (secret stored, disabled) -> Enabled -> Disabled.
    Backup codes are only ever persisted as SHA-256 digests.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------
    @property
    def _interval(self) -> int:
        return self.settings.totp_interval_seconds

    def generate_totp(self, secret: str, timestamp: Optional[float] = None) -> str:
        """Return the RFC 6238 code for ``secret`` at ``timestamp`` (default: now)."""
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            self.logger.warning("totp_secret_invalid")
            return ""
        moment = self._clock() if timestamp is None else timestamp
        counter = int(moment // self._interval).to_bytes(8, "big")
        digestmod = _DIGESTS[self.settings.totp_algorithm.value]
        digest = hmac.new(key, counter, digestmod).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_totp(self, secret: str, code: str) -> bool:
        """Check ``code`` against the current step and one step either side."""
        candidate = (code or "").strip()
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        now = self._clock()
        matched = False
        for offset in (-1, 0, 1):
            generated = self.generate_totp(secret, now + offset * self._interval)
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def _provisioning_uri(self, secret: str, label: str) -> str:
        issuer = self.settings.totp_issuer
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": self.settings.totp_algorithm.value,
                "digits": TOTP_DIGITS,
                "period": self._interval,
            }
        )
        return f"otpauth://totp/{quote(issuer)}:{quote(label)}?{query}"

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def is_enabled(self, account_id: str) -> bool:
        credential = self.store.get_two_factor(account_id)
        return bool(credential and credential.enabled)

    def generate_secret(self, account: Account) -> TwoFactorSetup:
        """Create or overwrite the account's secret; 2FA stays off until proven."""
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        self.store.save_two_factor_secret(account.id, secret)
        self.logger.info("two_factor_secret_generated", account_id=account.id)
        label = account.nickname or account.id
        return TwoFactorSetup(secret=secret, otpauth_url=self._provisioning_uri(secret, label))

    def _generate_backup_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.settings.backup_code_count:
            code = secrets.token_hex(BACKUP_CODE_BYTES)
            if code not in codes:
                codes.append(code)
        return codes

    def enable(self, account_id: str, code: str) -> List[str]:
        """Turn 2FA on after proof of possession; returns plaintext backup codes once."""
        credential = self.store.get_two_factor(account_id)
        if not credential or not credential.secret:
            raise BadRequestError("Two-factor secret not generated")
        if not self.verify_totp(credential.secret, code):
            self.logger.warning("two_factor_enable_invalid_code", account_id=account_id)
            raise BadRequestError("Invalid two-factor code")
        backup_codes = self._generate_backup_codes()
        self.store.enable_two_factor(
            account_id, [hash_secret(c) for c in backup_codes], self._now()
        )
        self.logger.info("two_factor_enabled", account_id=account_id)
        return backup_codes

    def disable(self, account_id: str, code: str) -> None:
        credential = self.store.get_two_factor(account_id)
        if not credential or not credential.enabled:
            raise BadRequestError("Two-factor authentication is not enabled")
        if not self._check_code(account_id, credential.secret, code):
            self.logger.warning("two_factor_disable_invalid_code", account_id=account_id)
            raise BadRequestError("Invalid two-factor code")
        self.store.disable_two_factor(account_id)
        self.logger.info("two_factor_disabled", account_id=account_id)

    def verify_login_code(self, account_id: str, code: str) -> None:
        credential = self.store.get_two_factor(account_id)
        if not credential or not credential.enabled:
            raise UnauthorizedError(
                "Two-factor authentication is not enabled", reason="two_factor_not_enabled"
            )
        if not self._check_code(account_id, credential.secret, code):
            self.logger.warning("two_factor_login_invalid_code", account_id=account_id)
            raise UnauthorizedError("Invalid two-factor code", reason="invalid_code")

    def _check_code(self, account_id: str, secret: str, code: str) -> bool:
        """TOTP first, then burn a matching backup code."""
        if self.verify_totp(secret, code):
            return True
        normalized = normalize_backup_code(code)
        if not normalized:
            return False
        if self.store.consume_backup_code(account_id, hash_secret(normalized)):
            self.logger.info("two_factor_backup_code_consumed", account_id=account_id)
            return True
        return False

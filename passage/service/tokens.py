from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from passage.config import Settings
from passage.logging import get_logger
from passage.service.errors import ForbiddenError, UnauthorizedError
from passage.service.store import AuthStore
from passage.storage.models import Account

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
TWO_FACTOR_PURPOSE = "2fa"
# 48 random bytes -> 384 bits of entropy, hex encoded
REFRESH_TOKEN_BYTES = 48


def hash_secret(value: str) -> str:
    """SHA-256 hex digest used for refresh tokens, backup codes and verification codes."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def secrets_match(candidate_hash: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(candidate_hash, stored_hash)


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


@dataclass
class IssuedToken:
    token: str
    jti: str
    expires_in: int
    expires_at: datetime


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
        }


class TokenIssuer:
    """Signs access and 2FA-pending tokens and manages the refresh token chain.

    Access and pending tokens are compact HS256 JWTs. Refresh tokens are opaque
    random strings; only their SHA-256 digest is stored, and rotation is a
    single store operation so a presented token can win at most once.
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

    # ------------------------------------------------------------------
    # JWT encoding
    # ------------------------------------------------------------------
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-signed, unexpired token from our issuer."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                self.logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            self.logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    # ------------------------------------------------------------------
    # access tokens
    # ------------------------------------------------------------------
    def issue_access_token(self, account_id: str, role: str) -> IssuedToken:
        now = self._now()
        ttl = self.settings.access_token_ttl_seconds
        expires_at = now + timedelta(seconds=ttl)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": account_id,
            "role": role,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload), jti=jti, expires_in=ttl, expires_at=expires_at
        )

    def verify_access_token(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if (
            not payload
            or payload.get("typ") != ACCESS_TOKEN_TYPE
            or "purpose" in payload
            or not payload.get("sub")
            or not payload.get("jti")
        ):
            raise UnauthorizedError("Invalid token", reason="invalid_token")
        if self._is_denylisted(payload["jti"]):
            raise UnauthorizedError("Invalid token", reason="invalid_token")
        return payload

    def _is_denylisted(self, jti: str) -> bool:
        try:
            return self.store.is_access_token_denylisted(jti, self._now())
        except Exception as exc:
            # Treat the token as revoked while the denylist is unreachable
            self.logger.warning(
                "access_token_denylist_check_failed_defaulting_to_revoked",
                jti=jti,
                error=str(exc),
            )
            return True

    # ------------------------------------------------------------------
    # pending 2FA tokens
    # ------------------------------------------------------------------
    def issue_pending_two_factor_token(self, account_id: str) -> IssuedToken:
        now = self._now()
        ttl = self.settings.pending_two_factor_ttl_seconds
        expires_at = now + timedelta(seconds=ttl)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": account_id,
            "purpose": TWO_FACTOR_PURPOSE,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload), jti=jti, expires_in=ttl, expires_at=expires_at
        )

    def verify_pending_two_factor_token(self, token: str) -> str:
        payload = self._decode_jwt(token)
        if (
            not payload
            or payload.get("purpose") != TWO_FACTOR_PURPOSE
            or not payload.get("sub")
        ):
            raise UnauthorizedError("Invalid 2FA token", reason="invalid_or_expired")
        return str(payload["sub"])

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    def _refresh_expiry(self) -> datetime:
        return self._now() + timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_refresh_token(self, account_id: str, client_ip: Optional[str] = None) -> str:
        raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        self.store.create_refresh_token(
            account_id, hash_secret(raw), self._refresh_expiry(), created_by_ip=client_ip
        )
        return raw

    def rotate_refresh_token(
        self, presented: str, client_ip: Optional[str] = None
    ) -> Tuple[str, str]:
        """Exchange a live refresh token for its successor.

        Returns ``(account_id, new_raw_token)``.
        """
        if not presented:
            raise UnauthorizedError("Invalid refresh token", reason="invalid_refresh_token")
        presented_hash = hash_secret(presented)
        successor_raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        rotated = self.store.rotate_refresh_token(
            presented_hash,
            hash_secret(successor_raw),
            self._refresh_expiry(),
            now=self._now(),
            created_by_ip=client_ip,
        )
        if rotated is None:
            self._log_refresh_reuse(presented_hash)
            raise UnauthorizedError("Invalid refresh token", reason="invalid_refresh_token")
        previous, successor = rotated
        self.logger.info(
            "refresh_token_rotated",
            account_id=previous.account_id,
            previous_id=previous.id,
            successor_id=successor.id,
        )
        return previous.account_id, successor_raw

    def _log_refresh_reuse(self, presented_hash: str) -> None:
        existing = self.store.get_refresh_token(presented_hash)
        if existing and existing.replaced_by_id:
            self.logger.warning(
                "refresh_token_reuse_detected",
                account_id=existing.account_id,
                refresh_id=existing.id,
                replaced_by_id=existing.replaced_by_id,
            )

    def revoke_refresh_token(
        self, presented: str, expected_account_id: Optional[str] = None
    ) -> None:
        existing = self.store.get_refresh_token(hash_secret(presented or ""))
        now = self._now()
        if not existing or not existing.is_active(now):
            raise UnauthorizedError("Invalid refresh token", reason="invalid_refresh_token")
        if expected_account_id and existing.account_id != expected_account_id:
            self.logger.warning(
                "refresh_token_owner_mismatch",
                account_id=expected_account_id,
                refresh_id=existing.id,
            )
            raise ForbiddenError("Invalid refresh token owner")
        if not self.store.revoke_refresh_token(existing.id, now):
            raise UnauthorizedError("Invalid refresh token", reason="invalid_refresh_token")

    def revoke_all_refresh_tokens(self, account_id: str) -> int:
        revoked = self.store.revoke_account_refresh_tokens(account_id, self._now())
        if revoked:
            self.logger.info("refresh_tokens_revoked", account_id=account_id, count=revoked)
        return revoked

    # ------------------------------------------------------------------
    # denylist
    # ------------------------------------------------------------------
    def denylist_access_token(
        self, raw_token: Optional[str], account_id: Optional[str], reason: Optional[str] = None
    ) -> bool:
        """Record an access token's jti until its natural expiry.

        Returns False without writing when the token is missing or does not
        verify; there is nothing left to revoke in that case.
        """
        if not raw_token:
            return False
        payload = self._decode_jwt(raw_token)
        if not payload or not payload.get("jti"):
            return False
        exp = payload.get("exp")
        if isinstance(exp, (int, float)):
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        else:
            expires_at = self._now() + timedelta(seconds=self.settings.access_token_ttl_seconds)
        self.store.upsert_denylist_entry(
            payload["jti"], account_id or payload.get("sub"), expires_at, reason
        )
        return True

    def purge_expired_denylist(self) -> int:
        return self.store.purge_expired_denylist(self._now())

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, account: Account, client_ip: Optional[str] = None) -> SessionTokens:
        access = self.issue_access_token(account.id, account.role)
        refresh = self.issue_refresh_token(account.id, client_ip)
        return SessionTokens(
            access_token=access.token,
            refresh_token=refresh,
            expires_in=access.expires_in,
            expires_at=access.expires_at,
        )

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional

PROVIDER_PASSWORD = "password"
PROVIDER_PHONE = "phone"
PROVIDER_GOOGLE = "google"
PROVIDER_FACEBOOK = "facebook"
PROVIDER_ANONYMOUS = "anonymous"

PROVIDERS = frozenset(
    {
        PROVIDER_PASSWORD,
        PROVIDER_PHONE,
        PROVIDER_GOOGLE,
        PROVIDER_FACEBOOK,
        PROVIDER_ANONYMOUS,
    }
)
# Providers whose access tokens must be resolved by an identity verifier
VERIFIED_PROVIDERS = frozenset({PROVIDER_GOOGLE, PROVIDER_FACEBOOK})

KIND_EMAIL = "email"
KIND_PHONE = "phone"
CODE_KINDS = frozenset({KIND_EMAIL, KIND_PHONE})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    id: str
    role: str = "user"
    nickname: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Associate:
    id: str
    account_id: str
    provider: str
    provider_ref_id: str
    email: Optional[str] = None
    email_verified: bool = False
    phone: Optional[str] = None
    phone_verified: bool = False
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def unverified_contact(self) -> Optional[str]:
        """Return the kind of the first present contact that is not verified."""
        if self.email and not self.email_verified:
            return KIND_EMAIL
        if self.phone and not self.phone_verified:
            return KIND_PHONE
        return None


@dataclass
class RefreshToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by_id: Optional[str] = None
    created_by_ip: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class TwoFactorCredential:
    id: str
    account_id: str
    secret: str
    enabled: bool = False
    verified_at: Optional[datetime] = None
    backup_code_hashes: FrozenSet[str] = field(default_factory=frozenset)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class VerificationCode:
    id: str
    target: str
    kind: str
    code_hash: str
    context: str
    expires_at: datetime
    account_id: Optional[str] = None
    attempts: int = 0
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class DenylistEntry:
    jti: str
    account_id: Optional[str]
    expires_at: datetime
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

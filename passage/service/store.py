from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Tuple

from passage.storage.models import (
    Account,
    Associate,
    RefreshToken,
    TwoFactorCredential,
    VerificationCode,
)


class AuthStore(Protocol):
    """Persistence operations the authentication services rely on.

    Every method is a single atomic unit; compound writes (rotation, attempt
    increments, backup code consumption, account+associate creation) must
    not be observable half-applied.
    """

    # accounts / associates
    def create_account(
        self, *, role: str = "user", nickname: Optional[str] = None
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def create_account_with_associate(
        self,
        *,
        provider: str,
        provider_ref_id: str,
        role: str = "user",
        nickname: Optional[str] = None,
        email: Optional[str] = None,
        email_verified: bool = False,
        phone: Optional[str] = None,
        phone_verified: bool = False,
        password_hash: Optional[str] = None,
    ) -> Tuple[Account, Associate]: ...

    def create_associate(
        self,
        account_id: str,
        provider: str,
        provider_ref_id: str,
        *,
        email: Optional[str] = None,
        email_verified: bool = False,
        phone: Optional[str] = None,
        phone_verified: bool = False,
        password_hash: Optional[str] = None,
    ) -> Associate: ...

    def get_associate(self, provider: str, provider_ref_id: str) -> Optional[Associate]: ...

    def find_password_associate(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[Associate]: ...

    def find_associate_by_email(self, email: str) -> Optional[Associate]: ...

    def find_associate_by_phone(self, phone: str) -> Optional[Associate]: ...

    def list_associates(self, account_id: str) -> List[Associate]: ...

    def update_associate(self, associate_id: str, **fields) -> Optional[Associate]: ...

    def mark_contact_verified(
        self, kind: str, target: str, account_id: str
    ) -> List[Associate]: ...

    # refresh tokens
    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        token_hash: str,
        successor_hash: str,
        successor_expires_at: datetime,
        *,
        now: datetime,
        created_by_ip: Optional[str] = None,
    ) -> Optional[Tuple[RefreshToken, RefreshToken]]: ...

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool: ...

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int: ...

    # two-factor
    def get_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]: ...

    def save_two_factor_secret(self, account_id: str, secret: str) -> TwoFactorCredential: ...

    def enable_two_factor(
        self, account_id: str, backup_code_hashes: Iterable[str], verified_at: datetime
    ) -> Optional[TwoFactorCredential]: ...

    def disable_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    # verification codes
    def add_verification_code(self, record: VerificationCode) -> VerificationCode: ...

    def latest_verification_code(
        self, target: str, kind: str, context: Optional[str] = None
    ) -> Optional[VerificationCode]: ...

    def increment_verification_attempts(
        self, code_id: str, max_attempts: int
    ) -> Optional[int]: ...

    def mark_verification_code_used(self, code_id: str, now: datetime) -> bool: ...

    # access token denylist
    def upsert_denylist_entry(
        self,
        jti: str,
        account_id: Optional[str],
        expires_at: datetime,
        reason: Optional[str] = None,
    ) -> None: ...

    def is_access_token_denylisted(self, jti: str, now: datetime) -> bool: ...

    def purge_expired_denylist(self, now: datetime) -> int: ...

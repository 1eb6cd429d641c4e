from __future__ import annotations

import hmac
import json
import threading
import time
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from passage.logging import get_logger
from passage.storage.common import SecretCipher, filter_associate_updates, normalize_ip
from passage.storage.errors import ASSOCIATE_PROVIDER_REF, ConstraintViolation
from passage.storage.models import (
    KIND_EMAIL,
    KIND_PHONE,
    PROVIDER_PASSWORD,
    Account,
    Associate,
    DenylistEntry,
    RefreshToken,
    TwoFactorCredential,
    VerificationCode,
    new_id,
)


class MemoryStore:
    """In-memory credential store with optional JSON snapshots.

    A single re-entrant lock serialises every operation, which makes each
    public method atomic with respect to the others.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.associates: Dict[str, Associate] = {}
        # (provider, provider_ref_id) -> associate id
        self._associate_index: Dict[Tuple[str, str], str] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # token_hash -> refresh token id
        self._refresh_index: Dict[str, str] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}
        self.verification_codes: List[VerificationCode] = []
        self.denylist: Dict[str, DenylistEntry] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # accounts / associates
    # ------------------------------------------------------------------
    def create_account(
        self, *, role: str = "user", nickname: Optional[str] = None
    ) -> Account:
        with self._data_lock:
            account = Account(id=new_id(), role=role, nickname=nickname)
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

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
    ) -> Tuple[Account, Associate]:
        with self._data_lock:
            self._ensure_binding_free(provider, provider_ref_id)
            account = Account(id=new_id(), role=role, nickname=nickname)
            self.accounts[account.id] = account
            associate = self._insert_associate(
                account.id,
                provider,
                provider_ref_id,
                email=email,
                email_verified=email_verified,
                phone=phone,
                phone_verified=phone_verified,
                password_hash=password_hash,
            )
            self._persist_state()
            return replace(account), replace(associate)

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
    ) -> Associate:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for associate", {"account_id": account_id}
                )
            self._ensure_binding_free(provider, provider_ref_id)
            associate = self._insert_associate(
                account_id,
                provider,
                provider_ref_id,
                email=email,
                email_verified=email_verified,
                phone=phone,
                phone_verified=phone_verified,
                password_hash=password_hash,
            )
            self._persist_state()
            return replace(associate)

    def _ensure_binding_free(self, provider: str, provider_ref_id: str) -> None:
        if (provider, provider_ref_id) in self._associate_index:
            raise ConstraintViolation(
                "provider binding already exists",
                {"provider": provider, "provider_ref_id": provider_ref_id},
                constraint=ASSOCIATE_PROVIDER_REF,
            )

    def _insert_associate(self, account_id: str, provider: str, provider_ref_id: str, **attrs) -> Associate:
        associate = Associate(
            id=new_id(),
            account_id=account_id,
            provider=provider,
            provider_ref_id=provider_ref_id,
            **attrs,
        )
        self.associates[associate.id] = associate
        self._associate_index[(provider, provider_ref_id)] = associate.id
        return associate

    def get_associate(self, provider: str, provider_ref_id: str) -> Optional[Associate]:
        with self._data_lock:
            associate_id = self._associate_index.get((provider, provider_ref_id))
            if not associate_id:
                return None
            return replace(self.associates[associate_id])

    def _oldest(self, predicate: Callable[[Associate], bool]) -> Optional[Associate]:
        matches = [a for a in self.associates.values() if predicate(a)]
        if not matches:
            return None
        return replace(min(matches, key=lambda a: a.created_at))

    def find_password_associate(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[Associate]:
        if not email and not phone:
            return None
        with self._data_lock:
            return self._oldest(
                lambda a: a.provider == PROVIDER_PASSWORD
                and (
                    (email is not None and a.email == email)
                    or (phone is not None and a.phone == phone)
                )
            )

    def find_associate_by_email(self, email: str) -> Optional[Associate]:
        with self._data_lock:
            return self._oldest(lambda a: a.email == email)

    def find_associate_by_phone(self, phone: str) -> Optional[Associate]:
        with self._data_lock:
            return self._oldest(lambda a: a.phone == phone)

    def list_associates(self, account_id: str) -> List[Associate]:
        with self._data_lock:
            results = [a for a in self.associates.values() if a.account_id == account_id]
            return [replace(a) for a in sorted(results, key=lambda a: a.created_at)]

    def update_associate(self, associate_id: str, **fields) -> Optional[Associate]:
        updates = filter_associate_updates(fields)
        with self._data_lock:
            associate = self.associates.get(associate_id)
            if not associate:
                return None
            for name, value in updates.items():
                setattr(associate, name, value)
            self._persist_state()
            return replace(associate)

    def mark_contact_verified(
        self, kind: str, target: str, account_id: str
    ) -> List[Associate]:
        with self._data_lock:
            updated: List[Associate] = []
            for associate in self.associates.values():
                if associate.account_id != account_id:
                    continue
                if kind == KIND_EMAIL and associate.email == target:
                    associate.email_verified = True
                    updated.append(replace(associate))
                elif kind == KIND_PHONE and associate.phone == target:
                    associate.phone_verified = True
                    updated.append(replace(associate))
            if updated:
                self._persist_state()
            return updated

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if token_hash in self._refresh_index:
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            token = self._insert_refresh_token(account_id, token_hash, expires_at, created_by_ip)
            self._persist_state()
            return replace(token)

    def _insert_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        created_by_ip: Optional[str],
    ) -> RefreshToken:
        token = RefreshToken(
            id=new_id(),
            account_id=account_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_by_ip=normalize_ip(created_by_ip),
        )
        self.refresh_tokens[token.id] = token
        self._refresh_index[token_hash] = token.id
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_index.get(token_hash)
            if not token_id:
                return None
            return replace(self.refresh_tokens[token_id])

    def rotate_refresh_token(
        self,
        token_hash: str,
        successor_hash: str,
        successor_expires_at: datetime,
        *,
        now: datetime,
        created_by_ip: Optional[str] = None,
    ) -> Optional[Tuple[RefreshToken, RefreshToken]]:
        with self._data_lock:
            token_id = self._refresh_index.get(token_hash)
            current = self.refresh_tokens.get(token_id) if token_id else None
            if not current or not current.is_active(now):
                return None
            successor = self._insert_refresh_token(
                current.account_id, successor_hash, successor_expires_at, created_by_ip
            )
            current.revoked_at = now
            current.replaced_by_id = successor.id
            self._persist_state()
            return replace(current), replace(successor)

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = now
            self._persist_state()
            return True

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.account_id == account_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # ------------------------------------------------------------------
    # two-factor
    # ------------------------------------------------------------------
    def _decrypted(self, credential: TwoFactorCredential) -> TwoFactorCredential:
        return replace(credential, secret=self._cipher.decrypt(credential.secret))

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            credential = self.two_factor.get(account_id)
            return self._decrypted(credential) if credential else None

    def save_two_factor_secret(self, account_id: str, secret: str) -> TwoFactorCredential:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for two-factor", {"account_id": account_id}
                )
            existing = self.two_factor.get(account_id)
            credential = TwoFactorCredential(
                id=existing.id if existing else new_id(),
                account_id=account_id,
                secret=self._cipher.encrypt(secret),
            )
            self.two_factor[account_id] = credential
            self._persist_state()
            return self._decrypted(credential)

    def enable_two_factor(
        self, account_id: str, backup_code_hashes: Iterable[str], verified_at: datetime
    ) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            credential = self.two_factor.get(account_id)
            if not credential:
                return None
            credential.enabled = True
            credential.verified_at = verified_at
            credential.backup_code_hashes = frozenset(backup_code_hashes)
            self._persist_state()
            return self._decrypted(credential)

    def disable_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            credential = self.two_factor.get(account_id)
            if not credential:
                return None
            credential.enabled = False
            credential.backup_code_hashes = frozenset()
            self._persist_state()
            return self._decrypted(credential)

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            credential = self.two_factor.get(account_id)
            if not credential or not credential.enabled:
                return False
            matched = None
            for stored in credential.backup_code_hashes:
                if hmac.compare_digest(stored, code_hash):
                    matched = stored
            if matched is None:
                return False
            credential.backup_code_hashes = credential.backup_code_hashes - {matched}
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # verification codes
    # ------------------------------------------------------------------
    def add_verification_code(self, record: VerificationCode) -> VerificationCode:
        with self._data_lock:
            stored = replace(record)
            self.verification_codes.append(stored)
            self._persist_state()
            return replace(stored)

    def latest_verification_code(
        self, target: str, kind: str, context: Optional[str] = None
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            # Append order doubles as creation order; scan from the newest
            for record in reversed(self.verification_codes):
                if record.target != target or record.kind != kind:
                    continue
                if context is not None and record.context != context:
                    continue
                return replace(record)
            return None

    def _verification_code(self, code_id: str) -> Optional[VerificationCode]:
        return next((r for r in self.verification_codes if r.id == code_id), None)

    def increment_verification_attempts(
        self, code_id: str, max_attempts: int
    ) -> Optional[int]:
        with self._data_lock:
            record = self._verification_code(code_id)
            if not record or record.verified_at is not None:
                return None
            if record.attempts >= max_attempts:
                return None
            record.attempts += 1
            self._persist_state()
            return record.attempts

    def mark_verification_code_used(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            record = self._verification_code(code_id)
            if not record or record.verified_at is not None:
                return False
            record.verified_at = now
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # access token denylist
    # ------------------------------------------------------------------
    def upsert_denylist_entry(
        self,
        jti: str,
        account_id: Optional[str],
        expires_at: datetime,
        reason: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            self.denylist[jti] = DenylistEntry(
                jti=jti, account_id=account_id, expires_at=expires_at, reason=reason
            )
            self._persist_state()

    def is_access_token_denylisted(self, jti: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.denylist.get(jti)
            return bool(entry and entry.expires_at > now)

    def purge_expired_denylist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [jti for jti, entry in self.denylist.items() if entry.expires_at <= now]
            for jti in expired:
                self.denylist.pop(jti, None)
            if expired:
                self._persist_state()
            return len(expired)

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, (set, frozenset)):
                data[key] = sorted(value)
        return data

    @staticmethod
    def _deserialize(cls: Type, raw: dict) -> Any:
        kwargs = {}
        for f in fields(cls):
            if f.name not in raw:
                continue
            value = raw[f.name]
            if f.name.endswith("_at") and isinstance(value, str):
                value = datetime.fromisoformat(value)
            elif f.name == "backup_code_hashes":
                value = frozenset(value or [])
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "associates": [self._serialize(a) for a in self.associates.values()],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "two_factor": [self._serialize(c) for c in self.two_factor.values()],
            "verification_codes": [self._serialize(r) for r in self.verification_codes],
            "denylist": [self._serialize(e) for e in self.denylist.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize(Account, a) for a in data.get("accounts", [])
        }
        self.associates = {
            a["id"]: self._deserialize(Associate, a) for a in data.get("associates", [])
        }
        self._associate_index = {
            (a.provider, a.provider_ref_id): a.id for a in self.associates.values()
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize(RefreshToken, t)
            for t in data.get("refresh_tokens", [])
        }
        self._refresh_index = {t.token_hash: t.id for t in self.refresh_tokens.values()}
        self.two_factor = {
            c["account_id"]: self._deserialize(TwoFactorCredential, c)
            for c in data.get("two_factor", [])
        }
        self.verification_codes = [
            self._deserialize(VerificationCode, r)
            for r in data.get("verification_codes", [])
        ]
        self.verification_codes.sort(key=lambda r: r.created_at)
        self.denylist = {
            e["jti"]: self._deserialize(DenylistEntry, e) for e in data.get("denylist", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True


class MemoryCounterStore:
    """Process-local counter store with per-key expiry.

    Exposes the same awaitable get/set/increment/delete surface as
    ``RedisCounterStore`` so limiters can run without a live cache.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at or None)
        self._values: Dict[str, Tuple[int, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[int, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl_seconds if ttl_seconds else None
            self._values[key] = (int(value), expires_at)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Increment a counter; the TTL starts with the first increment."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self._clock() + ttl_seconds if ttl_seconds else None
                value = 1
            else:
                value = entry[0] + 1
                expires_at = entry[1]
            self._values[key] = (value, expires_at)
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

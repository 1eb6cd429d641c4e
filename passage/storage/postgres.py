from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from passage.logging import get_logger
from passage.storage.common import SecretCipher, filter_associate_updates, normalize_ip
from passage.storage.errors import (
    ASSOCIATE_PROVIDER_REF,
    TWO_FACTOR_ACCOUNT,
    ConstraintViolation,
)
from passage.storage.models import (
    KIND_EMAIL,
    KIND_PHONE,
    PROVIDER_PASSWORD,
    Account,
    Associate,
    RefreshToken,
    TwoFactorCredential,
    VerificationCode,
    new_id,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "account",
    "associate",
    "refresh_token",
    "two_factor_credential",
    "verification_code",
    "access_token_denylist",
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _account_from_row(row: dict) -> Account:
    return Account(
        id=str(row["id"]),
        role=row.get("role") or "user",
        nickname=row.get("nickname"),
        created_at=row["created_at"],
    )


def _associate_from_row(row: dict) -> Associate:
    return Associate(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        provider=row["provider"],
        provider_ref_id=row["provider_ref_id"],
        email=row.get("email"),
        email_verified=bool(row.get("email_verified")),
        phone=row.get("phone"),
        phone_verified=bool(row.get("phone_verified")),
        password_hash=row.get("password_hash"),
        created_at=row["created_at"],
    )


def _refresh_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
        replaced_by_id=_str_or_none(row.get("replaced_by_id")),
        created_by_ip=_str_or_none(row.get("created_by_ip")),
    )


def _verification_from_row(row: dict) -> VerificationCode:
    return VerificationCode(
        id=str(row["id"]),
        target=row["target"],
        kind=row["kind"],
        code_hash=row["code_hash"],
        context=row["context"],
        expires_at=row["expires_at"],
        account_id=_str_or_none(row.get("account_id")),
        attempts=int(row.get("attempts") or 0),
        verified_at=row.get("verified_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Compound writes run inside ``conn.transaction()``; state transitions that
    must happen at most once (rotation, attempt increments, code consumption)
    are conditional ``UPDATE ... RETURNING`` statements so a losing writer
    simply gets no row back.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        if ensure_schema:
            self.apply_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self) -> None:
        """Create any missing tables and indexes from ``schema.sql``."""
        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)
        self.logger.info("postgres_schema_applied", path=str(SCHEMA_PATH))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} before serving requests.".format(
                    ", ".join(sorted(missing)), SCHEMA_PATH.name
                )
            )

    @staticmethod
    def _unique_violation(exc: errors.UniqueViolation, detail: dict) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None)
        if constraint == ASSOCIATE_PROVIDER_REF:
            return ConstraintViolation(
                "provider binding already exists", detail, constraint=ASSOCIATE_PROVIDER_REF
            )
        return ConstraintViolation("unique constraint violated", detail, constraint=constraint)

    # ------------------------------------------------------------------
    # accounts / associates
    # ------------------------------------------------------------------
    def create_account(
        self, *, role: str = "user", nickname: Optional[str] = None
    ) -> Account:
        account = Account(id=new_id(), role=role, nickname=nickname)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO account (id, role, nickname, created_at) VALUES (%s, %s, %s, %s)",
                (account.id, account.role, account.nickname, account.created_at),
            )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return _account_from_row(row) if row else None

    def _insert_associate(self, conn, associate: Associate) -> None:
        conn.execute(
            """
            INSERT INTO associate (
                id, account_id, provider, provider_ref_id, email, email_verified,
                phone, phone_verified, password_hash, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                associate.id,
                associate.account_id,
                associate.provider,
                associate.provider_ref_id,
                associate.email,
                associate.email_verified,
                associate.phone,
                associate.phone_verified,
                associate.password_hash,
                associate.created_at,
            ),
        )

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
        account = Account(id=new_id(), role=role, nickname=nickname)
        associate = Associate(
            id=new_id(),
            account_id=account.id,
            provider=provider,
            provider_ref_id=provider_ref_id,
            email=email,
            email_verified=email_verified,
            phone=phone,
            phone_verified=phone_verified,
            password_hash=password_hash,
        )
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "INSERT INTO account (id, role, nickname, created_at) VALUES (%s, %s, %s, %s)",
                    (account.id, account.role, account.nickname, account.created_at),
                )
                self._insert_associate(conn, associate)
        except errors.UniqueViolation as exc:
            raise self._unique_violation(
                exc, {"provider": provider, "provider_ref_id": provider_ref_id}
            )
        return account, associate

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
        associate = Associate(
            id=new_id(),
            account_id=account_id,
            provider=provider,
            provider_ref_id=provider_ref_id,
            email=email,
            email_verified=email_verified,
            phone=phone,
            phone_verified=phone_verified,
            password_hash=password_hash,
        )
        try:
            with self._connect() as conn:
                self._insert_associate(conn, associate)
        except errors.UniqueViolation as exc:
            raise self._unique_violation(
                exc, {"provider": provider, "provider_ref_id": provider_ref_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for associate", {"account_id": account_id}
            )
        return associate

    def get_associate(self, provider: str, provider_ref_id: str) -> Optional[Associate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM associate WHERE provider = %s AND provider_ref_id = %s",
                (provider, provider_ref_id),
            ).fetchone()
        return _associate_from_row(row) if row else None

    def find_password_associate(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[Associate]:
        if not email and not phone:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM associate
                WHERE provider = %s AND (email = %s OR phone = %s)
                ORDER BY created_at
                LIMIT 1
                """,
                (PROVIDER_PASSWORD, email, phone),
            ).fetchone()
        return _associate_from_row(row) if row else None

    def find_associate_by_email(self, email: str) -> Optional[Associate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM associate WHERE email = %s ORDER BY created_at LIMIT 1",
                (email,),
            ).fetchone()
        return _associate_from_row(row) if row else None

    def find_associate_by_phone(self, phone: str) -> Optional[Associate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM associate WHERE phone = %s ORDER BY created_at LIMIT 1",
                (phone,),
            ).fetchone()
        return _associate_from_row(row) if row else None

    def list_associates(self, account_id: str) -> List[Associate]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM associate WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [_associate_from_row(r) for r in rows]

    def update_associate(self, associate_id: str, **fields) -> Optional[Associate]:
        updates = filter_associate_updates(fields)
        if not updates:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM associate WHERE id = %s", (associate_id,)
                ).fetchone()
            return _associate_from_row(row) if row else None
        names = sorted(updates)
        query = sql.SQL("UPDATE associate SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(name)) for name in names
            )
        )
        with self._connect() as conn:
            row = conn.execute(
                query, [updates[name] for name in names] + [associate_id]
            ).fetchone()
        return _associate_from_row(row) if row else None

    def mark_contact_verified(
        self, kind: str, target: str, account_id: str
    ) -> List[Associate]:
        if kind == KIND_EMAIL:
            query = (
                "UPDATE associate SET email_verified = TRUE"
                " WHERE email = %s AND account_id = %s RETURNING *"
            )
        elif kind == KIND_PHONE:
            query = (
                "UPDATE associate SET phone_verified = TRUE"
                " WHERE phone = %s AND account_id = %s RETURNING *"
            )
        else:
            return []
        with self._connect() as conn:
            rows = conn.execute(query, (target, account_id)).fetchall()
        return [_associate_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    def _insert_refresh_token(
        self,
        conn,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        created_by_ip: Optional[str],
    ) -> dict:
        return conn.execute(
            """
            INSERT INTO refresh_token (id, account_id, token_hash, expires_at, created_by_ip)
            VALUES (%s, %s, %s, %s, %s::inet)
            RETURNING *
            """,
            (new_id(), account_id, token_hash, expires_at, normalize_ip(created_by_ip)),
        ).fetchone()

    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = self._insert_refresh_token(
                    conn, account_id, token_hash, expires_at, created_by_ip
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token account missing", {"account_id": account_id})
        return _refresh_from_row(row)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        token_hash: str,
        successor_hash: str,
        successor_expires_at: datetime,
        *,
        now: datetime,
        created_by_ip: Optional[str] = None,
    ) -> Optional[Tuple[RefreshToken, RefreshToken]]:
        with self._connect() as conn, conn.transaction():
            current = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s
                WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
            if not current:
                return None
            successor = self._insert_refresh_token(
                conn,
                str(current["account_id"]),
                successor_hash,
                successor_expires_at,
                created_by_ip,
            )
            current = conn.execute(
                "UPDATE refresh_token SET replaced_by_id = %s WHERE id = %s RETURNING *",
                (successor["id"], current["id"]),
            ).fetchone()
        return _refresh_from_row(current), _refresh_from_row(successor)

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, token_id),
            ).fetchone()
        return row is not None

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE account_id = %s AND revoked_at IS NULL",
                (now, account_id),
            )
            return max(cur.rowcount, 0)

    # ------------------------------------------------------------------
    # two-factor
    # ------------------------------------------------------------------
    def _two_factor_from_row(self, row: dict) -> TwoFactorCredential:
        return TwoFactorCredential(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            secret=self._cipher.decrypt(row["secret"]),
            enabled=bool(row.get("enabled")),
            verified_at=row.get("verified_at"),
            backup_code_hashes=frozenset(row.get("backup_code_hashes") or []),
            created_at=row["created_at"],
        )

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def save_two_factor_secret(self, account_id: str, secret: str) -> TwoFactorCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO two_factor_credential (id, account_id, secret, enabled, backup_code_hashes)
                    VALUES (%s, %s, %s, FALSE, '{}')
                    ON CONFLICT ON CONSTRAINT two_factor_account DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = FALSE,
                        verified_at = NULL,
                        backup_code_hashes = '{}'
                    RETURNING *
                    """,
                    (new_id(), account_id, self._cipher.encrypt(secret)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for two-factor",
                {"account_id": account_id},
                constraint=TWO_FACTOR_ACCOUNT,
            )
        return self._two_factor_from_row(row)

    def enable_two_factor(
        self, account_id: str, backup_code_hashes: Iterable[str], verified_at: datetime
    ) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET enabled = TRUE, verified_at = %s, backup_code_hashes = %s
                WHERE account_id = %s
                RETURNING *
                """,
                (verified_at, list(backup_code_hashes), account_id),
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def disable_two_factor(self, account_id: str) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET enabled = FALSE, backup_code_hashes = '{}'
                WHERE account_id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET backup_code_hashes = array_remove(backup_code_hashes, %s)
                WHERE account_id = %s AND enabled AND %s = ANY(backup_code_hashes)
                RETURNING id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # verification codes
    # ------------------------------------------------------------------
    def add_verification_code(self, record: VerificationCode) -> VerificationCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO verification_code (
                    id, account_id, target, kind, code_hash, context,
                    expires_at, attempts, verified_at, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    record.id,
                    record.account_id,
                    record.target,
                    record.kind,
                    record.code_hash,
                    record.context,
                    record.expires_at,
                    record.attempts,
                    record.verified_at,
                    record.created_at,
                ),
            ).fetchone()
        return _verification_from_row(row)

    def latest_verification_code(
        self, target: str, kind: str, context: Optional[str] = None
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            if context is None:
                row = conn.execute(
                    """
                    SELECT * FROM verification_code
                    WHERE target = %s AND kind = %s
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (target, kind),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM verification_code
                    WHERE target = %s AND kind = %s AND context = %s
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (target, kind, context),
                ).fetchone()
        return _verification_from_row(row) if row else None

    def increment_verification_attempts(
        self, code_id: str, max_attempts: int
    ) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_code
                SET attempts = attempts + 1
                WHERE id = %s AND verified_at IS NULL AND attempts < %s
                RETURNING attempts
                """,
                (code_id, max_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def mark_verification_code_used(self, code_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_code SET verified_at = %s
                WHERE id = %s AND verified_at IS NULL
                RETURNING id
                """,
                (now, code_id),
            ).fetchone()
        return row is not None

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO access_token_denylist (jti, account_id, expires_at, reason)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (jti) DO UPDATE
                SET account_id = EXCLUDED.account_id,
                    expires_at = EXCLUDED.expires_at,
                    reason = EXCLUDED.reason
                """,
                (jti, account_id, expires_at, reason),
            )

    def is_access_token_denylisted(self, jti: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM access_token_denylist WHERE jti = %s AND expires_at > %s",
                (jti, now),
            ).fetchone()
        return row is not None

    def purge_expired_denylist(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM access_token_denylist WHERE expires_at <= %s", (now,)
            )
            purged = max(cur.rowcount, 0)
        if purged:
            self.logger.info("denylist_purged", count=purged)
        return purged

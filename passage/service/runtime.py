from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from passage.config import get_settings, reset_settings_cache
from passage.logging import get_logger
from passage.service.email import CodeMailer
from passage.service.identity import HttpIdentityVerifier
from passage.service.passwords import PasswordHasher
from passage.service.rate_limit import AttemptLimiter, CounterStore
from passage.service.sessions import SessionManager
from passage.service.tokens import TokenIssuer
from passage.service.two_factor import TwoFactorAuthenticator
from passage.service.verification import VerificationCodeService
from passage.storage.memory import MemoryCounterStore, MemoryStore
from passage.storage.postgres import PostgresStore
from passage.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, counters and services built from settings."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        cipher_key = self.settings.mfa_secret_key or self.settings.jwt_secret
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.memory_store_path, mfa_encryption_key=cipher_key
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=cipher_key)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters: CounterStore = self._build_counters()
        self.limiter = AttemptLimiter.from_settings(self.counters, self.settings)
        self.passwords = PasswordHasher()
        self.tokens = TokenIssuer(self.store, self.settings)
        self.two_factor = TwoFactorAuthenticator(self.store, self.settings)
        self.verification = VerificationCodeService(self.store, self.settings)
        self.identity = HttpIdentityVerifier(self.settings)
        self.mailer = CodeMailer.from_settings(self.settings)
        self.sessions = SessionManager(
            self.store,
            self.tokens,
            self.passwords,
            self.two_factor,
            self.verification,
            self.settings,
            identity=self.identity,
            limiter=self.limiter,
            mailer=self.mailer,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.counters, RedisCounterStore),
            email_configured=self.mailer.is_configured,
            facebook_configured=bool(
                self.settings.facebook_app_id and self.settings.facebook_app_secret
            ),
        )

    def _build_counters(self) -> CounterStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                return counters
            except Exception as exc:
                redis_error = exc
            if self.settings.is_production and not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is configured but unreachable; attempt limits cannot be shared"
                ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Attempt limits are tracked in process memory only.",
        )
        return MemoryCounterStore()

    async def close(self) -> None:
        if isinstance(self.counters, RedisCounterStore):
            await self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking keeps the fast path lock free once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                # Called from inside a running loop; connections are dropped with the runtime
                logger.warning("runtime_close_skipped", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

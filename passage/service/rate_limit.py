from __future__ import annotations

from typing import Mapping, Optional, Protocol

from passage.config import Settings
from passage.logging import get_logger
from passage.service.errors import RateLimitedError

logger = get_logger(__name__)

SCOPE_LOGIN = "login"
SCOPE_OTP = "otp"
SCOPE_TWO_FACTOR = "2fa"

DEFAULT_LIMITS = {SCOPE_LOGIN: 5, SCOPE_OTP: 5, SCOPE_TWO_FACTOR: 6}
DEFAULT_WINDOW_SECONDS = 15 * 60


class CounterStore(Protocol):
    """Minimal shared-counter interface backing the limiter."""

    async def get(self, key: str) -> Optional[int]: ...

    async def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None: ...

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int: ...

    async def delete(self, key: str) -> None: ...


class AttemptLimiter:
    """Counts failed authentication attempts per scope and subject.

    The limiter only slows down guessing; every core operation stays correct
    whether or not one is configured.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        limits: Optional[Mapping[str, int]] = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.counters = counters
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        if window_seconds <= 0:
            logger.warning(
                "attempt_limiter_invalid_window",
                window_seconds=window_seconds,
                message="Invalid window; defaulting to 15 minutes",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        self.window_seconds = window_seconds

    @classmethod
    def from_settings(cls, counters: CounterStore, settings: Settings) -> "AttemptLimiter":
        return cls(
            counters,
            limits={
                SCOPE_LOGIN: settings.login_failure_limit,
                SCOPE_OTP: settings.otp_failure_limit,
                SCOPE_TWO_FACTOR: settings.two_factor_failure_limit,
            },
            window_seconds=settings.auth_failure_window_seconds,
        )

    @staticmethod
    def key(scope: str, *parts: str) -> str:
        subject = ":".join(str(p).strip().lower() for p in parts if p)
        return f"auth:fail:{scope}:{subject or 'unknown'}"

    async def check(self, scope: str, *parts: str) -> None:
        limit = self.limits.get(scope)
        if not limit or limit <= 0:
            return
        current = await self.counters.get(self.key(scope, *parts))
        if current is not None and current >= limit:
            logger.warning("auth_attempts_blocked", scope=scope, attempts=current)
            raise RateLimitedError(
                "Too many attempts, please try again later",
                detail={"scope": scope, "retry_after_seconds": self.window_seconds},
            )

    async def record_failure(self, scope: str, *parts: str) -> int:
        attempts = await self.counters.increment(
            self.key(scope, *parts), ttl_seconds=self.window_seconds
        )
        logger.info("auth_attempt_failed", scope=scope, attempts=attempts)
        return attempts

    async def reset(self, scope: str, *parts: str) -> None:
        await self.counters.delete(self.key(scope, *parts))

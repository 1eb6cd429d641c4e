from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from passage.config import Settings
from passage.logging import get_logger
from passage.storage.models import PROVIDER_FACEBOOK, PROVIDER_GOOGLE

logger = get_logger(__name__)

GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
FACEBOOK_DEBUG_TOKEN_URL = "https://graph.facebook.com/debug_token"
FACEBOOK_GRAPH_URL = "https://graph.facebook.com"

ERROR_INVALID_TOKEN = "invalid_provider_token"
ERROR_UNAVAILABLE = "provider_unavailable"
ERROR_NOT_CONFIGURED = "provider_not_configured"
ERROR_UNSUPPORTED = "unsupported_provider"


@dataclass
class IdentityProfile:
    provider_id: str
    email: Optional[str] = None
    nickname: Optional[str] = None


@dataclass
class IdentityResult:
    """Outcome of resolving a provider access token; exactly one of profile/error is set."""

    ok: bool
    profile: Optional[IdentityProfile] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, profile: IdentityProfile) -> "IdentityResult":
        return cls(ok=True, profile=profile)

    @classmethod
    def failure(cls, error: str, message: Optional[str] = None) -> "IdentityResult":
        return cls(ok=False, error=error, message=message or error)


class ExternalIdentityVerifier(Protocol):
    async def verify(self, provider: str, access_token: str) -> IdentityResult: ...


class _ProviderResponseError(Exception):
    def __init__(self, result: IdentityResult) -> None:
        super().__init__(result.message)
        self.result = result


class HttpIdentityVerifier:
    """Resolves Google and Facebook access tokens over HTTPS.

    Every request carries a bounded timeout. Network failures and 5xx replies
    come back as ``provider_unavailable`` so callers can retry; rejected
    tokens come back as ``invalid_provider_token``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = httpx.Timeout(settings.identity_http_timeout_seconds)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=False, transport=self._transport
        )

    async def verify(self, provider: str, access_token: str) -> IdentityResult:
        if not access_token:
            return IdentityResult.failure(
                ERROR_INVALID_TOKEN, f"access_token is required for {provider}"
            )
        try:
            if provider == PROVIDER_GOOGLE:
                return await self._verify_google(access_token)
            if provider == PROVIDER_FACEBOOK:
                return await self._verify_facebook(access_token)
        except _ProviderResponseError as exc:
            return exc.result
        except httpx.TimeoutException as exc:
            logger.warning("identity_provider_timeout", provider=provider, error=str(exc))
            return IdentityResult.failure(ERROR_UNAVAILABLE, f"{provider} did not respond in time")
        except httpx.HTTPError as exc:
            logger.warning("identity_provider_unreachable", provider=provider, error=str(exc))
            return IdentityResult.failure(ERROR_UNAVAILABLE, f"{provider} is unreachable")
        return IdentityResult.failure(ERROR_UNSUPPORTED, f"Unsupported provider: {provider}")

    @staticmethod
    def _json(provider: str, response: httpx.Response) -> dict[str, Any]:
        if response.status_code in (400, 401, 403):
            raise _ProviderResponseError(
                IdentityResult.failure(
                    ERROR_INVALID_TOKEN, f"Invalid or expired {provider} access token"
                )
            )
        if response.status_code >= 500:
            logger.warning(
                "identity_provider_server_error",
                provider=provider,
                status_code=response.status_code,
            )
            raise _ProviderResponseError(
                IdentityResult.failure(ERROR_UNAVAILABLE, f"{provider} is unavailable")
            )
        if response.status_code >= 300:
            raise _ProviderResponseError(
                IdentityResult.failure(
                    ERROR_INVALID_TOKEN, f"Failed to verify {provider} token"
                )
            )
        try:
            data = response.json()
        except ValueError:
            logger.warning("identity_provider_bad_payload", provider=provider)
            raise _ProviderResponseError(
                IdentityResult.failure(ERROR_UNAVAILABLE, f"{provider} returned an unreadable reply")
            )
        if not isinstance(data, dict):
            raise _ProviderResponseError(
                IdentityResult.failure(ERROR_UNAVAILABLE, f"{provider} returned an unreadable reply")
            )
        return data

    async def _verify_google(self, access_token: str) -> IdentityResult:
        async with self._client() as client:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        data = self._json(PROVIDER_GOOGLE, response)
        provider_id = data.get("id")
        if not provider_id:
            return IdentityResult.failure(
                ERROR_INVALID_TOKEN, "Invalid Google token: missing user id"
            )
        return IdentityResult.success(
            IdentityProfile(
                provider_id=str(provider_id),
                email=data.get("email"),
                nickname=data.get("name"),
            )
        )

    async def _verify_facebook(self, access_token: str) -> IdentityResult:
        app_id = self.settings.facebook_app_id
        app_secret = self.settings.facebook_app_secret
        if not app_id or not app_secret:
            logger.error("identity_provider_not_configured", provider=PROVIDER_FACEBOOK)
            return IdentityResult.failure(
                ERROR_NOT_CONFIGURED, "Facebook OAuth is not configured"
            )
        async with self._client() as client:
            debug_response = await client.get(
                FACEBOOK_DEBUG_TOKEN_URL,
                params={"input_token": access_token, "access_token": f"{app_id}|{app_secret}"},
            )
            debug = self._json(PROVIDER_FACEBOOK, debug_response).get("data") or {}
            if not debug.get("is_valid") or not debug.get("user_id"):
                return IdentityResult.failure(
                    ERROR_INVALID_TOKEN, "Invalid or expired Facebook access token"
                )
            user_response = await client.get(
                f"{FACEBOOK_GRAPH_URL}/{debug['user_id']}",
                params={"fields": "id,name,email", "access_token": access_token},
            )
        data = self._json(PROVIDER_FACEBOOK, user_response)
        provider_id = data.get("id")
        if not provider_id:
            return IdentityResult.failure(
                ERROR_INVALID_TOKEN, "Invalid Facebook token: missing user id"
            )
        return IdentityResult.success(
            IdentityProfile(
                provider_id=str(provider_id),
                email=data.get("email"),
                nickname=data.get("name"),
            )
        )

"""Provider token resolution against mocked Google and Facebook endpoints."""

import httpx
import pytest

from passage.service.identity import (
    ERROR_INVALID_TOKEN,
    ERROR_NOT_CONFIGURED,
    ERROR_UNAVAILABLE,
    ERROR_UNSUPPORTED,
    FACEBOOK_DEBUG_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    HttpIdentityVerifier,
)


def _verifier(settings, handler, **overrides):
    cfg = settings.model_copy(update=overrides) if overrides else settings
    return HttpIdentityVerifier(cfg, transport=httpx.MockTransport(handler))


class TestGoogle:
    async def test_profile_from_userinfo(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": 1234, "email": "g@example.com", "name": "Gee"})

        result = await _verifier(settings, handler).verify("google", "tok")

        assert result.ok
        assert result.profile.provider_id == "1234"
        assert result.profile.email == "g@example.com"
        assert result.profile.nickname == "Gee"
        assert str(seen[0].url) == GOOGLE_USERINFO_URL
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_rejected_token(self, settings, status):
        result = await _verifier(settings, lambda r: httpx.Response(status)).verify("google", "tok")

        assert not result.ok
        assert result.error == ERROR_INVALID_TOKEN

    async def test_server_error_is_unavailable(self, settings):
        result = await _verifier(settings, lambda r: httpx.Response(503)).verify("google", "tok")

        assert result.error == ERROR_UNAVAILABLE

    async def test_missing_user_id(self, settings):
        result = await _verifier(
            settings, lambda r: httpx.Response(200, json={"email": "g@example.com"})
        ).verify("google", "tok")

        assert result.error == ERROR_INVALID_TOKEN

    async def test_unreadable_payload(self, settings):
        result = await _verifier(
            settings, lambda r: httpx.Response(200, content=b"<html>")
        ).verify("google", "tok")

        assert result.error == ERROR_UNAVAILABLE

    async def test_timeout_is_unavailable(self, settings):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        result = await _verifier(settings, handler).verify("google", "tok")

        assert result.error == ERROR_UNAVAILABLE

    async def test_network_error_is_unavailable(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _verifier(settings, handler).verify("google", "tok")

        assert result.error == ERROR_UNAVAILABLE


class TestFacebook:
    async def test_requires_app_credentials(self, settings):
        def handler(request):
            raise AssertionError("no request expected")

        result = await _verifier(settings, handler).verify("facebook", "tok")

        assert result.error == ERROR_NOT_CONFIGURED

    async def test_debug_token_then_profile(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            if str(request.url).startswith(FACEBOOK_DEBUG_TOKEN_URL):
                assert request.url.params["input_token"] == "tok"
                assert request.url.params["access_token"] == "app|shh"
                return httpx.Response(200, json={"data": {"is_valid": True, "user_id": "42"}})
            assert request.url.path == "/42"
            return httpx.Response(200, json={"id": "42", "name": "Eff", "email": "f@example.com"})

        result = await _verifier(
            settings, handler, facebook_app_id="app", facebook_app_secret="shh"
        ).verify("facebook", "tok")

        assert result.ok
        assert result.profile.provider_id == "42"
        assert result.profile.email == "f@example.com"
        assert len(seen) == 2

    async def test_invalid_debug_token(self, settings):
        result = await _verifier(
            settings,
            lambda r: httpx.Response(200, json={"data": {"is_valid": False}}),
            facebook_app_id="app",
            facebook_app_secret="shh",
        ).verify("facebook", "tok")

        assert result.error == ERROR_INVALID_TOKEN


class TestVerifier:
    async def test_unsupported_provider(self, settings):
        result = await _verifier(settings, lambda r: httpx.Response(200)).verify("twitter", "tok")

        assert result.error == ERROR_UNSUPPORTED

    async def test_missing_access_token(self, settings):
        result = await _verifier(settings, lambda r: httpx.Response(200)).verify("google", "")

        assert result.error == ERROR_INVALID_TOKEN

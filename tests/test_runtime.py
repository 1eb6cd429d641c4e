import threading

import pytest

from passage.service import runtime as runtime_module
from passage.service.runtime import (
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from passage.storage.memory import MemoryCounterStore, MemoryStore


def test_runtime_is_a_singleton():
    results = []

    def fetch():
        results.append(get_runtime())

    threads = [threading.Thread(target=fetch) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(item is results[0] for item in results)
    assert isinstance(results[0].store, MemoryStore)
    assert isinstance(results[0].counters, MemoryCounterStore)


def test_reset_builds_a_fresh_runtime():
    before = get_runtime()

    after = reset_runtime_for_tests()

    assert after is not before
    assert get_runtime() is after


def test_reset_requires_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")

    with pytest.raises(RuntimeError, match="TEST_MODE"):
        reset_runtime_for_tests()

    monkeypatch.setenv("TEST_MODE", "true")
    reset_runtime_for_tests()


def test_unreachable_redis_falls_back_outside_production(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://:hunter2@127.0.0.1:1/0")

    def refuse(self):
        raise ConnectionError("refused")

    monkeypatch.setattr(runtime_module.RedisCounterStore, "verify_connection", refuse)

    runtime = reset_runtime_for_tests()

    assert isinstance(runtime.counters, MemoryCounterStore)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/passage", "postgresql://app:***@db/passage"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


async def test_register_verify_login_through_runtime():
    runtime = get_runtime()
    sessions = runtime.sessions

    registered = await sessions.register(email="runtime@example.com", password="Str0ng#Pass")
    await sessions.verify_email(
        "runtime@example.com", registered.verifications["email"].preview_code
    )
    result = await sessions.login("runtime@example.com", "Str0ng#Pass")

    payload = runtime.tokens.verify_access_token(result.tokens.access_token)
    assert payload["sub"] == registered.account.id

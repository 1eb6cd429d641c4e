"""In-memory credential store: constraints, isolation and snapshots."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from passage.storage.errors import ASSOCIATE_PROVIDER_REF, ConstraintViolation
from passage.storage.memory import MemoryStore
from passage.storage.models import (
    KIND_EMAIL,
    PROVIDER_GOOGLE,
    PROVIDER_PASSWORD,
    VerificationCode,
    new_id,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _code(target="person@example.com", context="register", **kwargs):
    return VerificationCode(
        id=new_id(),
        target=target,
        kind=KIND_EMAIL,
        code_hash="hash",
        context=context,
        expires_at=NOW + timedelta(minutes=30),
        **kwargs,
    )


class TestAssociates:
    def test_duplicate_binding_leaves_no_orphan_account(self, store):
        store.create_account_with_associate(provider=PROVIDER_GOOGLE, provider_ref_id="g-1")

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account_with_associate(provider=PROVIDER_GOOGLE, provider_ref_id="g-1")

        assert excinfo.value.constraint == ASSOCIATE_PROVIDER_REF
        assert len(store.accounts) == 1
        assert len(store.associates) == 1

    def test_associate_requires_existing_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_associate("missing", PROVIDER_GOOGLE, "g-1")

    def test_returned_records_are_copies(self, store):
        _, associate = store.create_account_with_associate(
            provider=PROVIDER_PASSWORD, provider_ref_id="a@example.com", email="a@example.com"
        )
        associate.email_verified = True

        assert store.get_associate(PROVIDER_PASSWORD, "a@example.com").email_verified is False

    def test_update_rejects_unknown_fields(self, store):
        _, associate = store.create_account_with_associate(
            provider=PROVIDER_GOOGLE, provider_ref_id="g-1"
        )

        with pytest.raises(ValueError):
            store.update_associate(associate.id, account_id="other")
        assert store.update_associate("missing", email="x@example.com") is None

    def test_mark_contact_verified_stays_within_account(self, store):
        account, _ = store.create_account_with_associate(
            provider=PROVIDER_PASSWORD, provider_ref_id="a@example.com", email="a@example.com"
        )
        store.create_associate(account.id, PROVIDER_GOOGLE, "g-1", email="a@example.com")
        stranger, _ = store.create_account_with_associate(
            provider=PROVIDER_GOOGLE, provider_ref_id="g-2", email="a@example.com"
        )

        updated = store.mark_contact_verified(KIND_EMAIL, "a@example.com", account.id)

        assert len(updated) == 2
        assert all(a.email_verified for a in store.list_associates(account.id))
        assert not store.list_associates(stranger.id)[0].email_verified

    def test_password_lookup_ignores_other_providers(self, store):
        store.create_account_with_associate(
            provider=PROVIDER_GOOGLE, provider_ref_id="g-1", email="a@example.com"
        )

        assert store.find_password_associate(email="a@example.com") is None
        assert store.find_associate_by_email("a@example.com").provider == PROVIDER_GOOGLE
        assert store.find_password_associate() is None

    def test_concurrent_creation_single_winner(self, store):
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []

        def create():
            barrier.wait()
            try:
                store.create_account_with_associate(provider="phone", provider_ref_id="+15550100")
                outcomes.append(True)
            except ConstraintViolation:
                outcomes.append(False)

        threads = [threading.Thread(target=create) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(True) == 1
        assert len(store.accounts) == 1


class TestVerificationCodes:
    def test_latest_is_newest_and_filters_context(self, store):
        first = store.add_verification_code(_code())
        second = store.add_verification_code(_code(context="resend"))

        assert store.latest_verification_code("person@example.com", KIND_EMAIL).id == second.id
        assert (
            store.latest_verification_code("person@example.com", KIND_EMAIL, "register").id
            == first.id
        )
        assert store.latest_verification_code("other@example.com", KIND_EMAIL) is None

    def test_increment_is_capped(self, store):
        record = store.add_verification_code(_code())

        assert [store.increment_verification_attempts(record.id, 2) for _ in range(3)] == [
            1,
            2,
            None,
        ]

    def test_used_codes_take_no_more_attempts(self, store):
        record = store.add_verification_code(_code())

        assert store.mark_verification_code_used(record.id, NOW) is True
        assert store.mark_verification_code_used(record.id, NOW) is False
        assert store.increment_verification_attempts(record.id, 5) is None


class TestTwoFactor:
    def test_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_two_factor_secret("missing", "SECRET")

    def test_consume_requires_enabled_credential(self, store):
        account = store.create_account()
        store.save_two_factor_secret(account.id, "SECRET")

        assert store.consume_backup_code(account.id, "h1") is False
        store.enable_two_factor(account.id, ["h1", "h2"], NOW)
        assert store.consume_backup_code(account.id, "h1") is True
        assert store.consume_backup_code(account.id, "h1") is False
        assert store.get_two_factor(account.id).backup_code_hashes == frozenset({"h2"})


class TestDenylist:
    def test_purge_removes_only_expired(self, store):
        store.upsert_denylist_entry("old", "a", NOW - timedelta(seconds=1))
        store.upsert_denylist_entry("live", "a", NOW + timedelta(hours=1))

        assert store.purge_expired_denylist(NOW) == 1
        assert store.is_access_token_denylisted("live", NOW)
        assert not store.is_access_token_denylisted("old", NOW)


class TestSnapshots:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        account, _ = store.create_account_with_associate(
            provider=PROVIDER_PASSWORD,
            provider_ref_id="a@example.com",
            email="a@example.com",
            password_hash="hash",
        )
        store.save_two_factor_secret(account.id, "JBSWY3DPEHPK3PXP")
        store.enable_two_factor(account.id, ["h1"], NOW)
        store.create_refresh_token(account.id, "rt-hash", NOW + timedelta(days=1), "10.0.0.1")
        store.add_verification_code(_code(target="a@example.com"))

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")

        associate = reloaded.get_associate(PROVIDER_PASSWORD, "a@example.com")
        assert associate.account_id == account.id
        credential = reloaded.get_two_factor(account.id)
        assert credential.secret == "JBSWY3DPEHPK3PXP"
        assert credential.backup_code_hashes == frozenset({"h1"})
        assert reloaded.get_refresh_token("rt-hash").created_by_ip == "10.0.0.1"
        assert reloaded.latest_verification_code("a@example.com", KIND_EMAIL) is not None
        with pytest.raises(ConstraintViolation):
            reloaded.create_account_with_associate(
                provider=PROVIDER_PASSWORD, provider_ref_id="a@example.com"
            )

"""Unit tests for password hashing and the strength policy."""

import pytest

from passage.service.errors import ValidationError
from passage.service.passwords import PasswordHasher

PASSWORD = "Str0ng#Pass"


class TestHashing:
    """argon2id hashing and verification."""

    def test_hash_verifies_and_is_not_plaintext(self, passwords):
        hashed = passwords.hash(PASSWORD)

        assert hashed != PASSWORD
        assert hashed.startswith("$argon2id$")
        assert passwords.verify(PASSWORD, hashed)

    def test_same_password_produces_different_hashes(self, passwords):
        assert passwords.hash(PASSWORD) != passwords.hash(PASSWORD)

    def test_wrong_password_does_not_verify(self, passwords):
        hashed = passwords.hash(PASSWORD)

        assert not passwords.verify("Wr0ng#Pass", hashed)

    @pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$argon2id$broken"])
    def test_missing_or_malformed_hash_verifies_false(self, passwords, stored):
        assert passwords.verify(PASSWORD, stored) is False

    def test_needs_rehash_after_cost_change(self, passwords):
        hashed = passwords.hash(PASSWORD)
        stronger = PasswordHasher(time_cost=2, memory_cost=8 * 1024, parallelism=1)

        assert passwords.needs_rehash(hashed) is False
        assert stronger.needs_rehash(hashed) is True

    def test_rehash_skips_policy_for_verified_passwords(self, passwords):
        legacy = "legacy"

        hashed = passwords.rehash(legacy)

        assert passwords.verify(legacy, hashed)


class TestStrengthPolicy:
    """The policy names the first rule a password breaks."""

    @pytest.mark.parametrize(
        "candidate, rule",
        [
            ("Short1!", "length"),
            ("Aa1!" + "a" * 17, "length"),
            ("alllower1!", "uppercase"),
            ("ALLUPPER1!", "lowercase"),
            ("NoDigits!!", "digit"),
            ("NoSymbol11", "symbol"),
        ],
    )
    def test_policy_violation_names_rule(self, candidate, rule):
        with pytest.raises(ValidationError) as excinfo:
            PasswordHasher.ensure_strong(candidate)

        assert excinfo.value.detail == {"field": "password", "rule": rule}
        assert excinfo.value.status_code == 400

    def test_boundary_lengths_accepted(self):
        PasswordHasher.ensure_strong("Aa1!aaaa")
        PasswordHasher.ensure_strong("Aa1!" + "a" * 16)

    def test_hash_enforces_policy(self, passwords):
        with pytest.raises(ValidationError):
            passwords.hash("weakpassword")

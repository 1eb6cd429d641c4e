"""Unit tests for email and phone verification codes."""

import threading

import pytest

from passage.service.errors import (
    InvalidVerificationCodeError,
    ValidationError,
    VerificationAlreadyUsedError,
    VerificationAttemptsExceededError,
    VerificationExpiredError,
    VerificationNotFoundError,
)
from passage.service.verification import (
    CONTEXT_PASSWORD_RESET,
    CONTEXT_REGISTER,
    VerificationCodeService,
    normalize_email,
)
from passage.storage.models import KIND_EMAIL, KIND_PHONE


def _wrong(code: str) -> str:
    return "1" * len(code) if code != "1" * len(code) else "2" * len(code)


class TestIssue:
    def test_issue_stores_only_hash(self, verification, store):
        issued = verification.issue(KIND_EMAIL, "Person@Example.com ")

        assert len(issued.code) == 6
        assert issued.code.isdigit()
        assert issued.code[0] != "0"
        record = store.verification_codes[-1]
        assert record.target == "person@example.com"
        assert record.code_hash != issued.code
        assert record.context == CONTEXT_REGISTER
        assert record.attempts == 0

    def test_ttl_depends_on_kind(self, verification, clock):
        email = verification.issue(KIND_EMAIL, "person@example.com")
        phone = verification.issue(KIND_PHONE, "+15550100")

        assert (email.expires_at - clock()).total_seconds() == 30 * 60
        assert (phone.expires_at - clock()).total_seconds() == 5 * 60

    def test_configurable_digit_count(self, store, settings, clock):
        service = VerificationCodeService(
            store,
            settings.model_copy(update={"verification_code_digits": 8}),
            clock=clock,
        )

        assert len(service.issue(KIND_PHONE, "+15550100").code) == 8

    @pytest.mark.parametrize("kind, target", [("fax", "123"), (KIND_EMAIL, "  ")])
    def test_invalid_kind_or_target(self, verification, kind, target):
        with pytest.raises(ValidationError):
            verification.issue(kind, target)


class TestVerify:
    def test_correct_code_verifies_once(self, verification):
        issued = verification.issue(KIND_EMAIL, "person@example.com")

        record = verification.verify(KIND_EMAIL, "PERSON@example.com", f" {issued.code} ")

        assert record.verified_at is not None
        with pytest.raises(VerificationAlreadyUsedError):
            verification.verify(KIND_EMAIL, "person@example.com", issued.code)

    def test_unknown_target(self, verification):
        with pytest.raises(VerificationNotFoundError) as excinfo:
            verification.verify(KIND_EMAIL, "nobody@example.com", "123456")
        assert excinfo.value.status_code == 404

    def test_expired_code(self, verification, clock):
        issued = verification.issue(KIND_PHONE, "+15550100")
        clock.advance(minutes=5, seconds=1)

        with pytest.raises(VerificationExpiredError):
            verification.verify(KIND_PHONE, "+15550100", issued.code)

    def test_code_still_valid_at_exact_expiry(self, verification, clock):
        issued = verification.issue(KIND_PHONE, "+15550100")
        clock.advance(minutes=5)

        record = verification.verify(KIND_PHONE, "+15550100", issued.code)

        assert record.verified_at == clock()

    def test_wrong_codes_exhaust_attempts(self, verification, store):
        issued = verification.issue(KIND_EMAIL, "person@example.com")

        for _ in range(5):
            with pytest.raises(InvalidVerificationCodeError):
                verification.verify(KIND_EMAIL, "person@example.com", _wrong(issued.code))
        with pytest.raises(VerificationAttemptsExceededError):
            verification.verify(KIND_EMAIL, "person@example.com", issued.code)
        assert store.verification_codes[-1].attempts == 5
        assert store.verification_codes[-1].verified_at is None

    def test_newer_code_supersedes_older(self, verification):
        first = verification.issue(KIND_EMAIL, "person@example.com")
        second = verification.issue(KIND_EMAIL, "person@example.com")

        if first.code != second.code:
            with pytest.raises(InvalidVerificationCodeError):
                verification.verify(KIND_EMAIL, "person@example.com", first.code)
        verification.verify(KIND_EMAIL, "person@example.com", second.code)

    def test_used_newest_code_blocks_older_ones(self, verification):
        first = verification.issue(KIND_EMAIL, "person@example.com")
        second = verification.issue(KIND_EMAIL, "person@example.com")
        verification.verify(KIND_EMAIL, "person@example.com", second.code)

        with pytest.raises(VerificationAlreadyUsedError):
            verification.verify(KIND_EMAIL, "person@example.com", first.code)

    def test_context_filter(self, verification):
        register = verification.issue(KIND_EMAIL, "person@example.com")
        reset = verification.issue(
            KIND_EMAIL, "person@example.com", context=CONTEXT_PASSWORD_RESET
        )

        verification.verify(KIND_EMAIL, "person@example.com", register.code, CONTEXT_REGISTER)
        verification.verify(
            KIND_EMAIL, "person@example.com", reset.code, CONTEXT_PASSWORD_RESET
        )

    def test_kinds_are_independent(self, verification):
        email = verification.issue(KIND_EMAIL, "+15550100")

        with pytest.raises(VerificationNotFoundError):
            verification.verify(KIND_PHONE, "+15550100", email.code)

    def test_concurrent_verification_succeeds_once(self, verification):
        issued = verification.issue(KIND_PHONE, "+15550100")
        workers = 6
        barrier = threading.Barrier(workers)
        successes = []
        failures = []

        def attempt():
            barrier.wait()
            try:
                successes.append(verification.verify(KIND_PHONE, "+15550100", issued.code))
            except VerificationAlreadyUsedError as exc:
                failures.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 1
        assert len(failures) == workers - 1

    def test_concurrent_guesses_never_exceed_budget(self, verification, store):
        issued = verification.issue(KIND_EMAIL, "person@example.com")
        workers = 12
        barrier = threading.Barrier(workers)

        def guess():
            barrier.wait()
            try:
                verification.verify(KIND_EMAIL, "person@example.com", _wrong(issued.code))
            except (InvalidVerificationCodeError, VerificationAttemptsExceededError):
                pass

        threads = [threading.Thread(target=guess) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.verification_codes[-1].attempts == 5


@pytest.mark.parametrize(
    "raw, expected",
    [(" Person@Example.COM ", "person@example.com"), ("", ""), (None, "")],
)
def test_normalize_email(raw, expected):
    assert normalize_email(raw) == expected

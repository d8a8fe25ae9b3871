import threading

import pytest

from suraksha import config
from suraksha.errors import (
    AttemptsExceededError,
    ExpiredError,
    InputError,
    MismatchError,
    NotFoundError,
    RateLimitError,
)
from suraksha.otp import OTPAuthenticator

from conftest import NOW, PHONE


@pytest.fixture
def otp(db):
    return OTPAuthenticator(db, ttl_seconds=300, max_attempts=3, length=6)


def wrong(code):
    return "000000" if code != "000000" else "111111"


def test_generate_shape(otp):
    issue = otp.generate(PHONE, now=NOW)
    assert len(issue.code) == 6 and issue.code.isdigit()
    assert issue.expires_at == NOW + 300
    assert issue.created_at == NOW
    assert issue.code not in repr(issue)


def test_codes_are_not_sequential(db):
    otp = OTPAuthenticator(db)
    codes = set()
    for i in range(20):
        codes.add(otp.generate(f"+123456789{i:02d}", now=NOW).code)
    assert len(codes) > 1


def test_single_use(otp):
    issue = otp.generate(PHONE, now=NOW)
    assert otp.validate(PHONE, issue.code, now=NOW + 10) is True
    with pytest.raises(NotFoundError):
        otp.validate(PHONE, issue.code, now=NOW + 11)


def test_attempt_exhaustion(otp):
    issue = otp.generate(PHONE, now=NOW)
    bad = wrong(issue.code)

    remaining = []
    for _ in range(3):
        with pytest.raises(MismatchError) as exc:
            otp.validate(PHONE, bad, now=NOW + 1)
        remaining.append(exc.value.remaining_attempts)
    assert remaining == [2, 1, 0]

    # Even the right code is refused now, until the record expires
    with pytest.raises(AttemptsExceededError):
        otp.validate(PHONE, issue.code, now=NOW + 2)
    with pytest.raises(AttemptsExceededError):
        otp.validate(PHONE, issue.code, now=NOW + 3)
    assert otp.pending(PHONE, now=NOW + 3)["remaining_attempts"] == 0

    fresh = otp.generate(PHONE, now=NOW + 300)
    assert otp.validate(PHONE, fresh.code, now=NOW + 301)


def test_attempts_never_exceed_max(otp, db):
    issue = otp.generate(PHONE, now=NOW)
    for _ in range(3):
        with pytest.raises(MismatchError):
            otp.validate(PHONE, wrong(issue.code), now=NOW + 1)
    row = db.connection().execute(
        "SELECT attempts FROM otp_records WHERE phone_number=?", (PHONE,)
    ).fetchone()
    assert row["attempts"] == 3


def test_rate_limit_while_live(otp):
    otp.generate(PHONE, now=NOW)
    with pytest.raises(RateLimitError) as exc:
        otp.generate(PHONE, now=NOW + 100)
    assert exc.value.remaining_seconds == 200
    assert exc.value.to_dict()["remaining_seconds"] == 200


def test_rate_limit_remaining_is_positive_near_expiry(otp):
    otp.generate(PHONE, now=NOW)
    with pytest.raises(RateLimitError) as exc:
        otp.generate(PHONE, now=NOW + 299)
    assert exc.value.remaining_seconds >= 1


def test_generate_after_expiry_replaces(otp):
    first = otp.generate(PHONE, now=NOW)
    second = otp.generate(PHONE, now=NOW + 301)
    assert second.expires_at == NOW + 601
    assert otp.validate(PHONE, second.code, now=NOW + 302)
    assert first.expires_at < second.expires_at


def test_exhausted_code_still_blocks_new_request(otp):
    issue = otp.generate(PHONE, now=NOW)
    for _ in range(3):
        with pytest.raises(MismatchError):
            otp.validate(PHONE, wrong(issue.code), now=NOW + 1)
    with pytest.raises(RateLimitError) as exc:
        otp.generate(PHONE, now=NOW + 2)
    assert exc.value.remaining_seconds == 298
    assert otp.pending(PHONE, now=NOW + 2)["remaining_attempts"] == 0


def test_guesses_capped_per_window(otp):
    issue = otp.generate(PHONE, now=NOW)
    mismatches = 0
    # Cycling request/guess inside one window cannot buy more guesses
    for i in range(10):
        try:
            otp.generate(PHONE, now=NOW + 1 + i)
        except RateLimitError:
            pass
        for _ in range(3):
            try:
                otp.validate(PHONE, wrong(issue.code), now=NOW + 1 + i)
            except MismatchError:
                mismatches += 1
            except (AttemptsExceededError, NotFoundError):
                pass
    assert mismatches == 3


def test_concurrent_guesses_counted_once_each(otp):
    issue = otp.generate(PHONE, now=NOW)
    bad = wrong(issue.code)
    outcomes = []

    def worker():
        try:
            otp.validate(PHONE, bad, now=NOW + 1)
        except MismatchError:
            outcomes.append("mismatch")
        except (AttemptsExceededError, NotFoundError):
            outcomes.append("refused")

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("mismatch") == 3
    assert outcomes.count("refused") == 7


def test_expired_code_rejected_and_removed(otp):
    issue = otp.generate(PHONE, now=NOW)
    with pytest.raises(ExpiredError):
        otp.validate(PHONE, issue.code, now=NOW + 300)
    with pytest.raises(NotFoundError):
        otp.validate(PHONE, issue.code, now=NOW + 301)


def test_no_record(otp):
    with pytest.raises(NotFoundError):
        otp.validate(PHONE, "123456", now=NOW)


def test_phone_is_normalized(otp):
    issue = otp.generate("+1 (234) 567-890", now=NOW)
    assert issue.phone_number == PHONE
    assert otp.validate(PHONE, issue.code, now=NOW + 1)


def test_invalid_phone(otp):
    with pytest.raises(InputError):
        otp.generate("12345", now=NOW)


def test_cleanup_expired_is_idempotent(otp):
    otp.generate(PHONE, now=NOW)
    otp.generate("+919876543210", now=NOW + 200)
    assert otp.cleanup_expired(now=NOW + 400) == 1
    assert otp.cleanup_expired(now=NOW + 400) == 0
    assert otp.pending("+919876543210", now=NOW + 400) is not None


def test_pending_hides_code(otp):
    otp.generate(PHONE, now=NOW)
    info = otp.pending(PHONE, now=NOW + 60)
    assert info["remaining_seconds"] == 240
    assert info["remaining_attempts"] == 3
    assert "code" not in info


def test_test_numbers_get_fixed_code(otp, monkeypatch):
    monkeypatch.setattr(config, "OTP_TEST_PHONE_NUMBERS", PHONE)
    monkeypatch.setattr(config, "ENV", "dev")
    assert otp.generate(PHONE, now=NOW).code == config.OTP_TEST_CODE


def test_test_numbers_ignored_in_production(otp, monkeypatch):
    monkeypatch.setattr(config, "OTP_TEST_PHONE_NUMBERS", PHONE)
    monkeypatch.setattr(config, "ENV", "prod")
    assert config.otp_test_numbers() == frozenset()
    otp.generate(PHONE, now=NOW)

"""
Tests for auth.py -- password hashing, tokens and step-up verification.

Covers:
- bcrypt hashing and checking, including malformed hashes
- StepUpVerifier success and every failure path
- Bounded timeout on re-verification
"""

import time

from auth import StepUpVerifier, check_password, hash_password
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, CUSTOMER_EMAIL, CUSTOMER_PASSWORD, make_user


class TestPasswords:
    def test_hash_and_check(self):
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert check_password("correct horse", hashed)
        assert not check_password("wrong horse", hashed)

    def test_empty_or_malformed(self):
        assert not check_password("", hash_password("x"))
        assert not check_password("x", None)
        assert not check_password("x", "not-a-bcrypt-hash")


class TestStepUpVerifier:
    def test_admin_with_right_password(self, fake_db, admin_user):
        ctx = StepUpVerifier(fake_db, timeout=5).verify(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert ctx.verified is True
        assert ctx.admin_email == ADMIN_EMAIL

    def test_wrong_password(self, fake_db, admin_user):
        assert StepUpVerifier(fake_db, timeout=5).verify(ADMIN_EMAIL, "guess").verified is False

    def test_customer_role_is_not_enough(self, fake_db, customer_user):
        assert StepUpVerifier(fake_db, timeout=5).verify(CUSTOMER_EMAIL, CUSTOMER_PASSWORD).verified is False

    def test_unknown_account(self, fake_db):
        assert StepUpVerifier(fake_db, timeout=5).verify("ghost@vastra.in", "x").verified is False

    def test_inactive_admin(self, fake_db):
        make_user(fake_db, "old@vastra.in", "pw123456", role="admin", is_active=False)
        assert StepUpVerifier(fake_db, timeout=5).verify("old@vastra.in", "pw123456").verified is False

    def test_timeout_counts_as_failure(self, fake_db, admin_user):
        class SlowUsers:
            def find_one(self, filt):
                time.sleep(0.5)
                return fake_db["user"].find_one(filt)

        verifier = StepUpVerifier({"user": SlowUsers()}, timeout=0.05)
        started = time.monotonic()
        ctx = verifier.verify(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert ctx.verified is False
        assert time.monotonic() - started < 0.4

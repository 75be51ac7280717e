"""Tests for the payment processor's step-up challenge."""

from datetime import timedelta

import pytest

from tandem.challenge import (
    DEMO_CHALLENGE_CODE,
    ChallengeManager,
    ChallengeState,
    numeric_code_generator,
)
from tandem.errors import ChallengeMismatch
from tandem.mandate import utcnow


class TestChallengeManager:
    def test_issue_sets_state(self):
        manager = ChallengeManager()
        assert manager.state("t1") is ChallengeState.NONE

        challenge = manager.issue("t1")
        assert manager.state("t1") is ChallengeState.CHALLENGED
        assert challenge.to_payload()["type"] == "otp"
        assert f"(Demo only hint: the code is {DEMO_CHALLENGE_CODE})" in challenge.display_text

    def test_wrong_response_keeps_challenge_open(self):
        manager = ChallengeManager()
        manager.issue("t1")

        with pytest.raises(ChallengeMismatch, match="Challenge response incorrect."):
            manager.verify("t1", "000")
        assert manager.state("t1") is ChallengeState.CHALLENGED
        assert manager.get("t1").attempts == 1

    def test_correct_response_satisfies_once(self):
        manager = ChallengeManager()
        manager.issue("t1")

        manager.verify("t1", " 123 ")
        assert manager.state("t1") is ChallengeState.SATISFIED

        with pytest.raises(ChallengeMismatch, match="No outstanding challenge"):
            manager.verify("t1", "123")

    def test_missing_response_is_a_mismatch(self):
        manager = ChallengeManager()
        manager.issue("t1")
        with pytest.raises(ChallengeMismatch):
            manager.verify("t1", None)

    def test_challenges_are_per_task(self):
        manager = ChallengeManager(code_generator=iter(["111", "222"]).__next__)
        manager.issue("t1")
        manager.issue("t2")

        with pytest.raises(ChallengeMismatch):
            manager.verify("t1", "222")
        manager.verify("t2", "222")
        manager.verify("t1", "111")

    def test_expired_challenge_fails(self):
        manager = ChallengeManager()
        manager.issue("t1")
        manager.get("t1").expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(ChallengeMismatch, match="Challenge expired."):
            manager.verify("t1", DEMO_CHALLENGE_CODE)
        assert manager.state("t1") is ChallengeState.FAILED

    def test_reissue_replaces_challenge(self):
        manager = ChallengeManager()
        manager.issue("t1")
        manager.get("t1").expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(ChallengeMismatch):
            manager.verify("t1", DEMO_CHALLENGE_CODE)

        manager.issue("t1")
        manager.verify("t1", DEMO_CHALLENGE_CODE)
        assert manager.state("t1") is ChallengeState.SATISFIED

    def test_discard(self):
        manager = ChallengeManager()
        manager.issue("t1")
        manager.discard("t1")
        assert manager.state("t1") is ChallengeState.NONE
        manager.discard("t1")

    def test_numeric_codes_have_no_hint(self):
        manager = ChallengeManager(code_generator=numeric_code_generator(6), display_text="Enter the code")
        challenge = manager.issue("t1")
        assert len(challenge.expected) == 6
        assert challenge.expected.isdigit()
        assert challenge.display_text == "Enter the code"

    def test_no_ttl(self):
        manager = ChallengeManager(ttl_seconds=None)
        assert manager.issue("t1").expires_at is None

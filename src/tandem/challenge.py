"""
Step-up challenge issued by the payment processor before it settles.

Per task:  NONE -> CHALLENGED -> SATISFIED | FAILED

The expected value is drawn per task from a code generator and is only
ever compared against responses for that task. A satisfied challenge is
never accepted again.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from .errors import ChallengeMismatch
from .mandate import utcnow


logger = logging.getLogger(__name__)

DEMO_CHALLENGE_CODE = "123"
DEFAULT_CHALLENGE_TTL_SECONDS = 300

OTP_PROMPT = (
    "The payment method issuer sent a verification code to the phone number on file, "
    "please enter it below. It will be shared with the issuer so they can authorize "
    "the transaction."
)


class ChallengeState(str, Enum):
    NONE = "none"
    CHALLENGED = "challenged"
    SATISFIED = "satisfied"
    FAILED = "failed"


@dataclass
class Challenge:
    task_id: str
    challenge_type: str
    display_text: str
    expected: str = field(repr=False)
    issued_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    state: ChallengeState = ChallengeState.CHALLENGED
    attempts: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.challenge_type, "display_text": self.display_text}


CodeGenerator = Callable[[], str]


def demo_code_generator() -> str:
    return DEMO_CHALLENGE_CODE


def numeric_code_generator(digits: int = 6) -> CodeGenerator:
    def generate() -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(digits))
    return generate


class ChallengeManager:
    """Issues and checks one challenge per task id."""

    def __init__(
        self,
        code_generator: CodeGenerator = demo_code_generator,
        ttl_seconds: Optional[int] = DEFAULT_CHALLENGE_TTL_SECONDS,
        challenge_type: str = "otp",
        display_text: Optional[str] = None,
    ):
        self._generate = code_generator
        self._ttl = ttl_seconds
        self._type = challenge_type
        self._display_text = display_text
        self._challenges: dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def state(self, task_id: str) -> ChallengeState:
        with self._lock:
            challenge = self._challenges.get(task_id)
            return challenge.state if challenge else ChallengeState.NONE

    def get(self, task_id: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.get(task_id)

    def issue(self, task_id: str) -> Challenge:
        """Issue a fresh challenge for ``task_id``, replacing any earlier one."""
        code = self._generate()
        display_text = self._display_text or OTP_PROMPT
        if self._generate is demo_code_generator:
            display_text += f" (Demo only hint: the code is {code})"
        now = utcnow()
        challenge = Challenge(
            task_id=task_id,
            challenge_type=self._type,
            display_text=display_text,
            expected=code,
            issued_at=now,
            expires_at=now + timedelta(seconds=self._ttl) if self._ttl else None,
        )
        with self._lock:
            self._challenges[task_id] = challenge
        logger.info("Issued %s challenge for task %s", self._type, task_id)
        return challenge

    def verify(self, task_id: str, response: Optional[str]) -> Challenge:
        """Accept ``response`` for the task's outstanding challenge.

        Raises ``ChallengeMismatch`` when there is no outstanding
        challenge, when it has expired or was already satisfied, or when
        the value is wrong.
        """
        with self._lock:
            challenge = self._challenges.get(task_id)
            if challenge is None or challenge.state is not ChallengeState.CHALLENGED:
                raise ChallengeMismatch("No outstanding challenge for this task.")
            if challenge.is_expired():
                challenge.state = ChallengeState.FAILED
                raise ChallengeMismatch("Challenge expired.")
            challenge.attempts += 1
            candidate = (response or "").strip()
            if not hmac.compare_digest(candidate.encode(), challenge.expected.encode()):
                logger.info("Challenge response mismatch for task %s (attempt %d)",
                            task_id, challenge.attempts)
                raise ChallengeMismatch("Challenge response incorrect.")
            challenge.state = ChallengeState.SATISFIED
        logger.info("Challenge satisfied for task %s", task_id)
        return challenge

    def discard(self, task_id: str) -> None:
        """Forget a task's challenge once the task is terminal."""
        with self._lock:
            challenge = self._challenges.pop(task_id, None)
        if challenge is not None and challenge.state is ChallengeState.CHALLENGED:
            logger.info("Discarded unanswered challenge for task %s", task_id)

"""
Merchant payment processor agent.

    first request     verify user authorization, issue challenge -> input-required
    follow-up         check response for this task's challenge
                        mismatch -> input-required ("Challenge response incorrect.")
                        expired  -> fresh challenge, input-required
                        match    -> fetch credentials from the token's issuer -> completed

The challenge is forgotten as soon as the task reaches a terminal
state, so a replayed response can never complete a payment twice. A
payment mandate id that has settled is refused on any later task.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Optional

from .audit import AuditSink, EventType
from .challenge import ChallengeManager, ChallengeState
from .config import AgentConfig, AgentRole, default_config
from .errors import ChallengeMismatch, DownstreamFailure, ValidationError
from .mandate import PaymentMandate
from .message import (
    CHALLENGE_KEY,
    CHALLENGE_RESPONSE_KEY,
    DEBUG_MODE_KEY,
    PAYMENT_MANDATE_DATA_KEY,
    PAYMENT_METHOD_DATA_DATA_KEY,
    PAYMENT_STATUS_KEY,
    RISK_DATA_KEY,
    TRANSACTION_ID_KEY,
    MessageBuilder,
)
from .orchestrator import KeywordToolSelector, OperationContext, TaskOrchestrator
from .signing import verify_user_authorization
from .task import TaskState
from .transport import AgentClient, PeerDirectory


logger = logging.getLogger(__name__)

CHALLENGE_PROMPT = "Please provide the challenge response to complete the payment."
CREDENTIALS_REQUEST = "Give me the payment method credentials for the given token."
PAYMENT_SUCCESS_TEXT = "{'status': 'success'}"
MANDATE_ID_KEY = "payment_mandate_id"

PROCESSOR_TOOL_RULES = (
    ("initiate_payment", ("initiate_payment", "initiate payment", "payment mandate", "pay")),
)


class PaymentProcessorAgent:
    """Role operations for a payment processor."""

    def __init__(
        self,
        config: AgentConfig,
        peers: PeerDirectory,
        challenges: Optional[ChallengeManager] = None,
    ):
        self.config = config
        self.peers = peers
        self.challenges = challenges or ChallengeManager()
        self._settled: set[str] = set()
        self._settled_lock = threading.Lock()

    @property
    def operations(self):
        return {"initiate_payment": self.initiate_payment}

    def initiate_payment(self, ctx: OperationContext) -> None:
        mandate = ctx.envelope.require_payment_mandate()
        mandate_id = mandate.contents.payment_mandate_id
        if ctx.envelope.get(DEBUG_MODE_KEY):
            logger.debug("Debug mode requested for payment mandate %s", mandate_id)
        if ctx.envelope.get(RISK_DATA_KEY) is None:
            logger.info("No risk data supplied with payment mandate %s", mandate_id)

        if not ctx.is_follow_up or self.challenges.state(ctx.task_id) is ChallengeState.NONE:
            verify_user_authorization(mandate)
            if self.is_settled(mandate_id):
                raise ValidationError(
                    "PaymentMandateContents.payment_mandate_id",
                    f"payment mandate {mandate_id} has already been settled",
                )
            ctx.task.metadata[MANDATE_ID_KEY] = mandate_id
            self._raise_challenge(ctx, CHALLENGE_PROMPT)
            return

        expected_id = ctx.task.metadata.get(MANDATE_ID_KEY)
        if mandate_id != expected_id:
            raise ValidationError(
                "PaymentMandateContents.payment_mandate_id",
                f"'{mandate_id}' does not match the mandate this task was opened for",
            )

        response = ctx.envelope.get(CHALLENGE_RESPONSE_KEY)
        try:
            self.challenges.verify(ctx.task_id, None if response is None else str(response))
        except ChallengeMismatch as e:
            ctx.audit(EventType.CHALLENGE_FAILED, mandate_id=mandate_id, success=False, reason=str(e))
            if self.challenges.state(ctx.task_id) is ChallengeState.FAILED:
                self._raise_challenge(ctx, f"{e} {CHALLENGE_PROMPT}")
                return
            raise
        ctx.audit(EventType.CHALLENGE_SATISFIED, mandate_id=mandate_id)
        self._complete_payment(ctx, mandate)

    def is_settled(self, mandate_id: str) -> bool:
        with self._settled_lock:
            return mandate_id in self._settled

    def _reserve_settlement(self, mandate_id: str) -> None:
        with self._settled_lock:
            if mandate_id in self._settled:
                raise ValidationError(
                    "PaymentMandateContents.payment_mandate_id",
                    f"payment mandate {mandate_id} has already been settled",
                )
            self._settled.add(mandate_id)

    def _raise_challenge(self, ctx: OperationContext, prompt: str) -> None:
        challenge = self.challenges.issue(ctx.task_id)
        ctx.audit(
            EventType.CHALLENGE_ISSUED,
            mandate_id=ctx.task.metadata.get(MANDATE_ID_KEY),
            details={"type": challenge.challenge_type},
        )
        ctx.require_input(prompt, {CHALLENGE_KEY: challenge.to_payload()})

    def _complete_payment(self, ctx: OperationContext, mandate: PaymentMandate) -> None:
        mandate_id = mandate.contents.payment_mandate_id
        self._reserve_settlement(mandate_id)
        try:
            method = self._request_payment_credential(ctx, mandate)
        except Exception:
            with self._settled_lock:
                self._settled.discard(mandate_id)
            raise
        logger.info(
            "Calling issuer to complete payment for %s with %s", mandate_id, method.get("alias", "instrument")
        )
        transaction_id = "txn_" + uuid.uuid4().hex[:16]
        ctx.add_artifact({
            PAYMENT_STATUS_KEY: "SUCCESS",
            TRANSACTION_ID_KEY: transaction_id,
            MANDATE_ID_KEY: mandate_id,
        })
        ctx.audit(
            EventType.PAYMENT_COMPLETED,
            mandate_id=mandate_id,
            details={TRANSACTION_ID_KEY: transaction_id},
        )
        ctx.complete(PAYMENT_SUCCESS_TEXT)

    def _request_payment_credential(self, ctx: OperationContext, mandate: PaymentMandate) -> dict:
        provider = self._credentials_provider_for(mandate)
        message = (
            MessageBuilder()
            .context_id(ctx.context_id)
            .text(CREDENTIALS_REQUEST)
            .data(PAYMENT_MANDATE_DATA_KEY, mandate)
            .data(DEBUG_MODE_KEY, bool(ctx.envelope.get(DEBUG_MODE_KEY, False)))
            .build()
        )
        try:
            response = provider.send(message, ctx.activated_extensions)
        except DownstreamFailure as e:
            ctx.audit(
                EventType.DOWNSTREAM_FAILED,
                mandate_id=mandate.contents.payment_mandate_id,
                success=False,
                reason=str(e),
            )
            raise
        task = response.task
        if task.state is not TaskState.COMPLETED:
            raise DownstreamFailure(
                f"Credentials provider task {task.id} ended {task.state.value}: "
                f"{task.status_text or 'no reason given'}"
            )
        method = task.find_artifact_data(PAYMENT_METHOD_DATA_DATA_KEY)
        if not isinstance(method, dict):
            raise DownstreamFailure("Failed to find the payment method data.")
        return dict(method.get("data") or {})

    def _credentials_provider_for(self, mandate: PaymentMandate) -> AgentClient:
        token = mandate.contents.payment_response.credential_token
        if token is None:
            raise ValidationError("PaymentResponse.details.token", "Token object not found in payment response details")
        if not token.issuer_url:
            return self.peers.for_role(AgentRole.CREDENTIALS_PROVIDER.value)
        client = self.peers.for_url(token.issuer_url)
        if client is None:
            raise ValidationError(
                "PaymentResponse.details.token.url",
                f"credentials provider {token.issuer_url} is not a configured peer",
            )
        return client


def build_payment_processor(
    peers: PeerDirectory,
    config: Optional[AgentConfig] = None,
    challenges: Optional[ChallengeManager] = None,
    audit: Optional[AuditSink] = None,
) -> tuple[TaskOrchestrator, PaymentProcessorAgent]:
    config = config or default_config(AgentRole.PAYMENT_PROCESSOR)
    agent = PaymentProcessorAgent(config, peers, challenges)
    orchestrator = TaskOrchestrator(
        name=config.name,
        role=AgentRole.PAYMENT_PROCESSOR.value,
        operations=agent.operations,
        selector=KeywordToolSelector(PROCESSOR_TOOL_RULES),
        supported_extensions=config.supported_extensions,
        audit=audit,
        on_terminal=lambda task: agent.challenges.discard(task.id),
    )
    return orchestrator, agent

"""
Shopping agent client flow.

Drives one purchase across the merchant and the credentials provider on
behalf of a single user:

    intent -> carts -> address -> repriced cart -> eligible methods
           -> token -> signed payment mandate -> bind at provider
           -> initiate payment (answer challenge) -> completed

The shopping agent holds the user's signing key; nothing it sends
carries raw instrument data, only the provider's opaque token.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from eth_account import Account

from .config import AP2_EXTENSION_URI, DEFAULT_SHOPPING_AGENT_ID, AgentRole
from .errors import DownstreamFailure, ValidationError
from .mandate import (
    CartMandate,
    ContactAddress,
    IntentMandate,
    PaymentCredentialToken,
    PaymentMandate,
    PaymentMandateContents,
    PaymentResponse,
    create_intent_mandate,
    new_payment_mandate_id,
)
from .message import (
    CART_ID_KEY,
    CART_MANDATE_DATA_KEY,
    CHALLENGE_KEY,
    CHALLENGE_RESPONSE_KEY,
    CONTACT_ADDRESS_DATA_KEY,
    INTENT_MANDATE_DATA_KEY,
    PAYMENT_MANDATE_DATA_KEY,
    PAYMENT_METHOD_ALIAS_KEY,
    PAYMENT_METHOD_ALIASES_KEY,
    PAYMENT_METHOD_DATA_DATA_KEY,
    RISK_DATA_KEY,
    SHIPPING_ADDRESS_KEY,
    SHOPPING_AGENT_ID_KEY,
    TOKEN_KEY,
    TRANSACTION_ID_KEY,
    USER_EMAIL_KEY,
    MessageBuilder,
)
from .signing import MerchantAuthorizationVerifier, sign_payment_mandate
from .task import Task, TaskState
from .transport import AgentClient, PeerDirectory


logger = logging.getLogger(__name__)


@dataclass
class PurchaseResult:
    intent: IntentMandate
    cart: CartMandate
    payment_mandate: PaymentMandate
    task: Task
    challenges: list[dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.task.state is TaskState.COMPLETED

    @property
    def transaction_id(self) -> Optional[str]:
        return self.task.find_artifact_data(TRANSACTION_ID_KEY)


ChallengeAnswer = Callable[[dict[str, Any]], str]


class Shopper:
    """One user's shopping session against a merchant and a credentials provider."""

    def __init__(
        self,
        peers: PeerDirectory,
        user_key: str,
        user_email: str,
        shopping_agent_id: str = DEFAULT_SHOPPING_AGENT_ID,
        merchant_role: str = AgentRole.MERCHANT.value,
        credentials_provider_role: str = AgentRole.CREDENTIALS_PROVIDER.value,
        extensions: Iterable[str] = (AP2_EXTENSION_URI,),
        merchant_verifier: Optional[MerchantAuthorizationVerifier] = None,
    ):
        self.peers = peers
        self._user_key = user_key
        self.user_address = Account.from_key(user_key).address
        self.user_email = user_email
        self.shopping_agent_id = shopping_agent_id
        self.merchant_role = merchant_role
        self.credentials_provider_role = credentials_provider_role
        self.extensions = tuple(extensions)
        self.merchant_verifier = merchant_verifier
        self.context_id = uuid.uuid4().hex
        self.risk_data: Optional[str] = None
        self._payment_task_id: Optional[str] = None

    @property
    def merchant(self) -> AgentClient:
        return self.peers.for_role(self.merchant_role)

    @property
    def credentials_provider(self) -> AgentClient:
        return self.peers.for_role(self.credentials_provider_role)

    # ── Merchant ──────────────────────────────────────────────────

    def create_intent(self, description: str, **kwargs: Any) -> IntentMandate:
        return create_intent_mandate(description, **kwargs)

    def find_products(self, intent: IntentMandate) -> list[CartMandate]:
        message = (
            self._merchant_message("Find products that match the user's IntentMandate.")
            .data(INTENT_MANDATE_DATA_KEY, intent)
            .build()
        )
        task = self._call(self.merchant, message)
        carts = [CartMandate.from_dict(c) for c in task.artifact_data(CART_MANDATE_DATA_KEY)]
        for cart in carts:
            self._check_cart(cart)
        self.risk_data = task.find_artifact_data(RISK_DATA_KEY)
        logger.info("Merchant offered %d cart(s)", len(carts))
        return carts

    def update_cart(self, cart: CartMandate, address: ContactAddress) -> CartMandate:
        message = (
            self._merchant_message("Update the cart with the user's shipping address.")
            .data(CART_ID_KEY, cart.cart_id)
            .data(SHIPPING_ADDRESS_KEY, address)
            .build()
        )
        task = self._call(self.merchant, message)
        raw = task.find_artifact_data(CART_MANDATE_DATA_KEY)
        if raw is None:
            raise DownstreamFailure("Merchant did not return an updated cart")
        updated = CartMandate.from_dict(raw)
        self._check_cart(updated)
        self.risk_data = task.find_artifact_data(RISK_DATA_KEY) or self.risk_data
        return updated

    def initiate_payment(
        self,
        payment_mandate: PaymentMandate,
        challenge_response: Optional[str] = None,
    ) -> Task:
        """Ask the merchant to settle. Follow-ups reuse the same merchant task."""
        builder = (
            self._merchant_message("initiate_payment")
            .data(PAYMENT_MANDATE_DATA_KEY, payment_mandate)
            .data(RISK_DATA_KEY, self.risk_data)
            .data(CHALLENGE_RESPONSE_KEY, challenge_response)
            .task_id(self._payment_task_id)
        )
        response = self.merchant.send(builder.build(), self.extensions)
        task = response.task
        self._payment_task_id = None if task.is_terminal else task.id
        if task.state is TaskState.FAILED:
            raise DownstreamFailure(f"Payment failed: {task.status_text}")
        return task

    # ── Credentials provider ──────────────────────────────────────

    def shipping_address(self) -> Optional[ContactAddress]:
        message = (
            MessageBuilder()
            .context_id(self.context_id)
            .text("Get the user's shipping address.")
            .data(USER_EMAIL_KEY, self.user_email)
            .build()
        )
        task = self._call(self.credentials_provider, message)
        raw = task.find_artifact_data(CONTACT_ADDRESS_DATA_KEY)
        return ContactAddress.from_dict(raw) if raw else None

    def eligible_payment_methods(self, cart: CartMandate) -> list[str]:
        builder = (
            MessageBuilder()
            .context_id(self.context_id)
            .text("Search for the user's eligible payment methods.")
            .data(USER_EMAIL_KEY, self.user_email)
        )
        for method in cart.contents.payment_request.method_data:
            builder.data(PAYMENT_METHOD_DATA_DATA_KEY, method)
        task = self._call(self.credentials_provider, builder.build())
        return list(task.find_artifact_data(PAYMENT_METHOD_ALIASES_KEY) or [])

    def create_token(self, alias: str) -> PaymentCredentialToken:
        message = (
            MessageBuilder()
            .context_id(self.context_id)
            .text("Create a payment credential token for the selected payment method.")
            .data(USER_EMAIL_KEY, self.user_email)
            .data(PAYMENT_METHOD_ALIAS_KEY, alias)
            .build()
        )
        task = self._call(self.credentials_provider, message)
        raw = task.find_artifact_data(TOKEN_KEY)
        if raw is None:
            raise DownstreamFailure("Credentials provider did not return a token")
        return PaymentCredentialToken.from_dict(raw)

    def send_signed_mandate(self, payment_mandate: PaymentMandate) -> None:
        message = (
            MessageBuilder()
            .context_id(self.context_id)
            .text("Here is the signed payment mandate.")
            .data(PAYMENT_MANDATE_DATA_KEY, payment_mandate)
            .build()
        )
        self._call(self.credentials_provider, message)

    # ── Payment mandate ───────────────────────────────────────────

    def create_payment_mandate(
        self,
        cart: CartMandate,
        token: PaymentCredentialToken,
        address: Optional[ContactAddress] = None,
        method_name: str = "CARD",
    ) -> PaymentMandate:
        """Build the payment mandate for ``cart`` and sign it with the user's key."""
        details = cart.contents.payment_request.details
        contents = PaymentMandateContents(
            payment_mandate_id=new_payment_mandate_id(),
            payment_details_id=details.id,
            payment_details_total=details.total,
            payment_response=PaymentResponse(
                request_id=details.id,
                method_name=method_name,
                details={TOKEN_KEY: token.to_dict()},
                shipping_address=address,
                payer_email=self.user_email,
            ),
            merchant_agent=cart.contents.merchant_name,
        )
        draft = PaymentMandate(payment_mandate_contents=contents)
        return sign_payment_mandate(draft, cart, self._user_key)

    # ── Whole flow ────────────────────────────────────────────────

    def purchase(
        self,
        description: str,
        answer_challenge: ChallengeAnswer,
        choose_cart: Callable[[Sequence[CartMandate]], CartMandate] = lambda carts: carts[0],
        choose_method: Callable[[Sequence[str]], str] = lambda aliases: aliases[0],
        max_challenge_attempts: int = 3,
    ) -> PurchaseResult:
        intent = self.create_intent(description)
        carts = self.find_products(intent)
        if not carts:
            raise ValidationError("CartMandate", "merchant offered no carts")
        cart = choose_cart(carts)

        address = self.shipping_address()
        if address is None:
            raise ValidationError(CONTACT_ADDRESS_DATA_KEY, f"no shipping address for {self.user_email}")
        cart = self.update_cart(cart, address)

        aliases = self.eligible_payment_methods(cart)
        if not aliases:
            raise ValidationError(PAYMENT_METHOD_ALIASES_KEY, "no eligible payment methods")
        token = self.create_token(choose_method(aliases))

        mandate = self.create_payment_mandate(cart, token, address)
        self.send_signed_mandate(mandate)

        task = self.initiate_payment(mandate)
        challenges: list[dict[str, Any]] = []
        attempts = 0
        while task.state is TaskState.INPUT_REQUIRED and attempts < max_challenge_attempts:
            challenge = task.find_artifact_data(CHALLENGE_KEY) or {}
            challenges.append(challenge)
            attempts += 1
            task = self.initiate_payment(mandate, challenge_response=answer_challenge(challenge))
        return PurchaseResult(intent, cart, mandate, task, challenges)

    # ── Helpers ───────────────────────────────────────────────────

    def _merchant_message(self, text: str) -> MessageBuilder:
        return (
            MessageBuilder()
            .context_id(self.context_id)
            .text(text)
            .data(SHOPPING_AGENT_ID_KEY, self.shopping_agent_id)
        )

    def _call(self, client: AgentClient, message) -> Task:
        task = client.send(message, self.extensions).task
        if task.state is not TaskState.COMPLETED:
            raise DownstreamFailure(
                f"{client.name} task {task.id} ended {task.state.value}: "
                f"{task.status_text or 'no reason given'}"
            )
        return task

    def _check_cart(self, cart: CartMandate) -> None:
        if self.merchant_verifier is not None:
            self.merchant_verifier.verify(cart)

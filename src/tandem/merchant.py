"""
Merchant agent.

Turns intents into signed carts, reprices a cart once the shipping
address is known, and relays signed payment mandates to the payment
processor that handles the mandate's payment method.

    find_items        IntentMandate            -> CartMandate artifacts + risk_data
    update_cart       cart_id, address         -> re-signed CartMandate
    initiate_payment  PaymentMandate, risk     -> processor's status, relayed
    dpc_finish        dpc_response             -> payment result
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import timedelta
from typing import Any, Optional

from .audit import AuditSink, EventType
from .cart_store import CartStore, InMemoryCartStore
from .catalog import CatalogItem, StaticCatalog, demo_catalog
from .config import AgentConfig, AgentRole, default_config
from .errors import DownstreamFailure, ValidationError
from .mandate import (
    CartContents,
    CartMandate,
    IntentMandate,
    PaymentDetailsInit,
    PaymentItem,
    PaymentMandate,
    PaymentMethodData,
    PaymentOptions,
    PaymentRequest,
    ensure_intent_active,
    utcnow,
)
from .message import (
    CART_ID_KEY,
    CART_MANDATE_DATA_KEY,
    CHALLENGE_RESPONSE_KEY,
    DEBUG_MODE_KEY,
    DPC_RESPONSE_KEY,
    PAYMENT_MANDATE_DATA_KEY,
    PAYMENT_STATUS_KEY,
    RISK_DATA_KEY,
    TRANSACTION_ID_KEY,
    DataPart,
    MessageBuilder,
)
from .money import format_amount
from .orchestrator import AllowListPolicy, KeywordToolSelector, OperationContext, TaskOrchestrator
from .pricing import FlatShippingAndTax, PricingRule, reprice_for_shipping
from .signing import MerchantSigner, load_merchant_key, verify_user_authorization
from .task import Task, TaskState
from .transport import PeerDirectory


logger = logging.getLogger(__name__)

CART_TTL = timedelta(minutes=30)
ACCEPTED_CARD_NETWORKS = ("mastercard", "paypal", "amex")
DEMO_RISK_DATA = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...fake_risk_data"
PROCESSOR_TASK_KEY = "processor_task_id"
PAYMENT_CLAIM_KEY = "payment_claim"

MERCHANT_TOOL_RULES = (
    ("dpc_finish", ("dpc_finish", "dpc response", "digital payment credential")),
    ("initiate_payment", ("initiate_payment", "initiate payment", "complete the purchase", "checkout")),
    ("update_cart", ("update_cart", "update cart", "update the cart", "shipping address")),
    ("find_items", ("find_items", "find", "search", "looking for", "shop for", "buy", "intentmandate")),
)


class MerchantAgent:
    """Role operations for a merchant. Wire into a ``TaskOrchestrator``."""

    def __init__(
        self,
        config: AgentConfig,
        signer: MerchantSigner,
        peers: PeerDirectory,
        catalog: Optional[StaticCatalog] = None,
        carts: Optional[CartStore] = None,
        pricing: Optional[PricingRule] = None,
        risk_data: str = DEMO_RISK_DATA,
        debug_mode: bool = False,
    ):
        if signer.merchant_name != config.name:
            raise ValueError(
                f"signer is for '{signer.merchant_name}' but merchant is '{config.name}'"
            )
        self.config = config
        self.signer = signer
        self.verifier = signer.verifier()
        self.peers = peers
        self.catalog = catalog or demo_catalog()
        self.carts = carts if carts is not None else InMemoryCartStore()
        self.pricing = pricing or FlatShippingAndTax()
        self.risk_data = risk_data
        self.debug_mode = debug_mode
        self._cart_numbers = itertools.count(1)
        self._numbers_lock = threading.Lock()

    @property
    def operations(self):
        return {
            "find_items": self.find_items,
            "update_cart": self.update_cart,
            "initiate_payment": self.initiate_payment,
            "dpc_finish": self.dpc_finish,
        }

    # ── find_items ────────────────────────────────────────────────

    def find_items(self, ctx: OperationContext) -> None:
        intent = ctx.envelope.require_intent_mandate()
        ensure_intent_active(intent)
        if intent.merchants is not None and self.config.name not in intent.merchants:
            raise ValidationError(
                "IntentMandate.merchants",
                f"merchant '{self.config.name}' is not among the allowed merchants",
            )
        logger.info("Finding items for intent: %s", intent.natural_language_description)

        items = self.catalog.search(intent)
        if not items:
            raise ValidationError("IntentMandate", "no catalog items satisfy the intent constraints")

        now = utcnow()
        for item in items:
            cart = self.signer.sign(self._cart_for(item, intent, now), now=now)
            self.carts.put(cart.cart_id, cart)
            ctx.add_artifact({CART_MANDATE_DATA_KEY: cart.to_dict()})
            ctx.audit(
                EventType.CART_CREATED,
                mandate_id=cart.cart_id,
                details={"item": item.sku, "total": format_amount(cart.contents.total.amount.value)},
            )

        self.carts.put_risk_data(ctx.context_id, self.risk_data)
        ctx.add_artifact({RISK_DATA_KEY: self.risk_data})
        ctx.complete()

    def _cart_for(self, item: CatalogItem, intent: IntentMandate, now) -> CartContents:
        with self._numbers_lock:
            number = next(self._cart_numbers)
        line = item.to_payment_item()
        return CartContents(
            id=f"cart_{number}",
            user_cart_confirmation_required=intent.user_cart_confirmation_required,
            payment_request=PaymentRequest(
                method_data=(
                    PaymentMethodData("CARD", {"network": list(ACCEPTED_CARD_NETWORKS)}),
                ),
                details=PaymentDetailsInit(
                    id=f"order_{number}",
                    display_items=(line,),
                    total=PaymentItem(label="Total", amount=line.amount),
                ),
                options=PaymentOptions(request_shipping=True),
            ),
            cart_expiry=now + CART_TTL,
            merchant_name=self.config.name,
        )

    # ── update_cart ───────────────────────────────────────────────

    def update_cart(self, ctx: OperationContext) -> None:
        cart_id = ctx.envelope.require_str(CART_ID_KEY)
        address = ctx.envelope.contact_address
        if address is None:
            raise ValidationError("shipping_address", "Missing shipping_address.")
        risk_data = self.carts.get_risk_data(ctx.context_id)
        if risk_data is None:
            raise ValidationError(RISK_DATA_KEY, f"Missing risk_data for context_id: {ctx.context_id}")
        if self.carts.payment_for(cart_id) is not None:
            raise ValidationError(CART_ID_KEY, f"cart {cart_id} has already been paid")

        def reprice(current: CartMandate) -> CartMandate:
            contents = reprice_for_shipping(current.contents, address, self.pricing)
            return self.signer.sign(contents)

        updated = self.carts.update(cart_id, reprice)
        logger.info(
            "Cart %s repriced for shipping, new total %s",
            cart_id, format_amount(updated.contents.total.amount.value),
        )
        ctx.audit(
            EventType.CART_UPDATED,
            mandate_id=cart_id,
            details={"total": format_amount(updated.contents.total.amount.value)},
        )
        ctx.add_artifact({CART_MANDATE_DATA_KEY: updated.to_dict()})
        ctx.add_artifact({RISK_DATA_KEY: risk_data})
        ctx.complete()

    # ── initiate_payment ──────────────────────────────────────────

    def initiate_payment(self, ctx: OperationContext) -> None:
        mandate = ctx.envelope.require_payment_mandate()
        contents = mandate.contents
        risk_data = ctx.envelope.get(RISK_DATA_KEY) or self.carts.get_risk_data(ctx.context_id)
        if not risk_data:
            raise ValidationError(RISK_DATA_KEY, "Missing risk_data.")

        cart = self._cart_for_payment(mandate)
        self._claim_cart(ctx, cart.cart_id, contents.payment_mandate_id)

        method = contents.payment_response.method_name
        processor_role = self.config.processor_role_for(method)
        if processor_role is None:
            raise ValidationError(
                "PaymentResponse.method_name", f"No payment processor found for method: {method}"
            )
        processor = self.peers.for_role(processor_role)

        builder = (
            MessageBuilder()
            .context_id(ctx.context_id)
            .text("initiate_payment")
            .data(PAYMENT_MANDATE_DATA_KEY, mandate)
            .data(RISK_DATA_KEY, risk_data)
            .data(DEBUG_MODE_KEY, bool(ctx.envelope.get(DEBUG_MODE_KEY, self.debug_mode)))
            .data(CHALLENGE_RESPONSE_KEY, ctx.envelope.get(CHALLENGE_RESPONSE_KEY) or None)
            .task_id(ctx.task.metadata.get(PROCESSOR_TASK_KEY))
        )
        logger.info(
            "Relaying payment mandate %s to %s", contents.payment_mandate_id, processor.name
        )
        ctx.audit(
            EventType.PAYMENT_RELAYED,
            mandate_id=contents.payment_mandate_id,
            details={"processor": processor.name, "cart_id": cart.cart_id},
        )
        try:
            response = processor.send(builder.build(), ctx.activated_extensions)
        except DownstreamFailure as e:
            ctx.audit(
                EventType.DOWNSTREAM_FAILED,
                mandate_id=contents.payment_mandate_id,
                success=False,
                reason=str(e),
            )
            raise

        remote = response.task
        ctx.task.metadata[PROCESSOR_TASK_KEY] = remote.id
        status = remote.status.message
        if remote.state is TaskState.INPUT_REQUIRED:
            data = {}
            if status is not None:
                for key in status.data_keys():
                    data[key] = status.find_data(key)
            ctx.require_input(remote.status_text or "Additional input required.", data or None)
            return
        if remote.state is TaskState.COMPLETED:
            self.carts.record_payment(cart.cart_id, contents.payment_mandate_id)
            for artifact in remote.artifacts:
                for part in artifact.parts:
                    if isinstance(part, DataPart):
                        ctx.add_artifact(part.data, name=artifact.name)
            ctx.audit(EventType.PAYMENT_COMPLETED, mandate_id=contents.payment_mandate_id)
            ctx.complete(remote.status_text or None)
            return
        raise DownstreamFailure(
            f"Payment processor task {remote.id} ended {remote.state.value}: "
            f"{remote.status_text or 'no reason given'}"
        )

    def _claim_cart(self, ctx: OperationContext, cart_id: str, payment_mandate_id: str) -> None:
        """Hold the cart for this task's mandate until the task ends.

        A follow-up on the same task must carry the mandate that made the claim.
        """
        claim = {"cart_id": cart_id, "payment_mandate_id": payment_mandate_id}
        if ctx.task.metadata.get(PROCESSOR_TASK_KEY) is None:
            self.carts.claim_payment(cart_id, payment_mandate_id)
            ctx.task.metadata[PAYMENT_CLAIM_KEY] = claim
            return
        if ctx.task.metadata.get(PAYMENT_CLAIM_KEY) != claim:
            raise ValidationError(
                CART_ID_KEY, f"task {ctx.task_id} is paying for a different cart or mandate"
            )

    def release_claim(self, task: Task) -> None:
        """Terminal hook: free a cart whose payment did not settle."""
        claim = task.metadata.get(PAYMENT_CLAIM_KEY)
        if claim:
            self.carts.release_claim(claim["cart_id"], claim["payment_mandate_id"])

    def _cart_for_payment(self, mandate: PaymentMandate) -> CartMandate:
        """Find the cart a payment mandate pays for and check both signatures."""
        details_id = mandate.contents.payment_details_id
        cart = self.carts.find_by_details_id(details_id)
        if cart is None:
            raise ValidationError(
                "PaymentMandateContents.payment_details_id", f"no cart for payment request '{details_id}'"
            )
        self.verifier.verify(cart)
        verify_user_authorization(mandate, cart)
        return cart

    # ── dpc_finish ────────────────────────────────────────────────

    def dpc_finish(self, ctx: OperationContext) -> None:
        dpc_response = ctx.envelope.require(DPC_RESPONSE_KEY)
        logger.info("Received DPC response for finalization")
        logger.debug("DPC response: %s", dpc_response)
        ctx.add_artifact({PAYMENT_STATUS_KEY: "SUCCESS", TRANSACTION_ID_KEY: "txn_1234567890"})
        ctx.complete()


def build_merchant(
    peers: PeerDirectory,
    config: Optional[AgentConfig] = None,
    signer: Optional[MerchantSigner] = None,
    audit: Optional[AuditSink] = None,
    **kwargs: Any,
) -> tuple[TaskOrchestrator, MerchantAgent]:
    """Assemble a merchant orchestrator from its configuration."""
    config = config or default_config(AgentRole.MERCHANT)
    if signer is None:
        key = None
        if config.merchant_key_path is not None:
            key = load_merchant_key(config.merchant_key_path.read_bytes())
        signer = MerchantSigner(config.name, private_key=key)
    agent = MerchantAgent(config, signer, peers, **kwargs)
    orchestrator = TaskOrchestrator(
        name=config.name,
        role=AgentRole.MERCHANT.value,
        operations=agent.operations,
        selector=KeywordToolSelector(MERCHANT_TOOL_RULES),
        supported_extensions=config.supported_extensions,
        caller_policy=AllowListPolicy(config.allowed_shopping_agents),
        audit=audit,
        card_extras={"merchant_public_key": signer.public_key_pem()},
        on_terminal=agent.release_claim,
    )
    return orchestrator, agent

"""
Credentials provider agent.

Holds the user's instruments behind opaque tokens. Raw instrument data
leaves this agent only through ``get_payment_method_raw_credentials``,
and only for a token that a signed payment mandate has already bound.
"""

from __future__ import annotations

import logging
from typing import Optional

from .accounts import InMemoryAccountManager, demo_accounts
from .audit import AuditSink, EventType
from .config import AgentConfig, AgentRole, default_config
from .errors import InvalidToken, InvalidTokenState, ValidationError
from .mandate import PaymentCredentialToken, PaymentMandate
from .message import (
    CONTACT_ADDRESS_DATA_KEY,
    PAYMENT_METHOD_ALIAS_KEY,
    PAYMENT_METHOD_ALIASES_KEY,
    PAYMENT_METHOD_DATA_DATA_KEY,
    TOKEN_KEY,
    USER_EMAIL_KEY,
)
from .orchestrator import KeywordToolSelector, OperationContext, TaskOrchestrator
from .signing import verify_user_authorization


logger = logging.getLogger(__name__)

CREDENTIALS_PROVIDER_TOOL_RULES = (
    ("handle_signed_payment_mandate", ("handle_signed_payment_mandate", "signed payment mandate")),
    (
        "get_payment_method_raw_credentials",
        ("get_payment_method_raw_credentials", "payment method credentials", "raw credentials"),
    ),
    ("create_payment_credential_token", ("create_payment_credential_token", "token")),
    ("get_shipping_address", ("get_shipping_address", "shipping address")),
    ("search_payment_methods", ("search_payment_methods", "payment methods", "eligible")),
)


def _token_from(mandate: PaymentMandate) -> PaymentCredentialToken:
    token = mandate.contents.payment_response.credential_token
    if token is None or not token.value:
        raise ValidationError("PaymentResponse.details.token", "Missing token.")
    return token


class CredentialsProviderAgent:
    """Role operations for a credentials provider."""

    def __init__(self, accounts: InMemoryAccountManager):
        self.accounts = accounts

    @property
    def operations(self):
        return {
            "get_shipping_address": self.get_shipping_address,
            "search_payment_methods": self.search_payment_methods,
            "create_payment_credential_token": self.create_payment_credential_token,
            "get_payment_method_raw_credentials": self.get_payment_method_raw_credentials,
            "handle_signed_payment_mandate": self.handle_signed_payment_mandate,
        }

    def get_shipping_address(self, ctx: OperationContext) -> None:
        user_email = ctx.envelope.require_str(USER_EMAIL_KEY)
        address = self.accounts.shipping_address(user_email)
        if address is None:
            ctx.complete(f"No shipping address on file for {user_email}.")
            return
        ctx.add_artifact({CONTACT_ADDRESS_DATA_KEY: address.to_dict()})
        ctx.complete()

    def search_payment_methods(self, ctx: OperationContext) -> None:
        user_email = ctx.envelope.require_str(USER_EMAIL_KEY)
        accepted = ctx.envelope.payment_method_data
        if not accepted:
            raise ValidationError(PAYMENT_METHOD_DATA_DATA_KEY, f"Missing {PAYMENT_METHOD_DATA_DATA_KEY}.")
        aliases = self.accounts.eligible_payment_methods(user_email, accepted)
        logger.info("%d eligible payment method(s) for %s", len(aliases), user_email)
        ctx.add_artifact({PAYMENT_METHOD_ALIASES_KEY: aliases})
        ctx.complete()

    def create_payment_credential_token(self, ctx: OperationContext) -> None:
        user_email = ctx.envelope.require_str(USER_EMAIL_KEY)
        alias = ctx.envelope.require_str(PAYMENT_METHOD_ALIAS_KEY)
        token = self.accounts.create_token(user_email, alias)
        ctx.audit(EventType.TOKEN_ISSUED, details={"user_email": user_email, "alias": alias})
        ctx.add_artifact({TOKEN_KEY: token.to_dict()})
        ctx.complete()

    def get_payment_method_raw_credentials(self, ctx: OperationContext) -> None:
        mandate = ctx.envelope.require_payment_mandate()
        token = _token_from(mandate)
        mandate_id = mandate.contents.payment_mandate_id
        try:
            method = self.accounts.verify_token(token.value, mandate_id)
        except InvalidToken as e:
            ctx.audit(EventType.TOKEN_REJECTED, mandate_id=mandate_id, success=False, reason=str(e))
            raise
        ctx.audit(EventType.TOKEN_VERIFIED, mandate_id=mandate_id)
        ctx.add_artifact({PAYMENT_METHOD_DATA_DATA_KEY: method.to_dict()})
        ctx.complete()

    def handle_signed_payment_mandate(self, ctx: OperationContext) -> None:
        mandate = ctx.envelope.require_payment_mandate()
        verify_user_authorization(mandate)
        token = _token_from(mandate)
        mandate_id = mandate.contents.payment_mandate_id
        try:
            self.accounts.bind_token(token.value, mandate_id)
        except (InvalidToken, InvalidTokenState) as e:
            ctx.audit(EventType.TOKEN_REJECTED, mandate_id=mandate_id, success=False, reason=str(e))
            raise
        info = self.accounts.token_info(token.value)
        ctx.audit(
            EventType.TOKEN_BOUND,
            mandate_id=mandate_id,
            details={"alias": info.payment_method_alias} if info else None,
        )
        ctx.complete(f"Payment mandate {mandate_id} accepted.")


def build_credentials_provider(
    config: Optional[AgentConfig] = None,
    accounts: Optional[InMemoryAccountManager] = None,
    audit: Optional[AuditSink] = None,
) -> tuple[TaskOrchestrator, CredentialsProviderAgent]:
    config = config or default_config(AgentRole.CREDENTIALS_PROVIDER)
    if accounts is None:
        accounts = InMemoryAccountManager(demo_accounts(), issuer_url=config.public_url)
    agent = CredentialsProviderAgent(accounts)
    orchestrator = TaskOrchestrator(
        name=config.name,
        role=AgentRole.CREDENTIALS_PROVIDER.value,
        operations=agent.operations,
        selector=KeywordToolSelector(CREDENTIALS_PROVIDER_TOOL_RULES),
        supported_extensions=config.supported_extensions,
        audit=audit,
    )
    return orchestrator, agent

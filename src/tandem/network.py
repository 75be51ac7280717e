"""
Agent assembly.

``build_agent`` builds one role from its configuration, with peers
reached over HTTP; that is what ``tandem serve`` runs.
``LocalNetwork`` wires all four roles in one process, each peer behind
a ``LocalAgentClient``; the demo and the tests use it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .accounts import InMemoryAccountManager, demo_accounts
from .audit import AuditSink, MemoryAuditSink
from .challenge import ChallengeManager
from .config import AgentConfig, AgentRole, DEFAULT_TIMEOUT_SECONDS, default_config
from .credentials_provider import CredentialsProviderAgent, build_credentials_provider
from .merchant import MerchantAgent, build_merchant
from .orchestrator import TaskOrchestrator
from .payment_processor import PaymentProcessorAgent, build_payment_processor
from .shopper import Shopper
from .signing import MerchantSigner
from .transport import LocalAgentClient, PeerDirectory


def build_agent(config: AgentConfig, audit: Optional[AuditSink] = None) -> TaskOrchestrator:
    """Build the orchestrator for ``config.role`` with HTTP peers."""
    peers = PeerDirectory.from_config(config)
    if config.role is AgentRole.MERCHANT:
        return build_merchant(peers, config=config, audit=audit)[0]
    if config.role is AgentRole.CREDENTIALS_PROVIDER:
        return build_credentials_provider(config=config, audit=audit)[0]
    if config.role is AgentRole.PAYMENT_PROCESSOR:
        return build_payment_processor(peers, config=config, audit=audit)[0]
    raise ValueError(f"Role '{config.role.value}' does not serve requests")


@dataclass
class LocalNetwork:
    merchant: TaskOrchestrator
    merchant_agent: MerchantAgent
    credentials_provider: TaskOrchestrator
    credentials_provider_agent: CredentialsProviderAgent
    payment_processor: TaskOrchestrator
    payment_processor_agent: PaymentProcessorAgent
    shopper_peers: PeerDirectory
    audit: AuditSink

    @classmethod
    def build(
        cls,
        audit: Optional[AuditSink] = None,
        accounts: Optional[InMemoryAccountManager] = None,
        challenges: Optional[ChallengeManager] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        signer: Optional[MerchantSigner] = None,
    ) -> LocalNetwork:
        audit = audit if audit is not None else MemoryAuditSink()
        cp_config = default_config(AgentRole.CREDENTIALS_PROVIDER)
        if accounts is None:
            accounts = InMemoryAccountManager(demo_accounts(), issuer_url=cp_config.public_url)
        cp, cp_agent = build_credentials_provider(cp_config, accounts, audit)
        cp_client = LocalAgentClient(cp, timeout_seconds)

        processor_peers = PeerDirectory()
        processor_peers.register(AgentRole.CREDENTIALS_PROVIDER.value, cp_client, url=cp_config.public_url)
        processor_config = default_config(AgentRole.PAYMENT_PROCESSOR)
        processor, processor_agent = build_payment_processor(
            processor_peers, processor_config, challenges, audit
        )

        merchant_peers = PeerDirectory()
        merchant_peers.register(
            AgentRole.PAYMENT_PROCESSOR.value,
            LocalAgentClient(processor, timeout_seconds),
            url=processor_config.public_url,
        )
        merchant, merchant_agent = build_merchant(merchant_peers, signer=signer, audit=audit)

        shopper_peers = PeerDirectory()
        shopper_peers.register(AgentRole.MERCHANT.value, LocalAgentClient(merchant, timeout_seconds))
        shopper_peers.register(AgentRole.CREDENTIALS_PROVIDER.value, cp_client)
        return cls(
            merchant=merchant,
            merchant_agent=merchant_agent,
            credentials_provider=cp,
            credentials_provider_agent=cp_agent,
            payment_processor=processor,
            payment_processor_agent=processor_agent,
            shopper_peers=shopper_peers,
            audit=audit,
        )

    def shopper(self, user_key: str, user_email: str, **kwargs) -> Shopper:
        kwargs.setdefault("merchant_verifier", self.merchant_agent.verifier)
        return Shopper(self.shopper_peers, user_key, user_email, **kwargs)

"""
Tandem: AP2 mandate chain and cross-agent settlement.

Merchant-signed cart → user-signed payment → challenged settlement:
four agents, one verifiable chain of custody.
"""

__version__ = "0.1.0"

from .accounts import InMemoryAccountManager, demo_accounts
from .audit import AuditTrail, EventType, MemoryAuditSink
from .challenge import ChallengeManager, ChallengeState
from .config import AP2_EXTENSION_URI, AgentConfig, AgentRole, default_config, load_config
from .errors import (
    ChallengeMismatch,
    DownstreamFailure,
    DownstreamTimeout,
    InvalidToken,
    InvalidTokenState,
    TandemError,
    UnauthorizedCaller,
    UnknownOperation,
    ValidationError,
)
from .mandate import (
    CartContents,
    CartMandate,
    IntentMandate,
    PaymentMandate,
    PaymentMandateContents,
    create_intent_mandate,
)
from .network import LocalNetwork, build_agent
from .orchestrator import TaskOrchestrator
from .shopper import PurchaseResult, Shopper
from .signing import MerchantAuthorizationVerifier, MerchantSigner, sign_payment_mandate, verify_user_authorization
from .task import Task, TaskState

__all__ = [
    "CartContents", "CartMandate", "IntentMandate", "PaymentMandate", "PaymentMandateContents",
    "create_intent_mandate", "MerchantSigner", "MerchantAuthorizationVerifier",
    "sign_payment_mandate", "verify_user_authorization",
    "InMemoryAccountManager", "demo_accounts", "ChallengeManager", "ChallengeState",
    "Task", "TaskState", "TaskOrchestrator", "Shopper", "PurchaseResult",
    "LocalNetwork", "build_agent", "AgentConfig", "AgentRole", "AP2_EXTENSION_URI",
    "default_config", "load_config", "AuditTrail", "EventType", "MemoryAuditSink",
    "TandemError", "ValidationError", "UnauthorizedCaller", "InvalidToken", "InvalidTokenState",
    "UnknownOperation", "DownstreamFailure", "DownstreamTimeout", "ChallengeMismatch",
]

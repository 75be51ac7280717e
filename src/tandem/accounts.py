"""
Credentials provider account store.

Holds each user's payment instruments and shipping address, and issues
the opaque credential tokens that stand in for an instrument on the
wire. A token is tied to one (user, alias) pair when issued and to one
payment mandate id when first bound; ``verify_token`` is the only path
that releases raw instrument data.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

from .errors import InvalidToken, InvalidTokenState, ValidationError
from .locks import KeyedLock
from .mandate import ContactAddress, PaymentCredentialToken, PaymentMethodData, utcnow


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tok_"


@dataclass(frozen=True)
class Account:
    """A user's account, keyed by email address."""

    email_address: str
    shipping_address: Optional[ContactAddress] = None
    payment_methods: tuple[PaymentMethodData, ...] = ()


@dataclass(frozen=True)
class TokenInfo:
    """Read-only view of an issued token."""

    value: str
    user_email: str
    payment_method_alias: str
    issued_at: datetime
    bound_mandate_id: Optional[str] = None

    @property
    def is_bound(self) -> bool:
        return self.bound_mandate_id is not None


@dataclass
class _TokenRecord:
    user_email: str
    payment_method_alias: str
    issued_at: datetime = field(default_factory=utcnow)
    bound_mandate_id: Optional[str] = None


class AccountManager(Protocol):
    def create_token(self, user_email: str, payment_method_alias: str) -> PaymentCredentialToken: ...

    def bind_token(self, token: str, payment_mandate_id: str) -> None: ...

    def verify_token(self, token: str, payment_mandate_id: str) -> PaymentMethodData: ...

    def eligible_payment_methods(
        self, user_email: str, accepted_methods: Iterable[PaymentMethodData]
    ) -> list[str]: ...

    def shipping_address(self, user_email: str) -> Optional[ContactAddress]: ...

    def payment_method_by_alias(self, user_email: str, alias: str) -> Optional[PaymentMethodData]: ...


class InMemoryAccountManager:
    """Process-local account and token store.

    Safe under concurrent use: token binding is serialized per token
    value, and the token table itself is guarded only for insertion and
    lookup.
    """

    def __init__(
        self,
        accounts: Iterable[Account] = (),
        issuer_url: Optional[str] = None,
    ):
        self._accounts: dict[str, Account] = {}
        self._accounts_lock = threading.Lock()
        self._tokens: dict[str, _TokenRecord] = {}
        self._tokens_lock = threading.Lock()
        self._token_locks = KeyedLock()
        self.issuer_url = issuer_url
        for account in accounts:
            self.add_account(account)

    # ── Accounts ──────────────────────────────────────────────────

    def add_account(self, account: Account) -> None:
        with self._accounts_lock:
            self._accounts[_email_key(account.email_address)] = account

    def account(self, user_email: str) -> Optional[Account]:
        with self._accounts_lock:
            return self._accounts.get(_email_key(user_email))

    def shipping_address(self, user_email: str) -> Optional[ContactAddress]:
        account = self.account(user_email)
        return account.shipping_address if account else None

    def payment_methods(self, user_email: str) -> list[PaymentMethodData]:
        account = self.account(user_email)
        return list(account.payment_methods) if account else []

    def payment_method_by_alias(self, user_email: str, alias: str) -> Optional[PaymentMethodData]:
        wanted = (alias or "").strip().lower()
        for method in self.payment_methods(user_email):
            if method.alias is not None and method.alias.lower() == wanted:
                return method
        return None

    def eligible_payment_methods(
        self,
        user_email: str,
        accepted_methods: Iterable[PaymentMethodData],
    ) -> list[str]:
        """Aliases of the user's instruments the merchant accepts, in account order."""
        criteria = list(accepted_methods)
        eligible: list[str] = []
        for method in self.payment_methods(user_email):
            if method.alias is None:
                continue
            if any(_is_eligible(method, c) for c in criteria):
                eligible.append(method.alias)
        return eligible

    # ── Tokens ────────────────────────────────────────────────────

    def create_token(self, user_email: str, payment_method_alias: str) -> PaymentCredentialToken:
        """Issue a fresh, unbound token for one of the user's instruments."""
        if self.account(user_email) is None:
            raise ValidationError("user_email", f"no account for {user_email}")
        method = self.payment_method_by_alias(user_email, payment_method_alias)
        if method is None:
            raise ValidationError(
                "payment_method_alias",
                f"no payment method '{payment_method_alias}' on account {user_email}",
            )

        value = TOKEN_PREFIX + secrets.token_urlsafe(24)
        with self._tokens_lock:
            self._tokens[value] = _TokenRecord(
                user_email=user_email,
                payment_method_alias=method.alias or payment_method_alias,
            )
        logger.info("Issued credential token for %s (%s)", user_email, method.alias)
        return PaymentCredentialToken(value=value, issuer_url=self.issuer_url)

    def bind_token(self, token: str, payment_mandate_id: str) -> None:
        """Bind ``token`` to a payment mandate id, once.

        Re-binding to the same id is a no-op. Binding to a different id
        raises ``InvalidTokenState`` and keeps the existing binding.
        """
        if not payment_mandate_id:
            raise ValidationError("payment_mandate_id", "is required")
        with self._token_locks.hold(token):
            record = self._record(token)
            if record is None:
                raise InvalidToken(f"Token {token} not found")
            if record.bound_mandate_id is None:
                record.bound_mandate_id = payment_mandate_id
                logger.info("Bound credential token to payment mandate %s", payment_mandate_id)
                return
            if record.bound_mandate_id != payment_mandate_id:
                raise InvalidTokenState(record.bound_mandate_id, payment_mandate_id)

    def verify_token(self, token: str, payment_mandate_id: str) -> PaymentMethodData:
        """Release the instrument behind ``token`` for the mandate it is bound to."""
        with self._token_locks.hold(token):
            record = self._record(token)
            if (
                record is None
                or record.bound_mandate_id is None
                or record.bound_mandate_id != payment_mandate_id
            ):
                raise InvalidToken("Invalid token")
            email, alias = record.user_email, record.payment_method_alias

        method = self.payment_method_by_alias(email, alias)
        if method is None:
            raise InvalidToken("Invalid token")
        return method

    def token_info(self, token: str) -> Optional[TokenInfo]:
        with self._token_locks.hold(token):
            record = self._record(token)
            if record is None:
                return None
            return TokenInfo(
                value=token,
                user_email=record.user_email,
                payment_method_alias=record.payment_method_alias,
                issued_at=record.issued_at,
                bound_mandate_id=record.bound_mandate_id,
            )

    def _record(self, token: str) -> Optional[_TokenRecord]:
        with self._tokens_lock:
            return self._tokens.get(token)


def _email_key(email: str) -> str:
    return (email or "").strip().lower()


def _is_eligible(method: PaymentMethodData, accepted: PaymentMethodData) -> bool:
    if method.supported_methods.strip().upper() != accepted.supported_methods.strip().upper():
        return False
    return bool(method.networks & accepted.networks)


def demo_accounts() -> list[Account]:
    """Sample account used by the demo and the default credentials provider."""
    return [
        Account(
            email_address="bugsbunny@gmail.com",
            shipping_address=ContactAddress(
                recipient="Bugs Bunny",
                organization="Sample Organization",
                address_line=("123 Main St",),
                city="Sample City",
                region="ST",
                postal_code="00000",
                country="US",
                phone_number="+1-000-000-0000",
            ),
            payment_methods=(
                PaymentMethodData(
                    supported_methods="CARD",
                    data={
                        "alias": "American Express ending in 4444",
                        "network": [{"name": "amex", "formats": ["DPAN"]}],
                        "cryptogram": "fake_cryptogram_abc123",
                        "token": "1111000000000000",
                        "card_holder_name": "John Doe",
                        "card_expiration": "12/2025",
                    },
                ),
                PaymentMethodData(
                    supported_methods="CARD",
                    data={
                        "alias": "American Express ending in 8888",
                        "network": [{"name": "amex", "formats": ["DPAN"]}],
                        "cryptogram": "fake_cryptogram_ghi789",
                        "token": "2222000000000000",
                        "card_holder_name": "Bugs Bunny",
                        "card_expiration": "10/2027",
                    },
                ),
                PaymentMethodData(
                    supported_methods="BANK_ACCOUNT",
                    data={
                        "alias": "Primary bank account",
                        "network": [{"name": "ach"}],
                        "account_number": "111",
                        "routing_number": "111",
                        "bank_name": "Bank of Money",
                    },
                ),
            ),
        ),
    ]

"""Tests for the credentials provider account and token store."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from tandem.accounts import Account, InMemoryAccountManager, demo_accounts
from tandem.errors import InvalidToken, InvalidTokenState, ValidationError
from tandem.mandate import ContactAddress, PaymentMethodData


EMAIL = "daffy@example.com"
VISA = PaymentMethodData("CARD", {"alias": "visa-1", "network": ["visa"], "token": "4111000000000000"})
AMEX = PaymentMethodData("CARD", {"alias": "amex-1", "network": [{"name": "amex"}]})


@pytest.fixture
def accounts():
    return InMemoryAccountManager(
        [Account(EMAIL, ContactAddress(recipient="Daffy Duck", city="Duckburg"), (VISA, AMEX))],
        issuer_url="http://127.0.0.1:8002",
    )


class TestTokenIssuance:
    def test_token_is_opaque_and_carries_issuer(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")
        assert token.value.startswith("tok_")
        assert "4111" not in token.value
        assert token.issuer_url == "http://127.0.0.1:8002"

    def test_each_token_is_unique(self, accounts):
        values = {accounts.create_token(EMAIL, "visa-1").value for _ in range(20)}
        assert len(values) == 20

    def test_alias_lookup_is_case_insensitive(self, accounts):
        token = accounts.create_token(EMAIL, "VISA-1")
        assert accounts.token_info(token.value).payment_method_alias == "visa-1"

    def test_unknown_alias_rejected(self, accounts):
        with pytest.raises(ValidationError, match="no payment method 'mastercard-9'"):
            accounts.create_token(EMAIL, "mastercard-9")

    def test_unknown_user_rejected(self, accounts):
        with pytest.raises(ValidationError, match="no account"):
            accounts.create_token("nobody@example.com", "visa-1")


class TestTokenBinding:
    def test_bind_then_verify(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")
        accounts.bind_token(token.value, "pm-1")

        method = accounts.verify_token(token.value, "pm-1")
        assert method.alias == "visa-1"
        assert method.data["token"] == "4111000000000000"

    def test_rebinding_same_mandate_is_noop(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")
        accounts.bind_token(token.value, "pm-1")
        accounts.bind_token(token.value, "pm-1")
        assert accounts.token_info(token.value).bound_mandate_id == "pm-1"

    def test_rebinding_other_mandate_rejected(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")
        accounts.bind_token(token.value, "pm-1")

        with pytest.raises(InvalidTokenState, match="already bound to payment mandate pm-1"):
            accounts.bind_token(token.value, "pm-2")
        assert accounts.token_info(token.value).bound_mandate_id == "pm-1"

    def test_bind_unknown_token(self, accounts):
        with pytest.raises(InvalidToken, match="not found"):
            accounts.bind_token("tok_missing", "pm-1")

    def test_bind_requires_mandate_id(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")
        with pytest.raises(ValidationError, match="payment_mandate_id"):
            accounts.bind_token(token.value, "")

    @pytest.mark.parametrize("bind_to, verify_with", [
        (None, "pm-1"),
        ("pm-1", "pm-2"),
    ])
    def test_verify_rejects_unbound_or_mismatched(self, accounts, bind_to, verify_with):
        token = accounts.create_token(EMAIL, "visa-1")
        if bind_to:
            accounts.bind_token(token.value, bind_to)
        with pytest.raises(InvalidToken, match="Invalid token"):
            accounts.verify_token(token.value, verify_with)

    def test_verify_unknown_token(self, accounts):
        with pytest.raises(InvalidToken):
            accounts.verify_token("tok_missing", "pm-1")

    def test_concurrent_binds_have_one_winner(self, accounts):
        token = accounts.create_token(EMAIL, "visa-1")

        def bind(n):
            try:
                accounts.bind_token(token.value, f"pm-{n}")
                return f"pm-{n}"
            except InvalidTokenState:
                return None

        with ThreadPoolExecutor(max_workers=16) as ex:
            results = list(ex.map(bind, range(32)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert accounts.token_info(token.value).bound_mandate_id == winners[0]


class TestEligibility:
    def test_network_match(self, accounts):
        accepted = [PaymentMethodData("CARD", {"network": ["amex", "mastercard"]})]
        assert accounts.eligible_payment_methods(EMAIL, accepted) == ["amex-1"]

    def test_method_type_must_match(self, accounts):
        accepted = [PaymentMethodData("BANK_ACCOUNT", {"network": ["visa"]})]
        assert accounts.eligible_payment_methods(EMAIL, accepted) == []

    def test_unknown_user_has_no_methods(self, accounts):
        accepted = [PaymentMethodData("CARD", {"network": ["visa"]})]
        assert accounts.eligible_payment_methods("nobody@example.com", accepted) == []

    def test_demo_account(self):
        manager = InMemoryAccountManager(demo_accounts())
        accepted = [PaymentMethodData("CARD", {"network": ["mastercard", "paypal", "amex"]})]
        assert manager.eligible_payment_methods("BugsBunny@gmail.com", accepted) == [
            "American Express ending in 4444",
            "American Express ending in 8888",
        ]
        assert manager.shipping_address("bugsbunny@gmail.com").recipient == "Bugs Bunny"

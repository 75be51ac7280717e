"""Tests for merchant cart storage."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from tandem.cart_store import InMemoryCartStore
from tandem.errors import ValidationError
from tandem.mandate import CartMandate, ContactAddress, PaymentCurrencyAmount, PaymentItem
from tandem.pricing import reprice_for_shipping

from helpers import make_contents


class AddLine:
    """Pricing rule that appends one labelled line item."""

    def __init__(self, label, amount="1.00"):
        self.label = label
        self.amount = Decimal(amount)

    def adjustments(self, contents, address):
        return [PaymentItem(label=self.label, amount=PaymentCurrencyAmount("USD", self.amount))]


ADDRESS = ContactAddress(recipient="Bugs Bunny", country="US")


class TestInMemoryCartStore:
    def test_put_and_get(self):
        store = InMemoryCartStore()
        cart = CartMandate(make_contents())
        store.put("cart_1", cart)
        assert store.get("cart_1") == cart
        assert store.get("cart_2") is None
        assert len(store) == 1

    def test_put_requires_matching_id(self):
        store = InMemoryCartStore()
        with pytest.raises(ValidationError, match="does not match cart contents id"):
            store.put("cart_9", CartMandate(make_contents()))

    def test_find_by_details_id(self):
        store = InMemoryCartStore()
        store.put("cart_1", CartMandate(make_contents(cart_id="cart_1", details_id="order_1")))
        store.put("cart_2", CartMandate(make_contents(cart_id="cart_2", details_id="order_2")))
        assert store.find_by_details_id("order_2").cart_id == "cart_2"
        assert store.find_by_details_id("order_3") is None

    def test_update_missing_cart(self):
        store = InMemoryCartStore()
        with pytest.raises(ValidationError, match="CartMandate not found for cart_id: cart_1"):
            store.update("cart_1", lambda c: c)

    def test_update_cannot_change_id(self):
        store = InMemoryCartStore()
        store.put("cart_1", CartMandate(make_contents()))
        with pytest.raises(ValidationError, match="must keep the cart id"):
            store.update("cart_1", lambda c: CartMandate(make_contents(cart_id="cart_2")))
        assert store.get("cart_1").cart_id == "cart_1"

    def test_failed_update_keeps_previous_cart(self):
        store = InMemoryCartStore()
        original = CartMandate(make_contents())
        store.put("cart_1", original)

        def explode(cart):
            raise ValidationError("cart", "boom")

        with pytest.raises(ValidationError, match="boom"):
            store.update("cart_1", explode)
        assert store.get("cart_1") is original

    def test_concurrent_updates_are_not_lost(self):
        store = InMemoryCartStore()
        store.put("cart_1", CartMandate(make_contents(("10.00",))))

        def add(n):
            def fn(cart):
                contents = reprice_for_shipping(cart.contents, ADDRESS, AddLine(f"line {n}"))
                return CartMandate(contents)
            store.update("cart_1", fn)

        with ThreadPoolExecutor(max_workers=8) as ex:
            list(ex.map(add, range(40)))

        final = store.get("cart_1").contents
        assert len(final.payment_request.details.display_items) == 41
        assert final.total.amount.value == Decimal("50.00")

    def test_risk_data_by_context(self):
        store = InMemoryCartStore()
        store.put_risk_data("ctx-1", "risky")
        assert store.get_risk_data("ctx-1") == "risky"
        assert store.get_risk_data("ctx-2") is None


class TestPaymentRecords:
    def test_record_is_idempotent_for_same_mandate(self):
        store = InMemoryCartStore()
        store.record_payment("cart_1", "pm-1")
        store.record_payment("cart_1", "pm-1")
        assert store.payment_for("cart_1") == "pm-1"

    def test_second_mandate_rejected(self):
        store = InMemoryCartStore()
        store.record_payment("cart_1", "pm-1")
        with pytest.raises(ValidationError, match="already paid by mandate pm-1"):
            store.record_payment("cart_1", "pm-2")
        assert store.payment_for("cart_1") == "pm-1"

    def test_concurrent_payments_have_one_winner(self):
        store = InMemoryCartStore()

        def pay(n):
            try:
                store.record_payment("cart_1", f"pm-{n}")
                return True
            except ValidationError:
                return False

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(pay, range(24)))
        assert results.count(True) == 1


class TestPaymentClaims:
    def test_concurrent_claims_have_one_winner(self):
        store = InMemoryCartStore()

        def claim(n):
            try:
                store.claim_payment("cart_1", f"pm-{n}")
                return f"pm-{n}"
            except ValidationError:
                return None

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(claim, range(20)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.claim_for("cart_1") == winners[0]

    def test_same_mandate_cannot_claim_twice(self):
        store = InMemoryCartStore()
        store.claim_payment("cart_1", "pm-1")
        with pytest.raises(ValidationError, match="payment in progress for mandate pm-1"):
            store.claim_payment("cart_1", "pm-1")

    def test_release_frees_the_cart(self):
        store = InMemoryCartStore()
        store.claim_payment("cart_1", "pm-1")
        store.release_claim("cart_1", "pm-2")
        assert store.claim_for("cart_1") == "pm-1"

        store.release_claim("cart_1", "pm-1")
        store.claim_payment("cart_1", "pm-2")
        assert store.claim_for("cart_1") == "pm-2"

    def test_paid_cart_cannot_be_claimed(self):
        store = InMemoryCartStore()
        store.claim_payment("cart_1", "pm-1")
        store.record_payment("cart_1", "pm-1")
        assert store.claim_for("cart_1") is None
        with pytest.raises(ValidationError, match="has already been paid"):
            store.claim_payment("cart_1", "pm-1")

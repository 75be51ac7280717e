"""Cart repricing once a shipping address is known."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Protocol

from .mandate import CartContents, ContactAddress, PaymentCurrencyAmount, PaymentItem
from .money import micros_to_decimal


class PricingRule(Protocol):
    def adjustments(self, contents: CartContents, address: ContactAddress) -> list[PaymentItem]:
        """Line items to append for shipping to ``address``."""
        ...


class FlatShippingAndTax:
    """Fixed shipping and tax charges, independent of destination."""

    def __init__(self, shipping: Decimal = Decimal("2.00"), tax: Decimal = Decimal("1.50")):
        self.shipping = Decimal(shipping)
        self.tax = Decimal(tax)

    def adjustments(self, contents: CartContents, address: ContactAddress) -> list[PaymentItem]:
        currency = contents.total.amount.currency
        return [
            PaymentItem(label="Shipping", amount=PaymentCurrencyAmount(currency, self.shipping)),
            PaymentItem(label="Tax", amount=PaymentCurrencyAmount(currency, self.tax)),
        ]


def reprice_for_shipping(
    contents: CartContents,
    address: ContactAddress,
    rule: PricingRule,
) -> CartContents:
    """Return new contents with the rule's items appended and the total recomputed.

    Items the rule produced on an earlier address update are replaced, so
    repeating the update does not charge shipping twice.
    """
    request = contents.payment_request
    details = request.details
    new_items = rule.adjustments(contents, address)
    replaced = {item.label for item in new_items}
    kept = tuple(item for item in details.display_items if item.label not in replaced)
    display_items = kept + tuple(new_items)

    total_micros = sum(item.amount.micros for item in display_items)
    total = replace(
        details.total,
        amount=PaymentCurrencyAmount(details.total.amount.currency, micros_to_decimal(total_micros)),
    )
    return replace(
        contents,
        payment_request=replace(
            request,
            details=replace(details, display_items=display_items, total=total),
            shipping_address=address,
        ),
    )

"""Builders shared by the test modules."""

from datetime import timedelta
from decimal import Decimal

from tandem.mandate import (
    CartContents,
    CartMandate,
    PaymentCredentialToken,
    PaymentCurrencyAmount,
    PaymentDetailsInit,
    PaymentItem,
    PaymentMandate,
    PaymentMandateContents,
    PaymentMethodData,
    PaymentRequest,
    PaymentResponse,
    new_payment_mandate_id,
    utcnow,
)


MERCHANT = "Generic Merchant"


def make_contents(prices=("10.00",), cart_id="cart_1", details_id="order_1", expiry=None, merchant=MERCHANT):
    items = tuple(
        PaymentItem(label=f"item {n}", amount=PaymentCurrencyAmount("USD", Decimal(p)))
        for n, p in enumerate(prices)
    )
    total = sum((Decimal(p) for p in prices), Decimal("0"))
    return CartContents(
        id=cart_id,
        user_cart_confirmation_required=True,
        payment_request=PaymentRequest(
            method_data=(PaymentMethodData("CARD", {"network": ["amex"]}),),
            details=PaymentDetailsInit(
                id=details_id,
                display_items=items,
                total=PaymentItem(label="Total", amount=PaymentCurrencyAmount("USD", total)),
            ),
        ),
        cart_expiry=expiry or utcnow() + timedelta(minutes=30),
        merchant_name=merchant,
    )


def make_payment_draft(cart: CartMandate, token_value="tok_test", issuer_url=None, mandate_id=None):
    details = cart.contents.payment_request.details
    return PaymentMandate(
        payment_mandate_contents=PaymentMandateContents(
            payment_mandate_id=mandate_id or new_payment_mandate_id(),
            payment_details_id=details.id,
            payment_details_total=details.total,
            payment_response=PaymentResponse(
                request_id=details.id,
                method_name="CARD",
                details={"token": PaymentCredentialToken(token_value, issuer_url).to_dict()},
                payer_email="bugsbunny@gmail.com",
            ),
            merchant_agent=cart.contents.merchant_name,
        )
    )

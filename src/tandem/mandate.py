"""
Mandate data model.

Three chained authorization objects carry a purchase from one agent to
the next:

    IntentMandate   what the user wants (created by the shopping agent)
    CartMandate     what the merchant offers, endorsed by the merchant
    PaymentMandate  how the user pays for one cart, endorsed by the user

All types are frozen dataclasses. Changing a mandate means building a
new value with ``dataclasses.replace`` and storing it in place of the
old one. ``to_dict``/``from_dict`` convert to and from the snake_case
wire form; ``from_dict`` is the only way untrusted data becomes a typed
value, and it raises ``ValidationError`` naming the offending field.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from eth_utils import keccak

from .errors import ValidationError
from .money import amount_to_micros, decimal_to_wire, micros_to_decimal, to_decimal


DEFAULT_REFUND_PERIOD_DAYS = 30


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are treated as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as e:
            raise ValidationError(field_name, f"invalid timestamp {value!r}") from e
    else:
        raise ValidationError(field_name, "timestamp is required")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require(data: Mapping[str, Any], key: str, owner: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValidationError(owner, "expected an object")
    value = data.get(key)
    if value is None:
        raise ValidationError(f"{owner}.{key}", "is required")
    return value


def _require_str(data: Mapping[str, Any], key: str, owner: str) -> str:
    value = _require(data, key, owner)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{owner}.{key}", "must be a non-empty string")
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return None if value is None else str(value)


def _optional_bool(
    data: Mapping[str, Any], key: str, owner: str, default: Optional[bool]
) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{owner}.{key}", f"must be a boolean, got {value!r}")
    return value


def _optional_int(data: Mapping[str, Any], key: str, owner: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{owner}.{key}", f"must be an integer, got {value!r}")
    return value


def _string_tuple(value: Any, field_name: str) -> Optional[tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValidationError(field_name, "must be a list of strings")
    return tuple(str(v) for v in value)


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# ---------------------------------------------------------------------------
# Canonical hashing
# ---------------------------------------------------------------------------


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    normalized = _normalize_for_canonical_json(value)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, (float, Decimal)):
        # Amounts hash as their exact decimal text so 2, 2.0 and 2.00 agree.
        return _decimal_text(to_decimal(value))
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")


def _decimal_text(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "0") else text


# ---------------------------------------------------------------------------
# Commerce types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentCurrencyAmount:
    currency: str
    value: Decimal

    def __post_init__(self):
        if not isinstance(self.currency, str) or not self.currency.strip():
            raise ValidationError("amount.currency", "is required")
        object.__setattr__(self, "currency", self.currency.strip().upper())
        object.__setattr__(self, "value", to_decimal(self.value, "amount.value"))

    @property
    def micros(self) -> int:
        return amount_to_micros(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {"currency": self.currency, "value": decimal_to_wire(self.value)}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentCurrencyAmount:
        return cls(
            currency=_require_str(d, "currency", "amount"),
            value=_require(d, "value", "amount"),
        )


@dataclass(frozen=True)
class PaymentItem:
    """A line item: a label and an amount."""

    label: str
    amount: PaymentCurrencyAmount
    pending: Optional[bool] = None
    refund_period: int = DEFAULT_REFUND_PERIOD_DAYS

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "label": self.label,
            "amount": self.amount.to_dict(),
            "pending": self.pending,
            "refund_period": self.refund_period,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentItem:
        return cls(
            label=_require_str(d, "label", "PaymentItem"),
            amount=PaymentCurrencyAmount.from_dict(_require(d, "amount", "PaymentItem")),
            pending=_optional_bool(d, "pending", "PaymentItem", None),
            refund_period=_optional_int(d, "refund_period", "PaymentItem", DEFAULT_REFUND_PERIOD_DAYS),
        )


@dataclass(frozen=True)
class PaymentShippingOption:
    id: str
    label: str
    amount: PaymentCurrencyAmount
    selected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "amount": self.amount.to_dict(),
            "selected": self.selected,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentShippingOption:
        return cls(
            id=_require_str(d, "id", "PaymentShippingOption"),
            label=_require_str(d, "label", "PaymentShippingOption"),
            amount=PaymentCurrencyAmount.from_dict(_require(d, "amount", "PaymentShippingOption")),
            selected=_optional_bool(d, "selected", "PaymentShippingOption", False),
        )


@dataclass(frozen=True)
class PaymentMethodData:
    """A payment method the merchant accepts, e.g. CARD on given networks."""

    supported_methods: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def alias(self) -> Optional[str]:
        alias = self.data.get("alias")
        return str(alias) if alias is not None else None

    @property
    def networks(self) -> set[str]:
        """Lower-cased network names. Accepts plain names or ``{"name": ...}`` entries."""
        names: set[str] = set()
        for entry in self.data.get("network") or []:
            if isinstance(entry, Mapping):
                entry = entry.get("name")
            if isinstance(entry, str) and entry.strip():
                names.add(entry.strip().lower())
        return names

    def to_dict(self) -> dict[str, Any]:
        return {"supported_methods": self.supported_methods, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentMethodData:
        data = d.get("data") or {}
        if not isinstance(data, Mapping):
            raise ValidationError("PaymentMethodData.data", "must be an object")
        return cls(
            supported_methods=_require_str(d, "supported_methods", "PaymentMethodData"),
            data=dict(data),
        )


@dataclass(frozen=True)
class PaymentDetailsModifier:
    supported_methods: str
    total: Optional[PaymentItem] = None
    additional_display_items: tuple[PaymentItem, ...] = ()
    data: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "supported_methods": self.supported_methods,
            "total": self.total.to_dict() if self.total else None,
            "additional_display_items": [i.to_dict() for i in self.additional_display_items],
            "data": self.data,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentDetailsModifier:
        total = d.get("total")
        return cls(
            supported_methods=_require_str(d, "supported_methods", "PaymentDetailsModifier"),
            total=PaymentItem.from_dict(total) if total else None,
            additional_display_items=tuple(
                PaymentItem.from_dict(i) for i in d.get("additional_display_items") or []
            ),
            data=d.get("data"),
        )


@dataclass(frozen=True)
class PaymentOptions:
    request_payer_name: bool = False
    request_payer_email: bool = False
    request_payer_phone: bool = False
    request_shipping: bool = True
    shipping_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "request_payer_name": self.request_payer_name,
            "request_payer_email": self.request_payer_email,
            "request_payer_phone": self.request_payer_phone,
            "request_shipping": self.request_shipping,
            "shipping_type": self.shipping_type,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentOptions:
        return cls(
            request_payer_name=_optional_bool(d, "request_payer_name", "PaymentOptions", False),
            request_payer_email=_optional_bool(d, "request_payer_email", "PaymentOptions", False),
            request_payer_phone=_optional_bool(d, "request_payer_phone", "PaymentOptions", False),
            request_shipping=_optional_bool(d, "request_shipping", "PaymentOptions", True),
            shipping_type=_optional_str(d, "shipping_type"),
        )


@dataclass(frozen=True)
class ContactAddress:
    """Postal address as returned by a contact picker."""

    city: Optional[str] = None
    country: Optional[str] = None
    dependent_locality: Optional[str] = None
    organization: Optional[str] = None
    phone_number: Optional[str] = None
    postal_code: Optional[str] = None
    recipient: Optional[str] = None
    region: Optional[str] = None
    sorting_code: Optional[str] = None
    address_line: Optional[tuple[str, ...]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "city": self.city,
            "country": self.country,
            "dependent_locality": self.dependent_locality,
            "organization": self.organization,
            "phone_number": self.phone_number,
            "postal_code": self.postal_code,
            "recipient": self.recipient,
            "region": self.region,
            "sorting_code": self.sorting_code,
            "address_line": list(self.address_line) if self.address_line is not None else None,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> ContactAddress:
        if not isinstance(d, Mapping):
            raise ValidationError("ContactAddress", "expected an object")
        return cls(
            city=_optional_str(d, "city"),
            country=_optional_str(d, "country"),
            dependent_locality=_optional_str(d, "dependent_locality"),
            organization=_optional_str(d, "organization"),
            phone_number=_optional_str(d, "phone_number"),
            postal_code=_optional_str(d, "postal_code"),
            recipient=_optional_str(d, "recipient"),
            region=_optional_str(d, "region"),
            sorting_code=_optional_str(d, "sorting_code"),
            address_line=_string_tuple(d.get("address_line"), "ContactAddress.address_line"),
        )


@dataclass(frozen=True)
class PaymentDetailsInit:
    id: str
    display_items: tuple[PaymentItem, ...]
    total: PaymentItem
    shipping_options: Optional[tuple[PaymentShippingOption, ...]] = None
    modifiers: Optional[tuple[PaymentDetailsModifier, ...]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "display_items": [i.to_dict() for i in self.display_items],
            "total": self.total.to_dict(),
            "shipping_options": (
                [o.to_dict() for o in self.shipping_options]
                if self.shipping_options is not None else None
            ),
            "modifiers": (
                [m.to_dict() for m in self.modifiers] if self.modifiers is not None else None
            ),
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentDetailsInit:
        shipping_options = d.get("shipping_options")
        modifiers = d.get("modifiers")
        return cls(
            id=_require_str(d, "id", "PaymentDetailsInit"),
            display_items=tuple(
                PaymentItem.from_dict(i) for i in d.get("display_items") or []
            ),
            total=PaymentItem.from_dict(_require(d, "total", "PaymentDetailsInit")),
            shipping_options=(
                tuple(PaymentShippingOption.from_dict(o) for o in shipping_options)
                if shipping_options is not None else None
            ),
            modifiers=(
                tuple(PaymentDetailsModifier.from_dict(m) for m in modifiers)
                if modifiers is not None else None
            ),
        )


@dataclass(frozen=True)
class PaymentRequest:
    method_data: tuple[PaymentMethodData, ...]
    details: PaymentDetailsInit
    options: Optional[PaymentOptions] = None
    shipping_address: Optional[ContactAddress] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "method_data": [m.to_dict() for m in self.method_data],
            "details": self.details.to_dict(),
            "options": self.options.to_dict() if self.options else None,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentRequest:
        options = d.get("options")
        shipping_address = d.get("shipping_address")
        return cls(
            method_data=tuple(
                PaymentMethodData.from_dict(m) for m in d.get("method_data") or []
            ),
            details=PaymentDetailsInit.from_dict(_require(d, "details", "PaymentRequest")),
            options=PaymentOptions.from_dict(options) if options else None,
            shipping_address=ContactAddress.from_dict(shipping_address) if shipping_address else None,
        )


@dataclass(frozen=True)
class PaymentCredentialToken:
    """Opaque token standing in for a payment instrument."""

    value: str
    issuer_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"value": self.value, "url": self.issuer_url})

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentCredentialToken:
        return cls(value=_require_str(d, "value", "token"), issuer_url=_optional_str(d, "url"))


@dataclass(frozen=True)
class PaymentResponse:
    request_id: str
    method_name: str
    details: Optional[dict[str, Any]] = None
    shipping_address: Optional[ContactAddress] = None
    shipping_option: Optional[PaymentShippingOption] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    payer_phone: Optional[str] = None

    @property
    def credential_token(self) -> Optional[PaymentCredentialToken]:
        token = (self.details or {}).get("token")
        if token is None:
            return None
        if isinstance(token, str):
            return PaymentCredentialToken(value=token)
        return PaymentCredentialToken.from_dict(token)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "request_id": self.request_id,
            "method_name": self.method_name,
            "details": self.details,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "shipping_option": self.shipping_option.to_dict() if self.shipping_option else None,
            "payer_name": self.payer_name,
            "payer_email": self.payer_email,
            "payer_phone": self.payer_phone,
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentResponse:
        details = d.get("details")
        if details is not None and not isinstance(details, Mapping):
            raise ValidationError("PaymentResponse.details", "must be an object")
        shipping_address = d.get("shipping_address")
        shipping_option = d.get("shipping_option")
        return cls(
            request_id=_require_str(d, "request_id", "PaymentResponse"),
            method_name=_require_str(d, "method_name", "PaymentResponse"),
            details=dict(details) if details is not None else None,
            shipping_address=ContactAddress.from_dict(shipping_address) if shipping_address else None,
            shipping_option=(
                PaymentShippingOption.from_dict(shipping_option) if shipping_option else None
            ),
            payer_name=_optional_str(d, "payer_name"),
            payer_email=_optional_str(d, "payer_email"),
            payer_phone=_optional_str(d, "payer_phone"),
        )


# ---------------------------------------------------------------------------
# Mandates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntentMandate:
    """What the user asked for, in their own words plus hard constraints.

    The constructor accepts any expiry so that expired intents can still be
    parsed and rejected by ``ensure_intent_active``. Create new intents
    with ``create_intent_mandate``, which requires an expiry in the future.
    """

    natural_language_description: str
    intent_expiry: datetime
    user_cart_confirmation_required: bool = True
    merchants: Optional[tuple[str, ...]] = None
    skus: Optional[tuple[str, ...]] = None
    requires_refundability: bool = False

    def __post_init__(self):
        if not self.natural_language_description or not self.natural_language_description.strip():
            raise ValidationError("IntentMandate.natural_language_description", "is required")
        object.__setattr__(
            self, "intent_expiry", parse_timestamp(self.intent_expiry, "IntentMandate.intent_expiry")
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.intent_expiry

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "natural_language_description": self.natural_language_description,
            "user_cart_confirmation_required": self.user_cart_confirmation_required,
            "merchants": list(self.merchants) if self.merchants is not None else None,
            "skus": list(self.skus) if self.skus is not None else None,
            "requires_refundability": self.requires_refundability,
            "intent_expiry": format_timestamp(self.intent_expiry),
        })

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> IntentMandate:
        return cls(
            natural_language_description=_require_str(
                d, "natural_language_description", "IntentMandate"
            ),
            intent_expiry=_require(d, "intent_expiry", "IntentMandate"),
            user_cart_confirmation_required=_optional_bool(
                d, "user_cart_confirmation_required", "IntentMandate", True
            ),
            merchants=_string_tuple(d.get("merchants"), "IntentMandate.merchants"),
            skus=_string_tuple(d.get("skus"), "IntentMandate.skus"),
            requires_refundability=_optional_bool(d, "requires_refundability", "IntentMandate", False),
        )


def create_intent_mandate(
    description: str,
    *,
    expires_in: timedelta = timedelta(days=1),
    merchants: Optional[Sequence[str]] = None,
    skus: Optional[Sequence[str]] = None,
    requires_refundability: bool = False,
    user_cart_confirmation_required: bool = True,
    now: Optional[datetime] = None,
) -> IntentMandate:
    """Create an intent mandate whose expiry lies strictly in the future."""
    if expires_in <= timedelta(0):
        raise ValidationError("IntentMandate.intent_expiry", "must be in the future")
    return IntentMandate(
        natural_language_description=description,
        intent_expiry=(now or utcnow()) + expires_in,
        user_cart_confirmation_required=user_cart_confirmation_required,
        merchants=tuple(merchants) if merchants is not None else None,
        skus=tuple(skus) if skus is not None else None,
        requires_refundability=requires_refundability,
    )


def ensure_intent_active(intent: IntentMandate, now: Optional[datetime] = None) -> None:
    if intent.is_expired(now):
        raise ValidationError(
            "IntentMandate.intent_expiry",
            f"intent expired at {format_timestamp(intent.intent_expiry)}",
        )


@dataclass(frozen=True)
class CartContents:
    """Merchant-owned cart. The total always equals the sum of its line items."""

    id: str
    user_cart_confirmation_required: bool
    payment_request: PaymentRequest
    cart_expiry: datetime
    merchant_name: str

    def __post_init__(self):
        if not self.id:
            raise ValidationError("CartContents.id", "is required")
        if not self.merchant_name:
            raise ValidationError("CartContents.merchant_name", "is required")
        object.__setattr__(
            self, "cart_expiry", parse_timestamp(self.cart_expiry, "CartContents.cart_expiry")
        )
        _check_total(self.payment_request.details)

    @property
    def total(self) -> PaymentItem:
        return self.payment_request.details.total

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.cart_expiry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_cart_confirmation_required": self.user_cart_confirmation_required,
            "payment_request": self.payment_request.to_dict(),
            "cart_expiry": format_timestamp(self.cart_expiry),
            "merchant_name": self.merchant_name,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> CartContents:
        return cls(
            id=_require_str(d, "id", "CartContents"),
            user_cart_confirmation_required=_optional_bool(
                d, "user_cart_confirmation_required", "CartContents", True
            ),
            payment_request=PaymentRequest.from_dict(_require(d, "payment_request", "CartContents")),
            cart_expiry=_require(d, "cart_expiry", "CartContents"),
            merchant_name=_require_str(d, "merchant_name", "CartContents"),
        )


def _check_total(details: PaymentDetailsInit) -> None:
    currency = details.total.amount.currency
    for item in details.display_items:
        if item.amount.currency != currency:
            raise ValidationError(
                "payment_request.details.display_items",
                f"item '{item.label}' is in {item.amount.currency}, total is in {currency}",
            )
    item_sum = sum(item.amount.micros for item in details.display_items)
    if item_sum != details.total.amount.micros:
        raise ValidationError(
            "payment_request.details.total",
            f"total {details.total.amount.value} does not equal "
            f"sum of display items {micros_to_decimal(item_sum)}",
        )


@dataclass(frozen=True)
class CartMandate:
    contents: CartContents
    merchant_authorization: Optional[str] = None

    def __post_init__(self):
        if self.contents is None:
            raise ValidationError("CartMandate.contents", "is required")

    @property
    def cart_id(self) -> str:
        return self.contents.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "contents": self.contents.to_dict(),
            "merchant_authorization": self.merchant_authorization,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> CartMandate:
        auth = d.get("merchant_authorization") if isinstance(d, Mapping) else None
        return cls(
            contents=CartContents.from_dict(_require(d, "contents", "CartMandate")),
            merchant_authorization=str(auth) if auth is not None else None,
        )


@dataclass(frozen=True)
class PaymentMandateContents:
    payment_mandate_id: str
    payment_details_id: str
    payment_details_total: PaymentItem
    payment_response: PaymentResponse
    merchant_agent: str
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.payment_mandate_id:
            raise ValidationError("PaymentMandateContents.payment_mandate_id", "is required")
        if not self.payment_details_id:
            raise ValidationError("PaymentMandateContents.payment_details_id", "is required")
        object.__setattr__(
            self, "timestamp", parse_timestamp(self.timestamp, "PaymentMandateContents.timestamp")
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_mandate_id": self.payment_mandate_id,
            "payment_details_id": self.payment_details_id,
            "payment_details_total": self.payment_details_total.to_dict(),
            "payment_response": self.payment_response.to_dict(),
            "merchant_agent": self.merchant_agent,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentMandateContents:
        owner = "PaymentMandateContents"
        return cls(
            payment_mandate_id=_require_str(d, "payment_mandate_id", owner),
            payment_details_id=_require_str(d, "payment_details_id", owner),
            payment_details_total=PaymentItem.from_dict(_require(d, "payment_details_total", owner)),
            payment_response=PaymentResponse.from_dict(_require(d, "payment_response", owner)),
            merchant_agent=_require_str(d, "merchant_agent", owner),
            timestamp=d.get("timestamp") or utcnow(),
        )


@dataclass(frozen=True)
class PaymentMandate:
    """User-endorsed payment. ``user_authorization=None`` marks an unsigned draft."""

    payment_mandate_contents: PaymentMandateContents
    user_authorization: Optional[str] = None

    def __post_init__(self):
        if self.payment_mandate_contents is None:
            raise ValidationError("PaymentMandate.payment_mandate_contents", "is required")

    @property
    def contents(self) -> PaymentMandateContents:
        return self.payment_mandate_contents

    @property
    def is_signed(self) -> bool:
        return bool(self.user_authorization)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_mandate_contents": self.payment_mandate_contents.to_dict(),
            "user_authorization": self.user_authorization,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> PaymentMandate:
        auth = d.get("user_authorization") if isinstance(d, Mapping) else None
        return cls(
            payment_mandate_contents=PaymentMandateContents.from_dict(
                _require(d, "payment_mandate_contents", "PaymentMandate")
            ),
            user_authorization=str(auth) if auth else None,
        )


def cart_mandate_hash(cart_mandate: CartMandate) -> str:
    """Hash of the merchant-endorsed cart, authorization included."""
    return canonical_json_hash(cart_mandate.to_dict())


def cart_contents_hash(contents: CartContents) -> str:
    return canonical_json_hash(contents.to_dict())


def payment_contents_hash(contents: PaymentMandateContents) -> str:
    return canonical_json_hash(contents.to_dict())


def new_payment_mandate_id() -> str:
    return uuid.uuid4().hex

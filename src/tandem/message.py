"""
Cross-agent message envelope.

A message is an ordered list of parts. A part is either free text or a
data map whose keys name what they carry. Mandates and the auxiliary
fields of the protocol travel under the canonical keys below, which
must be kept verbatim for interoperability.

``Envelope.parse`` is the boundary: it turns the untyped data parts of
an inbound message into typed values, and fails with ``ValidationError``
naming the key when a known payload is malformed. Keys it does not know
stay available, untyped, in ``Envelope.fields``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Union

from .errors import ValidationError
from .mandate import (
    CartMandate,
    ContactAddress,
    IntentMandate,
    PaymentMandate,
    PaymentMethodData,
)


INTENT_MANDATE_DATA_KEY = "ap2.mandates.IntentMandate"
CART_MANDATE_DATA_KEY = "ap2.mandates.CartMandate"
PAYMENT_MANDATE_DATA_KEY = "ap2.mandates.PaymentMandate"
CONTACT_ADDRESS_DATA_KEY = "contact_picker.ContactAddress"
PAYMENT_METHOD_DATA_DATA_KEY = "payment_request.PaymentMethodData"

RISK_DATA_KEY = "risk_data"
SHOPPING_AGENT_ID_KEY = "shopping_agent_id"
CHALLENGE_RESPONSE_KEY = "challenge_response"
USER_EMAIL_KEY = "user_email"
PAYMENT_METHOD_ALIAS_KEY = "payment_method_alias"
CART_ID_KEY = "cart_id"
DEBUG_MODE_KEY = "debug_mode"
SHIPPING_ADDRESS_KEY = "shipping_address"
TOKEN_KEY = "token"
PAYMENT_METHOD_ALIASES_KEY = "payment_method_aliases"
CHALLENGE_KEY = "challenge"
DPC_RESPONSE_KEY = "dpc_response"
PAYMENT_STATUS_KEY = "payment_status"
TRANSACTION_ID_KEY = "transaction_id"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "text", "text": self.text}


@dataclass(frozen=True)
class DataPart:
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "data", "data": self.data}


Part = Union[TextPart, DataPart]


def part_from_dict(d: Mapping[str, Any]) -> Part:
    kind = d.get("kind")
    if kind == "text":
        text = d.get("text")
        if not isinstance(text, str):
            raise ValidationError("part.text", "must be a string")
        return TextPart(text)
    if kind == "data":
        data = d.get("data")
        if not isinstance(data, Mapping):
            raise ValidationError("part.data", "must be an object")
        return DataPart(dict(data))
    raise ValidationError("part.kind", f"unsupported part kind {kind!r}")


def _iter_data(parts: list[Part]) -> Iterator[tuple[str, Any]]:
    for part in parts:
        if isinstance(part, DataPart):
            yield from part.data.items()


@dataclass
class Message:
    parts: list[Part]
    role: MessageRole = MessageRole.USER
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    task_id: Optional[str] = None
    context_id: Optional[str] = None

    @property
    def texts(self) -> list[str]:
        return [p.text for p in self.parts if isinstance(p, TextPart)]

    @property
    def text(self) -> str:
        return "\n".join(self.texts)

    def find_data(self, key: str) -> Any:
        """First value stored under ``key`` in any data part, or None."""
        for k, value in _iter_data(self.parts):
            if k == key:
                return value
        return None

    def data_keys(self) -> list[str]:
        return [k for k, _ in _iter_data(self.parts)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "role": self.role.value,
            "task_id": self.task_id,
            "context_id": self.context_id,
            "parts": [p.to_dict() for p in self.parts],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Message:
        parts = d.get("parts")
        if not isinstance(parts, list):
            raise ValidationError("message.parts", "must be a list")
        try:
            role = MessageRole(d.get("role", MessageRole.USER.value))
        except ValueError as e:
            raise ValidationError("message.role", f"unknown role {d.get('role')!r}") from e
        return cls(
            parts=[part_from_dict(p) for p in parts],
            role=role,
            message_id=str(d.get("message_id") or uuid.uuid4().hex),
            task_id=d.get("task_id"),
            context_id=d.get("context_id"),
        )


@dataclass
class Artifact:
    parts: list[Part]
    name: Optional[str] = None
    artifact_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def find_data(self, key: str) -> Any:
        for k, value in _iter_data(self.parts):
            if k == key:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "name": self.name,
            "parts": [p.to_dict() for p in self.parts],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Artifact:
        return cls(
            parts=[part_from_dict(p) for p in d.get("parts") or []],
            name=d.get("name"),
            artifact_id=str(d.get("artifact_id") or uuid.uuid4().hex),
        )


def data_artifact(data: Mapping[str, Any], name: Optional[str] = None) -> Artifact:
    return Artifact(parts=[DataPart(dict(data))], name=name)


class MessageBuilder:
    """Fluent construction of outbound messages."""

    def __init__(self, role: MessageRole = MessageRole.USER):
        self._parts: list[Part] = []
        self._role = role
        self._task_id: Optional[str] = None
        self._context_id: Optional[str] = None

    def text(self, text: str) -> MessageBuilder:
        self._parts.append(TextPart(text))
        return self

    def data(self, key: str, value: Any) -> MessageBuilder:
        """Add ``{key: value}``. Objects with ``to_dict`` are serialized."""
        if value is None:
            return self
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        self._parts.append(DataPart({key: value}))
        return self

    def task_id(self, task_id: Optional[str]) -> MessageBuilder:
        self._task_id = task_id
        return self

    def context_id(self, context_id: Optional[str]) -> MessageBuilder:
        self._context_id = context_id
        return self

    def build(self) -> Message:
        return Message(
            parts=list(self._parts),
            role=self._role,
            task_id=self._task_id,
            context_id=self._context_id,
        )


@dataclass(frozen=True)
class Envelope:
    """Typed view of an inbound message's parts."""

    texts: tuple[str, ...] = ()
    intent_mandate: Optional[IntentMandate] = None
    cart_mandates: tuple[CartMandate, ...] = ()
    payment_mandate: Optional[PaymentMandate] = None
    contact_address: Optional[ContactAddress] = None
    payment_method_data: tuple[PaymentMethodData, ...] = ()
    fields: Mapping[str, Any] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        return " ".join(t.strip() for t in self.texts if t.strip())

    @property
    def cart_mandate(self) -> Optional[CartMandate]:
        return self.cart_mandates[0] if self.cart_mandates else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def require(self, key: str) -> Any:
        value = self.fields.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(key, f"Missing {key}.")
        return value

    def require_str(self, key: str) -> str:
        value = self.require(key)
        if not isinstance(value, str):
            raise ValidationError(key, "must be a string")
        return value

    def require_payment_mandate(self) -> PaymentMandate:
        if self.payment_mandate is None:
            raise ValidationError(PAYMENT_MANDATE_DATA_KEY, "Missing payment_mandate.")
        return self.payment_mandate

    def require_intent_mandate(self) -> IntentMandate:
        if self.intent_mandate is None:
            raise ValidationError(INTENT_MANDATE_DATA_KEY, "Missing intent_mandate.")
        return self.intent_mandate

    @classmethod
    def parse(cls, message: Message) -> Envelope:
        intent: Optional[IntentMandate] = None
        carts: list[CartMandate] = []
        payment: Optional[PaymentMandate] = None
        contact: Optional[ContactAddress] = None
        shipping: Optional[ContactAddress] = None
        methods: list[PaymentMethodData] = []
        fields: dict[str, Any] = {}

        for key, value in _iter_data(message.parts):
            if key == INTENT_MANDATE_DATA_KEY:
                intent = _parse_as(IntentMandate, key, value)
            elif key == CART_MANDATE_DATA_KEY:
                carts.append(_parse_as(CartMandate, key, value))
            elif key == PAYMENT_MANDATE_DATA_KEY:
                payment = _parse_as(PaymentMandate, key, value)
            elif key == CONTACT_ADDRESS_DATA_KEY:
                contact = _parse_as(ContactAddress, key, value)
            elif key == SHIPPING_ADDRESS_KEY:
                shipping = _parse_as(ContactAddress, key, value)
            elif key == PAYMENT_METHOD_DATA_DATA_KEY:
                entries = value if isinstance(value, list) else [value]
                methods.extend(_parse_as(PaymentMethodData, key, e) for e in entries)
            else:
                fields[key] = value

        return cls(
            texts=tuple(message.texts),
            intent_mandate=intent,
            cart_mandates=tuple(carts),
            payment_mandate=payment,
            contact_address=contact or shipping,
            payment_method_data=tuple(methods),
            fields=fields,
        )


def _parse_as(cls: Any, key: str, value: Any) -> Any:
    if not isinstance(value, Mapping):
        raise ValidationError(key, "must be an object")
    try:
        return cls.from_dict(value)
    except ValidationError as e:
        raise ValidationError(f"{key}/{e.field}", e.reason) from e

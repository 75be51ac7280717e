"""Merchant-side cart and risk-data storage."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Protocol

from .errors import ValidationError
from .locks import KeyedLock
from .mandate import CartMandate


class CartStore(Protocol):
    def put(self, cart_id: str, cart_mandate: CartMandate) -> None: ...

    def get(self, cart_id: str) -> Optional[CartMandate]: ...

    def update(self, cart_id: str, fn: Callable[[CartMandate], CartMandate]) -> CartMandate: ...

    def find_by_details_id(self, details_id: str) -> Optional[CartMandate]: ...

    def put_risk_data(self, context_id: str, data: Any) -> None: ...

    def get_risk_data(self, context_id: str) -> Optional[Any]: ...

    def claim_payment(self, cart_id: str, payment_mandate_id: str) -> None: ...

    def release_claim(self, cart_id: str, payment_mandate_id: str) -> None: ...

    def claim_for(self, cart_id: str) -> Optional[str]: ...

    def record_payment(self, cart_id: str, payment_mandate_id: str) -> None: ...

    def payment_for(self, cart_id: str) -> Optional[str]: ...


class InMemoryCartStore:
    """Carts keyed by cart id, risk data keyed by conversation id.

    ``update`` holds the cart's own lock across read, transform and
    write, so concurrent updates to one cart never lose each other's
    changes while different carts proceed in parallel.
    """

    def __init__(self):
        self._carts: dict[str, CartMandate] = {}
        self._risk_data: dict[str, Any] = {}
        self._payments: dict[str, str] = {}
        self._claims: dict[str, str] = {}
        self._table_lock = threading.Lock()
        self._cart_locks = KeyedLock()

    def put(self, cart_id: str, cart_mandate: CartMandate) -> None:
        if cart_mandate.contents.id != cart_id:
            raise ValidationError("cart_id", f"'{cart_id}' does not match cart contents id")
        with self._cart_locks.hold(cart_id):
            with self._table_lock:
                self._carts[cart_id] = cart_mandate

    def get(self, cart_id: str) -> Optional[CartMandate]:
        with self._table_lock:
            return self._carts.get(cart_id)

    def update(self, cart_id: str, fn: Callable[[CartMandate], CartMandate]) -> CartMandate:
        """Atomically replace the cart with ``fn(current)`` and return the new value."""
        with self._cart_locks.hold(cart_id):
            with self._table_lock:
                current = self._carts.get(cart_id)
            if current is None:
                raise ValidationError("cart_id", f"CartMandate not found for cart_id: {cart_id}")
            updated = fn(current)
            if updated.contents.id != cart_id:
                raise ValidationError("cart_id", "cart update must keep the cart id")
            with self._table_lock:
                self._carts[cart_id] = updated
            return updated

    def find_by_details_id(self, details_id: str) -> Optional[CartMandate]:
        with self._table_lock:
            for cart in self._carts.values():
                if cart.contents.payment_request.details.id == details_id:
                    return cart
        return None

    def put_risk_data(self, context_id: str, data: Any) -> None:
        with self._table_lock:
            self._risk_data[context_id] = data

    def get_risk_data(self, context_id: str) -> Optional[Any]:
        with self._table_lock:
            return self._risk_data.get(context_id)

    def claim_payment(self, cart_id: str, payment_mandate_id: str) -> None:
        """Reserve an unpaid cart for one in-flight payment mandate.

        Raises ``ValidationError`` if the cart is paid or already reserved,
        including by the same mandate from another request.
        """
        with self._cart_locks.hold(cart_id):
            with self._table_lock:
                if cart_id in self._payments:
                    raise ValidationError("cart_id", f"cart {cart_id} has already been paid")
                holder = self._claims.get(cart_id)
                if holder is not None:
                    raise ValidationError(
                        "cart_id", f"cart {cart_id} has a payment in progress for mandate {holder}"
                    )
                self._claims[cart_id] = payment_mandate_id

    def release_claim(self, cart_id: str, payment_mandate_id: str) -> None:
        """Drop an unsettled reservation. Other mandates' claims are left alone."""
        with self._cart_locks.hold(cart_id):
            with self._table_lock:
                if self._claims.get(cart_id) == payment_mandate_id:
                    del self._claims[cart_id]

    def claim_for(self, cart_id: str) -> Optional[str]:
        with self._table_lock:
            return self._claims.get(cart_id)

    def record_payment(self, cart_id: str, payment_mandate_id: str) -> None:
        """Mark a cart as settled by one payment mandate. A second mandate is rejected."""
        with self._cart_locks.hold(cart_id):
            with self._table_lock:
                existing = self._payments.get(cart_id)
                if existing is not None and existing != payment_mandate_id:
                    raise ValidationError(
                        "cart_id", f"cart {cart_id} was already paid by mandate {existing}"
                    )
                self._payments[cart_id] = payment_mandate_id
                self._claims.pop(cart_id, None)

    def payment_for(self, cart_id: str) -> Optional[str]:
        with self._table_lock:
            return self._payments.get(cart_id)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._carts)

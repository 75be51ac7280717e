"""Fixed product catalog used by the merchant to answer intents."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from .mandate import IntentMandate, PaymentCurrencyAmount, PaymentItem


_WORD = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class CatalogItem:
    sku: str
    label: str
    price: Decimal
    currency: str = "USD"
    keywords: frozenset[str] = frozenset()
    refundable: bool = True

    def to_payment_item(self) -> PaymentItem:
        return PaymentItem(
            label=self.label,
            amount=PaymentCurrencyAmount(self.currency, self.price),
            refund_period=30 if self.refundable else 0,
        )


class StaticCatalog:
    """Keyword match over a fixed item list.

    Items are ranked by how many intent words they share with their
    keywords and label. An intent that matches nothing still gets the
    first ``limit`` items, the way a generic storefront always shows
    something.
    """

    def __init__(self, items: Iterable[CatalogItem], limit: int = 3):
        self.items = list(items)
        if not self.items:
            raise ValueError("catalog needs at least one item")
        self.limit = limit

    def search(self, intent: IntentMandate) -> list[CatalogItem]:
        candidates = self.items
        if intent.skus:
            wanted = set(intent.skus)
            candidates = [i for i in candidates if i.sku in wanted]
        if intent.requires_refundability:
            candidates = [i for i in candidates if i.refundable]
        if not candidates:
            return []

        words = set(_WORD.findall(intent.natural_language_description.lower()))
        scored = [(self._score(item, words), n, item) for n, item in enumerate(candidates)]
        matched = [entry for entry in scored if entry[0] > 0]
        if matched:
            matched.sort(key=lambda entry: (-entry[0], entry[1]))
            return [item for _, _, item in matched[: self.limit]]
        return candidates[: self.limit]

    def by_sku(self, sku: str) -> Optional[CatalogItem]:
        for item in self.items:
            if item.sku == sku:
                return item
        return None

    @staticmethod
    def _score(item: CatalogItem, words: set[str]) -> int:
        vocabulary = set(item.keywords) | set(_WORD.findall(item.label.lower()))
        return len(words & vocabulary)


def _item(sku: str, label: str, price: str, *keywords: str, refundable: bool = True) -> CatalogItem:
    return CatalogItem(
        sku=sku,
        label=label,
        price=Decimal(price),
        keywords=frozenset(keywords),
        refundable=refundable,
    )


DEMO_ITEMS: Sequence[CatalogItem] = (
    _item("SKU-SHOE-RUN", "Lightweight trail running shoes", "89.99", "shoes", "shoe", "sneakers", "running"),
    _item("SKU-SHOE-LTHR", "Leather oxford dress shoes", "129.00", "shoes", "shoe", "formal", "leather"),
    _item("SKU-SHOE-CNVS", "Canvas low-top sneakers", "54.50", "shoes", "sneakers", "casual"),
    _item("SKU-MUG-CER", "Ceramic coffee mug, 12 oz", "14.00", "mug", "coffee", "cup"),
    _item("SKU-BAG-TOTE", "Waxed canvas tote bag", "42.00", "bag", "tote"),
    _item("SKU-HAT-WOOL", "Merino wool beanie", "24.00", "hat", "beanie", "wool", refundable=False),
)


def demo_catalog() -> StaticCatalog:
    return StaticCatalog(DEMO_ITEMS)

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from config import PricingPolicy
from models import InvoiceItem, ItemType

__all__ = ["DuplicateItemError", "Invoice", "merge_items", "total_of"]

INVOICE_LOG = logging.getLogger("invoice_agent.invoice")


class DuplicateItemError(ValueError):
    pass


def total_of(items: Iterable[InvoiceItem]) -> float:
    return round(sum(item.price for item in items), 2)


def merge_items(existing: Sequence[InvoiceItem], candidates: Sequence[InvoiceItem]) -> List[InvoiceItem]:
    """Candidates whose case-insensitive name is new, in candidate order."""
    seen = {item.dedup_key for item in existing}
    fresh: List[InvoiceItem] = []
    for candidate in candidates:
        key = candidate.dedup_key
        if key in seen:
            continue
        seen.add(key)
        fresh.append(candidate)
    return fresh


class Invoice:
    """Ordered line items for one job. Names are unique, case-insensitively."""

    def __init__(self, policy: Optional[PricingPolicy] = None):
        self.policy = policy or PricingPolicy()
        self._items: List[InvoiceItem] = []
        # last non-zero price per item id, for restore after "make free"
        self._prior_prices: Dict[int, float] = {}

    @property
    def items(self) -> Tuple[InvoiceItem, ...]:
        return tuple(self._items)

    @property
    def total(self) -> float:
        return total_of(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: int) -> InvoiceItem:
        return self._items[self._index(item_id)]

    def _index(self, item_id: int) -> int:
        for idx, item in enumerate(self._items):
            if item.id == item_id:
                return idx
        raise KeyError(item_id)

    def _replace(self, idx: int, item: InvoiceItem) -> InvoiceItem:
        self._items[idx] = item
        return item

    def merge(self, candidates: Sequence[InvoiceItem]) -> List[InvoiceItem]:
        fresh = merge_items(self._items, candidates)
        self._items.extend(fresh)
        for item in fresh:
            if item.price > 0:
                self._prior_prices[item.id] = item.price
        if fresh:
            INVOICE_LOG.info("added %s; total $%.2f", ", ".join(i.name for i in fresh), self.total)
        return fresh

    def add(self, item: InvoiceItem) -> InvoiceItem:
        if not self.merge([item]):
            raise DuplicateItemError(f"{item.name!r} is already on the invoice")
        return item

    def remove(self, item_id: int) -> InvoiceItem:
        item = self._items.pop(self._index(item_id))
        self._prior_prices.pop(item_id, None)
        INVOICE_LOG.info("removed %s; total $%.2f", item.name, self.total)
        return item

    def set_free(self, item_id: int) -> InvoiceItem:
        idx = self._index(item_id)
        item = self._items[idx]
        if item.price > 0:
            self._prior_prices[item_id] = item.price
        return self._replace(idx, item.model_copy(update={"price": 0.0}))

    def restore(self, item_id: int) -> InvoiceItem:
        idx = self._index(item_id)
        item = self._items[idx]
        if item.price > 0:
            return item
        price = self._prior_prices.get(item_id)
        if price is None and item.type is ItemType.LABOR:
            price = round((item.hours or 1.0) * self.policy.hourly_rate, 2)
        if price is None:
            INVOICE_LOG.warning("no earlier price known for %s; leaving it free", item.name)
            return item
        return self._replace(idx, item.model_copy(update={"price": price}))

    def update_labor_description(self, item_id: int, text: str) -> InvoiceItem:
        idx = self._index(item_id)
        item = self._items[idx]
        if item.type is not ItemType.LABOR:
            raise ValueError(f"{item.name!r} is not a labor entry")
        return self._replace(idx, item.model_copy(update={"labor_description": text.strip() or None}))

    def clear(self) -> None:
        self._items.clear()
        self._prior_prices.clear()

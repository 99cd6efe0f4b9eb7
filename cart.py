"""
Shopping cart engine.

Lines are keyed by (product id, selected size). Prices are the snapshot taken
when the line was first added; totals never consult the live catalog.
"""
from typing import List, Optional, Sequence

import structlog

from cart_store import CartStore
from schemas import CartItem, CatalogProduct

logger = structlog.get_logger(__name__)

# Every third line (cheapest first) is free.
BUNDLE_GROUP = 3


def cart_total(items: Sequence[CartItem]) -> float:
    return sum(item.price * item.quantity for item in items)


def cart_count(items: Sequence[CartItem]) -> int:
    return sum(item.quantity for item in items)


def bundle_discount(items: Sequence[CartItem]) -> float:
    """
    Automatic buy-bundle discount.

    Counts distinct lines, not units. With n >= 3 lines the unit prices of the
    cheapest floor(n / 3) lines are taken off, one unit per line whatever its
    quantity.
    """
    free = len(items) // BUNDLE_GROUP
    if free == 0:
        return 0
    cheapest = sorted(items, key=lambda item: item.price)[:free]
    return sum(item.price for item in cheapest)


def final_total(items: Sequence[CartItem]) -> float:
    return cart_total(items) - bundle_discount(items)


class CartEngine:
    def __init__(self, store: CartStore, slot: str):
        self.store = store
        self.slot = slot
        self._items: List[CartItem] = store.load(slot)

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    @property
    def cart_total(self) -> float:
        return cart_total(self._items)

    @property
    def cart_count(self) -> int:
        return cart_count(self._items)

    @property
    def discount(self) -> float:
        return bundle_discount(self._items)

    @property
    def final_total(self) -> float:
        return final_total(self._items)

    def _find(self, product_id: str, selected_size: str) -> Optional[CartItem]:
        for item in self._items:
            if item.id == product_id and item.selected_size == selected_size:
                return item
        return None

    def _persist(self):
        self.store.save(self.slot, self._items)

    def quantity_for(self, product_id: str) -> int:
        """Units of a product across all of its sizes."""
        return sum(item.quantity for item in self._items if item.id == product_id)

    def add_to_cart(self, product: CatalogProduct, selected_size: str) -> CartItem:
        # Stock is the caller's check; see quantity_for.
        line = self._find(product.id, selected_size)
        if line is None:
            line = CartItem(
                **product.model_dump(exclude={"selected_size", "quantity"}),
                selected_size=selected_size,
                quantity=1,
            )
            self._items.append(line)
        else:
            line.quantity += 1
        logger.debug("cart_add", slot=self.slot, product_id=product.id, size=selected_size, quantity=line.quantity)
        self._persist()
        return line

    def remove_from_cart(self, product_id: str, selected_size: str) -> None:
        kept = [
            item for item in self._items
            if not (item.id == product_id and item.selected_size == selected_size)
        ]
        if len(kept) == len(self._items):
            return
        self._items = kept
        logger.debug("cart_remove", slot=self.slot, product_id=product_id, size=selected_size)
        self._persist()

    def update_quantity(self, product_id: str, selected_size: str, quantity: int) -> None:
        """Set a line's quantity. No upper clamp here: callers bound it against stock."""
        if quantity <= 0:
            self.remove_from_cart(product_id, selected_size)
            return
        line = self._find(product_id, selected_size)
        if line is None:
            return
        line.quantity = quantity
        logger.debug("cart_update", slot=self.slot, product_id=product_id, size=selected_size, quantity=quantity)
        self._persist()

    def clear_cart(self) -> None:
        self._items = []
        self._persist()

    def snapshot(self) -> List[CartItem]:
        return [item.model_copy(deep=True) for item in self._items]

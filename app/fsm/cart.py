"""Cart value objects.

All money is ``Decimal`` with two fractional digits. Totals are always
recomputed from the full item list; nothing is maintained incrementally.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field

_CENT = Decimal("0.01")
_RATE = Decimal("0.0001")
_ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def format_naira(value: Decimal | None) -> str:
    """Whole-naira rendering used in chat text, e.g. ``25000``."""
    amount = value if value is not None else Decimal(0)
    return str(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class CartItem(BaseModel):
    product_id: Optional[int] = None
    product_name: str
    quantity: int = Field(1, ge=1)
    unit_price: Decimal
    discount_percent: Decimal = Decimal(0)
    final_unit_price: Optional[Decimal] = None
    line_total: Optional[Decimal] = None
    notes: Optional[str] = None

    def calculate_totals(self) -> None:
        final_price = self.unit_price
        if self.discount_percent and self.discount_percent > 0:
            rate = (self.discount_percent / Decimal(100)).quantize(_RATE, rounding=ROUND_HALF_UP)
            final_price = self.unit_price * (Decimal(1) - rate)
        self.final_unit_price = round_money(final_price)
        self.line_total = round_money(self.final_unit_price * self.quantity)

    @classmethod
    def create(
        cls,
        *,
        product_id: int | None,
        product_name: str,
        quantity: int,
        unit_price: Decimal,
        notes: str | None = None,
    ) -> "CartItem":
        item = cls(
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            unit_price=round_money(Decimal(unit_price)),
            notes=notes,
        )
        item.calculate_totals()
        return item


class OrderContext(BaseModel):
    items: List[CartItem] = Field(default_factory=list)

    delivery_address: Optional[str] = None
    delivery_area: Optional[str] = None
    delivery_fee: Optional[Decimal] = None
    delivery_notes: Optional[str] = None

    subtotal: Decimal = _ZERO
    total_discount: Decimal = _ZERO
    grand_total: Decimal = _ZERO

    confirmed: bool = False
    payment_link: Optional[str] = None
    order_reference: Optional[str] = None

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "OrderContext":
        if not document:
            return cls()
        context = cls.model_validate(document)
        context.recalculate_totals()
        return context

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def add_item(self, new_item: CartItem) -> None:
        for item in self.items:
            if new_item.product_id is not None and item.product_id == new_item.product_id:
                item.quantity += new_item.quantity
                item.calculate_totals()
                break
        else:
            new_item.calculate_totals()
            self.items.append(new_item)
        self.recalculate_totals()

    def update_item_quantity(self, index: int, quantity: int) -> bool:
        if not 0 <= index < len(self.items):
            return False
        if quantity <= 0:
            self.items.pop(index)
        else:
            item = self.items[index]
            item.quantity = quantity
            item.calculate_totals()
        self.recalculate_totals()
        return True

    def remove_item(self, index: int) -> bool:
        if not 0 <= index < len(self.items):
            return False
        self.items.pop(index)
        self.recalculate_totals()
        return True

    def clear(self) -> None:
        self.items.clear()
        self.recalculate_totals()

    def recalculate_totals(self) -> None:
        subtotal = _ZERO
        discount = _ZERO
        for item in self.items:
            item.calculate_totals()
            subtotal += item.line_total
            discount += round_money(item.unit_price * item.quantity) - item.line_total
        self.subtotal = round_money(subtotal)
        self.total_discount = round_money(discount)
        self.grand_total = round_money(self.subtotal + (self.delivery_fee or _ZERO))

    def is_ready_for_confirmation(self) -> bool:
        return bool(self.items) and bool(self.delivery_address and self.delivery_address.strip())

    def summary(self) -> str:
        if self.is_empty:
            return "Your cart is empty."

        lines = ["*Your Order:*", ""]
        for position, item in enumerate(self.items, start=1):
            lines.append(f"{position}. {item.product_name} x{item.quantity} - NGN {format_naira(item.line_total)}")

        text = "\n".join(lines) + "\n"
        text += f"\n*Subtotal:* NGN {format_naira(self.subtotal)}"
        if self.total_discount > 0:
            text += f"\n*Discount:* -NGN {format_naira(self.total_discount)}"
        if self.delivery_fee is not None and self.delivery_fee > 0:
            text += f"\n*Delivery:* NGN {format_naira(self.delivery_fee)}"
        text += f"\n\n*Total:* NGN {format_naira(self.grand_total)}"
        return text

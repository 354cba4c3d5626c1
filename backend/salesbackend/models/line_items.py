"""
Line-level arithmetic shared by sale and purchase-order items.

    subtotal  = unit_price * quantity
    discount  = subtotal * discount_pct / 100   (when discount_pct > 0,
                otherwise the caller-supplied discount amount)
    after     = subtotal - discount
    tax       = after * tax_pct / 100           (when tax_pct > 0)
    total     = after + tax

Each derived figure is rounded to cents at the point it is produced, so
total_price == round(subtotal - discount + tax, 2) holds exactly.
"""

from __future__ import annotations

from decimal import Decimal
from typing import NamedTuple

from ..money import percent_of, to_decimal, to_money, to_rate, ZERO


class LineTotals(NamedTuple):
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_price: Decimal


def compute_line_totals(unit_price, quantity, *, discount_percentage=None, discount_amount=None,
                        tax_percentage=None) -> LineTotals:
    subtotal = to_money(to_decimal(unit_price) * (quantity or 0))

    pct = to_decimal(discount_percentage)
    if pct > 0:
        discount = percent_of(subtotal, pct)
    else:
        discount = to_money(discount_amount) if discount_amount is not None else ZERO

    after_discount = to_money(subtotal - discount)

    tax_pct = to_decimal(tax_percentage)
    tax = percent_of(after_discount, tax_pct) if tax_pct > 0 else ZERO

    return LineTotals(subtotal, discount, tax, to_money(after_discount + tax))


class LineItemMixin:
    """
    Columns are declared on the concrete models; this mixin owns the
    recomputation so every line type applies the same rules.
    """

    def _line_unit_price(self):
        raise NotImplementedError

    def _line_is_frozen(self) -> bool:
        return False

    def calculate_totals(self) -> None:
        if self._line_is_frozen():
            return
        totals = compute_line_totals(
            self._line_unit_price(),
            self.quantity,
            discount_percentage=self.discount_percentage,
            discount_amount=self.discount_amount,
            tax_percentage=self.tax_percentage,
        )
        self.subtotal = totals.subtotal
        self.discount_amount = totals.discount_amount
        self.tax_amount = totals.tax_amount
        self.total_price = totals.total_price
        if self.discount_percentage is None:
            self.discount_percentage = to_rate(0)
        if self.tax_percentage is None:
            self.tax_percentage = to_rate(0)

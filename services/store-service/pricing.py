"""Order price derivation.

All amounts are ``Decimal`` and rounded half-up to the cent, so that
``total == items + tax + shipping`` holds exactly on the stored values.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Iterable, Optional

from config import FREE_SHIPPING_THRESHOLD, SHIPPING_RATE, TAX_RATE
from errors import ValidationError

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Round a number to two decimal places."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def has_at_most_two_decimals(value) -> bool:
    amount = Decimal(str(value))
    return amount == amount.quantize(CENT)


@dataclass(frozen=True)
class OrderTotals:
    items_price: Decimal
    tax_price: Decimal
    shipping_price: Decimal
    total_price: Decimal


def calculate_subtotal(lines: Iterable) -> Decimal:
    """Sum ``price * quantity`` over objects exposing both attributes."""
    subtotal = Decimal("0")
    for line in lines:
        if line.quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        subtotal += Decimal(str(line.price)) * line.quantity
    return to_money(subtotal)


def calculate_tax(amount: Decimal, tax_rate: Decimal) -> Decimal:
    if amount < 0:
        raise ValidationError("Invalid amount")
    if tax_rate < 0:
        raise ValidationError("Invalid tax rate")
    return to_money(amount * tax_rate)


def calculate_shipping(amount: Decimal, rate: Decimal, free_threshold: Decimal) -> Decimal:
    """Flat rate, waived once ``amount`` reaches a positive threshold."""
    if amount < 0:
        raise ValidationError("Invalid amount")
    if rate < 0:
        raise ValidationError("Invalid shipping rate")
    if free_threshold > 0 and amount >= free_threshold:
        return Decimal("0.00")
    return to_money(rate)


def calculate_totals(
    lines: Iterable,
    tax_rate: Optional[Decimal] = None,
    shipping_rate: Optional[Decimal] = None,
    free_shipping_threshold: Optional[Decimal] = None,
) -> OrderTotals:
    items_price = calculate_subtotal(lines)
    tax_price = calculate_tax(items_price, TAX_RATE if tax_rate is None else tax_rate)
    shipping_price = calculate_shipping(
        items_price,
        SHIPPING_RATE if shipping_rate is None else shipping_rate,
        FREE_SHIPPING_THRESHOLD if free_shipping_threshold is None else free_shipping_threshold,
    )
    return OrderTotals(
        items_price=items_price,
        tax_price=tax_price,
        shipping_price=shipping_price,
        total_price=items_price + tax_price + shipping_price,
    )


def minimum_deposit(total: Decimal, ratio: Decimal) -> Decimal:
    """Smallest acceptable upfront payment, rounded up to the cent."""
    return (total * ratio).quantize(CENT, rounding=ROUND_CEILING)

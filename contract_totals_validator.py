#!/usr/bin/env python3
"""
Totals Validator (PURE)

items total vs declared grand total, absolute cents tolerance.
A mismatch is a normal result, not an error.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from contract_models import ContractLineItem, ValidationResult

CENTS = Decimal("0.01")
DEFAULT_TOLERANCE = Decimal("0.01")


def money(v: Decimal) -> Decimal:
    return v.quantize(CENTS, rounding=ROUND_HALF_UP)


def fmt_money(v: Decimal) -> str:
    return f"${money(v):,.2f}"


def items_total(items: Iterable[ContractLineItem]) -> Decimal:
    total = Decimal("0")
    for it in items:
        if it.is_item and it.amount is not None:
            total += it.amount
    return money(total)


def validate(items: Iterable[ContractLineItem], declared_total: Optional[Decimal],
             tolerance: Decimal = DEFAULT_TOLERANCE) -> ValidationResult:
    total = items_total(items)

    if declared_total is None or declared_total == 0:
        return ValidationResult(
            is_valid=False,
            order_grand_total=Decimal("0.00"),
            items_total=total,
            difference=total,
            message="Order Grand Total is missing or zero",
        )

    declared = money(Decimal(declared_total))
    difference = money(abs(total - declared))
    if difference <= tolerance:
        return ValidationResult(is_valid=True, order_grand_total=declared, items_total=total,
                                difference=Decimal("0.00"))

    return ValidationResult(
        is_valid=False,
        order_grand_total=declared,
        items_total=total,
        difference=difference,
        message=(f"Order items total ({fmt_money(total)}) does not match "
                 f"Order Grand Total ({fmt_money(declared)}). Difference: {fmt_money(difference)}"),
    )

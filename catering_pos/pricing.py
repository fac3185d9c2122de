# Order money rules, shared by persistence and the bill.

from typing import Iterable, Mapping


def line_subtotal(price: float, quantity: int) -> float:
    return float(price) * int(quantity)


def discount_amount(total_amount: float, discount: float, discount_type: str = "amount") -> float:
    discount = float(discount or 0)
    if discount_type == "percentage":
        return total_amount * discount / 100
    return discount


def compute_totals(items: Iterable[Mapping], discount: float = 0, discount_type: str = "amount") -> dict:
    """
    Recompute every monetary field of an order from its items.

    Client supplied subtotals and totals are ignored: each item's subtotal is
    price * quantity and the final amount is floored at zero.
    """
    total_amount = 0.0
    for item in items:
        total_amount += line_subtotal(item["price"], item["quantity"])
    disc = discount_amount(total_amount, discount, discount_type)
    return {
        "totalAmount": total_amount,
        "discountAmount": disc,
        "finalAmount": max(0.0, total_amount - disc),
    }


def format_money(value: float, symbol: str = "£") -> str:
    return f"{symbol}{float(value):.2f}"


def format_discount(discount: float, discount_type: str, symbol: str = "£") -> str:
    if discount_type == "percentage":
        return f"{float(discount):g}%"
    return format_money(discount, symbol)

import pytest

from catering_pos.pricing import compute_totals, discount_amount, format_discount, format_money

ITEMS = [{"price": 10, "quantity": 2}, {"price": 5, "quantity": 1}]


def test_percentage_discount():
    totals = compute_totals(ITEMS, 10, "percentage")
    assert totals == {"totalAmount": 25.0, "discountAmount": 2.5, "finalAmount": 22.5}


def test_amount_discount():
    totals = compute_totals(ITEMS, 5, "amount")
    assert totals["totalAmount"] == 25
    assert totals["finalAmount"] == 20


def test_final_amount_is_floored_at_zero():
    assert compute_totals(ITEMS, 100, "amount")["finalAmount"] == 0
    assert compute_totals(ITEMS, 150, "percentage")["finalAmount"] == 0


def test_client_subtotals_are_ignored():
    items = [{"price": 3.5, "quantity": 4, "subtotal": 1}, {"price": 2, "quantity": 3, "subtotal": 999}]
    assert compute_totals(items)["totalAmount"] == 20.0


@pytest.mark.parametrize("discount,kind,expected", [
    (0, "amount", 0),
    (7, "amount", 7),
    (20, "percentage", 8),
])
def test_discount_amount(discount, kind, expected):
    assert discount_amount(40, discount, kind) == expected


def test_formatting():
    assert format_money(22.5) == "£22.50"
    assert format_money(3, "$") == "$3.00"
    assert format_discount(10, "percentage") == "10%"
    assert format_discount(12.5, "percentage") == "12.5%"
    assert format_discount(5, "amount") == "£5.00"

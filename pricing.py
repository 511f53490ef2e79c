"""Cart totals shared by the API and the client session."""
from typing import Iterable, Union

FREE_DELIVERY_ABOVE = 500
DELIVERY_FEE = 50
TAX_RATE = 0.05

EMPTY_TOTALS = {"subtotal": 0, "deliveryFee": 0, "tax": 0, "total": 0}


def _field(item, name):
    if isinstance(item, dict):
        return item[name]
    return getattr(item, name)


def calculate_cart_total(items: Iterable[Union[dict, object]]) -> dict:
    """Return subtotal, deliveryFee, tax and total rounded to 2 decimals.

    Delivery is free only when the subtotal is strictly above 500.
    """
    subtotal = sum(_field(i, "price") * _field(i, "quantity") for i in items)
    delivery_fee = 0 if subtotal > FREE_DELIVERY_ABOVE else DELIVERY_FEE
    tax = subtotal * TAX_RATE
    total = subtotal + delivery_fee + tax
    return {
        "subtotal": round(subtotal, 2),
        "deliveryFee": round(delivery_fee, 2),
        "tax": round(tax, 2),
        "total": round(total, 2),
    }

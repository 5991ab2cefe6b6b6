"""Price resolution for products and variants."""

from dataclasses import dataclass


def resolve_unit_price(
    base_price: float,
    base_sale_price: float | None,
    variant_price: float | None = None,
    variant_sale_price: float | None = None,
) -> float:
    """
    Return the price a buyer pays for one unit.

    Variant values override the product's when present. A sale price only
    applies when it is strictly lower than the effective base price.
    """
    price = variant_price if variant_price is not None else base_price
    sale_price = variant_sale_price if variant_sale_price is not None else base_sale_price
    if sale_price is not None and sale_price < price:
        return sale_price
    return price


@dataclass
class PriceBreakdown:
    """Display pricing for a catalog card."""

    price: float
    sale_price: float | None
    is_on_sale: bool
    final_price: float
    discount_percentage: int


def price_breakdown(price: float | None, sale_price: float | None) -> PriceBreakdown:
    price = price or 0.0
    is_on_sale = sale_price is not None and 0 <= sale_price < price
    discount = round((price - sale_price) / price * 100) if is_on_sale else 0
    return PriceBreakdown(
        price=price,
        sale_price=sale_price,
        is_on_sale=is_on_sale,
        final_price=sale_price if is_on_sale else price,
        discount_percentage=discount,
    )

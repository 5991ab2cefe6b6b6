"""
Clothing variant matrix generation.

Expands a product's color/size configuration into sellable variants:

1. Color + Size -> cross product (Black / M, Black / L, White / M, ...)
2. Only Color   -> one variant per color
3. Only Size    -> one variant per size
4. Neither      -> a single Default variant

Regenerating merges against the variants a product already has, so that
reconfiguring the axes never resets the identity or stock of a pair that
still applies.
"""

import uuid
from dataclasses import dataclass, field

from .models import Variant, VariantStatus

STANDARD_SIZES = ("XS", "S", "M", "L", "XL", "XXL", "3XL")

TEMP_ID_PREFIX = "temp-"
DEFAULT_TITLE = "Default"


@dataclass
class VariantConfig:
    enable_color: bool
    enable_size: bool
    colors: list[str] = field(default_factory=list)
    sizes: list[str] = field(default_factory=list)


@dataclass
class VariantDraft:
    """A generated variant that has not been matched to a stored record yet."""

    title: str
    color: str | None
    size: str | None
    price: float
    sku: str
    position: int
    status: VariantStatus = VariantStatus.ACTIVE
    inventory_quantity: int = 0

    @property
    def axis_key(self) -> tuple[str | None, str | None]:
        return (self.color or None, self.size or None)


def sort_sizes(sizes: list[str]) -> list[str]:
    """Order sizes XS < S < M < L < XL < XXL < 3XL; unknown sizes go last in input order."""
    rank = {size: i for i, size in enumerate(STANDARD_SIZES)}
    return sorted(sizes, key=lambda s: rank.get(s.upper(), len(STANDARD_SIZES)))


def variant_title(color: str | None, size: str | None) -> str:
    if color and size:
        return f"{color} / {size}"
    return color or size or DEFAULT_TITLE


def variant_sku(base_sku: str, color: str | None, size: str | None) -> str:
    parts = [base_sku]
    if color:
        parts.append("".join(color.upper().split())[:3])
    if size:
        parts.append(size.upper())
    return "-".join(parts)


def generate_variants(
    colors: list[str],
    sizes: list[str],
    base_price: float,
    base_sku: str | None = None,
    enable_color: bool = True,
    enable_size: bool = True,
) -> list[VariantDraft]:
    """Generate one draft per applicable axis combination."""
    base_sku = base_sku or "PROD"
    use_colors = list(dict.fromkeys(colors)) if enable_color else []
    use_sizes = sort_sizes(list(dict.fromkeys(sizes))) if enable_size else []

    if use_colors and use_sizes:
        pairs = [(c, s) for c in use_colors for s in use_sizes]
    elif use_colors:
        pairs = [(c, None) for c in use_colors]
    elif use_sizes:
        pairs = [(None, s) for s in use_sizes]
    else:
        return [
            VariantDraft(
                title=DEFAULT_TITLE,
                color=None,
                size=None,
                price=base_price,
                sku=base_sku,
                position=0,
            )
        ]

    return [
        VariantDraft(
            title=variant_title(color, size),
            color=color,
            size=size,
            price=base_price,
            sku=variant_sku(base_sku, color, size),
            position=position,
        )
        for position, (color, size) in enumerate(pairs)
    ]


def is_temporary(variant: Variant) -> bool:
    """True for variants created by a merge that have not been persisted."""
    return variant.id.startswith(TEMP_ID_PREFIX)


def merge_variants(
    drafts: list[VariantDraft],
    existing: list[Variant],
    product_id: str = "",
) -> list[Variant]:
    """
    Match drafts against existing variants by (color, size).

    A matching existing variant is returned verbatim (id, prices, sku, stock
    linkage). Unmatched drafts become new variants with a temporary id and
    no price override, so they follow the product's current price.
    """
    by_key = {v.axis_key: v for v in existing}
    batch = uuid.uuid4().hex[:8]
    merged: list[Variant] = []
    for index, draft in enumerate(drafts):
        match = by_key.get(draft.axis_key)
        if match is not None:
            merged.append(match)
            continue
        merged.append(
            Variant(
                id=f"{TEMP_ID_PREFIX}{index}-{batch}",
                product_id=product_id,
                title=draft.title,
                color=draft.color,
                size=draft.size,
                sku=draft.sku,
                status=draft.status,
                position=draft.position,
            )
        )
    return merged


def regenerate_variants(
    config: VariantConfig,
    existing: list[Variant],
    base_price: float,
    base_sku: str | None = None,
    product_id: str = "",
) -> list[Variant]:
    drafts = generate_variants(
        config.colors,
        config.sizes,
        base_price,
        base_sku,
        enable_color=config.enable_color,
        enable_size=config.enable_size,
    )
    return merge_variants(drafts, existing, product_id=product_id)


def has_variant_config_changed(old: VariantConfig, new: VariantConfig) -> bool:
    if old.enable_color != new.enable_color or old.enable_size != new.enable_size:
        return True
    if sorted(old.colors) != sorted(new.colors):
        return True
    return sorted(old.sizes) != sorted(new.sizes)

# products.py
"""
Product catalogue: the canvas print and the digital download tiers,
plus the Printful identifiers the fulfillment side needs.
"""

import re
import time
from typing import Dict, Optional

from pydantic import BaseModel


class CanvasProduct(BaseModel):
    """The physical print sold through /checkout."""
    name: str
    size_label: str
    unit_amount_cents: int
    currency: str
    printful_product_id: int
    printful_variant_id: int
    print_area_width: int
    print_area_height: int
    shipping_label: str
    shipping_min_days: int
    shipping_max_days: int
    shipping_countries: list


class DownloadPrice(BaseModel):
    """A digital download tier sold through /create-checkout."""
    name: str
    description: str
    unit_amount_cents: int
    recurring_interval: Optional[str] = None


# Printful catalog: Canvas (in) product 3, 18"x24" variant 7
CANVAS = CanvasProduct(
    name="Gallery Wrapped Canvas",
    size_label='18" x 24"',
    unit_amount_cents=9400,
    currency="usd",
    printful_product_id=3,
    printful_variant_id=7,
    print_area_width=1800,
    print_area_height=2400,
    shipping_label="Free Shipping",
    shipping_min_days=5,
    shipping_max_days=10,
    shipping_countries=["US"],
)

DOWNLOAD_PRICES: Dict[str, DownloadPrice] = {
    "single": DownloadPrice(
        name="Single Download",
        description="One watermark-free download at 300 DPI",
        unit_amount_cents=500,
    ),
    "subscription": DownloadPrice(
        name="Unlimited Downloads",
        description="Unlimited watermark-free downloads for 30 days",
        unit_amount_cents=1000,
        recurring_interval="month",
    ),
}


def canvas_line_name(city_name: str, state_name: str) -> str:
    return f"{city_name}, {state_name} Map Canvas"


def canvas_line_description(theme_name: str) -> str:
    return f"{CANVAS.size_label} Gallery Canvas - {theme_name} Theme"


def fulfillment_product_label(city_name: str, state_name: str, theme_name: str) -> str:
    """Name shown on the Printful order line item."""
    return f"{city_name}, {state_name} Map Canvas - {theme_name}"


def print_filename(city_name: str, now: Optional[float] = None) -> str:
    slug = re.sub(r"\s+", "-", (city_name or "map").strip().lower()) or "map"
    stamp = int((now if now is not None else time.time()) * 1000)
    return f"mapmarked-{slug}-{stamp}.jpg"

"""Products offered in the bot's browse menu."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class ProductDetails:
    sku: str
    name: str
    category: str


KNOWN_PRODUCTS: Dict[str, ProductDetails] = {
    p.sku: p
    for p in [
        ProductDetails("DBDCP44_30", "Amul Kool Protein Milkshake | Chocolate, 180 mL | Pack of 30", "Milkshakes"),
        ProductDetails("DBDCP43_30", "Amul Kool Protein Milkshake | Arabica Coffee, 180 mL | Pack of 30", "Milkshakes"),
        ProductDetails("DBDCP42_30", "Amul Kool Protein Milkshake | Kesar, 180 mL | Pack of 30", "Milkshakes"),
        ProductDetails("DBDCP41_30", "Amul High Protein Blueberry Shake, 200 mL | Pack of 30", "Milkshakes"),
        ProductDetails("HPPCP01_02", "Amul High Protein Paneer, 400 g | Pack of 2", "Paneer"),
        ProductDetails("HPPCP01_24", "Amul High Protein Paneer, 400 g | Pack of 24", "Paneer"),
        ProductDetails("WPCCP04_01", "Amul Whey Protein Gift Pack, 32 g | Pack of 10 sachets", "Whey Protein"),
        ProductDetails("WPCCP01_01", "Amul Whey Protein, 32 g | Pack of 30 Sachets", "Whey Protein"),
        ProductDetails("WPCCP02_01", "Amul Whey Protein, 32 g | Pack of 60 Sachets", "Whey Protein"),
        ProductDetails("WPCCP06_01", "Amul Chocolate Whey Protein Gift Pack, 34 g | Pack of 10 sachets", "Whey Protein"),
        ProductDetails("WPCCP03_01", "Amul Chocolate Whey Protein, 34 g | Pack of 30 sachets", "Whey Protein"),
        ProductDetails("WPCCP05_02", "Amul Chocolate Whey Protein, 34 g | Pack of 60 sachets", "Whey Protein"),
        ProductDetails("BTMCP11_30", "Amul High Protein Buttermilk, 200 mL | Pack of 30", "Buttermilk"),
        ProductDetails("LASCP61_30", "Amul High Protein Plain Lassi, 200 mL | Pack of 30", "Lassi"),
        ProductDetails("LASCP40_30", "Amul High Protein Rose Lassi, 200 mL | Pack of 30", "Lassi"),
        ProductDetails("HPMCP01_08", "Amul High Protein Milk, 250 mL | Pack of 8", "Milk"),
        ProductDetails("HPMCP01_32", "Amul High Protein Milk, 250 mL | Pack of 32", "Milk"),
    ]
}

CATEGORY_EMOJI = {
    "Milkshakes": "🥤",
    "Paneer": "🧀",
    "Whey Protein": "💪",
    "Buttermilk": "🥛",
    "Lassi": "🍯",
    "Milk": "🥛",
}


def category_emoji(category: str) -> str:
    return CATEGORY_EMOJI.get(category, "📦")


def categories() -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for product in KNOWN_PRODUCTS.values():
        counts[product.category] = counts.get(product.category, 0) + 1
    return counts


def products_in(category: str) -> List[ProductDetails]:
    return sorted((p for p in KNOWN_PRODUCTS.values() if p.category == category), key=lambda p: p.name)


def display_name(sku: str, limit: int = 0) -> str:
    product = KNOWN_PRODUCTS.get(sku)
    name = product.name if product else sku
    if limit and len(name) > limit:
        name = name[: limit - 3] + "..."
    return name


__all__ = ["KNOWN_PRODUCTS", "ProductDetails", "categories", "category_emoji", "display_name", "products_in"]

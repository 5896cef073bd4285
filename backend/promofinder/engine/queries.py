"""Query presets for brand, category and deal searches."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from promofinder.schemas.product import ProductCategory


TOP_BRANDS = [
    "Nike",
    "Adidas",
    "Zara",
    "H&M",
    "Mango",
    "ASOS",
    "Uniqlo",
    "Pull&Bear",
    "Bershka",
    "Stradivarius",
    "Gap",
    "Levi's",
]

# Free-text terms sent upstream when searching a category
CATEGORY_SEARCH_TERMS: Dict[ProductCategory, str] = {
    ProductCategory.SHOES: "shoes sneakers footwear",
    ProductCategory.CLOTHING: "clothing apparel",
    ProductCategory.ACCESSORIES: "accessories belt scarf hat",
    ProductCategory.BAGS: "bag backpack handbag",
    ProductCategory.JEWELRY: "jewelry necklace bracelet",
    ProductCategory.WATCHES: "watch watches",
    ProductCategory.SUNGLASSES: "sunglasses eyewear",
    ProductCategory.OTHER: "fashion",
}

DEAL_SEARCH_TERMS = "sale discount clearance deal"


def category_search_terms(category: ProductCategory) -> str:
    return CATEGORY_SEARCH_TERMS.get(category, category.value)


@dataclass
class BrandQuery:
    """All deals for one brand, optionally narrowed by category."""

    brand: str
    categories: List[ProductCategory] = field(default_factory=list)
    min_discount: Optional[int] = None
    max_price: Optional[Decimal] = None
    keywords: List[str] = field(default_factory=list)
    limit: int = 50

    def __post_init__(self):
        if not self.brand or not self.brand.strip():
            raise ValueError("brand is required")


@dataclass
class CategoryQuery:
    """Deals within one category."""

    category: ProductCategory
    min_discount: Optional[int] = None
    max_price: Optional[Decimal] = None
    brands: List[str] = field(default_factory=list)
    sort_by: str = "discount"
    limit: int = 100


@dataclass
class DealQuery:
    """Cross-brand deal hunt above a minimum discount."""

    min_discount: int
    max_price: Optional[Decimal] = None
    categories: List[ProductCategory] = field(default_factory=list)
    brands: List[str] = field(default_factory=list)
    limit: int = 200

    def __post_init__(self):
        if not 0 <= self.min_discount <= 100:
            raise ValueError("min_discount must be between 0 and 100")


class DealType(str, Enum):
    FLASH_SALE = "flash_sale"
    SEASONAL = "seasonal"
    CLEARANCE = "clearance"
    BUDGET = "budget"
    PREMIUM = "premium"
    NEW_ARRIVALS = "new_arrivals"


DEAL_QUERIES: Dict[DealType, DealQuery] = {
    DealType.FLASH_SALE: DealQuery(
        min_discount=50,
        max_price=Decimal("200"),
        categories=[ProductCategory.SHOES, ProductCategory.CLOTHING, ProductCategory.ACCESSORIES],
        brands=list(TOP_BRANDS),
    ),
    DealType.SEASONAL: DealQuery(
        min_discount=30,
        max_price=Decimal("250"),
        categories=[
            ProductCategory.SHOES,
            ProductCategory.CLOTHING,
            ProductCategory.ACCESSORIES,
            ProductCategory.BAGS,
        ],
        brands=list(TOP_BRANDS),
    ),
    DealType.CLEARANCE: DealQuery(
        min_discount=40,
        max_price=Decimal("150"),
        categories=[ProductCategory.SHOES, ProductCategory.CLOTHING, ProductCategory.ACCESSORIES],
        brands=list(TOP_BRANDS),
    ),
    DealType.BUDGET: DealQuery(
        min_discount=25,
        max_price=Decimal("50"),
        categories=[ProductCategory.CLOTHING, ProductCategory.ACCESSORIES, ProductCategory.BAGS],
        brands=["H&M", "Pull&Bear", "Bershka", "Stradivarius", "Uniqlo"],
    ),
    DealType.PREMIUM: DealQuery(
        min_discount=35,
        max_price=Decimal("500"),
        categories=[
            ProductCategory.SHOES,
            ProductCategory.CLOTHING,
            ProductCategory.BAGS,
            ProductCategory.WATCHES,
        ],
        brands=["Tommy Hilfiger", "Calvin Klein", "Guess", "Massimo Dutti"],
    ),
    DealType.NEW_ARRIVALS: DealQuery(
        min_discount=20,
        max_price=Decimal("200"),
        categories=[ProductCategory.SHOES, ProductCategory.CLOTHING, ProductCategory.ACCESSORIES],
        brands=list(TOP_BRANDS),
    ),
}

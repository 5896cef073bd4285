"""Normalization of provider candidates into canonical Products.

Price parsing, discount reconciliation, brand detection and category
classification all live here so that every provider is held to the same
rules. Provider adapters only map their native field names.
"""

import html
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from pydantic import ValidationError as SchemaError

from promofinder.core.exceptions import ValidationError
from promofinder.providers.base import BaseProvider, RawCandidate
from promofinder.schemas.product import Product, ProductCategory

logger = structlog.get_logger(__name__)


# Keyword-based category classifier. Keywords match whole words, with an
# optional plural "s", so "ring" does not match "spring".
CATEGORY_KEYWORDS: Dict[ProductCategory, List[str]] = {
    ProductCategory.SHOES: [
        "shoe", "sneaker", "trainer", "boot", "sandal", "loafer", "slipper",
        "footwear", "heel", "mule", "espadrille", "clog", "slide",
    ],
    ProductCategory.BAGS: [
        "bag", "backpack", "purse", "tote", "handbag", "clutch", "duffel",
        "crossbody", "satchel",
    ],
    ProductCategory.JEWELRY: [
        "jewelry", "jewellery", "necklace", "ring", "bracelet", "earring",
        "pendant", "anklet",
    ],
    ProductCategory.WATCHES: [
        "watch", "smartwatch", "chronograph", "timepiece",
    ],
    ProductCategory.SUNGLASSES: [
        "sunglasses", "sunglass", "eyewear", "aviator", "glasses",
    ],
    ProductCategory.ACCESSORIES: [
        "hat", "cap", "beanie", "scarf", "belt", "glove", "sock", "wallet",
        "accessory", "accessories", "headband",
    ],
    ProductCategory.CLOTHING: [
        "shirt", "t-shirt", "tee", "hoodie", "sweatshirt", "jacket", "coat",
        "dress", "jeans", "pant", "trouser", "short", "sweater", "legging",
        "skirt", "jogger", "top", "blouse", "cardigan", "parka", "vest",
        "clothing", "apparel",
    ],
}

# Brands recognized in product titles when the provider omits a brand field.
# Longer names come first so "new balance" wins over shorter overlaps.
KNOWN_BRANDS: Dict[str, str] = {
    "the north face": "The North Face",
    "tommy hilfiger": "Tommy Hilfiger",
    "calvin klein": "Calvin Klein",
    "massimo dutti": "Massimo Dutti",
    "under armour": "Under Armour",
    "ralph lauren": "Ralph Lauren",
    "new balance": "New Balance",
    "stradivarius": "Stradivarius",
    "pull&bear": "Pull&Bear",
    "lululemon": "Lululemon",
    "converse": "Converse",
    "skechers": "Skechers",
    "bershka": "Bershka",
    "reserved": "Reserved",
    "levi's": "Levi's",
    "uniqlo": "Uniqlo",
    "adidas": "Adidas",
    "reebok": "Reebok",
    "guess": "Guess",
    "mango": "Mango",
    "asics": "ASICS",
    "puma": "Puma",
    "nike": "Nike",
    "zara": "Zara",
    "asos": "ASOS",
    "vans": "Vans",
    "h&m": "H&M",
    "gap": "Gap",
}

# Tracking parameters stripped from product URLs
TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "ref",
    "ref_",
    "tag",
    "source",
    "fbclid",
    "gclid",
    "mc_cid",
    "mc_eid",
})

MIN_NAME_LENGTH = 5


class PriceNormalizer:
    """Price and discount parsing utilities.

    Handles numbers and free-text price strings such as "$1,234.56",
    "€ 49,99", "84 USD" or "1.299,00 EUR".
    """

    _NUMBER_PATTERN = re.compile(r"\d[\d.,\s]*")

    @staticmethod
    def clean_price_string(raw: Any) -> Optional[Decimal]:
        """Parse a price value and extract its numeric amount.

        Args:
            raw: Number or price string

        Returns:
            Positive Decimal price, or None if parsing fails
        """
        if raw is None or isinstance(raw, bool):
            return None

        if isinstance(raw, (int, float, Decimal)):
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                return None
            return value if value > 0 else None

        match = PriceNormalizer._NUMBER_PATTERN.search(str(raw))
        if not match:
            return None

        number = re.sub(r"\s", "", match.group(0)).rstrip(".,")
        number = PriceNormalizer._resolve_separators(number)

        try:
            value = Decimal(number)
        except InvalidOperation:
            return None

        return value if value > 0 else None

    @staticmethod
    def _resolve_separators(number: str) -> str:
        """Turn a localized number into a plain "1234.56" string."""
        if "," in number and "." in number:
            # Whichever separator comes last is the decimal point
            if number.rfind(",") > number.rfind("."):
                return number.replace(".", "").replace(",", ".")
            return number.replace(",", "")

        if "," in number:
            if re.fullmatch(r"\d{1,3}(,\d{3})+", number):
                return number.replace(",", "")
            return number.replace(",", ".", 1).replace(",", "")

        if number.count(".") > 1:
            return number.replace(".", "")

        return number

    @staticmethod
    def parse_discount(raw: Any) -> Optional[int]:
        """Parse a provider-supplied discount figure ("-30%", "30% off", 30).

        Returns:
            Absolute integer percentage, or None if absent/unparsable
        """
        if raw is None or isinstance(raw, bool):
            return None

        if isinstance(raw, (int, float, Decimal)):
            return int(abs(Decimal(str(raw))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        match = re.search(r"(\d+(?:\.\d+)?)\s*%?", str(raw))
        if not match:
            return None
        return int(Decimal(match.group(1)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def calculate_discount_percentage(original: Decimal, sale: Decimal) -> int:
        """round((original - sale) / original * 100), rounding halves up."""
        if original <= 0:
            return 0
        pct = (original - sale) / original * 100
        return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CategoryClassifier:
    """Keyword-based category classification from product text."""

    _PATTERNS = {
        category: [
            re.compile(r"(?<![a-z])" + re.escape(kw) + r"(?:e?s)?(?![a-z])")
            for kw in keywords
        ]
        for category, keywords in CATEGORY_KEYWORDS.items()
    }

    @classmethod
    def classify(cls, text: Optional[str]) -> Optional[ProductCategory]:
        """Classify text into a category.

        Args:
            text: Product title or provider category path

        Returns:
            Category with the most keyword hits, or None
        """
        if not text:
            return None

        text_lower = text.lower()
        scores = {}

        for category, patterns in cls._PATTERNS.items():
            score = sum(1 for p in patterns if p.search(text_lower))
            if score > 0:
                scores[category] = score

        if scores:
            return max(scores, key=scores.get)

        return None


def detect_brand(title: str) -> Optional[str]:
    """Find a known brand name inside a product title."""
    title_lower = title.lower()
    for pattern, display in KNOWN_BRANDS.items():
        if re.search(r"(?<![a-z])" + re.escape(pattern) + r"(?![a-z])", title_lower):
            return display
    return None


def clean_text(text: Any) -> str:
    """Strip HTML tags/entities and collapse whitespace."""
    if not text:
        return ""
    cleaned = re.sub(r"<[^>]+>", "", str(text))
    cleaned = html.unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_url(url: str) -> str:
    """Normalize a URL by removing tracking parameters and the fragment.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL
    """
    if not url:
        return url

    parsed = urlparse(url.strip())
    query_params = parse_qs(parsed.query, keep_blank_values=True)

    filtered_params = {
        k: v for k, v in sorted(query_params.items()) if k.lower() not in TRACKING_PARAMS
    }

    new_query = urlencode(filtered_params, doseq=True)

    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.params, new_query, "")
    )


def is_valid_url(url: Optional[str]) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


class Normalizer:
    """Maps a provider-native candidate into the canonical Product.

    Candidates without a real original price are rejected; the engine does
    not estimate list prices.
    """

    def __init__(self, discount_tolerance: int = 1):
        """Initialize normalizer.

        Args:
            discount_tolerance: Max points a provider-supplied discount may
                differ from the recomputed one and still be trusted
        """
        self.discount_tolerance = discount_tolerance
        self.logger = logger.bind(component="normalizer")

    def normalize(self, candidate: RawCandidate, provider: BaseProvider) -> Optional[Product]:
        """Normalize one candidate.

        Args:
            candidate: Raw record from provider.search()
            provider: The provider that produced it

        Returns:
            Unscored Product, or None if the candidate cannot be mapped
        """
        try:
            return self._build_product(candidate, provider)
        except ValidationError as e:
            self.logger.debug(
                "candidate_rejected",
                provider=provider.provider_id,
                field=e.field,
                reason=e.message,
            )
            return None
        except (SchemaError, TypeError, AttributeError, InvalidOperation) as e:
            self.logger.debug(
                "candidate_rejected",
                provider=provider.provider_id,
                field="payload",
                reason=f"Malformed candidate: {type(e).__name__}",
                error=str(e),
            )
            return None

    def normalize_many(self, candidates: List[RawCandidate], provider: BaseProvider) -> List[Product]:
        products = []
        for candidate in candidates:
            product = self.normalize(candidate, provider)
            if product is not None:
                products.append(product)
        return products

    def _build_product(self, candidate: RawCandidate, provider: BaseProvider) -> Product:
        fields = provider.extract_fields(candidate.payload)
        if fields is None:
            raise ValidationError("Payload could not be mapped", "payload")

        name = clean_text(fields.name)
        if not name:
            raise ValidationError("Missing name", "name")

        sale = PriceNormalizer.clean_price_string(fields.sale_price)
        original = PriceNormalizer.clean_price_string(fields.original_price)

        if sale is None and original is None:
            raise ValidationError("Missing both prices", "price")
        if sale is None:
            raise ValidationError("Missing sale price", "sale_price", fields.sale_price)
        if original is None:
            raise ValidationError(
                "Missing original price (estimation disabled)",
                "original_price",
                fields.original_price,
            )
        if original <= sale:
            raise ValidationError(
                "Original price not greater than sale price",
                "original_price",
                str(original),
            )

        brand = clean_text(fields.brand) or detect_brand(name)
        if not brand:
            raise ValidationError("Missing brand", "brand")

        raw_url = clean_text(fields.product_url)
        if not raw_url:
            raise ValidationError("Missing product URL", "product_url")
        product_url = normalize_url(raw_url)

        discount = self._reconcile_discount(original, sale, fields.discount, provider)

        category = (
            CategoryClassifier.classify(fields.category_hint)
            or CategoryClassifier.classify(name)
            or ProductCategory.OTHER
        )

        images = list(dict.fromkeys(i for i in (fields.images or []) if isinstance(i, str) and i))

        return Product(
            external_id=clean_text(fields.external_id) or None,
            product_url=product_url,
            name=name,
            brand=brand,
            category=category,
            original_price=original,
            sale_price=sale,
            discount_percentage=discount,
            currency=clean_text(fields.currency).upper()[:3] or "USD",
            images=images,
            source=provider.provider_id,
            fetched_at=candidate.fetched_at,
            description=clean_text(fields.description) or None,
            rating=_to_float(fields.rating),
            review_count=_to_int(fields.review_count),
            availability=fields.availability if isinstance(fields.availability, bool) else None,
            attributes=fields.attributes if isinstance(fields.attributes, dict) else {},
        )

    def _reconcile_discount(
        self,
        original: Decimal,
        sale: Decimal,
        supplied: Any,
        provider: BaseProvider,
    ) -> int:
        """Trust a supplied discount only if it agrees with the prices."""
        computed = PriceNormalizer.calculate_discount_percentage(original, sale)
        claimed = PriceNormalizer.parse_discount(supplied)

        if claimed is None:
            return computed

        if abs(claimed - computed) <= self.discount_tolerance:
            return claimed

        self.logger.debug(
            "discount_recomputed",
            provider=provider.provider_id,
            claimed=claimed,
            computed=computed,
        )
        return computed

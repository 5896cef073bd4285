"""Tests for candidate normalization.

Tests cover:
- Price and discount parsing from free text
- Category classification and brand detection
- URL normalization
- Normalizer acceptance and rejection rules
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from promofinder.engine.normalizer import (
    CategoryClassifier,
    Normalizer,
    PriceNormalizer,
    detect_brand,
    is_valid_url,
    normalize_url,
)
from promofinder.providers.base import RawCandidate
from promofinder.schemas.product import ProductCategory

from doubles import feed_provider, make_record


def candidate(record, provider_id="nike_scraper"):
    return RawCandidate(
        provider=provider_id,
        payload=record,
        fetched_at=datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc),
    )


# ============================================================================
# PRICE PARSING
# ============================================================================

class TestPriceNormalizer:
    """Test price and discount parsing."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("$1,234.56", Decimal("1234.56")),
            ("€ 49,99", Decimal("49.99")),
            ("84 USD", Decimal("84")),
            ("1.299,00 EUR", Decimal("1299.00")),
            ("1,299", Decimal("1299")),
            ("£ 1 234,50", Decimal("1234.50")),
            (84, Decimal("84")),
            (84.5, Decimal("84.5")),
            (Decimal("19.99"), Decimal("19.99")),
        ],
    )
    def test_clean_price_string(self, raw, expected):
        """Test prices are parsed from numbers and localized strings."""
        assert PriceNormalizer.clean_price_string(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "free", "0", 0, -5, True])
    def test_clean_price_string_rejects_unusable_values(self, raw):
        """Test missing, zero, negative and non-numeric prices yield None."""
        assert PriceNormalizer.clean_price_string(raw) is None

    @pytest.mark.parametrize(
        "raw, expected",
        [("-30%", 30), ("30% off", 30), (30, 30), (-30, 30), ("Save 29.6%", 30), (None, None), ("n/a", None)],
    )
    def test_parse_discount(self, raw, expected):
        """Test provider discount labels are parsed to absolute percentages."""
        assert PriceNormalizer.parse_discount(raw) == expected

    def test_calculate_discount_percentage(self):
        """Test discount is round((original - sale) / original * 100)."""
        assert PriceNormalizer.calculate_discount_percentage(Decimal("120"), Decimal("84")) == 30
        assert PriceNormalizer.calculate_discount_percentage(Decimal("120"), Decimal("90")) == 25
        assert PriceNormalizer.calculate_discount_percentage(Decimal("200"), Decimal("199")) == 1  # 0.5 rounds up


# ============================================================================
# CLASSIFICATION AND URL HELPERS
# ============================================================================

class TestClassificationHelpers:
    """Test category classification, brand detection and URL helpers."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Men's Running Sneakers", ProductCategory.SHOES),
            ("Women's Leather Handbags", ProductCategory.BAGS),
            ("Spring Denim Jacket", ProductCategory.CLOTHING),
            ("Aviator Sunglasses", ProductCategory.SUNGLASSES),
            ("Classic Leather Belt", ProductCategory.ACCESSORIES),
            ("Chronograph Watch", ProductCategory.WATCHES),
            ("Silver Pendant Necklace", ProductCategory.JEWELRY),
        ],
    )
    def test_classify(self, text, expected):
        """Test keyword classification picks the best matching category."""
        assert CategoryClassifier.classify(text) == expected

    def test_classify_without_keywords(self):
        """Test unmatched or empty text is unclassified."""
        assert CategoryClassifier.classify("Nike Air Max 90") is None
        assert CategoryClassifier.classify("") is None
        assert CategoryClassifier.classify(None) is None

    def test_detect_brand(self):
        """Test known brands are found in titles."""
        assert detect_brand("Nike Air Max 90") == "Nike"
        assert detect_brand("H&M Cotton Tee") == "H&M"
        assert detect_brand("Levi's 501 Original Jeans") == "Levi's"
        assert detect_brand("New Balance 574 Core") == "New Balance"
        assert detect_brand("Generic Canvas Sneaker") is None

    def test_detect_brand_requires_whole_word(self):
        """Test brand names embedded in other words are not matched."""
        assert detect_brand("Gaps in the Market Tee") is None

    def test_normalize_url_strips_tracking(self):
        """Test tracking parameters and fragments are removed."""
        url = "https://Shop.Example.com/p/123?utm_source=mail&color=red&gclid=abc#reviews"
        assert normalize_url(url) == "https://shop.example.com/p/123?color=red"

    def test_normalize_url_keeps_plain_urls(self):
        """Test URLs without tracking survive unchanged."""
        assert normalize_url("https://shop.example.com/p/123") == "https://shop.example.com/p/123"

    def test_is_valid_url(self):
        """Test only absolute http(s) URLs are valid."""
        assert is_valid_url("https://shop.example.com/p/1")
        assert not is_valid_url("shop.example.com/p/1")
        assert not is_valid_url("ftp://shop.example.com/p/1")
        assert not is_valid_url("")
        assert not is_valid_url(None)


# ============================================================================
# NORMALIZER
# ============================================================================

class TestNormalizer:
    """Test mapping of raw candidates into canonical products."""

    def setup_method(self):
        self.normalizer = Normalizer()
        self.provider = feed_provider("nike_scraper")

    def test_normalize_full_record(self):
        """Test a complete record becomes an unscored Product."""
        record = make_record(
            sale="$84.00",
            original="$120.00",
            category="Running Shoes",
            id=9001,
            currency="usd",
            description="<p>Classic&nbsp;cushioning</p>",
        )

        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product is not None
        assert product.name == "Nike Air Max 90"
        assert product.brand == "Nike"
        assert product.sale_price == Decimal("84.00")
        assert product.original_price == Decimal("120.00")
        assert product.discount_percentage == 30
        assert product.category == ProductCategory.SHOES
        assert product.currency == "USD"
        assert product.external_id == "9001"
        assert product.source == "nike_scraper"
        assert product.images == ["https://img.example.com/airmax.jpg"]
        assert product.description == "Classic cushioning"
        assert product.confidence_score is None
        assert product.fetched_at == datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    def test_supplied_discount_within_tolerance_is_kept(self):
        """Test a provider discount within one point of the computed value is trusted."""
        record = make_record(discount="-31%")
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.discount_percentage == 31

    def test_supplied_discount_out_of_tolerance_is_recomputed(self):
        """Test an exaggerated provider discount is replaced by the computed one."""
        record = make_record(discount="-45%")
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.discount_percentage == 30

    def test_missing_original_price_is_rejected(self):
        """Test list prices are never estimated."""
        record = make_record(original=None)
        assert self.normalizer.normalize(candidate(record), self.provider) is None

    def test_original_not_above_sale_is_rejected(self):
        """Test records without a real markdown are rejected."""
        assert self.normalizer.normalize(candidate(make_record(sale=120, original=120)), self.provider) is None
        assert self.normalizer.normalize(candidate(make_record(sale=130, original=120)), self.provider) is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"url": ""},
            {"sale": None, "original": None},
            {"sale": "call for price"},
        ],
    )
    def test_incomplete_records_are_rejected(self, overrides):
        """Test records missing a name, URL or prices are rejected."""
        record = make_record(**overrides)
        assert self.normalizer.normalize(candidate(record), self.provider) is None

    def test_brand_falls_back_to_title(self):
        """Test the brand is detected from the title when absent."""
        record = make_record(brand=None)
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.brand == "Nike"

    def test_unknown_brand_is_rejected(self):
        """Test records with no brand and no known brand in the title are rejected."""
        record = make_record(name="Classic Canvas Sneaker", brand=None)
        assert self.normalizer.normalize(candidate(record), self.provider) is None

    def test_product_url_is_normalized(self):
        """Test tracking parameters are stripped from the product URL."""
        record = make_record(url="https://shop.example.com/nike-air-max-90?utm_campaign=spring")
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.product_url == "https://shop.example.com/nike-air-max-90"

    def test_duplicate_images_are_collapsed(self):
        """Test repeated image URLs are kept once, in order."""
        record = make_record(image=None, images=["https://img/a.jpg", "https://img/b.jpg", "https://img/a.jpg"])
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.images == ["https://img/a.jpg", "https://img/b.jpg"]
        assert product.image_url == "https://img/a.jpg"

    def test_normalize_many_skips_rejects(self):
        """Test batch normalization drops only the unusable records."""
        candidates = [
            candidate(make_record()),
            candidate(make_record(original=None)),
            candidate(make_record(url="https://shop.example.com/other", sale=60)),
        ]

        products = self.normalizer.normalize_many(candidates, self.provider)

        assert [p.sale_price for p in products] == [Decimal("84"), Decimal("60")]

    def test_non_string_fields_are_coerced(self):
        """Test numeric currency and id values are read as text."""
        record = make_record(currency=978, id=42, url=" https://shop.example.com/nike-air-max-90 ")
        product = self.normalizer.normalize(candidate(record), self.provider)

        assert product.currency == "978"
        assert product.external_id == "42"
        assert product.product_url == "https://shop.example.com/nike-air-max-90"

    def test_malformed_record_is_rejected_alone(self):
        """Test a record that breaks field mapping is dropped without losing its batch."""
        candidates = [
            candidate(make_record()),
            candidate(make_record(url="https://shop.example.com/other", image=None, images=5)),
        ]

        products = self.normalizer.normalize_many(candidates, self.provider)

        assert [p.product_url for p in products] == ["https://shop.example.com/nike-air-max-90"]

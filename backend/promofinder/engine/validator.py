"""Discount authenticity checks and confidence scoring."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import structlog

from promofinder.engine.normalizer import MIN_NAME_LENGTH, is_valid_url
from promofinder.schemas.product import Product

logger = structlog.get_logger(__name__)


MIN_DISCOUNT = 10
DEFAULT_MAX_DISCOUNT = 90

BASE_SCORE = 100
MIN_SCORE = 70
MAX_SCORE = 99

# Retailers that inflate "original" prices by a flat 30% leave this ratio
MARKUP_RATIO = Decimal("1.30")
MARKUP_RATIO_TOLERANCE = Decimal("0.01")

PENALTY_MARKUP_RATIO = 5
PENALTY_SHORT_NAME = 30
PENALTY_MISSING_BRAND = 20
PENALTY_INVALID_URL = 20
PENALTY_NO_IMAGES = 5


@dataclass
class ValidationOutcome:
    """Result of validating one product.

    reasons lists rejection causes; warnings lists score deductions.
    """

    accepted: bool
    confidence_score: Optional[int] = None
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class AuthenticityValidator:
    """Rejects implausible discounts and scores the rest.

    A product starts at 100 points. Quality gaps deduct points, and the
    final score is clamped to [70, 99]. Rejection is decided separately by
    the price and discount-range rules.
    """

    def __init__(self, min_discount: int = MIN_DISCOUNT):
        self.min_discount = min_discount
        self.logger = logger.bind(component="validator")

    def validate(self, product: Product, max_discount: int = DEFAULT_MAX_DISCOUNT) -> ValidationOutcome:
        """Check a product's discount and compute its confidence score.

        Args:
            product: Normalized product
            max_discount: Upper discount bound (providers may cap lower)

        Returns:
            ValidationOutcome
        """
        reasons: List[str] = []
        warnings: List[str] = []

        if product.sale_price <= 0:
            reasons.append("sale_price must be positive")
        elif product.original_price <= product.sale_price:
            reasons.append("original_price must exceed sale_price")

        discount = product.discount_percentage
        if discount < self.min_discount:
            reasons.append(f"discount {discount}% below minimum {self.min_discount}%")
        elif discount > max_discount:
            reasons.append(f"discount {discount}% above maximum {max_discount}%")

        score = BASE_SCORE

        if product.sale_price > 0 and abs(product.price_ratio - MARKUP_RATIO) <= MARKUP_RATIO_TOLERANCE:
            score -= PENALTY_MARKUP_RATIO
            warnings.append("original/sale ratio matches flat 30% markup")

        if not product.name or len(product.name.strip()) < MIN_NAME_LENGTH:
            score -= PENALTY_SHORT_NAME
            warnings.append("name missing or too short")

        if not product.brand:
            score -= PENALTY_MISSING_BRAND
            warnings.append("brand missing")

        if not is_valid_url(product.product_url):
            score -= PENALTY_INVALID_URL
            warnings.append("product_url is not a valid URL")

        if not product.images:
            score -= PENALTY_NO_IMAGES
            warnings.append("no images")

        if reasons:
            return ValidationOutcome(accepted=False, reasons=reasons, warnings=warnings)

        return ValidationOutcome(
            accepted=True,
            confidence_score=max(MIN_SCORE, min(MAX_SCORE, score)),
            warnings=warnings,
        )

    def apply(self, product: Product, max_discount: int = DEFAULT_MAX_DISCOUNT) -> Optional[Product]:
        """Validate and return a scored copy, or None if rejected."""
        outcome = self.validate(product, max_discount=max_discount)

        if not outcome.accepted:
            self.logger.debug(
                "product_rejected",
                source=product.source,
                product_url=product.product_url,
                reasons=outcome.reasons,
            )
            return None

        return product.model_copy(update={"confidence_score": outcome.confidence_score})

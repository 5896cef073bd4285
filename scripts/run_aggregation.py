"""Manual aggregation runner for testing providers end to end.

Runs one query across the enabled providers and prints the merged deals
together with per-provider diagnostics.

Usage:
    python scripts/run_aggregation.py --query "air max" --brand Nike
    python scripts/run_aggregation.py --brand Adidas --providers rapidapi --limit 5
    python scripts/run_aggregation.py --query sneakers --sort price --public
"""

import asyncio
import argparse
import sys
import os
from decimal import Decimal

# Add backend to path so we can import promofinder
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from promofinder.config import settings
from promofinder.core.exceptions import ConfigurationError
from promofinder.core.logging_config import configure_logging
from promofinder.engine.aggregator import SORT_OPTIONS, Aggregator, EngineContext
from promofinder.providers.base import ProviderQuery
from promofinder.providers.register_providers import build_provider_registry


async def run_aggregation(
    query: ProviderQuery,
    providers=None,
    sort_by: str = "discount",
    limit: int = 10,
    public_only: bool = False,
):
    """Run an aggregation and display the results.

    Args:
        query: Query sent to every provider
        providers: Provider ids to use (all enabled when None)
        sort_by: Ranking option
        limit: Maximum number of deals to display
        public_only: Show only deals eligible for public listings
    """
    try:
        registry = build_provider_registry(settings)
    except ConfigurationError as e:
        print(f"\n❌ Configuration error: {e.message}\n")
        return

    aggregator = Aggregator(registry, EngineContext.from_settings(settings))

    print(f"\n{'='*70}")
    print(f"  Aggregating '{query.search_terms}'")
    print(f"{'='*70}")
    print(f"  🔌 Providers: {', '.join(providers or registry.provider_ids()) or '-'}")
    print(f"  🔀 Sort: {sort_by}")
    print(f"  📊 Display Limit: {limit}")
    print(f"{'='*70}\n")

    try:
        result = await aggregator.aggregate(query, providers=providers, sort_by=sort_by)
        products = result.public_products() if public_only else result.products

        if not products:
            print("⚠️  No deals found.\n")
        else:
            print(f"✅ Found {len(products)} deals\n")
            for i, product in enumerate(products[:limit], 1):
                print(f"[{i}] {product.brand} - {product.name}")
                print(f"    💰 Price: {_format_price(product.sale_price, product.currency)}")
                print(f"    🔖 Original: {_format_price(product.original_price, product.currency)}")
                print(f"    📉 Discount: {product.discount_percentage}%")
                print(f"    📁 Category: {product.category.value}")
                print(f"    ⭐ Confidence: {product.confidence_score}")
                print(f"    🏬 Source: {product.source}")
                print(f"    🔗 URL: {product.product_url[:80]}")
                print()

        # Diagnostics
        print(f"{'='*70}")
        print(f"  Sources")
        print(f"{'='*70}")
        for source in result.sources:
            cached = " (cached)" if source.cached else ""
            print(f"  - {source.provider}: {source.count} deals in {source.latency_ms}ms{cached}")

        if result.errors:
            print(f"\n  Errors:")
            for failure in result.errors:
                retry = f", retry in {failure.retry_after_seconds}s" if failure.retry_after_seconds else ""
                print(f"  - {failure.provider} [{failure.error_type}]: {failure.error}{retry}")

        print(f"{'='*70}\n")

    finally:
        await aggregator.close()


def _format_price(price: Decimal, currency: str) -> str:
    """Format price with currency symbol.

    Args:
        price: The price value
        currency: ISO currency code (e.g., "USD", "EUR")

    Returns:
        Formatted price string
    """
    if currency == "USD":
        return f"${price:,.2f}"
    elif currency == "EUR":
        return f"€{price:,.2f}"
    elif currency == "GBP":
        return f"£{price:,.2f}"
    else:
        return f"{price:,.2f} {currency}"


def main():
    """Parse arguments and run the aggregation."""
    parser = argparse.ArgumentParser(
        description="Aggregate deals across providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_aggregation.py --query "air max" --brand Nike
  python scripts/run_aggregation.py --brand Adidas --providers rapidapi --limit 5
  python scripts/run_aggregation.py --query sneakers --sort price --public
        """,
    )

    parser.add_argument("--query", default="", help="Free-text search terms")
    parser.add_argument("--brand", help="Brand filter (e.g., 'Nike')")
    parser.add_argument("--max-price", type=Decimal, help="Upper sale price bound")
    parser.add_argument(
        "--providers",
        help="Comma-separated provider ids (default: all enabled)",
    )
    parser.add_argument(
        "--sort",
        choices=SORT_OPTIONS,
        default="discount",
        help="Ranking option (default: discount)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Maximum number of deals to display (default: 10)",
    )
    parser.add_argument(
        "--public",
        action="store_true",
        help="Show only deals within public listing bounds",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )

    args = parser.parse_args()

    if not args.query and not args.brand:
        parser.error("--query or --brand is required")

    configure_logging(settings.LOG_LEVEL, json_logs=args.json_logs)

    query = ProviderQuery(query=args.query, brand=args.brand, max_price=args.max_price)
    providers = [p.strip() for p in args.providers.split(",") if p.strip()] if args.providers else None

    asyncio.run(run_aggregation(query, providers, args.sort, args.limit, args.public))


if __name__ == "__main__":
    main()

"""Provider adapters.

API providers:
- RapidApiProvider: Real-Time Product Search (Google Shopping offers)
- RainforestProvider: Amazon search via Rainforest API

Scraper providers:
- ScraperFeedProvider: bridge to the external browser-automation scrapers
"""

from .rapidapi import RapidApiProvider
from .rainforest import RainforestProvider
from .scraper_feed import ScraperFeedProvider

__all__ = [
    "RapidApiProvider",
    "RainforestProvider",
    "ScraperFeedProvider",
]

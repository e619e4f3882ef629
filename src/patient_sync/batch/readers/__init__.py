"""
Clinical API readers: pacing, page fetching and Bundle extraction.
"""

from .bundle_extractor import extract, next_link, source_record_id, validate_container
from .page_fetcher import PageFetcher, backoff_delay
from .rate_limiter import RateLimiter

__all__ = [
    "PageFetcher",
    "RateLimiter",
    "backoff_delay",
    "extract",
    "next_link",
    "source_record_id",
    "validate_container",
]

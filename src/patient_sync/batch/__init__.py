"""
Paginated batch extraction: readers and the batch orchestrator.
"""

from .orchestrator import BatchOrchestrator
from .readers import PageFetcher, RateLimiter

__all__ = [
    "BatchOrchestrator",
    "PageFetcher",
    "RateLimiter",
]

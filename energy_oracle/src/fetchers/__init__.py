"""
Provider payload formats.

This module provides a unified interface for reading energy-production
values from oracle providers that expose different JSON payloads.

Usage:
    from energy_oracle.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available formats
    available = get_available_fetchers()
    # ['generic', 'meter']

    # Read one provider once (no retry, see FeedFetcher for that)
    fetcher = get_fetcher(provider.format)
    raw = await fetcher.fetch(provider)
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherError,
    FetcherHTTPError,
    FetcherPayloadError,
    FetcherTimeoutError,
    RawReading,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .generic import GenericFetcher
from .meter import MeterFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherHTTPError",
    "FetcherPayloadError",
    "FetcherTimeoutError",
    "RawReading",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "GenericFetcher",
    "MeterFetcher",
]

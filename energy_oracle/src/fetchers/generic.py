"""Generic reading format.

Payload: ``{"value": <kWh>, "timestamp": <unix ms>, "confidence"?: <0-1>, "signature"?: <hex>}``
"""

import logging
from typing import Any

from .base import BaseFetcher, FetcherPayloadError, RawReading, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class GenericFetcher(BaseFetcher):
    """Fetcher for providers that speak the native reading format."""

    name = "generic"

    def parse(self, data: Any) -> RawReading:
        missing = [k for k in ("value", "timestamp") if k not in data]
        if missing:
            raise FetcherPayloadError(f"Missing fields {missing} in {data}")

        reading: RawReading = {"value": data["value"], "timestamp": data["timestamp"]}
        if data.get("confidence") is not None:
            reading["confidence"] = data["confidence"]
        if data.get("signature"):
            reading["signature"] = data["signature"]
        return reading

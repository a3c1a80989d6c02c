"""Smart-meter relay format.

Endpoint: ``<gateway>/api/meter/latest`` and compatible relays
Payload: ``{"kwh": <kWh>, "ts": <unix ms>, "co2"?: <kg>, "raw_wh"?: <Wh>, "sig"?: <hex>}``

When ``kwh`` is absent but ``raw_wh`` is present, the value is derived from
the raw watt-hour counter. Meter relays report no confidence of their own.
"""

import logging
from typing import Any

from .base import BaseFetcher, FetcherPayloadError, RawReading, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class MeterFetcher(BaseFetcher):
    """Fetcher for meter relay endpoints."""

    name = "meter"

    def parse(self, data: Any) -> RawReading:
        if "ts" not in data:
            raise FetcherPayloadError(f"Missing 'ts' in meter payload {data}")

        if data.get("kwh") is not None:
            value = data["kwh"]
        elif data.get("raw_wh") is not None:
            try:
                value = float(data["raw_wh"]) / 1000.0
            except (TypeError, ValueError) as e:
                raise FetcherPayloadError(f"Bad raw_wh {data['raw_wh']!r}") from e
        else:
            raise FetcherPayloadError(f"Missing 'kwh' in meter payload {data}")

        reading: RawReading = {"value": value, "timestamp": data["ts"]}
        if data.get("sig"):
            reading["signature"] = data["sig"]
        return reading

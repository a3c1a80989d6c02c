"""FeedFetcher: One provider read with timeout, retry and validation.

``fetch()`` never raises. It returns either a validated ``Reading`` or a
typed ``FetchError``:

    1. Up to ``max_retries + 1`` attempts, each bounded by the provider timeout
    2. Between attempts, wait ``base_delay * 2**attempt`` plus random jitter
       (capped at ``max_delay``)
    3. A parsed payload is validated: value finite and positive, timestamp a
       positive integer, confidence within [0, 1], optional freshness window
    4. Providers with a configured signer must attach a signature that the
       injected verifier accepts

Malformed data is a failure (INVALID_PAYLOAD), never a reading.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from .fetchers import (
    FetcherError,
    FetcherHTTPError,
    FetcherPayloadError,
    FetcherTimeoutError,
    RawReading,
    get_fetcher,
)
from .ProviderRegistry import ProviderConfig

logger = logging.getLogger(__name__)

SignatureVerifierFn = Callable[[bytes, str, str], bool]


class FetchErrorReason(str, Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    NON_2XX = "NON_2XX"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"

    @property
    def transient(self) -> bool:
        return self in (FetchErrorReason.TIMEOUT, FetchErrorReason.NETWORK, FetchErrorReason.NON_2XX)


@dataclass(frozen=True)
class Reading:
    """A validated energy reading from one provider.

    :ivar provider_id: Source provider.
    :ivar value: Energy produced, kWh.
    :ivar timestamp: Reading time, Unix milliseconds.
    :ivar confidence: Provider-reported confidence (0-1), if any.
    :ivar signature: Provider attestation, if any.
    :ivar response_time_ms: Wall time of the successful attempt.
    :ivar attempts: Attempts used, including the successful one.
    """

    provider_id: str
    value: float
    timestamp: int
    confidence: float | None = None
    signature: str | None = None
    response_time_ms: float | None = None
    attempts: int = 1


@dataclass(frozen=True)
class FetchError:
    """A provider read that failed after exhausting its retry budget.

    :ivar provider_id: Source provider.
    :ivar reason: Failure classification.
    :ivar message: Detail of the last failure.
    :ivar attempts: Attempts made.
    """

    provider_id: str
    reason: FetchErrorReason
    message: str = ""
    attempts: int = 0


FetchOutcome = Reading | FetchError


class _AttemptFailed(Exception):
    def __init__(self, reason: FetchErrorReason, message: str):
        self.reason = reason
        super().__init__(message)


def canonical_payload(value: Any, timestamp: Any) -> bytes:
    """Bytes a provider signs: compact, key-sorted JSON of value and timestamp.

    Both fields are serialized exactly as the provider served them, so a
    reading signed over ``"value":120`` verifies against the integer 120,
    not against ``120.0``.
    """
    return json.dumps(
        {"timestamp": timestamp, "value": value},
        sort_keys=True,
        separators=(",", ":"),
    ).encode()


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters shared by all providers.

    :ivar base_delay: Delay before the first retry, seconds.
    :ivar max_delay: Upper bound on a single delay, seconds.
    :ivar jitter: Fraction of the delay added at random (0 disables).
    """

    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.2

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before retry number ``attempt + 1``.

        :param attempt: Zero-based index of the attempt that just failed.
        :param rng: Random source for jitter.
        """
        base = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter <= 0:
            return base
        spread = (rng or random).uniform(0, base * self.jitter)
        return min(base + spread, self.max_delay)

    def budget(self, provider: ProviderConfig) -> float:
        """Worst-case seconds one provider fetch can take, retries included."""
        attempts = provider.max_retries + 1
        waits = sum(
            min(self.base_delay * (2 ** i) * (1 + self.jitter), self.max_delay)
            for i in range(provider.max_retries)
        )
        return attempts * provider.timeout_seconds + waits


class FeedFetcher:
    """Fetches and validates readings from providers.

    :ivar retry_policy: Backoff parameters.
    :ivar max_reading_age_ms: Reject readings older than this (None disables).
    :ivar clock_drift_tolerance_ms: Accept timestamps this far in the future.
    """

    DEFAULT_CLOCK_DRIFT_TOLERANCE_MS = 60_000

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        *,
        verify_signature: SignatureVerifierFn | None = None,
        client: httpx.AsyncClient | None = None,
        max_reading_age_ms: int | None = None,
        clock_drift_tolerance_ms: int = DEFAULT_CLOCK_DRIFT_TOLERANCE_MS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the fetcher.

        :param retry_policy: Backoff parameters.
        :param verify_signature: ``(payload, signature, provider_id) -> bool``.
            Required for providers that declare a signer.
        :param client: HTTP client (default: the shared fetcher client).
        :param max_reading_age_ms: Freshness window, None to disable.
        :param clock_drift_tolerance_ms: Allowed future skew of timestamps.
        :param sleep: Async sleep used for backoff (default: asyncio.sleep).
        :param clock: Unix-seconds clock for freshness checks.
        :param rng: Random source for jitter.
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.verify_signature = verify_signature
        self.client = client
        self.max_reading_age_ms = max_reading_age_ms
        self.clock_drift_tolerance_ms = clock_drift_tolerance_ms
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time
        self._rng = rng

    async def fetch(self, provider: ProviderConfig) -> FetchOutcome:
        """Read one provider, retrying per its budget.

        :param provider: Provider to read.
        :returns: Reading on success, FetchError once retries are exhausted.
        """
        try:
            fetcher = get_fetcher(provider.format, client=self.client)
        except ValueError as e:
            return FetchError(provider.id, FetchErrorReason.INVALID_PAYLOAD, str(e), attempts=0)

        total_attempts = provider.max_retries + 1
        last: _AttemptFailed | None = None

        for attempt in range(total_attempts):
            started = time.perf_counter()
            try:
                raw = await asyncio.wait_for(fetcher.fetch(provider), timeout=provider.timeout_seconds)
                reading = self._validate(provider, raw, attempt + 1, (time.perf_counter() - started) * 1000)
                if attempt > 0:
                    logger.info(f"[{provider.id}] Fetch succeeded after {attempt} retries")
                return reading
            except _AttemptFailed as e:
                last = e
            except (asyncio.TimeoutError, FetcherTimeoutError) as e:
                last = _AttemptFailed(FetchErrorReason.TIMEOUT, f"Timed out after {provider.timeout_ms}ms: {e}")
            except FetcherHTTPError as e:
                last = _AttemptFailed(FetchErrorReason.NON_2XX, str(e))
            except FetcherPayloadError as e:
                last = _AttemptFailed(FetchErrorReason.INVALID_PAYLOAD, str(e))
            except FetcherError as e:
                last = _AttemptFailed(FetchErrorReason.NETWORK, str(e))

            logger.warning(
                f"[{provider.id}] Attempt {attempt + 1}/{total_attempts} failed: "
                f"{last.reason.value} {last}"
            )
            if attempt < total_attempts - 1:
                await self._sleep(self.retry_policy.delay(attempt, self._rng))

        assert last is not None
        logger.error(f"[{provider.id}] Giving up after {total_attempts} attempts: {last.reason.value}")
        return FetchError(provider.id, last.reason, str(last), attempts=total_attempts)

    def _validate(
        self,
        provider: ProviderConfig,
        raw: RawReading,
        attempts: int,
        response_time_ms: float,
    ) -> Reading:
        value = _as_positive_finite(raw.get("value"))
        if value is None:
            raise _AttemptFailed(
                FetchErrorReason.INVALID_PAYLOAD,
                f"Value must be a finite positive number, got {raw.get('value')!r}",
            )

        timestamp = _as_positive_int(raw.get("timestamp"))
        if timestamp is None:
            raise _AttemptFailed(
                FetchErrorReason.INVALID_PAYLOAD,
                f"Timestamp must be a positive integer, got {raw.get('timestamp')!r}",
            )
        self._check_freshness(timestamp)

        confidence = raw.get("confidence")
        if confidence is not None:
            if (
                isinstance(confidence, bool)
                or not isinstance(confidence, (int, float))
                or not 0.0 <= confidence <= 1.0
            ):
                raise _AttemptFailed(
                    FetchErrorReason.INVALID_PAYLOAD,
                    f"Confidence must be within [0, 1], got {confidence!r}",
                )
            confidence = float(confidence)

        signature = raw.get("signature")
        if signature is not None and not isinstance(signature, str):
            raise _AttemptFailed(FetchErrorReason.INVALID_PAYLOAD, "Signature must be a string")

        if provider.signer:
            self._check_signature(provider, raw.get("value"), raw.get("timestamp"), signature)

        return Reading(
            provider_id=provider.id,
            value=value,
            timestamp=timestamp,
            confidence=confidence,
            signature=signature,
            response_time_ms=response_time_ms,
            attempts=attempts,
        )

    def _check_freshness(self, timestamp: int) -> None:
        if self.max_reading_age_ms is None:
            return
        age = self._clock() * 1000 - timestamp
        if age < -self.clock_drift_tolerance_ms:
            raise _AttemptFailed(
                FetchErrorReason.INVALID_PAYLOAD,
                f"Timestamp is {-age:.0f}ms in the future",
            )
        if age > self.max_reading_age_ms:
            raise _AttemptFailed(
                FetchErrorReason.INVALID_PAYLOAD,
                f"Reading is stale ({age:.0f}ms old, max {self.max_reading_age_ms}ms)",
            )

    def _check_signature(
        self,
        provider: ProviderConfig,
        value: Any,
        timestamp: Any,
        signature: str | None,
    ) -> None:
        if not signature:
            raise _AttemptFailed(FetchErrorReason.SIGNATURE_INVALID, "Missing signature")
        if self.verify_signature is None:
            raise _AttemptFailed(
                FetchErrorReason.SIGNATURE_INVALID,
                "Provider requires signatures but no verifier is configured",
            )
        if not self.verify_signature(canonical_payload(value, timestamp), signature, provider.id):
            raise _AttemptFailed(FetchErrorReason.SIGNATURE_INVALID, "Signature rejected")


def _as_positive_finite(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _as_positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        return None
    return value

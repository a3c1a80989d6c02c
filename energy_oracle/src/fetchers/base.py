"""Base fetcher interface and shared HTTP client management.

A fetcher knows how to read one provider endpoint and translate its payload
into the normalized reading fields ``value``, ``timestamp``, ``confidence``
and ``signature``. Fetchers are registered by payload format name; a provider
selects one through ``ProviderConfig.format``.

A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead.

.. code-block:: python

    @register_fetcher
    class MyFormatFetcher(BaseFetcher):
        name = "myformat"

        def parse(self, data: object) -> RawReading:
            return {"value": data["energy"], "timestamp": data["at"]}
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypedDict

import httpx

from ..ProviderRegistry import ProviderConfig

logger = logging.getLogger(__name__)

USER_AGENT = "EnergyOracle-MultiOracle/1.0"


class FetcherError(Exception):
    """Base exception for fetcher errors (network failures)."""

    pass


class FetcherTimeoutError(FetcherError):
    """Raised when a request exceeds the provider timeout."""

    pass


class FetcherPayloadError(FetcherError):
    """Raised when a response body cannot be interpreted as a reading."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class RawReading(TypedDict, total=False):
    """Normalized but not yet validated reading fields.

    :ivar value: Energy value (kWh).
    :ivar timestamp: Reading time, Unix milliseconds.
    :ivar confidence: Provider-reported confidence (0-1).
    :ivar signature: Provider attestation over value and timestamp.
    """

    value: Any
    timestamp: Any
    confidence: Any
    signature: Any


class BaseFetcher(ABC):
    """Abstract base class for provider payload formats.

    Subclasses must implement:
        - name: Class variable identifying the payload format
        - parse(): Translate the decoded JSON body into a RawReading

    :cvar name: Unique identifier for this format.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Format identification
    name: ClassVar[str] = ""

    def __init__(self, client: httpx.AsyncClient | None = None):
        """Initialize the fetcher.

        :param client: Optional client to use instead of the shared one.
        """
        self._client = client

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if BaseFetcher._shared_client is not None and not BaseFetcher._shared_client.is_closed:
            await BaseFetcher._shared_client.aclose()
            BaseFetcher._shared_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or self.get_shared_client()

    @abstractmethod
    def parse(self, data: Any) -> RawReading:
        """Translate a decoded response body into reading fields.

        :param data: Decoded JSON body.
        :returns: RawReading with at least ``value`` and ``timestamp``.
        :raises FetcherPayloadError: If required fields are missing.
        """
        pass

    async def fetch(self, provider: ProviderConfig) -> RawReading:
        """Read the provider endpoint once.

        :param provider: Provider to read.
        :returns: Parsed reading fields.
        :raises FetcherTimeoutError: On timeout.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherPayloadError: On undecodable or incomplete body.
        :raises FetcherError: On other network errors.
        """
        response = await self._get(
            provider.endpoint,
            headers=provider.headers,
            timeout=provider.timeout_seconds,
        )
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherPayloadError(f"Response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise FetcherPayloadError(f"Expected a JSON object, got {type(data).__name__}")
        return self.parse(data)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :param timeout: Request timeout in seconds.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherTimeoutError: On timeout.
        :raises FetcherError: On network errors.
        """
        request_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        try:
            response = await self.client.get(
                url,
                params=params,
                headers=request_headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise FetcherTimeoutError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e
        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FetcherHTTPError(response.status_code, response.text[:200])
        return response


# Registry of available payload formats (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, client: httpx.AsyncClient | None = None) -> BaseFetcher:
    """Get a fetcher instance by format name.

    :param name: Format name (e.g., "generic", "meter").
    :param client: Optional HTTP client.
    :returns: Fetcher instance.
    :raises ValueError: If the format is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](client=client)


def get_available_fetchers() -> list[str]:
    """Get list of available payload format names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())

"""ProviderRegistry: Static and operator-controlled configuration of oracle providers.

Providers are loaded once at startup. Everything about a provider is fixed for
the lifetime of the process except its ``enabled`` flag, which an operator (or
the ReputationTracker, after too many consecutive failures) may flip.

.. code-block:: python

    >>> registry = ProviderRegistry([
    ...     ProviderConfig("meter-a", "http://a.local/latest", weight=1.0),
    ...     ProviderConfig("meter-b", "http://b.local/latest", weight=0.8),
    ... ])
    >>> [p.id for p in registry.enabled_providers()]
    ['meter-a', 'meter-b']
    >>> registry.set_enabled("meter-b", False)
    >>> [p.id for p in registry.enabled_providers()]
    ['meter-a']
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace

from pydantic import ValidationError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised at startup when oracle configuration is invalid."""

    pass


def format_validation_error(exc: ValidationError) -> str:
    """One line per pydantic error: ``location: message``, joined by ``; ``."""
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part is not None)
        message = error.get("msg", "invalid value")
        details.append(f"{location}: {message}" if location else message)
    return "; ".join(details)


class ProviderNotFoundError(KeyError):
    """Raised when a provider id is not registered.

    :ivar provider_id: The unknown provider id.
    """

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unknown oracle provider '{provider_id}'")

    def __str__(self) -> str:
        return self.args[0]


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration of a single oracle provider.

    :ivar id: Unique provider identifier.
    :ivar endpoint: URL returning the provider's latest reading.
    :ivar weight: Relative static trust, must be positive.
    :ivar timeout_ms: Timeout for a single fetch attempt.
    :ivar max_retries: Retries after the first attempt.
    :ivar enabled: Whether the provider takes part in verification cycles.
    :ivar initial_reputation: Starting reputation score.
    :ivar format: Registered payload format name (see ``fetchers``).
    :ivar signer: Optional signer address. When set, readings must be signed.
    :ivar headers: Static request headers (provider authentication).
    """

    id: str
    endpoint: str
    weight: float = 1.0
    timeout_ms: int = 5000
    max_retries: int = 3
    enabled: bool = True
    initial_reputation: float = 100.0
    format: str = "generic"
    signer: str | None = None
    headers: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class ProviderRegistry:
    """Holds provider configuration and the operator ``enabled`` switch.

    Reads return the current immutable ``ProviderConfig`` objects and need no
    locking. Enabling or disabling a provider swaps in a new object under a
    lock so concurrent writers are serialized.

    :ivar reputation_range: Optional (min, max) bounds used to validate
        ``initial_reputation``.
    """

    def __init__(
        self,
        providers: list[ProviderConfig],
        reputation_range: tuple[float, float] | None = None,
    ) -> None:
        """Validate and register providers.

        :param providers: Provider configurations.
        :param reputation_range: (min_reputation, max_reputation) used to check
            each provider's initial reputation.
        :raises ConfigurationError: On duplicate ids or invalid values.
        """
        self.reputation_range = reputation_range
        self._providers: dict[str, ProviderConfig] = {}
        self._write_lock = threading.Lock()

        for provider in providers:
            self._validate(provider)
            if provider.id in self._providers:
                raise ConfigurationError(f"Duplicate provider id '{provider.id}'")
            self._providers[provider.id] = provider

        logger.info(f"Registered {len(self._providers)} oracle providers: {list(self._providers)}")

    def _validate(self, provider: ProviderConfig) -> None:
        if not provider.id:
            raise ConfigurationError("Provider id must not be empty")
        if not provider.endpoint:
            raise ConfigurationError(f"Provider '{provider.id}' has no endpoint")
        if not math.isfinite(provider.weight) or provider.weight <= 0:
            raise ConfigurationError(
                f"Provider '{provider.id}' weight must be positive, got {provider.weight}"
            )
        if provider.timeout_ms <= 0:
            raise ConfigurationError(
                f"Provider '{provider.id}' timeout_ms must be positive, got {provider.timeout_ms}"
            )
        if provider.max_retries < 0:
            raise ConfigurationError(
                f"Provider '{provider.id}' max_retries must not be negative, got {provider.max_retries}"
            )
        if self.reputation_range is not None:
            low, high = self.reputation_range
            if not low <= provider.initial_reputation <= high:
                raise ConfigurationError(
                    f"Provider '{provider.id}' initial_reputation {provider.initial_reputation} "
                    f"outside [{low}, {high}]"
                )

    def list_providers(self) -> list[ProviderConfig]:
        """Get all registered providers, in registration order."""
        return list(self._providers.values())

    def enabled_providers(self) -> list[ProviderConfig]:
        """Get providers currently enabled."""
        return [p for p in self._providers.values() if p.enabled]

    def get(self, provider_id: str) -> ProviderConfig:
        """Get a provider by id.

        :param provider_id: Provider id.
        :returns: The provider configuration.
        :raises ProviderNotFoundError: If the id is not registered.
        """
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFoundError(provider_id) from None

    def set_enabled(self, provider_id: str, enabled: bool) -> None:
        """Enable or disable a provider.

        :param provider_id: Provider id.
        :param enabled: New flag value.
        :raises ProviderNotFoundError: If the id is not registered.
        """
        with self._write_lock:
            current = self.get(provider_id)
            if current.enabled == enabled:
                return
            self._providers[provider_id] = replace(current, enabled=enabled)
        logger.info(f"[{provider_id}] Provider {'enabled' if enabled else 'disabled'}")

    def ids(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)

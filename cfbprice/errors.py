"""Exception types shared across the pricing pipeline."""

from __future__ import annotations


class CFBPriceError(RuntimeError):
    """Base class for pipeline errors."""


class ConfigError(CFBPriceError):
    """Raised when configuration is missing keys or holds invalid values."""


class CredentialError(CFBPriceError):
    """Raised when a provider credential is missing or rejected."""


class StoreUnavailableError(CFBPriceError):
    """Raised when the persistent store cannot be opened or written."""


class ProviderError(CFBPriceError):
    """Raised when a statistics/odds provider request fails."""


class ProviderRateLimitError(ProviderError):
    """Rate limit (HTTP 429) or timeout; the request may be retried later."""


class ProviderNotFoundError(ProviderError):
    """The provider has no data for the requested season/week/team."""


class UnmappableEntityError(CFBPriceError, KeyError):
    """A provider entity (usually a team name) has no internal identifier."""

    def __init__(self, name: str, source: str = "") -> None:
        self.name = name
        self.source = source
        where = f" from {source}" if source else ""
        super().__init__(f"No internal id for '{name}'{where}")

    def __str__(self) -> str:
        return self.args[0]


class InsufficientDataError(CFBPriceError):
    """Not enough input to produce a result; callers record a null."""


class SingularMatrixError(InsufficientDataError):
    """Normal-equation matrix is singular (|det| below tolerance)."""

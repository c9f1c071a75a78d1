from __future__ import annotations


class ValidationError(ValueError):
    """Raised when input fails a business rule or a currency code is rejected."""


class NotFoundError(LookupError):
    """Raised when a transaction or an exchange rate does not exist."""


class AccessDeniedError(NotFoundError):
    """Raised when a transaction exists but belongs to another user.

    Reported exactly like a missing transaction so callers cannot probe
    for ids owned by someone else.
    """


class UpstreamFetchError(RuntimeError):
    """Raised when the rate provider fails and no cached rates are available."""

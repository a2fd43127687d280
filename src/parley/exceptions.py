"""Exception hierarchy for Parley.

All errors raised by Parley inherit from ParleyError so callers can catch
the whole family in one place.
"""

from typing import Optional


class ParleyError(Exception):
    """Base for all Parley errors."""


class ConfigurationError(ParleyError):
    """Missing or invalid configuration (config file, prompt, models, API key)."""


class ProviderError(ParleyError):
    """The completion provider returned a non-success response.

    Attributes:
        status_code: HTTP status code, or None for transport-level failures.
        detail: Response body or failure description.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class TransportError(ParleyError):
    """The event stream between producer and consumer could not be opened."""

"""
Parley - Custom exceptions for error handling.
"""

from typing import Any, Optional


class ParleyError(Exception):
    """Base exception for all Parley errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ProviderError(ParleyError):
    """Raised when a call to an LLM provider fails at the transport level.

    The message never contains credentials: it is passed through
    :func:`parley.text.strip_secrets` before the exception is built.
    """

    def __init__(self, message: str, provider: str = "unknown", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider

    def __str__(self) -> str:
        return f"[{self.provider}] {self.message}"


class ProviderAuthenticationError(ProviderError):
    """Raised when the provider rejects the configured credentials (401/403)."""

    pass


class ProviderQuotaError(ProviderError):
    """Raised when the provider reports a rate limit or exhausted quota (429)."""

    pass


class ProviderUnavailableError(ProviderError):
    """Raised when the provider answers with a server-side error (5xx)."""

    pass


class ProviderConnectionError(ProviderError):
    """Raised when the provider cannot be reached (DNS, TLS, timeout, reset)."""

    pass


class ProviderNotAvailableError(ParleyError):
    """Raised when neither the configured nor the default provider is registered."""

    def __init__(
        self, message: str, available: Optional[list[str]] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.available = available or []


class CapabilityConfigError(ParleyError):
    """Raised when a model capability file cannot be read or parsed."""

    pass

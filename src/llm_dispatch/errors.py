"""Package specific exception hierarchy."""


class DispatchError(Exception):
    """Base exception for llm_dispatch package."""

    kind = "internal"
    retryable = False


class DispatchValidationError(DispatchError, ValueError):
    """Raised synchronously for malformed dispatch input (empty messages or targets)."""

    kind = "dispatch_validation"


class TargetValidationError(DispatchError):
    """Raised when a target names an unknown provider or an unsupported model."""

    kind = "target_validation"


class MissingCredentialError(DispatchError):
    """Raised when no credential is stored for a target's provider."""

    kind = "missing_credential"

    def __init__(self, provider_id: str) -> None:
        super().__init__("missing credential")
        self.provider_id = provider_id


class ProviderError(DispatchError):
    """Represents provider-specific HTTP or API errors."""

    kind = "provider_error"

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """The vendor rejected the credential."""

    kind = "auth"


class ProviderRateLimitError(ProviderError):
    """The vendor throttled the request."""

    kind = "rate_limit"
    retryable = True


class ProviderProtocolError(ProviderError):
    """The vendor answered with a malformed or unexpected payload."""

    kind = "protocol"


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout or vendor-side outage."""

    kind = "unavailable"
    retryable = True


def error_for_status(provider: str, status_code: int, message: str) -> ProviderError:
    """Map an HTTP error status to the matching provider error type."""
    if status_code in (401, 403):
        return ProviderAuthError(provider, message, status_code=status_code)
    if status_code == 429:
        return ProviderRateLimitError(provider, message, status_code=status_code)
    if status_code == 408 or status_code >= 500:
        return ProviderUnavailableError(provider, message, status_code=status_code)
    return ProviderProtocolError(provider, message, status_code=status_code)

from __future__ import annotations

from enum import Enum

"""
Structured error taxonomy for image generation.

Every error raised out of a provider or the request executor carries an
explicit ``kind`` tag, set where the upstream response is parsed, so callers
never have to infer the failure class from message text.
"""


class ErrorKind(str, Enum):
    RATE_LIMIT_CREDENTIAL = "rate_limit_credential"
    RATE_LIMIT_MODEL = "rate_limit_model"
    CREDENTIALS_EXHAUSTED = "credentials_exhausted"
    GENERIC = "generic"
    CONFIGURATION = "configuration"


class RateLimitScope(str, Enum):
    """Which quota a rate-limit rejection applies to."""

    CREDENTIAL = "credential"
    MODEL = "model"


class GenerationError(Exception):
    """
    Base class for classified generation failures.

    Attributes:
        message (str): Human-readable description
        kind (ErrorKind): Failure class used for recovery decisions
        retry_after (float | None): Suggested wait in seconds, when known
        api_key_used (str | None): Masked key the attempt went through
    """

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        api_key_used: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.api_key_used = api_key_used

    @property
    def is_rate_limit(self) -> bool:
        return self.kind in (
            ErrorKind.RATE_LIMIT_CREDENTIAL,
            ErrorKind.RATE_LIMIT_MODEL,
            ErrorKind.CREDENTIALS_EXHAUSTED,
        )

    def __str__(self) -> str:
        if self.api_key_used:
            return f"{self.message} (API key: {self.api_key_used})"
        return self.message


class RateLimitError(GenerationError):
    """
    The upstream service rejected the request with a rate limit.

    ``scope`` distinguishes a throttled credential, which can be rotated
    away from, from an exhausted shared model quota, which requires every
    admission to stop.
    """

    def __init__(
        self,
        message: str,
        *,
        scope: RateLimitScope = RateLimitScope.CREDENTIAL,
        retry_after: float | None = None,
        api_key_used: str | None = None,
    ) -> None:
        super().__init__(message, retry_after=retry_after, api_key_used=api_key_used)
        self.scope = scope
        self.kind = (
            ErrorKind.RATE_LIMIT_MODEL
            if scope is RateLimitScope.MODEL
            else ErrorKind.RATE_LIMIT_CREDENTIAL
        )


class CredentialsExhaustedError(GenerationError):
    """Every credential that is not in use is cooling down."""

    kind = ErrorKind.CREDENTIALS_EXHAUSTED


class NoCredentialsError(GenerationError):
    """No API keys are configured at all. Waiting will not fix this."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str = "No API keys are configured") -> None:
        super().__init__(message)


class EmptyImageError(GenerationError):
    """The provider reported success but returned no image data."""

    def __init__(
        self,
        message: str = "No image data received from the API",
        *,
        api_key_used: str | None = None,
    ) -> None:
        super().__init__(message, api_key_used=api_key_used)

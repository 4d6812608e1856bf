"""
fluxbatch: Generate images in batches, within rate limits.

A Python library for batch image generation against rate-limited APIs with:
- A shared token-bucket rate limiter per model
- Round-robin rotation over multiple API keys with cooldowns
- Local retries with exponential backoff and scheduler-level retry passes
- Pause, resume and cancel while a batch runs
- Read-only progress snapshots for a presentation layer

Example:
    >>> from fluxbatch import GenerationSettings, generate_images
    >>>
    >>> result = await generate_images(
    ...     prompts=["a red fox in the snow", "a lighthouse at dusk"],
    ...     api_keys=["tgp_v1_..."],
    ...     settings=GenerationSettings(aspect_ratio="16:9", concurrency=2),
    ... )
    >>> for image in result.images:
    ...     print(image.filename, len(image.data))
"""

from fluxbatch.core.credentials import CredentialPool, PoolLifetime, get_credential_pool
from fluxbatch.core.engine import (
    BatchScheduler,
    generate_images,
    generate_images_from_file,
)
from fluxbatch.core.errors import (
    CredentialsExhaustedError,
    ErrorKind,
    GenerationError,
    NoCredentialsError,
    RateLimitError,
    RateLimitScope,
)
from fluxbatch.core.models import (
    BatchResult,
    BatchSnapshot,
    GeneratedImage,
    GenerationSettings,
    JobStatus,
    ProcessingStats,
    PromptJob,
    RetryConfig,
)
from fluxbatch.core.rate_limit import RateLimiterRegistry
from fluxbatch.providers import BaseProvider, TogetherProvider, get_provider, register_provider

__version__ = "0.1.0"

__all__ = [
    # Main processing functions
    "generate_images",
    "generate_images_from_file",
    "BatchScheduler",
    # Credentials and rate limits
    "CredentialPool",
    "PoolLifetime",
    "get_credential_pool",
    "RateLimiterRegistry",
    # Configuration models
    "GenerationSettings",
    "RetryConfig",
    # Result models
    "BatchResult",
    "BatchSnapshot",
    "GeneratedImage",
    "JobStatus",
    "ProcessingStats",
    "PromptJob",
    # Errors
    "ErrorKind",
    "RateLimitScope",
    "GenerationError",
    "RateLimitError",
    "CredentialsExhaustedError",
    "NoCredentialsError",
    # Provider interface
    "BaseProvider",
    "TogetherProvider",
    "get_provider",
    "register_provider",
    # Version
    "__version__",
]

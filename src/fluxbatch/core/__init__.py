"""Core scheduler, rate limiting, credential pool and retry logic."""

from fluxbatch.core.credentials import (
    CredentialPool,
    CredentialRecord,
    PoolLifetime,
    get_credential_pool,
)
from fluxbatch.core.engine import (
    BatchScheduler,
    estimate_minutes,
    generate_images,
    generate_images_from_file,
    recommended_concurrency,
)
from fluxbatch.core.errors import (
    CredentialsExhaustedError,
    EmptyImageError,
    ErrorKind,
    GenerationError,
    NoCredentialsError,
    RateLimitError,
    RateLimitScope,
)
from fluxbatch.core.executor import RequestExecutor
from fluxbatch.core.io import parse_prompts, read_prompts, save_images, write_zip
from fluxbatch.core.models import (
    BatchResult,
    BatchSnapshot,
    GeneratedImage,
    GenerationSettings,
    JobStatus,
    ProcessingStats,
    PromptJob,
    RateLimitConfig,
    RetryConfig,
)
from fluxbatch.core.rate_limit import RateLimiter, RateLimiterRegistry, default_registry
from fluxbatch.core.retry import Backoff

__all__ = [
    # Processing
    "BatchScheduler",
    "RequestExecutor",
    "generate_images",
    "generate_images_from_file",
    "recommended_concurrency",
    "estimate_minutes",
    # Prompt files and image export
    "parse_prompts",
    "read_prompts",
    "save_images",
    "write_zip",
    # Credentials
    "CredentialPool",
    "CredentialRecord",
    "PoolLifetime",
    "get_credential_pool",
    # Rate limiting
    "RateLimiter",
    "RateLimiterRegistry",
    "default_registry",
    "Backoff",
    # Configuration models
    "GenerationSettings",
    "RateLimitConfig",
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
    "EmptyImageError",
]

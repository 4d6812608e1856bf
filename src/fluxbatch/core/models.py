from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum

from fluxbatch.utils import MAX_SEED, clamp_steps, image_dimensions, to_data_url

DEFAULT_MODEL_ID = "black-forest-labs/FLUX.1-schnell-Free"

# Documented quota for the free FLUX endpoint, shared by every API key
MODEL_RATE_LIMIT_PER_MINUTE = 6
MODEL_RATE_LIMIT_BUFFER = 0.7

CREDENTIAL_COOLDOWN_SECONDS = 60.0
MODEL_RATE_LIMIT_PENALTY_SECONDS = 30.0
MAX_RETRY_PASSES = 5


@dataclass(frozen=True)
class GenerationSettings:
    """
    Per-run generation and scheduling settings.

    Attributes:
        aspect_ratio (str): "1:1", "16:9" or "9:16"
        steps (int): Diffusion steps, clamped to 1-4 when used
        negative_prompt (str): Text the model should steer away from
        use_random_seed (bool): Draw a fresh seed for every image
        seed (int): Fixed seed used when use_random_seed is False
        concurrency (int): Maximum number of requests outstanding at once
        auto_retry (bool): Run retry passes over failed prompts
        max_attempts_per_prompt (int): Scheduler-level attempts before a prompt is given up
        retry_delay_seconds (float): Pause before each retry pass
        max_retry_passes (int): Upper bound on retry passes after the first pass
    """

    aspect_ratio: str = "1:1"
    steps: int = 2
    negative_prompt: str = ""
    use_random_seed: bool = True
    seed: int = 0
    concurrency: int = 2
    auto_retry: bool = True
    max_attempts_per_prompt: int = 5
    retry_delay_seconds: float = 5.0
    max_retry_passes: int = MAX_RETRY_PASSES

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_attempts_per_prompt < 1:
            raise ValueError(
                f"max_attempts_per_prompt must be at least 1, got {self.max_attempts_per_prompt}"
            )

    @property
    def dimensions(self) -> tuple[int, int]:
        return image_dimensions(self.aspect_ratio)

    @property
    def valid_steps(self) -> int:
        return clamp_steps(self.steps)

    def resolve_seed(self) -> int:
        if self.use_random_seed:
            return random.randrange(MAX_SEED)
        return self.seed


@dataclass
class RateLimitConfig:
    """
    Quota of one regulated entity (usually a model).

    Attributes:
        tokens_per_interval (float): Requests allowed per interval by the upstream service
        interval_seconds (float): Length of the quota window
        buffer_factor (float): Fraction of the quota actually used (absorbs clock skew and latency)
    """

    tokens_per_interval: float = MODEL_RATE_LIMIT_PER_MINUTE
    interval_seconds: float = 60.0
    buffer_factor: float = MODEL_RATE_LIMIT_BUFFER


@dataclass
class RetryConfig:
    """
    Local retry behaviour of the request executor.

    Attributes:
        max_local_attempts (int): Attempts per scheduler-level attempt before giving up
        base_delay_seconds (float): First delay of the short ladder (generic failures)
        max_delay_seconds (float): Cap of the short ladder
        rate_limit_base_delay_seconds (float): First delay of the rate-limit ladder
        rate_limit_max_delay_seconds (float): Cap of the rate-limit ladder
        jitter (float): Random variation factor (0.0-1.0) applied to both ladders
        model_penalty_seconds (float): Cooldown applied when a model-wide limit gives no hint
        credential_poll_seconds (float): Poll interval while every key is busy
    """

    max_local_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    rate_limit_base_delay_seconds: float = 15.0
    rate_limit_max_delay_seconds: float = 60.0
    jitter: float = 0.1
    model_penalty_seconds: float = MODEL_RATE_LIMIT_PENALTY_SECONDS
    credential_poll_seconds: float = 0.25


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RetryAttempt:
    """One recorded outcome of a prompt job."""

    timestamp: float
    error: str
    attempt_number: int
    api_key_used: str | None = None


@dataclass
class GeneratedImage:
    """
    A successfully generated image.

    Attributes:
        index (int): Position of the prompt in the batch
        prompt (str): Prompt the image was generated from
        data (bytes): Raw PNG bytes
        width (int): Image width in pixels
        height (int): Image height in pixels
        seed (int): Seed sent to the model
        api_key_used (str | None): Masked key the request went through
    """

    index: int
    prompt: str
    data: bytes
    width: int
    height: int
    seed: int
    api_key_used: str | None = None

    @property
    def filename(self) -> str:
        return f"image-{self.index + 1}.png"

    @property
    def data_url(self) -> str:
        return to_data_url(self.data)


@dataclass
class PromptJob:
    """
    State of one prompt for the duration of a batch run.

    Status moves pending -> processing -> completed | failed. A failed job
    goes back to processing in a retry pass while attempts remain.
    """

    prompt: str
    index: int
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    retry_history: list[RetryAttempt] = field(default_factory=list)
    current_api_key: str | None = None
    error: str | None = None
    image: GeneratedImage | None = None

    def record_attempt(self, error: str, api_key_used: str | None, timestamp: float) -> None:
        self.retry_history.append(
            RetryAttempt(
                timestamp=timestamp,
                error=error,
                attempt_number=self.attempts + 1,
                api_key_used=api_key_used,
            )
        )

    def can_retry(self, max_attempts: int) -> bool:
        return self.status is JobStatus.FAILED and self.attempts < max_attempts


@dataclass(frozen=True)
class CredentialSnapshot:
    """Masked, read-only view of one credential's statistics."""

    api_key: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    rate_limit_hits: int
    is_rate_limited: bool
    in_use: bool


@dataclass(frozen=True)
class BatchSnapshot:
    """
    Read-only projection of scheduler state for a presentation layer.

    Attributes:
        total (int): Number of prompts in the batch
        progress_percent (float): (completed + failed) / total * 100
        completed_count (int): Jobs that produced an image
        failed_count (int): Jobs with a recorded outcome that are not completed
        active_count (int): Requests currently in flight
        retry_pass (int): 0 for the first pass, then 1, 2, ...
        credential_stats (tuple[CredentialSnapshot, ...]): Per-key statistics
        is_paused (bool): Whether new admissions are paused
        blocked_until (float | None): Timestamp until which admissions are blocked by a rate limit
        images_per_minute (float | None): Throughput since the run started
    """

    total: int
    progress_percent: float
    completed_count: int
    failed_count: int
    active_count: int
    retry_pass: int
    credential_stats: tuple[CredentialSnapshot, ...] = ()
    is_paused: bool = False
    blocked_until: float | None = None
    images_per_minute: float | None = None


@dataclass
class ProcessingStats:
    """
    Statistics of a finished batch run.

    Attributes:
        total_prompts (int): Number of prompts submitted
        successful (int): Prompts that produced an image
        failed (int): Prompts that did not
        retry_passes (int): Retry passes run after the first pass
        total_retries (int): Scheduler-level attempts beyond the first, summed over prompts
        rate_limit_errors (int): Rate-limit outcomes seen by the scheduler
        other_errors (int): Non rate-limit failure outcomes
        cancelled (bool): Whether the run was cancelled
        duration_seconds (float): Wall-clock time of the run
    """

    total_prompts: int
    successful: int
    failed: int
    retry_passes: int = 0
    total_retries: int = 0
    rate_limit_errors: int = 0
    other_errors: int = 0
    cancelled: bool = False
    duration_seconds: float = 0.0


@dataclass
class BatchResult:
    """
    Result of a batch run.

    Attributes:
        images (list[GeneratedImage]): Generated images ordered by prompt index
        failures (list[PromptJob]): Jobs that ended without an image
        jobs (list[PromptJob]): Every job of the batch, in prompt order
        stats (ProcessingStats): Aggregate statistics
    """

    images: list[GeneratedImage]
    failures: list[PromptJob]
    jobs: list[PromptJob]
    stats: ProcessingStats

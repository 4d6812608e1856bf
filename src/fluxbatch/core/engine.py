from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aiohttp import ClientSession
from loguru import logger
from tqdm import tqdm

from fluxbatch.core.credentials import CredentialPool, PoolLifetime, get_credential_pool
from fluxbatch.core.errors import ErrorKind, GenerationError, NoCredentialsError
from fluxbatch.core.executor import RequestExecutor
from fluxbatch.core.io import read_prompts, save_images, write_zip
from fluxbatch.core.models import (
    MODEL_RATE_LIMIT_PER_MINUTE,
    BatchResult,
    BatchSnapshot,
    GeneratedImage,
    GenerationSettings,
    JobStatus,
    ProcessingStats,
    PromptJob,
    RetryConfig,
)
from fluxbatch.core.rate_limit import RateLimiterRegistry, default_registry
from fluxbatch.providers.base import BaseProvider
from fluxbatch.providers.together import TogetherProvider

"""
Batch scheduler for rate-limited image generation.

This module implements the main processing loop that:
- Admits prompts in order, at most `concurrency` outstanding at a time
- Takes an admission token from the shared model rate limiter before each request
- Suspends every admission while a model-wide or all-keys rate limit is in effect
- Records each outcome on the prompt's job record
- Runs retry passes over failed prompts until they succeed or run out of attempts

Everything runs on one asyncio event loop; "concurrency" bounds how many
requests are awaiting a response, not how many threads run.
"""

SECONDS_TO_SLEEP_EACH_LOOP = 0.05
SECONDS_TO_POLL_WHILE_PAUSED = 0.5

SnapshotCallback = Callable[[BatchSnapshot], Any]


@dataclass
class StatusTracker:
    """
    Run-level counters and flags shared by all job tasks.

    Attributes:
        retry_pass (int): 0 during the first pass, then the current retry pass number
        num_rate_limit_errors (int): Rate-limit outcomes recorded on jobs
        num_other_errors (int): Other failure outcomes recorded on jobs
        blocked_until (float): Timestamp before which no new request is admitted
        block_reason (str | None): Why admissions are blocked
        next_token_time (float | None): When the rate limiter should grant the next token
        start_time (float | None): Timestamp the run started
    """

    retry_pass: int = 0
    num_rate_limit_errors: int = 0
    num_other_errors: int = 0
    blocked_until: float = 0.0
    block_reason: str | None = None
    next_token_time: float | None = None
    start_time: float | None = None


class BatchScheduler:
    """
    Drives a batch of prompts to completion against a rate-limited model.

    Two throttles must both allow a request before it starts: a free
    concurrency slot and an admission token from the model's rate limiter.
    Keys are chosen by the request executor from the injected credential
    pool.

    Controls: ``pause()`` stops new admissions without touching requests in
    flight, ``resume()`` continues, ``cancel()`` abandons queued prompts
    while in-flight requests settle and are recorded, and ``reset()``
    clears all jobs once a run is over.

    Example:
        >>> scheduler = BatchScheduler(
        ...     provider=TogetherProvider(),
        ...     pool=CredentialPool(["tgp_v1_..."]),
        ...     settings=GenerationSettings(concurrency=2),
        ... )
        >>> result = await scheduler.run(["a red fox", "a lighthouse at dusk"])
        >>> len(result.images)
        2
    """

    def __init__(
        self,
        provider: BaseProvider,
        pool: CredentialPool,
        settings: GenerationSettings | None = None,
        registry: RateLimiterRegistry | None = None,
        retry: RetryConfig | None = None,
        model_id: str | None = None,
        on_update: SnapshotCallback | None = None,
        show_progress: bool = True,
    ) -> None:
        self.provider = provider
        self.pool = pool
        self.settings = settings or GenerationSettings()
        self.registry = registry if registry is not None else default_registry
        self.model_id = model_id or provider.model
        self.executor = RequestExecutor(provider, pool, retry, self.registry, self.model_id)
        self.on_update = on_update
        self.show_progress = show_progress

        self.jobs: list[PromptJob] = []
        self._status = StatusTracker()
        self._in_flight: set[asyncio.Task[None]] = set()
        self._running = False
        self._paused = False
        self._cancelled = False
        self._pbar: Any = None  # tqdm progress bar (no type stubs available)

    # ------------------------------------------------------------------
    # Read-only state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def completed_count(self) -> int:
        return sum(1 for job in self.jobs if job.status is JobStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        # A job being retried keeps counting as failed until it succeeds
        return sum(
            1 for job in self.jobs if job.attempts > 0 and job.status is not JobStatus.COMPLETED
        )

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    @property
    def progress_percent(self) -> float:
        if not self.jobs:
            return 0.0
        return (self.completed_count + self.failed_count) / self.total * 100

    @property
    def retry_pass(self) -> int:
        return self._status.retry_pass

    @property
    def images(self) -> list[GeneratedImage]:
        return [job.image for job in self.jobs if job.image is not None]

    def images_per_minute(self) -> float | None:
        if self._status.start_time is None:
            return None
        elapsed_minutes = (time.time() - self._status.start_time) / 60
        completed = self.completed_count
        if elapsed_minutes <= 0 or completed == 0:
            return None
        return completed / elapsed_minutes

    def snapshot(self) -> BatchSnapshot:
        blocked_until = self._status.blocked_until
        return BatchSnapshot(
            total=self.total,
            progress_percent=self.progress_percent,
            completed_count=self.completed_count,
            failed_count=self.failed_count,
            active_count=self.active_count,
            retry_pass=self._status.retry_pass,
            credential_stats=self.pool.snapshot(),
            is_paused=self._paused,
            blocked_until=blocked_until if blocked_until > time.time() else None,
            images_per_minute=self.images_per_minute(),
        )

    # ------------------------------------------------------------------
    # Controls

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.info("Generation paused")
            self._notify()

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            logger.info("Generation resumed")
            self._notify()

    def cancel(self) -> None:
        self._cancelled = True
        self._paused = False
        logger.info("Generation cancelled")
        self._notify()

    def reset(self) -> None:
        """Clear all jobs, images and counters."""
        if self._running:
            raise RuntimeError("Cannot reset while a batch is running; cancel it first")
        self.jobs = []
        self._status = StatusTracker()
        self._paused = False
        self._cancelled = False
        self._notify()

    # ------------------------------------------------------------------
    # Running

    async def run(
        self,
        prompts: Sequence[str],
        session: ClientSession | None = None,
    ) -> BatchResult:
        """
        Generate one image per prompt.

        Args:
            prompts (Sequence[str]): Prompts, in output order
            session (ClientSession | None): Session to reuse; one is created if None

        Returns:
            BatchResult: Images ordered by prompt index, failed jobs, all jobs and statistics

        Raises:
            ValueError: If no prompts are given
            NoCredentialsError: If the credential pool is empty
            RuntimeError: If this scheduler is already running a batch
        """
        if self._running:
            raise RuntimeError("A batch is already running")
        if not prompts:
            raise ValueError("No prompts to process")
        if len(self.pool) == 0:
            raise NoCredentialsError()

        self.reset()
        self.jobs = [PromptJob(prompt=prompt, index=index) for index, prompt in enumerate(prompts)]
        self._running = True
        self._status.start_time = time.time()
        self._pbar = tqdm(
            total=self.total,
            desc="Generated images",
            unit="img",
            disable=not self.show_progress,
        )

        logger.info(
            f"Processing {self.total} prompts with concurrency {self.settings.concurrency} "
            f"using {len(self.pool)} API key(s)"
        )
        try:
            if session is None:
                async with ClientSession() as own_session:
                    await self._run_passes(own_session)
            else:
                await self._run_passes(session)
        finally:
            self._running = False
            self._pbar.close()
            self._notify()

        duration = time.time() - self._status.start_time
        stats = self._build_stats(duration)
        _log_summary(stats)
        return BatchResult(
            images=self.images,
            failures=[job for job in self.jobs if job.status is not JobStatus.COMPLETED],
            jobs=list(self.jobs),
            stats=stats,
        )

    async def _run_passes(self, session: ClientSession) -> None:
        await self._process_concurrently(self.jobs, session)

        if not self.settings.auto_retry:
            return

        max_attempts = self.settings.max_attempts_per_prompt
        while self._status.retry_pass < self.settings.max_retry_passes and not self._cancelled:
            failed = [job for job in self.jobs if job.can_retry(max_attempts)]
            if not failed:
                break

            self._status.retry_pass += 1
            logger.info(
                f"Starting retry pass {self._status.retry_pass}: retrying {len(failed)} failed "
                f"image(s) after a {self.settings.retry_delay_seconds:g}s delay"
            )
            self._notify()
            await self._sleep(self.settings.retry_delay_seconds)
            if self._cancelled:
                break
            await self._process_concurrently(failed, session)

    async def _process_concurrently(self, jobs: Iterable[PromptJob], session: ClientSession) -> None:
        """
        Run one pass over ``jobs`` with bounded concurrency.

        Returns once every admitted job has settled and the queue is empty,
        or, after cancellation, once the requests already in flight settle.
        """
        queue = deque(jobs)
        concurrency = self.settings.concurrency

        while queue or self._in_flight:
            if self._cancelled:
                break

            if self._paused:
                await asyncio.sleep(SECONDS_TO_POLL_WHILE_PAUSED)
                continue

            await self._wait_while_blocked()

            while len(self._in_flight) < concurrency and queue and self._can_admit():
                wait = self.registry.wait_for_token(self.model_id)
                if wait > 0:
                    logger.debug(
                        f"Rate limit reached for {self.model_id}, "
                        f"waiting {wait:.1f}s before starting next request"
                    )
                    self._status.next_token_time = time.time() + wait
                    await self._sleep(wait)
                    self._status.next_token_time = None
                    continue
                self._start(queue.popleft(), session)

            if not queue and not self._in_flight:
                break
            if self._in_flight and (len(self._in_flight) >= concurrency or not queue):
                await asyncio.wait(set(self._in_flight), return_when=asyncio.FIRST_COMPLETED)
            else:
                await asyncio.sleep(SECONDS_TO_SLEEP_EACH_LOOP)

        if self._in_flight:
            await asyncio.gather(*self._in_flight)

    def _can_admit(self) -> bool:
        return (
            not self._paused
            and not self._cancelled
            and self._status.blocked_until <= time.time()
        )

    def _start(self, job: PromptJob, session: ClientSession) -> None:
        job.status = JobStatus.PROCESSING
        job.error = None
        task = asyncio.create_task(self._run_job(job, session))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        self._notify()

    async def _run_job(self, job: PromptJob, session: ClientSession) -> None:
        try:
            image = await self.executor.execute(job, self.settings, session)
        except GenerationError as e:
            self._record_failure(job, e)
        except Exception as e:
            logger.exception(f"Prompt {job.index + 1}: unexpected error")
            self._record_failure(job, GenerationError(f"{type(e).__name__}: {e}"))
        else:
            self._record_success(job, image)

    def _record_success(self, job: PromptJob, image: GeneratedImage) -> None:
        job.record_attempt("Success", image.api_key_used, time.time())
        job.attempts += 1
        job.status = JobStatus.COMPLETED
        job.image = image
        job.error = None
        job.current_api_key = None
        logger.debug(f"Prompt {job.index + 1}: image generated")
        self._update_progress()

    def _record_failure(self, job: PromptJob, error: GenerationError) -> None:
        job.record_attempt(str(error), error.api_key_used, time.time())
        job.attempts += 1
        job.status = JobStatus.FAILED
        job.error = str(error)
        job.current_api_key = None

        if error.is_rate_limit:
            self._status.num_rate_limit_errors += 1
        else:
            self._status.num_other_errors += 1

        if error.kind is ErrorKind.RATE_LIMIT_MODEL:
            wait = error.retry_after or self.executor.retry.model_penalty_seconds
            self.registry.handle_rate_limit_error(self.model_id, wait)
            self._block(wait, f"Model rate limit reached for {self.model_id}")
        elif error.kind is ErrorKind.CREDENTIALS_EXHAUSTED:
            wait = error.retry_after or self.pool.cooldown_seconds
            self._block(wait, "All API keys are rate limited")
        elif error.kind is ErrorKind.CONFIGURATION:
            logger.error(f"{error}. Stopping the batch")
            self._cancelled = True

        logger.debug(f"Prompt {job.index + 1}: attempt {job.attempts} failed: {error}")
        self._update_progress()

    def _block(self, seconds: float, reason: str) -> None:
        until = time.time() + seconds
        if until > self._status.blocked_until:
            self._status.blocked_until = until
            self._status.block_reason = reason
            logger.warning(f"{reason}. Pausing new requests for {seconds:.0f}s")

    async def _wait_while_blocked(self) -> None:
        while not self._cancelled:
            remaining = self._status.blocked_until - time.time()
            if remaining <= 0:
                break
            logger.info(
                f"{self._status.block_reason}: waiting {math.ceil(remaining)}s "
                f"before admitting new requests"
            )
            await self._sleep(remaining)
        if self._status.block_reason is not None and self._status.blocked_until <= time.time():
            self._status.block_reason = None
            self._status.blocked_until = 0.0
            self._notify()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if the run is cancelled."""
        deadline = time.time() + seconds
        while not self._cancelled:
            remaining = deadline - time.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, SECONDS_TO_POLL_WHILE_PAUSED))

    def _update_progress(self) -> None:
        if self._pbar is not None:
            settled = self.completed_count + self.failed_count
            if settled > self._pbar.n:
                self._pbar.update(settled - self._pbar.n)
        self._notify()

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.snapshot())

    def _build_stats(self, duration: float) -> ProcessingStats:
        return ProcessingStats(
            total_prompts=self.total,
            successful=self.completed_count,
            failed=self.total - self.completed_count,
            retry_passes=self._status.retry_pass,
            total_retries=sum(max(0, job.attempts - 1) for job in self.jobs),
            rate_limit_errors=self._status.num_rate_limit_errors,
            other_errors=self._status.num_other_errors,
            cancelled=self._cancelled,
            duration_seconds=duration,
        )


def recommended_concurrency(key_count: int) -> int:
    """
    Concurrency that stays clear of the shared model quota.

    The quota applies to the model regardless of how many keys send, so more
    keys do not buy more than two outstanding requests.
    """
    if key_count <= 0:
        return 1
    return min(2, key_count)


def estimate_minutes(
    prompt_count: int,
    concurrency: int,
    model_rate_limit: int = MODEL_RATE_LIMIT_PER_MINUTE,
) -> int:
    effective_rate = max(1, min(model_rate_limit, concurrency))
    return math.ceil(prompt_count / effective_rate)


def _setup_logger(logging_level: int) -> None:
    """
    Configure logger with clean format.

    Args:
        logging_level (int): Loguru logging level (20=INFO, 10=DEBUG)
    """
    logger.remove()

    # Show module info only at DEBUG level (10 or lower)
    if logging_level <= 10:
        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )
    else:
        log_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<level>{message}</level>"
        )

    logger.add(
        lambda msg: tqdm.write(msg, end=""),
        format=log_format,
        colorize=True,
        level=logging_level,
    )


def _log_summary(stats: ProcessingStats) -> None:
    logger.info(
        f"Batch generation complete. Generated {stats.successful:,} / "
        f"{stats.total_prompts:,} images after {stats.retry_passes + 1} pass(es) and "
        f"{stats.total_retries:,} retries in {stats.duration_seconds:.1f}s"
    )
    if stats.cancelled:
        logger.warning("The batch was cancelled before all prompts were processed")
    if stats.failed > 0:
        logger.warning(f"{stats.failed:,} / {stats.total_prompts:,} images failed")
    if stats.rate_limit_errors > 0:
        logger.warning(
            f"{stats.rate_limit_errors:,} rate limit errors received. "
            f"Consider a lower concurrency level."
        )


async def generate_images(
    prompts: Sequence[str],
    api_keys: Iterable[str] = (),
    settings: GenerationSettings | None = None,
    provider: BaseProvider | None = None,
    retry: RetryConfig | None = None,
    registry: RateLimiterRegistry | None = None,
    pool_lifetime: PoolLifetime = PoolLifetime.REQUEST,
    on_update: SnapshotCallback | None = None,
    logging_level: int = 20,
    show_progress: bool = True,
) -> BatchResult:
    """
    Generate one image per prompt with in-memory results.

    Keys come from ``TOGETHER_AI_API_KEY`` / ``TOGETHER_AI_API_KEYS`` plus
    ``api_keys``. With ``PoolLifetime.PROCESS`` the key statistics and
    cooldowns carry over between calls.

    Args:
        prompts (Sequence[str]): Prompts, in output order
        api_keys (Iterable[str]): Extra API keys
        settings (GenerationSettings | None): Generation settings (defaults if None)
        provider (BaseProvider | None): Provider (Together AI FLUX.1-schnell-Free if None)
        retry (RetryConfig | None): Local retry policy (defaults if None)
        registry (RateLimiterRegistry | None): Model rate limiters (process default if None)
        pool_lifetime (PoolLifetime): Credential pool lifetime policy
        on_update (SnapshotCallback | None): Called with a snapshot after every state change
        logging_level (int): Loguru logging level (20=INFO, 10=DEBUG)
        show_progress (bool): Show a tqdm progress bar

    Returns:
        BatchResult: Images, failures, jobs and statistics

    Example:
        >>> result = await generate_images(
        ...     ["a red fox in the snow", "a lighthouse at dusk"],
        ...     settings=GenerationSettings(aspect_ratio="16:9"),
        ... )
        >>> print(f"Generated: {result.stats.successful}/{result.stats.total_prompts}")
    """
    _setup_logger(logging_level)

    scheduler = BatchScheduler(
        provider=provider or TogetherProvider(),
        pool=get_credential_pool(pool_lifetime, api_keys),
        settings=settings,
        registry=registry,
        retry=retry,
        on_update=on_update,
        show_progress=show_progress,
    )
    return await scheduler.run(prompts)


async def generate_images_from_file(
    prompts_file: str | Path,
    output_dir: str | Path | None = None,
    zip_file: str | Path | None = None,
    **kwargs: Any,
) -> BatchResult:
    """
    Generate images for the prompts in a text file, one prompt per line.

    Args:
        prompts_file (str | Path): UTF-8 text file with one prompt per line
        output_dir (str | Path | None): Directory for image-<n>.png files (skipped if None)
        zip_file (str | Path | None): Zip archive of all images (skipped if None)
        **kwargs: Passed on to generate_images()

    Returns:
        BatchResult: Images, failures, jobs and statistics

    Raises:
        FileNotFoundError: If prompts_file doesn't exist
        ValueError: If the file holds no prompts
    """
    if not Path(prompts_file).exists():
        raise FileNotFoundError(f"Prompts file not found: {prompts_file}")

    prompts = read_prompts(prompts_file)
    if not prompts:
        raise ValueError(f"No prompts found in {prompts_file}")

    result = await generate_images(prompts, **kwargs)

    if output_dir is not None:
        paths = save_images(result.images, output_dir)
        logger.info(f"Saved {len(paths)} image(s) to {output_dir}")
    if zip_file is not None:
        write_zip(result.images, zip_file)
        logger.info(f"Wrote {len(result.images)} image(s) to {zip_file}")
    return result

from __future__ import annotations

import asyncio

from aiohttp import ClientSession
from loguru import logger

from fluxbatch.core.credentials import CredentialPool
from fluxbatch.core.errors import (
    CredentialsExhaustedError,
    EmptyImageError,
    ErrorKind,
    GenerationError,
    NoCredentialsError,
    RateLimitError,
)
from fluxbatch.core.models import GeneratedImage, GenerationSettings, PromptJob, RetryConfig
from fluxbatch.core.rate_limit import RateLimiterRegistry, default_registry
from fluxbatch.core.retry import build_backoffs
from fluxbatch.providers.base import BaseProvider, ImageRequest
from fluxbatch.utils import mask_api_key

"""
Single-request executor.

Runs one scheduler-level attempt for a prompt: reserves a key from the
credential pool, calls the provider, classifies the outcome, reports it back
to the pool and retries locally with backoff. Only classified errors leave
this module.
"""


class RequestExecutor:
    """
    Performs generation attempts for single prompts through a credential pool.

    Attributes:
        provider (BaseProvider): Provider that talks to the image API
        pool (CredentialPool): Pool the keys are reserved from
        retry (RetryConfig): Local retry policy
        registry (RateLimiterRegistry): Model limiters consulted before every local retry
        model_id (str): Regulated entity the requests count against
    """

    def __init__(
        self,
        provider: BaseProvider,
        pool: CredentialPool,
        retry: RetryConfig | None = None,
        registry: RateLimiterRegistry | None = None,
        model_id: str | None = None,
    ) -> None:
        self.provider = provider
        self.pool = pool
        self.retry = retry or RetryConfig()
        self.registry = registry if registry is not None else default_registry
        self.model_id = model_id or provider.model
        self.backoff, self.rate_limit_backoff = build_backoffs(self.retry)

    async def wait_for_token(self, job: PromptJob) -> None:
        """Block until the model's rate limiter grants a token for one more request."""
        while True:
            wait = self.registry.wait_for_token(self.model_id)
            if wait <= 0:
                return
            logger.debug(
                f"Prompt {job.index + 1}: rate limit reached for {self.model_id}, "
                f"waiting {wait:.1f}s before retrying"
            )
            await asyncio.sleep(wait)

    async def acquire_key(self, preferred_key: str | None = None) -> str:
        """
        Reserve a key, waiting while any key is busy and none is free.

        Args:
            preferred_key (str | None): Key to try first

        Returns:
            str: A key reserved for the caller

        Raises:
            NoCredentialsError: The pool is empty
            CredentialsExhaustedError: No key is busy and every key is cooling down
        """
        if preferred_key is not None and self.pool.reserve_key(preferred_key):
            return preferred_key

        while True:
            key = self.pool.get_next_key()
            if key is not None:
                return key
            if len(self.pool) == 0:
                raise NoCredentialsError()
            wait = self.pool.get_time_until_next_key_available()
            if wait > 0:
                raise CredentialsExhaustedError(
                    f"All API keys are rate limited. Please try again in {wait:.0f} seconds",
                    retry_after=wait,
                )
            await asyncio.sleep(self.retry.credential_poll_seconds)

    async def attempt(
        self,
        job: PromptJob,
        settings: GenerationSettings,
        session: ClientSession,
        preferred_key: str | None = None,
    ) -> GeneratedImage:
        """
        Make exactly one request for a job.

        Raises:
            GenerationError: Classified failure; unexpected exceptions are wrapped as GENERIC
        """
        key = await self.acquire_key(preferred_key)
        masked = mask_api_key(key)
        job.current_api_key = masked

        width, height = settings.dimensions
        request = ImageRequest(
            prompt=job.prompt,
            negative_prompt=settings.negative_prompt,
            width=width,
            height=height,
            steps=settings.valid_steps,
            seed=settings.resolve_seed(),
        )
        logger.debug(
            f"Prompt {job.index + 1}: requesting {request.size} image "
            f"with key {masked} (seed {request.seed}, {request.steps} steps)"
        )

        try:
            image = await self.provider.generate(session, key, request)
        except RateLimitError as e:
            e.api_key_used = masked
            # A model-wide limit is not the key's fault, so the key gets no cooldown
            self.pool.mark_failed(key, is_rate_limit=e.kind is ErrorKind.RATE_LIMIT_CREDENTIAL)
            raise
        except GenerationError as e:
            e.api_key_used = masked
            self.pool.mark_failed(key, is_rate_limit=False)
            raise
        except Exception as e:
            self.pool.mark_failed(key, is_rate_limit=False)
            raise GenerationError(f"{type(e).__name__}: {e}", api_key_used=masked) from e

        if not image:
            self.pool.mark_failed(key, is_rate_limit=False)
            raise EmptyImageError(api_key_used=masked)

        self.pool.mark_success(key)
        return GeneratedImage(
            index=job.index,
            prompt=job.prompt,
            data=image,
            width=width,
            height=height,
            seed=request.seed,
            api_key_used=masked,
        )

    def _retry_delay(self, error: GenerationError, retry_index: int) -> float:
        if error.kind is ErrorKind.RATE_LIMIT_CREDENTIAL:
            if self.pool.available_key_count > 0:
                return 0.0
            delay = self.rate_limit_backoff.compute_delay(retry_index)
            if error.retry_after is not None:
                delay = max(delay, error.retry_after)
            return delay
        return self.backoff.compute_delay(retry_index)

    async def execute(
        self,
        job: PromptJob,
        settings: GenerationSettings,
        session: ClientSession,
        preferred_key: str | None = None,
    ) -> GeneratedImage:
        """
        Generate the image for a job, retrying transient failures locally.

        Model-wide rate limits, exhausted credentials and configuration
        failures are returned to the caller at once since only the scheduler
        can react to them. Generic failures retry on the short ladder and
        key-scoped rate limits rotate to another key, or wait on the long
        ladder when none is free. Every request after the first takes its own
        token from the model's rate limiter.

        Args:
            job (PromptJob): Job to generate for (``current_api_key`` is updated)
            settings (GenerationSettings): Generation settings of the run
            session (ClientSession): Aiohttp session shared by the run
            preferred_key (str | None): Key to try first

        Returns:
            GeneratedImage: The generated image

        Raises:
            GenerationError: The last classified error once local attempts are exhausted
        """
        max_attempts = max(1, self.retry.max_local_attempts)
        attempt_index = 0

        while True:
            # The caller holds the admission token for the first request only
            if attempt_index > 0:
                await self.wait_for_token(job)
            try:
                return await self.attempt(
                    job,
                    settings,
                    session,
                    preferred_key=preferred_key if attempt_index == 0 else None,
                )
            except GenerationError as e:
                if e.kind in (
                    ErrorKind.RATE_LIMIT_MODEL,
                    ErrorKind.CREDENTIALS_EXHAUSTED,
                    ErrorKind.CONFIGURATION,
                ):
                    logger.warning(f"Prompt {job.index + 1}: {e}")
                    raise

                if attempt_index + 1 >= max_attempts:
                    logger.info(f"Prompt {job.index + 1}: failed after {max_attempts} attempts: {e}")
                    raise

                delay = self._retry_delay(e, attempt_index)
                logger.debug(
                    f"Prompt {job.index + 1}: {e}. Retrying in {delay:.2f}s "
                    f"(attempt {attempt_index + 2}/{max_attempts}"
                    f"{', rate limit' if e.is_rate_limit else ''})"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            attempt_index += 1

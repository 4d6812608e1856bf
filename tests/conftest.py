import asyncio
import time
from collections.abc import Callable
from typing import Any, Optional

import pytest

from fluxbatch.core.credentials import CredentialPool
from fluxbatch.core.models import GenerationSettings, RetryConfig
from fluxbatch.core.rate_limit import RateLimiterRegistry
from fluxbatch.providers.base import BaseProvider, ImageRequest

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"

Outcome = Callable[[ImageRequest, str, int], Optional[bytes]]


class FakeProvider(BaseProvider):
    """
    In-memory provider recording every call.

    ``outcome(request, api_key, call_number)`` decides each result: return
    bytes (or None for an empty payload) or raise. Without it every call
    returns PNG_BYTES. ``call_number`` is 1-based in call order.
    """

    name = "fake"

    def __init__(
        self,
        outcome: Outcome | None = None,
        delay: float | Callable[[ImageRequest], float] = 0.0,
        model: str = "fake-model",
    ) -> None:
        self.model = model
        self.request_url = "https://images.example.invalid/v1/generations"
        self.outcome = outcome
        self.delay = delay
        self.calls: list[tuple[float, str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, session: Any, api_key: str, request: ImageRequest) -> Optional[bytes]:
        self.calls.append((time.time(), api_key, request.prompt))
        call_number = len(self.calls)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delay(request) if callable(self.delay) else self.delay
            if delay:
                await asyncio.sleep(delay)
            if self.outcome is None:
                return PNG_BYTES
            return self.outcome(request, api_key, call_number)
        finally:
            self.in_flight -= 1

    def build_payload(self, request: ImageRequest) -> dict[str, Any]:
        return {"prompt": request.prompt}

    def parse_error(self, payload: dict[str, Any]) -> Optional[str]:
        return payload.get("error")

    def extract_image(self, payload: dict[str, Any]) -> Optional[bytes]:
        return payload.get("image")


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry config with near-zero backoff so tests stay quick."""
    return RetryConfig(
        max_local_attempts=3,
        base_delay_seconds=0.01,
        max_delay_seconds=0.02,
        rate_limit_base_delay_seconds=0.01,
        rate_limit_max_delay_seconds=0.02,
        jitter=0.0,
        credential_poll_seconds=0.01,
    )


@pytest.fixture
def open_registry() -> RateLimiterRegistry:
    """Registry without known quotas: every model is admitted unconditionally."""
    return RateLimiterRegistry(known_quotas={})


@pytest.fixture
def pool() -> CredentialPool:
    return CredentialPool(["key-alpha-00000001", "key-bravo-00000002"])


@pytest.fixture
def settings() -> GenerationSettings:
    return GenerationSettings(
        concurrency=2,
        retry_delay_seconds=0.0,
        max_attempts_per_prompt=3,
        use_random_seed=False,
        seed=42,
    )

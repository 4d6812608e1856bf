from __future__ import annotations

import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from loguru import logger

from fluxbatch.core.models import DEFAULT_MODEL_ID, RateLimitConfig

SAFETY_MARGIN_SECONDS = 0.5


@dataclass
class RateLimiter:
    """
    Token bucket regulating the request rate of one entity against a known quota.

    Only ``tokens_per_interval * buffer_factor`` tokens are usable, and they
    accrue continuously rather than in discrete ticks. A rate-limit penalty
    drives the token count negative, which encodes a forward cooldown.

    Attributes:
        tokens_per_interval (float): Nominal quota per interval
        interval_seconds (float): Length of the quota window
        buffer_factor (float): Fraction of the quota actually used
        model_name (str): Entity this limiter regulates
        safety_margin_seconds (float): Added to every reported wait to absorb refill timing races
    """

    tokens_per_interval: float
    interval_seconds: float
    buffer_factor: float = 0.8
    model_name: str = ""
    safety_margin_seconds: float = SAFETY_MARGIN_SECONDS
    max_tokens: float = field(init=False)
    refill_rate: float = field(init=False)
    tokens: float = field(init=False)
    last_refill_time: float = field(init=False)

    def __post_init__(self) -> None:
        if self.tokens_per_interval <= 0 or self.interval_seconds <= 0:
            raise ValueError("tokens_per_interval and interval_seconds must be positive")
        self.max_tokens = self.tokens_per_interval * self.buffer_factor
        self.refill_rate = self.max_tokens / self.interval_seconds
        self.tokens = self.max_tokens
        self.last_refill_time = time.time()

    def refill(self) -> None:
        now = time.time()
        elapsed = now - self.last_refill_time
        tokens_to_add = elapsed * self.refill_rate
        if tokens_to_add > 0:
            self.tokens = min(self.max_tokens, self.tokens + tokens_to_add)
            self.last_refill_time = now

    def wait_for_token(self) -> float:
        """
        Take a token if one is available, otherwise report how long to wait.

        The token is only consumed when 0 is returned. On a positive wait the
        caller sleeps and asks again.

        Returns:
            float: 0 if admitted, else seconds to wait, rounded up to the millisecond
        """
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return 0.0
        wait = (1 - self.tokens) / self.refill_rate + self.safety_margin_seconds
        return math.ceil(wait * 1000) / 1000

    def try_take(self) -> bool:
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def handle_rate_limit_error(self, seconds: float = 15.0) -> None:
        """
        Force a cooldown after an authoritative rate-limit rejection.

        Args:
            seconds (float): Minimum time before the next token is granted
        """
        self.tokens = -seconds * self.refill_rate
        self.last_refill_time = time.time()

    @property
    def available_tokens(self) -> float:
        self.refill()
        return self.tokens


class RateLimiterRegistry:
    """
    Rate limiters keyed by regulated entity (usually a model id).

    The upstream quota is shared by every API key, so limiting happens per
    entity rather than per key. A limiter is created on first use from the
    entity's known quota; entities without one are admitted unconditionally.

    The registry is meant to be created once per process and handed to every
    scheduler that talks to the same upstream service.

    Example:
        >>> registry = RateLimiterRegistry(known_quotas={})
        >>> registry.add_model("my-model", tokens_per_interval=10, interval_seconds=60)
        >>> registry.wait_for_token("my-model")
        0.0
        >>> registry.wait_for_token("unknown-model")
        0.0
    """

    KNOWN_QUOTAS: dict[str, RateLimitConfig] = {
        DEFAULT_MODEL_ID: RateLimitConfig(),
    }

    def __init__(self, known_quotas: Mapping[str, RateLimitConfig] | None = None) -> None:
        self._known_quotas = dict(self.KNOWN_QUOTAS if known_quotas is None else known_quotas)
        self._limiters: dict[str, RateLimiter] = {}

    @classmethod
    def with_known_models(cls) -> "RateLimiterRegistry":
        """Registry with a limiter already created for every known quota."""
        registry = cls()
        for model_id in registry._known_quotas:
            registry.get(model_id)
        return registry

    def add_model(
        self,
        model_id: str,
        tokens_per_interval: float,
        interval_seconds: float,
        buffer_factor: float = 0.8,
    ) -> None:
        if model_id in self._limiters:
            return
        self._limiters[model_id] = RateLimiter(
            tokens_per_interval=tokens_per_interval,
            interval_seconds=interval_seconds,
            buffer_factor=buffer_factor,
            model_name=model_id,
        )
        logger.debug(
            f"Registered rate limit for {model_id}: "
            f"{tokens_per_interval:g} requests per {interval_seconds:g}s (buffer {buffer_factor:g})"
        )

    def get(self, model_id: str) -> RateLimiter | None:
        limiter = self._limiters.get(model_id)
        if limiter is None and model_id in self._known_quotas:
            quota = self._known_quotas[model_id]
            self.add_model(
                model_id,
                tokens_per_interval=quota.tokens_per_interval,
                interval_seconds=quota.interval_seconds,
                buffer_factor=quota.buffer_factor,
            )
            limiter = self._limiters[model_id]
        return limiter

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._limiters or model_id in self._known_quotas

    def wait_for_token(self, model_id: str) -> float:
        limiter = self.get(model_id)
        if limiter is None:
            return 0.0
        return limiter.wait_for_token()

    def handle_rate_limit_error(self, model_id: str, seconds: float = 15.0) -> None:
        limiter = self.get(model_id)
        if limiter is not None:
            limiter.handle_rate_limit_error(seconds)
            logger.debug(f"Applied {seconds:g}s cooldown to {model_id}")


# One per process, created at import and never reset
default_registry = RateLimiterRegistry.with_known_models()

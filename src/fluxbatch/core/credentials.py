from __future__ import annotations

import os
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum

from loguru import logger

from fluxbatch.core.models import CREDENTIAL_COOLDOWN_SECONDS, CredentialSnapshot
from fluxbatch.utils import mask_api_key

"""
Pool of API keys with round-robin selection, reservation and cooldowns.

The pool is written for a single asyncio event loop: records are only
mutated between ``await`` points, so the ``in_use`` flag alone guarantees at
most one in-flight request per key. It is not thread-safe.
"""

ENV_API_KEY = "TOGETHER_AI_API_KEY"
ENV_API_KEYS = "TOGETHER_AI_API_KEYS"


@dataclass
class CredentialRecord:
    """
    Usage and health of one API key.

    Attributes:
        key (str): The raw API key (never log it, use ``masked``)
        total_requests (int): Reservations made with this key
        successful_requests (int): Requests that returned an image
        failed_requests (int): Requests that failed for any reason
        rate_limit_hits (int): Failures that were key-scoped rate limits
        last_used_at (float): Timestamp of the last reservation
        is_rate_limited (bool): Whether the key is cooling down
        cooldown_until (float): Timestamp after which the rate-limit flag can be ignored
        in_use (bool): Whether a request is currently in flight with this key
    """

    key: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limit_hits: int = 0
    last_used_at: float = 0.0
    is_rate_limited: bool = False
    cooldown_until: float = 0.0
    in_use: bool = False

    @property
    def masked(self) -> str:
        return mask_api_key(self.key)

    def is_cooling(self, now: float) -> bool:
        return self.is_rate_limited and self.cooldown_until > now

    def is_selectable(self, now: float) -> bool:
        return not self.in_use and not self.is_cooling(now)

    def to_snapshot(self) -> CredentialSnapshot:
        return CredentialSnapshot(
            api_key=self.masked,
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            rate_limit_hits=self.rate_limit_hits,
            is_rate_limited=self.is_rate_limited,
            in_use=self.in_use,
        )


class CredentialPool:
    """
    Manages a pool of API keys for concurrent requests.

    Keys are handed out round-robin so load spreads evenly, skipping keys
    that are in use or cooling down after a rate limit. A key handed out by
    ``get_next_key`` or ``reserve_key`` stays reserved until it is released
    with ``release_key``, ``mark_success`` or ``mark_failed``.

    Example:
        >>> pool = CredentialPool(["key-aaaaaaaa", "key-bbbbbbbb"])
        >>> key = pool.get_next_key()
        >>> # ... send a request with key ...
        >>> pool.mark_success(key)
    """

    def __init__(
        self,
        initial_keys: Iterable[str] = (),
        cooldown_seconds: float = CREDENTIAL_COOLDOWN_SECONDS,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._records: list[CredentialRecord] = []
        self._cursor = 0
        for key in initial_keys:
            self.add_key(key)

    @classmethod
    def from_env(
        cls,
        initial_keys: Iterable[str] = (),
        cooldown_seconds: float = CREDENTIAL_COOLDOWN_SECONDS,
    ) -> "CredentialPool":
        """
        Build a pool from the environment plus any explicitly supplied keys.

        Reads ``TOGETHER_AI_API_KEY`` and the comma-separated
        ``TOGETHER_AI_API_KEYS``. Duplicates are ignored.
        """
        pool = cls(cooldown_seconds=cooldown_seconds)
        env_key = os.getenv(ENV_API_KEY)
        if env_key:
            pool.add_key(env_key)
        for key in os.getenv(ENV_API_KEYS, "").split(","):
            pool.add_key(key)
        for key in initial_keys:
            pool.add_key(key)
        return pool

    def _find(self, key: str) -> CredentialRecord | None:
        for record in self._records:
            if record.key == key:
                return record
        return None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return any(record.key == key for record in self._records)

    @property
    def total_key_count(self) -> int:
        return len(self._records)

    @property
    def available_key_count(self) -> int:
        now = time.time()
        return sum(1 for record in self._records if record.is_selectable(now))

    def add_key(self, key: str) -> None:
        key = key.strip()
        if not key or key in self:
            return
        self._records.append(CredentialRecord(key=key))
        logger.debug(f"Added API key {mask_api_key(key)} ({len(self._records)} in pool)")

    def remove_key(self, key: str) -> None:
        self._records = [record for record in self._records if record.key != key]
        if self._cursor >= len(self._records):
            self._cursor = 0

    def _claim(self, record: CredentialRecord, now: float) -> str:
        record.in_use = True
        record.last_used_at = now
        record.total_requests += 1
        return record.key

    def reserve_key(self, key: str) -> bool:
        """
        Try to claim a specific key.

        Returns:
            bool: False if the key is unknown, in use, or still cooling down
        """
        record = self._find(key)
        now = time.time()
        if record is None or not record.is_selectable(now):
            return False
        self._claim(record, now)
        return True

    def get_next_key(self) -> str | None:
        """
        Reserve the next usable key in round-robin order.

        Keys whose cooldown has elapsed get their rate-limit flag cleared on
        the way. When every key is busy or cooling, the idle key with the
        soonest cooldown is used only if that cooldown has already passed.

        Returns:
            str | None: A reserved key, or None if the caller has to wait
        """
        if not self._records:
            return None

        now = time.time()
        count = len(self._records)
        for offset in range(count):
            index = (self._cursor + offset) % count
            record = self._records[index]
            if not record.is_selectable(now):
                continue
            if record.is_rate_limited:
                record.is_rate_limited = False
            self._cursor = (index + 1) % count
            return self._claim(record, now)

        idle = [record for record in self._records if not record.in_use]
        if not idle:
            return None
        earliest = min(idle, key=lambda record: record.cooldown_until)
        if earliest.cooldown_until > now:
            return None
        earliest.is_rate_limited = False
        self._cursor = (self._records.index(earliest) + 1) % count
        return self._claim(earliest, now)

    def get_all_available_keys(self) -> list[str]:
        now = time.time()
        available = []
        for record in self._records:
            if not record.is_selectable(now):
                continue
            if record.is_rate_limited:
                record.is_rate_limited = False
            available.append(record.key)
        return available

    def is_key_available(self, key: str) -> bool:
        record = self._find(key)
        return record is not None and record.is_selectable(time.time())

    def release_key(self, key: str) -> None:
        record = self._find(key)
        if record is not None:
            record.in_use = False

    def mark_success(self, key: str) -> None:
        record = self._find(key)
        if record is not None:
            record.successful_requests += 1
            record.in_use = False

    def mark_failed(self, key: str, is_rate_limit: bool = False) -> None:
        record = self._find(key)
        if record is None:
            return
        record.failed_requests += 1
        record.in_use = False
        if is_rate_limit:
            record.rate_limit_hits += 1
            record.is_rate_limited = True
            record.cooldown_until = time.time() + self.cooldown_seconds
            logger.debug(f"API key {record.masked} cooling down for {self.cooldown_seconds:g}s")

    def get_stats(self) -> list[CredentialRecord]:
        return [replace(record) for record in self._records]

    def snapshot(self) -> tuple[CredentialSnapshot, ...]:
        return tuple(record.to_snapshot() for record in self._records)

    def get_time_until_next_key_available(self) -> float:
        """
        Seconds until some key can be handed out again.

        A key that is in use comes back within one request, so while any key
        is busy this returns 0 and the caller should poll. Only when every
        key is idle and cooling down is the shortest cooldown reported.

        Returns:
            float: 0 if a key is available now or one is busy, else the shortest remaining cooldown
        """
        if self.available_key_count > 0:
            return 0.0
        if any(record.in_use for record in self._records):
            return 0.0
        now = time.time()
        remaining = [record.cooldown_until - now for record in self._records]
        if not remaining:
            return 0.0
        return max(0.0, min(remaining))


class PoolLifetime(str, Enum):
    """
    How long a credential pool lives.

    PROCESS: one pool shared by the whole process, created on first use.
    REQUEST: a fresh pool for every call, so no state leaks between callers.
    """

    PROCESS = "process"
    REQUEST = "request"


_process_pool: CredentialPool | None = None


def get_credential_pool(
    lifetime: PoolLifetime = PoolLifetime.PROCESS,
    initial_keys: Iterable[str] = (),
) -> CredentialPool:
    """
    Return a credential pool according to the lifetime policy.

    Args:
        lifetime (PoolLifetime): Process-wide shared pool or a request-scoped fresh one
        initial_keys (Iterable[str]): Keys to add on top of the environment keys

    Returns:
        CredentialPool: The pool to inject into an executor or scheduler
    """
    global _process_pool

    if lifetime is PoolLifetime.REQUEST:
        return CredentialPool.from_env(initial_keys)

    if _process_pool is None:
        _process_pool = CredentialPool.from_env()
    for key in initial_keys:
        _process_pool.add_key(key)
    return _process_pool

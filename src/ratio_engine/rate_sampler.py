# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Request rate sampling for RPM-based dynamic ratios.

Reads the sliding-window lists that the request rate limiter already
keeps in Redis (one list of "YYYY-MM-DD HH:MM:SS" timestamps per
subject). Trimming those lists is the rate limiter's job.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from redis.exceptions import RedisError

lib_logger = logging.getLogger("ratio_engine")

DEFAULT_KEY_PREFIX = "rateLimit:MRRLS"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class RateSource(Protocol):
    async def current_rate(self, subject: str, window_minutes: int) -> int:
        """Number of events recorded for subject within the last window_minutes."""
        ...


class RedisRateSampler:
    """
    RateSource backed by the rate limiter's Redis lists.

    Any store failure degrades to a rate of 0 so that RPM-based pricing
    simply does not trigger.
    """

    def __init__(
        self,
        client: Any,
        *,
        enabled: bool = True,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the sampler.

        Args:
            client: A redis.asyncio client, or None when Redis is not configured
            enabled: Global "Redis enabled" switch
            key_prefix: Prefix of the rate limiter's list keys
            now: Clock returning naive local time, matching the list entries
        """
        self._client = client
        self._enabled = enabled
        self._key_prefix = key_prefix
        self._now = now or datetime.now

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def key_for(self, subject: str) -> str:
        return f"{self._key_prefix}:{subject}"

    async def current_rate(self, subject: str, window_minutes: int) -> int:
        if not self.enabled:
            return 0

        key = self.key_for(subject)
        try:
            length = await self._client.llen(key)
            if not length:
                return 0
            entries = await self._client.lrange(key, 0, length - 1)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            lib_logger.warning(f"Rate sample for '{key}' failed, assuming 0: {e}")
            return 0

        cutoff = self._now() - timedelta(minutes=window_minutes)
        count = 0
        for entry in entries:
            if isinstance(entry, bytes):
                entry = entry.decode("utf-8", errors="replace")
            try:
                stamp = datetime.strptime(entry, TIMESTAMP_FORMAT)
            except (TypeError, ValueError):
                continue
            if stamp >= cutoff:
                count += 1
        return count

# =============================================================================
# Provider Retry Policy — tenacity Exponential Backoff
# =============================================================================
#
# Embedding and LLM calls go through RetryPolicy.call(). Transient failures
# (connection drops, timeouts, rate limits, 5xx) are retried with
# exponential backoff up to `max_attempts`; anything else propagates on the
# first failure. Each SDK adapter decides what "transient" means for its
# own exception types.
#
# The SDK clients themselves are created with max_retries=0 so this is the
# only retry layer at the provider boundary.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from finrag.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors."""

    max_attempts: int = 3
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.provider_max_attempts,
            backoff_min_seconds=settings.provider_backoff_min_seconds,
            backoff_max_seconds=settings.provider_backoff_max_seconds,
        )

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        is_transient: Callable[[BaseException], bool],
    ) -> T:
        """
        Await `fn()`, retrying while it raises transient errors.

        The last exception is re-raised unchanged once attempts run out or
        a non-transient error occurs.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_min_seconds,
                min=self.backoff_min_seconds,
                max=self.backoff_max_seconds,
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(fn)

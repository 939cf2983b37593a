import logging
import random
import time
from typing import Any, NamedTuple

from .config import (DEFAULT_BACKOFF_JITTER, DEFAULT_BASE_BACKOFF, DEFAULT_MAX_ATTEMPTS,
                     DEFAULT_MAX_BACKOFF)
from .errors import Exhausted, TransientConnectionFailure

logger = logging.getLogger(__name__)


class RetryResult(NamedTuple):
    value: Any
    retries: int
    waited: float


class Backoff:
    """Capped exponential backoff for transient connection failures.

    ``on_failure(k)`` is ``min(max_delay, base_delay * 2**(k-1))`` for the k-th
    failed attempt. With ``jitter`` > 0 the delay is scaled down by a random
    factor in ``[1 - jitter, 1]`` so workers do not retry in lockstep.
    """

    def __init__(self, base_delay=DEFAULT_BASE_BACKOFF, max_delay=DEFAULT_MAX_BACKOFF,
                 max_attempts=DEFAULT_MAX_ATTEMPTS, jitter=DEFAULT_BACKOFF_JITTER,
                 sleep=time.sleep, rng=None):
        if base_delay < 0 or max_delay < base_delay:
            raise ValueError("need 0 <= base_delay <= max_delay")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.sleep = sleep
        self.rng = rng or random.Random()

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(config.base_backoff, config.max_backoff, config.max_attempts,
                   config.backoff_jitter, **kwargs)

    def on_failure(self, attempt):
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # cap the exponent so huge attempt numbers cannot overflow
        delay = min(self.max_delay, self.base_delay * 2.0 ** min(attempt - 1, 64))
        if self.jitter:
            delay *= 1.0 - self.jitter * self.rng.random()
        return delay

    def run(self, operation):
        """Call ``operation()`` until it stops raising TransientConnectionFailure.

        Raises Exhausted once ``max_attempts`` attempts have failed.
        """
        waited = 0.0
        started = time.perf_counter()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return RetryResult(operation(), attempt - 1, waited)
            except TransientConnectionFailure as exc:
                if attempt == self.max_attempts:
                    logger.warning("[RETRY] giving up after %d attempts: %s", attempt, exc)
                    raise Exhausted(attempt, waited, time.perf_counter() - started) from exc
                delay = self.on_failure(attempt)
                logger.debug("[RETRY] attempt %d failed (%s), waiting %.3fs", attempt, exc, delay)
                self.sleep(delay)
                waited += delay

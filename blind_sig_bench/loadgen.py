import itertools
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from .aggregate import LatencySample, Outcome, ResultAggregator
from .backoff import Backoff
from .client import BlindSigClient
from .config import BenchConfig
from .errors import Exhausted, ServerUnreachable, VerificationFailure

logger = logging.getLogger(__name__)


class Quota:
    """Shared stop condition for the workers of one level.

    ``take`` claims one round trip; ``itertools.count`` hands out tickets
    atomically so no lock is needed.
    """

    def __init__(self, total=None, duration=None, clock=time.monotonic):
        if total is None and duration is None:
            raise ValueError("need a request count or a duration")
        self.total = total
        self.clock = clock
        self.deadline = None if duration is None else clock() + duration
        self._tickets = itertools.count()
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    def take(self):
        if self._cancelled.is_set():
            return False
        if self.deadline is not None and self.clock() >= self.deadline:
            return False
        return self.total is None or next(self._tickets) < self.total


class Arrivals:
    """Poisson arrival schedule shared by the workers of one level.

    Each ``wait`` books the next start time, an exponential gap after the
    previous one, and sleeps until it is due. A worker that falls behind
    starts at once.
    """

    def __init__(self, mean_interarrival, rng=None, clock=time.monotonic, sleep=time.sleep):
        if mean_interarrival <= 0:
            raise ValueError("mean_interarrival must be positive")
        self.mean = mean_interarrival
        self.rng = rng or random.Random()
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._next = clock()

    def wait(self):
        with self._lock:
            self._next += self.rng.expovariate(1.0 / self.mean)
            due = self._next
        delay = due - self.clock()
        if delay > 0:
            self.sleep(delay)
        return delay


class LoadGenerator:
    def __init__(self, base_url, config=None, aggregator=None, client_factory=None):
        self.base_url = base_url
        self.config = config or BenchConfig()
        self.aggregator = aggregator or ResultAggregator()
        self.client_factory = client_factory

    def _new_client(self, public_key=None):
        if self.client_factory is not None:
            return self.client_factory(public_key)
        return BlindSigClient(
            self.base_url,
            public_key=public_key,
            backoff=Backoff.from_config(self.config),
            timeout=self.config.request_timeout,
            include_backoff=self.config.include_backoff_in_latency,
        )

    def fetch_public_key(self):
        with self._new_client() as client:
            try:
                return client.fetch_public_key()
            except Exhausted as exc:
                raise ServerUnreachable(f"no answer from {self.base_url}") from exc

    def _worker(self, level, quota, client, arrivals=None):
        done = 0
        with client:
            try:
                while quota.take():
                    if arrivals is not None:
                        arrivals.wait()
                    try:
                        trip = client.timed_round_trip()
                    except Exhausted as exc:
                        sample = LatencySample(level, exc.elapsed, Outcome.FAILURE, exc.attempts - 1)
                    except VerificationFailure as exc:
                        logger.warning("[WORKER] verification failed: %s", exc)
                        sample = LatencySample(level, exc.elapsed, Outcome.FAILURE, exc.retries)
                    else:
                        sample = LatencySample(level, trip.elapsed, Outcome.SUCCESS, trip.retries)
                    self.aggregator.submit(sample)
                    done += 1
            except Exception:
                # anything else is a harness bug; stop the other workers too
                quota.cancel()
                raise
        return done

    def run_level(self, concurrency, total_requests=None, duration=None, public_key=None,
                  interarrival_ms=None):
        """Run ``concurrency`` workers until the quota is used up.

        With a positive ``interarrival_ms`` round trips start as a Poisson
        process of that mean gap instead of back to back.
        """
        if total_requests is None and duration is None:
            total_requests = self.config.requests_per_level
            duration = self.config.duration_per_level
        if public_key is None:
            public_key = self.fetch_public_key()
        quota = Quota(total_requests, duration)
        if interarrival_ms is None:
            interarrival_ms = self.config.interarrival_ms
        arrivals = Arrivals(interarrival_ms / 1000.0) if interarrival_ms > 0 else None
        self.aggregator.open_level(concurrency)
        logger.info("[LEVEL %d] starting (%s)", concurrency,
                    f"{total_requests} requests" if total_requests else f"{duration}s")

        started = time.perf_counter()
        with ThreadPoolExecutor(max_workers=concurrency,
                                thread_name_prefix=f"worker-{concurrency}") as executor:
            futures = [executor.submit(self._worker, concurrency, quota,
                                       self._new_client(public_key), arrivals)
                       for _ in range(concurrency)]
            for future in as_completed(futures):
                future.result()
        wall = time.perf_counter() - started

        record = self.aggregator.finalize(concurrency)
        logger.info("[LEVEL %d] %d ok, %d failed in %.2fs (p50=%.2fms p99=%.2fms)",
                    concurrency, record.count, record.failure_count, wall,
                    record.p50 * 1e3, record.p99 * 1e3)
        return record

    def sweep(self, levels=None, total_requests=None, duration=None):
        """Run every concurrency level in turn and return the aggregator."""
        levels = levels or self.config.concurrency_levels
        public_key = self.fetch_public_key()
        for level in levels:
            self.run_level(level, total_requests, duration, public_key=public_key)

        successes, failures = self.aggregator.totals()
        logger.info("[SWEEP] %d successes, %d failures over %d levels",
                    successes, failures, len(levels))
        if successes == 0:
            raise ServerUnreachable(f"no round trip against {self.base_url} succeeded")
        return self.aggregator

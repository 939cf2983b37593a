import enum
import math
import pathlib
from collections import deque
from dataclasses import asdict, dataclass

import pandas as pd

SUMMARY_COLUMNS = ["concurrency_level", "count", "failure_count", "mean", "p50", "p95", "p99",
                   "min", "max"]


class Outcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class LatencySample:
    concurrency_level: int
    elapsed: float  # seconds
    outcome: Outcome = Outcome.SUCCESS
    retries: int = 0


@dataclass(frozen=True)
class AggregateRecord:
    concurrency_level: int
    count: int
    failure_count: int
    mean: float
    p50: float
    p95: float
    p99: float
    min: float
    max: float


def order_statistic(sorted_values, pct):
    """Nearest-rank percentile of an ascending, non-empty sequence."""
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[rank - 1]


class ResultAggregator:
    """Collects latency samples per concurrency level.

    ``submit`` only appends to a per-level deque, which is atomic, so any
    number of workers can call it without a lock.
    """

    def __init__(self):
        self._levels = {}

    def open_level(self, level):
        """Make ``level`` part of the export even if it never gets a sample."""
        return self._levels.setdefault(level, deque())

    def submit(self, sample):
        bucket = self._levels.get(sample.concurrency_level)
        if bucket is None:
            bucket = self.open_level(sample.concurrency_level)
        bucket.append(sample)

    def levels(self):
        return sorted(self._levels)

    def samples(self, level=None):
        if level is not None:
            return list(self._levels.get(level, ()))
        return [s for lvl in self.levels() for s in self._levels[lvl]]

    def finalize(self, level):
        if level not in self._levels:
            raise KeyError(f"no samples recorded for concurrency level {level}")
        samples = list(self._levels[level])
        ok = sorted(s.elapsed for s in samples if s.outcome is Outcome.SUCCESS)
        failures = len(samples) - len(ok)
        if not ok:
            nan = float("nan")
            return AggregateRecord(level, 0, failures, nan, nan, nan, nan, nan, nan)
        return AggregateRecord(
            concurrency_level=level,
            count=len(ok),
            failure_count=failures,
            mean=sum(ok) / len(ok),
            p50=order_statistic(ok, 50),
            p95=order_statistic(ok, 95),
            p99=order_statistic(ok, 99),
            min=ok[0],
            max=ok[-1],
        )

    def records(self):
        return [self.finalize(level) for level in self.levels()]

    def export(self):
        """One row per concurrency level, ascending."""
        return pd.DataFrame([asdict(r) for r in self.records()], columns=SUMMARY_COLUMNS)

    def totals(self):
        records = self.records()
        return sum(r.count for r in records), sum(r.failure_count for r in records)

    def write_summary(self, path):
        """Write the summary as CSV, or JSON keyed by level if the suffix is .json."""
        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df = self.export()
        if path.suffix == ".json":
            df.set_index("concurrency_level").to_json(path, orient="index", indent=2)
        else:
            df.to_csv(path, index=False)
        return path

    def write_samples(self, path):
        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame(
            [(s.concurrency_level, s.elapsed, s.outcome.value, s.retries) for s in self.samples()],
            columns=["concurrency_level", "elapsed", "outcome", "retries"],
        )
        df.to_csv(path, index=False)
        return path


def read_summary(path):
    path = pathlib.Path(path)
    if path.suffix == ".json":
        df = pd.read_json(path, orient="index")
        df.index.name = "concurrency_level"
        df = df.reset_index()
    else:
        df = pd.read_csv(path)
    return df.sort_values("concurrency_level").reset_index(drop=True)

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Optional, Tuple

from .errors import ConfigError

# ============================================================================
# DEFAULTS
# ============================================================================

ENV_PREFIX = "BLINDSIG_"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 14147

# Client backoff (seconds). Attempts count the first try.
DEFAULT_BASE_BACKOFF = 0.075
DEFAULT_MAX_BACKOFF = 2.0
DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BACKOFF_JITTER = 0.0

# Abandoned sessions are reclaimed after this many seconds
DEFAULT_SESSION_TTL = 30.0
DEFAULT_REAP_INTERVAL = 1.0
# 0 means unbounded; 1 reproduces the sequential blind Schnorr setting
DEFAULT_MAX_SESSIONS = 0

DEFAULT_CONCURRENCY_LEVELS = (1, 2, 4, 8, 16)
DEFAULT_REQUESTS_PER_LEVEL = 100

# Simulated network latency added by the server to each response (ms)
DEFAULT_LATENCY_MEAN_MS = 0.0
DEFAULT_LATENCY_STD_MS = 0.0

# Mean gap between round-trip starts of one level, drawn as a Poisson
# process (ms). 0 keeps the workers in a closed loop.
DEFAULT_INTERARRIVAL_MS = 0.0

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_SUMMARY_PATH = "out/summary.csv"
DEFAULT_SAMPLES_PATH = "out/samples.csv"

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _parse_levels(raw):
    try:
        levels = tuple(int(part) for part in raw.replace(";", ",").split(",") if part.strip())
    except ValueError as exc:
        raise ConfigError(f"invalid concurrency levels: {raw!r}") from exc
    return levels


def _parse_bool(raw):
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"invalid boolean: {raw!r}")


@dataclass(frozen=True)
class BenchConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    base_backoff: float = DEFAULT_BASE_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER
    session_ttl: float = DEFAULT_SESSION_TTL
    reap_interval: float = DEFAULT_REAP_INTERVAL
    max_sessions: int = DEFAULT_MAX_SESSIONS
    concurrency_levels: Tuple[int, ...] = DEFAULT_CONCURRENCY_LEVELS
    requests_per_level: Optional[int] = DEFAULT_REQUESTS_PER_LEVEL
    duration_per_level: Optional[float] = None
    include_backoff_in_latency: bool = False
    latency_mean_ms: float = DEFAULT_LATENCY_MEAN_MS
    latency_std_ms: float = DEFAULT_LATENCY_STD_MS
    interarrival_ms: float = DEFAULT_INTERARRIVAL_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    summary_path: str = DEFAULT_SUMMARY_PATH
    samples_path: str = DEFAULT_SAMPLES_PATH
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    @property
    def base_url(self):
        return f"http://{self.host}:{self.port}"

    def validate(self):
        if self.base_backoff < 0 or self.max_backoff < self.base_backoff:
            raise ConfigError("backoff must satisfy 0 <= base_backoff <= max_backoff")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if not 0.0 <= self.backoff_jitter <= 1.0:
            raise ConfigError("backoff_jitter must be within [0, 1]")
        if self.session_ttl <= 0 or self.reap_interval <= 0:
            raise ConfigError("session_ttl and reap_interval must be positive")
        if self.max_sessions < 0:
            raise ConfigError("max_sessions must be >= 0")
        if not self.concurrency_levels or any(n < 1 for n in self.concurrency_levels):
            raise ConfigError("concurrency levels must be positive integers")
        if len(set(self.concurrency_levels)) != len(self.concurrency_levels):
            raise ConfigError("concurrency levels must not repeat")
        if self.requests_per_level is None and self.duration_per_level is None:
            raise ConfigError("either requests_per_level or duration_per_level is required")
        if self.requests_per_level is not None and self.requests_per_level < 1:
            raise ConfigError("requests_per_level must be positive")
        if self.duration_per_level is not None and self.duration_per_level <= 0:
            raise ConfigError("duration_per_level must be positive")
        if self.latency_mean_ms < 0 or self.latency_std_ms < 0:
            raise ConfigError("simulated latency must be non-negative")
        if self.interarrival_ms < 0:
            raise ConfigError("interarrival_ms must be non-negative")

    def with_overrides(self, **overrides):
        """Copy with the given fields replaced; ``None`` values are ignored.

        A duration given without a request count makes the levels duration-only.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        if "duration_per_level" in values and "requests_per_level" not in values:
            values["requests_per_level"] = None
        return replace(self, **values)

    @classmethod
    def from_env(cls, environ=None):
        """Build a config from ``BLINDSIG_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            values[field.name] = _convert(field.name, field.default, raw)
        if values.get("duration_per_level") is not None and "requests_per_level" not in values:
            values["requests_per_level"] = None
        return cls(**values)


def _convert(name, default, raw):
    if name == "concurrency_levels":
        return _parse_levels(raw)
    if name == "include_backoff_in_latency":
        return _parse_bool(raw)
    if name in ("requests_per_level", "duration_per_level") and raw.strip().lower() in ("", "none"):
        return None
    try:
        if name in ("port", "max_attempts", "max_sessions", "requests_per_level"):
            return int(raw)
        if isinstance(default, float) or name == "duration_per_level":
            return float(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid value for {name}: {raw!r}") from exc
    return raw


def configure_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)

import socket

import pytest
import requests

from blind_sig_bench.config import BenchConfig
from blind_sig_bench.primitives import Signer
from blind_sig_bench.server import BlindSigServer


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakySession(requests.Session):
    """HTTP session whose first ``failures`` requests are refused.

    ``fail_on`` refuses the requests with those 1-based call numbers instead.
    """

    def __init__(self, failures=1, fail_on=()):
        super().__init__()
        self.trust_env = False
        self.failures = 0 if fail_on else failures
        self.fail_on = set(fail_on)
        self.calls = 0
        self.paths = []

    def request(self, method, url, *args, **kwargs):
        self.calls += 1
        self.paths.append(url.rsplit("/", 1)[-1])
        if self.calls in self.fail_on or self.failures > 0:
            self.failures = max(0, self.failures - 1)
            raise requests.ConnectionError("injected: connection refused")
        return super().request(method, url, *args, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def signer():
    return Signer()


@pytest.fixture
def fast_config():
    return BenchConfig(
        base_backoff=0.01,
        max_backoff=0.05,
        max_attempts=3,
        concurrency_levels=(1,),
        requests_per_level=10,
        reap_interval=0.05,
    )


@pytest.fixture
def make_server(signer, fast_config):
    started = []

    def factory(**overrides):
        config = fast_config.with_overrides(**overrides)
        server = BlindSigServer.from_config(config, signer=signer, port=0).start()
        started.append(server)
        return server

    yield factory
    for server in started:
        server.stop()


@pytest.fixture
def server(make_server):
    return make_server()


@pytest.fixture
def closed_url():
    """URL of a local port nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}"

import logging
import time
from typing import NamedTuple

import requests

from .backoff import Backoff
from .config import DEFAULT_REQUEST_TIMEOUT
from .errors import BlindSigError, TransientConnectionFailure, VerificationFailure, error_from_payload
from .primitives import (Signature, blind, decode_point, finalization_proof, unblind,
                         verify_signature)

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = b"Hello world"


class RoundTrip(NamedTuple):
    signature: Signature
    elapsed: float
    retries: int
    waited: float


class BlindSigClient:
    """Runs full issuance round trips against one server.

    Not thread-safe: give each worker its own client (and HTTP session).
    """

    def __init__(self, base_url, public_key=None, backoff=None, http=None,
                 timeout=DEFAULT_REQUEST_TIMEOUT, message=DEFAULT_MESSAGE,
                 include_backoff=False):
        self.base_url = base_url.rstrip("/")
        self._public_key = public_key
        self.backoff = backoff or Backoff()
        if http is None:
            http = requests.Session()
            # proxies from the environment would end up in the latency figures
            http.trust_env = False
        self.http = http
        self.timeout = timeout
        self.message = message
        self.include_backoff = include_backoff

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _handle(self, res):
        if res.status_code == 200:
            try:
                return res.json()
            except ValueError as exc:
                raise BlindSigError("server sent a non-JSON body") from exc
        try:
            payload = res.json()
        except ValueError:
            payload = {}
        raise error_from_payload(res.status_code, payload)

    def _request(self, method, path, payload=None):
        try:
            res = self.http.request(method, self.base_url + path, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.debug("[CLIENT] %s %s failed: %s", method, path, exc)
            raise TransientConnectionFailure(str(exc)) from exc
        return self._handle(res)

    def fetch_public_key(self):
        result = self.backoff.run(lambda: self._request("GET", "/pubkey"))
        return decode_point(bytes.fromhex(result.value["public_key"]))

    @property
    def public_key(self):
        if self._public_key is None:
            self._public_key = self.fetch_public_key()
        return self._public_key

    def round_trip(self):
        """One issuance: open, challenge, finalize, then check the signature."""
        public_key = self.public_key

        # Leg 1: commitment
        leg1 = self._request("POST", "/session", {})
        session_id = leg1["session_id"]
        state, challenge = blind(public_key, bytes.fromhex(leg1["commitment"]), self.message)

        try:
            # Leg 2: blinded challenge -> response
            leg2 = self._request("POST", "/challenge",
                                 {"session_id": session_id, "blinded_challenge": challenge.hex()})
            response = bytes.fromhex(leg2["response"])
            signature = unblind(public_key, state, response)

            # Leg 3: proof of receipt closes the session
            proof = finalization_proof(public_key, state, response)
            self._request("POST", "/finalize", {"session_id": session_id, "proof": proof.hex()})
        except TransientConnectionFailure:
            self.abandon(session_id)
            raise

        if not verify_signature(public_key, self.message, signature):
            raise VerificationFailure("unblinded signature does not verify")
        return signature

    def abandon(self, session_id):
        """Best effort: release a session the retry will not come back to.

        If that call fails too, the session is left to expire.
        """
        try:
            self._request("POST", "/abandon", {"session_id": session_id})
        except BlindSigError as exc:
            logger.debug("[CLIENT] session %s left to expire: %s", session_id, exc)

    def timed_round_trip(self):
        """Round trip with retries; elapsed covers only the successful attempt.

        A transient failure restarts the whole round trip with a new session.
        With ``include_backoff`` the clock starts at the first attempt instead.
        A VerificationFailure carries the ``elapsed`` and ``retries`` of the
        attempt that produced it.
        """
        started = time.perf_counter()
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            t0 = time.perf_counter()
            try:
                signature = self.round_trip()
            except VerificationFailure as exc:
                exc.elapsed = time.perf_counter() - (started if self.include_backoff else t0)
                exc.retries = attempts - 1
                raise
            return signature, time.perf_counter() - t0

        result = self.backoff.run(attempt)
        signature, elapsed = result.value
        if self.include_backoff:
            elapsed = time.perf_counter() - started
        return RoundTrip(signature, elapsed, result.retries, result.waited)

import json
import logging
import random
import socketserver
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .config import DEFAULT_REAP_INTERVAL, BenchConfig
from .errors import BlindSigError, MalformedInput, ServerBusy, VerificationFailure
from .primitives import Signer
from .sessions import SessionState, SessionStore

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 4096
LISTEN_BACKLOG = 128


class IssuanceService:
    """Per-session state machine for the three issuance legs."""

    def __init__(self, signer, store, max_sessions=0):
        self.signer = signer
        self.store = store
        self.max_sessions = max_sessions

    def open_session(self):
        # Advisory bound: legs racing each other may briefly overshoot it.
        if self.max_sessions and len(self.store) >= self.max_sessions:
            raise ServerBusy(f"{len(self.store)} sessions in flight")
        commitment, secret = self.signer.init_session()
        session = self.store.create(commitment, secret)
        logger.debug("[SESSION] %s opened", session.session_id)
        return session.session_id, commitment

    def respond(self, session_id, blinded_challenge):
        def issue(session):
            return self.signer.issue_challenge(session.secret, blinded_challenge)

        return self.store.try_transition(
            session_id, SessionState.INITIATED, SessionState.CHALLENGE_ISSUED, issue)

    def finalize(self, session_id, proof):
        """Close the session whatever the outcome; raise if the proof was bad."""
        def check(session):
            session.secret = None
            try:
                ok = self.signer.verify_finalization(session.commitment, proof)
            except MalformedInput as exc:
                return exc
            return None if ok else VerificationFailure("finalization proof does not verify")

        failure = self.store.try_transition(
            session_id, SessionState.CHALLENGE_ISSUED, SessionState.FINALIZED, check)
        self.store.remove(session_id)
        if failure is not None:
            logger.info("[SESSION] %s finalized with %s", session_id, failure.kind)
            raise failure
        logger.debug("[SESSION] %s finalized", session_id)

    def abandon(self, session_id):
        """Drop a session the client gave up on; unknown ids are ignored."""
        self.store.remove(session_id)
        logger.debug("[SESSION] %s abandoned", session_id)


def _text_field(body, name):
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedInput(f"missing field {name!r}")
    return value


def _hex_field(body, name):
    try:
        return bytes.fromhex(_text_field(body, name))
    except ValueError as exc:
        raise MalformedInput(f"field {name!r} is not hex") from exc


def leg_session(service, body):
    session_id, commitment = service.open_session()
    return {"session_id": session_id, "commitment": commitment.hex()}


def leg_challenge(service, body):
    response = service.respond(_text_field(body, "session_id"), _hex_field(body, "blinded_challenge"))
    return {"response": response.hex()}


def leg_finalize(service, body):
    service.finalize(_text_field(body, "session_id"), _hex_field(body, "proof"))
    return {"status": "ok"}


def leg_abandon(service, body):
    service.abandon(_text_field(body, "session_id"))
    return {"status": "ok"}


ROUTES = {
    "/session": leg_session,
    "/challenge": leg_challenge,
    "/finalize": leg_finalize,
    "/abandon": leg_abandon,
}


class ProtocolHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "BlindSigBench/0.1"

    def log_message(self, format, *args):
        logger.debug("[HTTP] %s - %s", self.address_string(), format % args)

    def _reply(self, status, payload):
        self.server.simulate_latency()
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _error(self, exc):
        self._reply(exc.status, {"error": exc.kind, "detail": str(exc)})

    def _read_json(self):
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError as exc:
            self.close_connection = True
            raise MalformedInput("bad Content-Length") from exc
        if length < 0 or length > MAX_BODY_BYTES:
            # the body cannot be framed, so the connection cannot be reused
            self.close_connection = True
            raise MalformedInput(f"bad Content-Length {length}")
        raw = self.rfile.read(length) if length else b""
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise MalformedInput("body is not JSON") from exc
        if not isinstance(body, dict):
            raise MalformedInput("body must be a JSON object")
        return body

    def do_GET(self):
        if self.path == "/pubkey":
            self._reply(200, {"public_key": self.server.service.signer.public_key_bytes.hex()})
        else:
            self._reply(404, {"error": "not_found", "detail": self.path})

    def do_POST(self):
        route = ROUTES.get(self.path)
        try:
            body = self._read_json()
            if route is None:
                self._reply(404, {"error": "not_found", "detail": self.path})
                return
            payload = route(self.server.service, body)
        except BlindSigError as exc:
            self._error(exc)
            return
        except Exception:
            logger.exception("[HTTP] unhandled error on %s", self.path)
            self._reply(500, {"error": "internal", "detail": "internal server error"})
            return
        self._reply(200, payload)


class BlindSigServer(ThreadingHTTPServer):
    daemon_threads = True
    request_queue_size = LISTEN_BACKLOG

    def __init__(self, address, service, latency_mean_ms=0.0, latency_std_ms=0.0,
                 reap_interval=DEFAULT_REAP_INTERVAL):
        super().__init__(address, ProtocolHandler)
        self.service = service
        self.reap_interval = reap_interval
        self.latency_mean_ms = latency_mean_ms
        self.latency_std_ms = latency_std_ms
        self._thread = None

    @classmethod
    def from_config(cls, config=None, signer=None, port=None):
        config = config or BenchConfig()
        store = SessionStore(ttl=config.session_ttl)
        service = IssuanceService(signer or Signer(), store, max_sessions=config.max_sessions)
        address = (config.host, config.port if port is None else port)
        return cls(address, service, config.latency_mean_ms, config.latency_std_ms,
                   config.reap_interval)

    def server_bind(self):
        # HTTPServer.server_bind resolves the FQDN, which can stall on reverse DNS
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port

    @property
    def url(self):
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"

    def simulate_latency(self):
        if self.latency_mean_ms <= 0:
            return
        pause = random.normalvariate(self.latency_mean_ms, self.latency_std_ms)
        if pause > 0:
            time.sleep(pause / 1000.0)

    def start(self):
        """Serve on a background thread and start session expiry."""
        self.service.store.start_reaper(self.reap_interval)
        self._thread = threading.Thread(target=self.serve_forever, name="blind-sig-server", daemon=True)
        self._thread.start()
        logger.info("[SERVER] listening on %s", self.url)
        return self

    def stop(self):
        if self._thread is not None:
            self.shutdown()
            self._thread.join()
            self._thread = None
        self.server_close()
        self.service.store.stop_reaper()
        logger.info("[SERVER] stopped")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.stop()

"""Error taxonomy shared by the server, the client and the load generator.

Every protocol-level error carries a ``kind`` (used on the wire) and the HTTP
``status`` the server answers with, so the client can rebuild the same
exception from a response.
"""


class BlindSigError(Exception):
    kind = "internal"
    status = 500


class MalformedInput(BlindSigError):
    """A client-supplied value failed basic validity checks."""
    kind = "malformed_input"
    status = 400


class ProtocolViolation(BlindSigError):
    """A message arrived for a session in the wrong state, or for no session."""
    kind = "protocol_violation"
    status = 409


class UnknownSession(ProtocolViolation):
    kind = "unknown_session"
    status = 404


class StaleSession(ProtocolViolation):
    kind = "stale_session"
    status = 409


class VerificationFailure(BlindSigError):
    kind = "verification_failure"
    status = 403
    # set by the client to the timing of the attempt that failed
    elapsed = 0.0
    retries = 0


class DuplicateSession(BlindSigError):
    kind = "duplicate_session"
    status = 500


class TransientConnectionFailure(BlindSigError):
    """Connection refused or reset; the only error the backoff loop retries."""
    kind = "transient"
    status = 503


class ServerBusy(TransientConnectionFailure):
    kind = "server_busy"
    status = 503


class Exhausted(BlindSigError):
    """Backoff gave up after ``attempts`` tries."""
    kind = "exhausted"

    def __init__(self, attempts, waited=0.0, elapsed=0.0):
        super().__init__(f"gave up after {attempts} attempts")
        self.attempts = attempts
        self.waited = waited
        self.elapsed = elapsed


class ServerUnreachable(BlindSigError):
    """No round trip succeeded at all; the run is aborted."""
    kind = "server_unreachable"


class ConfigError(ValueError):
    pass


_BY_KIND = {
    cls.kind: cls
    for cls in (
        MalformedInput,
        ProtocolViolation,
        UnknownSession,
        StaleSession,
        VerificationFailure,
        DuplicateSession,
        TransientConnectionFailure,
        ServerBusy,
    )
}


def error_from_payload(status, payload):
    """Rebuild the exception a server error response stands for."""
    payload = payload if isinstance(payload, dict) else {}
    detail = payload.get("detail", f"HTTP {status}")
    cls = _BY_KIND.get(payload.get("error"))
    if cls is None:
        if status == 503:
            cls = ServerBusy
        elif status == 404:
            cls = UnknownSession
        elif 400 <= status < 500:
            cls = ProtocolViolation
        else:
            cls = BlindSigError
    return cls(detail)

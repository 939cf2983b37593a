import socket
import threading
import time

import pytest
import requests

from blind_sig_bench.client import BlindSigClient
from blind_sig_bench.errors import MalformedInput, StaleSession, UnknownSession, VerificationFailure
from blind_sig_bench.primitives import (blind, encode_scalar, finalization_proof, random_scalar,
                                        unblind, verify_signature)
from blind_sig_bench.server import IssuanceService
from blind_sig_bench.sessions import SessionState, SessionStore

MESSAGE = b"Hello world"


def send(method, url, **kwargs):
    with requests.Session() as http:
        http.trust_env = False
        return http.request(method, url, timeout=5, **kwargs)


def post(server, path, **payload):
    return send("POST", server.url + path, json=payload)


def open_and_challenge(server, signer):
    """Run legs 1 and 2 by hand; return what leg 3 needs."""
    leg1 = post(server, "/session").json()
    state, challenge = blind(signer.public_key, bytes.fromhex(leg1["commitment"]), MESSAGE)
    res = post(server, "/challenge", session_id=leg1["session_id"], blinded_challenge=challenge.hex())
    assert res.status_code == 200
    response = bytes.fromhex(res.json()["response"])
    proof = finalization_proof(signer.public_key, state, response)
    return leg1["session_id"], state, response, proof


class TestIssuanceService:

    @pytest.fixture
    def service(self, signer, clock):
        return IssuanceService(signer, SessionStore(ttl=30.0, clock=clock))

    def test_states_follow_protocol_order(self, service, signer):
        session_id, commitment = service.open_session()
        session = service.store.snapshot(session_id)
        state, challenge = blind(signer.public_key, commitment, MESSAGE)
        response = service.respond(session_id, challenge)
        service.finalize(session_id, finalization_proof(signer.public_key, state, response))
        assert session.history == [SessionState.INITIATED, SessionState.CHALLENGE_ISSUED,
                                   SessionState.FINALIZED]
        assert session.secret is None
        assert session_id not in service.store

    def test_failed_verification_still_consumes_session(self, service, signer):
        session_id, commitment = service.open_session()
        _, challenge = blind(signer.public_key, commitment, MESSAGE)
        service.respond(session_id, challenge)
        with pytest.raises(VerificationFailure):
            service.finalize(session_id, signer.init_session()[0])
        with pytest.raises(UnknownSession):
            service.finalize(session_id, commitment)

    def test_malformed_proof_consumes_session(self, service, signer):
        session_id, commitment = service.open_session()
        _, challenge = blind(signer.public_key, commitment, MESSAGE)
        service.respond(session_id, challenge)
        with pytest.raises(MalformedInput):
            service.finalize(session_id, b"\x00")
        assert session_id not in service.store

    def test_expired_session_is_unreachable(self, service, signer, clock):
        session_id, commitment = service.open_session()
        clock.advance(60)
        _, challenge = blind(signer.public_key, commitment, MESSAGE)
        with pytest.raises(UnknownSession):
            service.respond(session_id, challenge)

    def test_abandon_frees_the_slot(self, signer, clock):
        service = IssuanceService(signer, SessionStore(ttl=30.0, clock=clock), max_sessions=1)
        session_id, commitment = service.open_session()
        service.abandon(session_id)
        service.abandon(session_id)
        assert session_id not in service.store
        _, challenge = blind(signer.public_key, commitment, MESSAGE)
        with pytest.raises(UnknownSession):
            service.respond(session_id, challenge)
        service.open_session()

    def test_finalize_before_challenge(self, service, signer):
        session_id, commitment = service.open_session()
        with pytest.raises(StaleSession):
            service.finalize(session_id, commitment)
        assert service.store.snapshot(session_id).state is SessionState.INITIATED


class TestHttpSurface:

    def test_public_key(self, server, signer):
        res = send("GET", server.url + "/pubkey")
        assert res.status_code == 200
        assert bytes.fromhex(res.json()["public_key"]) == signer.public_key_bytes

    def test_client_round_trip(self, server, signer):
        with BlindSigClient(server.url) as client:
            signature = client.round_trip()
        assert verify_signature(signer.public_key, MESSAGE, signature)
        assert len(server.service.store) == 0

    def test_replayed_challenge_is_conflict(self, server, signer):
        session_id, state, response, proof = open_and_challenge(server, signer)
        res = post(server, "/challenge", session_id=session_id,
                   blinded_challenge=encode_scalar(random_scalar()).hex())
        assert res.status_code == 409
        assert res.json()["error"] == "stale_session"
        # the first response is still the one that counts
        assert verify_signature(signer.public_key, MESSAGE,
                                unblind(signer.public_key, state, response))

    def test_unknown_session(self, server):
        res = post(server, "/challenge", session_id="missing", blinded_challenge="01" * 32)
        assert res.status_code == 404
        assert res.json()["error"] == "unknown_session"

    def test_malformed_challenge_keeps_session_open(self, server, signer):
        leg1 = post(server, "/session").json()
        res = post(server, "/challenge", session_id=leg1["session_id"], blinded_challenge="00" * 32)
        assert res.status_code == 400
        assert res.json()["error"] == "malformed_input"
        _, challenge = blind(signer.public_key, bytes.fromhex(leg1["commitment"]), MESSAGE)
        res = post(server, "/challenge", session_id=leg1["session_id"], blinded_challenge=challenge.hex())
        assert res.status_code == 200

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    def test_bad_body(self, server, body):
        res = send("POST", server.url + "/challenge", data=body)
        assert res.status_code == 400

    @pytest.mark.parametrize("length", ["-1", "1000000", "ten"])
    def test_unframeable_body_is_rejected_and_closed(self, server, length):
        host, port = server.server_address[:2]
        request = (f"POST /challenge HTTP/1.1\r\nHost: {host}\r\n"
                   f"Content-Length: {length}\r\n\r\n").encode("ascii")
        with socket.create_connection((host, port), timeout=3) as sock:
            sock.sendall(request)
            reply = b""
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                reply += chunk
        assert reply.startswith(b"HTTP/1.1 400")
        assert b"malformed_input" in reply

    def test_missing_fields(self, server):
        res = post(server, "/finalize", proof="00")
        assert res.status_code == 400

    def test_unknown_path(self, server):
        assert post(server, "/nope").status_code == 404

    def test_bad_proof_is_forbidden_then_gone(self, server, signer):
        session_id, _, _, _ = open_and_challenge(server, signer)
        bogus = signer.init_session()[0]
        res = post(server, "/finalize", session_id=session_id, proof=bogus.hex())
        assert res.status_code == 403
        res = post(server, "/finalize", session_id=session_id, proof=bogus.hex())
        assert res.status_code == 404

    def test_parallel_finalize_has_one_winner(self, server, signer):
        session_id, _, _, proof = open_and_challenge(server, signer)
        workers = 12
        barrier = threading.Barrier(workers)
        statuses = []

        def finalize():
            barrier.wait()
            statuses.append(post(server, "/finalize", session_id=session_id, proof=proof.hex()).status_code)

        threads = [threading.Thread(target=finalize) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert statuses.count(200) == 1
        assert all(code in (404, 409) for code in statuses if code != 200)

    def test_expired_session_over_http(self, make_server, signer):
        server = make_server(session_ttl=0.05)
        leg1 = post(server, "/session").json()
        time.sleep(0.15)
        _, challenge = blind(signer.public_key, bytes.fromhex(leg1["commitment"]), MESSAGE)
        res = post(server, "/challenge", session_id=leg1["session_id"], blinded_challenge=challenge.hex())
        assert res.status_code == 404

    def test_session_limit_answers_busy(self, make_server):
        server = make_server(max_sessions=1)
        assert post(server, "/session").status_code == 200
        res = post(server, "/session")
        assert res.status_code == 503
        assert res.json()["error"] == "server_busy"

    def test_abandon_over_http(self, make_server):
        server = make_server(max_sessions=1)
        session_id = post(server, "/session").json()["session_id"]
        assert post(server, "/abandon", session_id=session_id).json() == {"status": "ok"}
        assert post(server, "/abandon", session_id="missing").status_code == 200
        assert post(server, "/abandon").status_code == 400
        assert post(server, "/session").status_code == 200

    def test_session_ids_are_distinct(self, server):
        ids = {post(server, "/session").json()["session_id"] for _ in range(50)}
        assert len(ids) == 50

    def test_simulated_latency(self, make_server):
        server = make_server(latency_mean_ms=30.0, latency_std_ms=0.0)
        started = time.perf_counter()
        post(server, "/session")
        assert time.perf_counter() - started >= 0.03

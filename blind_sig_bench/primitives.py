"""
Blind Schnorr signatures over secp256k1.

    Signer(x)                                   Client(X, m)
    ---------                                   ------------
    r <- [1, n), R := rG
                         session_id, R
                       --------------->
                                                a, b <- [1, n)
                                                R' := R + aG + bX
                                                c' := H(R', m)
                                                c  := c' + b
                         session_id, c
                       <---------------
    s := r + cx
                               s
                       --------------->
                                                abort unless sG == R + cX
                                                sigma := (R', s + a)
                         session_id, T
                       <---------------
    accept iff T == R                           T := sG - cX

The last leg lets the server confirm the client received a consistent
response before the session is closed. Verif(X, m, (R', s')) checks
s'G == R' + H(R', m)X.

All randomness comes from OpenSSL's generator through petlib.
"""

import hashlib
import hmac
from typing import NamedTuple, Tuple

from petlib.bn import Bn
from petlib.ec import EcGroup, EcPt

from .errors import MalformedInput, VerificationFailure

CURVE_NID = 714  # secp256k1
SCALAR_BYTES = 32
HASH_DOMAIN = b"blind-sig-bench/schnorr/v1"

G = EcGroup(CURVE_NID)
g = G.generator()
order = G.order()


def random_scalar():
    """Uniform scalar in [1, n)."""
    return Bn.random(order - 1) + 1


def encode_scalar(value):
    return value.binary().rjust(SCALAR_BYTES, b"\x00")


def decode_scalar(data):
    """Parse a canonical non-zero scalar, raising MalformedInput otherwise."""
    if not isinstance(data, (bytes, bytearray)) or len(data) != SCALAR_BYTES:
        raise MalformedInput(f"scalar must be {SCALAR_BYTES} bytes")
    if not any(data):
        raise MalformedInput("scalar is zero")
    value = Bn.from_binary(bytes(data))
    if value >= order:
        raise MalformedInput("scalar is not reduced modulo the group order")
    return value


def encode_point(point):
    return point.export()


def decode_point(data):
    """Parse a curve point, rejecting bad encodings and the identity."""
    if not isinstance(data, (bytes, bytearray)) or not data:
        raise MalformedInput("empty point encoding")
    try:
        point = EcPt.from_binary(bytes(data), G)
    except Exception as exc:
        raise MalformedInput("not a valid curve point") from exc
    if point.is_infinite():
        raise MalformedInput("point is the identity element")
    return point


def hash_to_scalar(point, message):
    h = hashlib.sha256()
    h.update(HASH_DOMAIN)
    h.update(encode_point(point))
    h.update(message)
    return Bn.from_binary(h.digest()).mod(order)


def keygen():
    x = random_scalar()
    return x, x * g


class Signer:
    """Server side of the protocol. Holds only the immutable signing key."""

    def __init__(self, privkey=None):
        if privkey is None:
            privkey = random_scalar()
        self._x = privkey
        self.public_key = privkey * g

    @property
    def public_key_bytes(self):
        return encode_point(self.public_key)

    def init_session(self) -> Tuple[bytes, Bn]:
        """Leg 1: fresh nonce r and its public commitment R = rG."""
        r = random_scalar()
        return encode_point(r * g), r

    def issue_challenge(self, secret, blinded_challenge: bytes) -> bytes:
        """Leg 2: s = r + c*x for the client's blinded challenge c."""
        c = decode_scalar(blinded_challenge)
        s = secret.mod_add(c.mod_mul(self._x, order), order)
        return encode_scalar(s)

    def verify_finalization(self, commitment: bytes, proof: bytes) -> bool:
        """Leg 3: compare the client's reconstructed commitment in constant time."""
        point = decode_point(proof)
        return hmac.compare_digest(encode_point(point), commitment)


class ClientState(NamedTuple):
    alpha: Bn
    commitment: EcPt
    blinded_commitment: EcPt
    challenge: Bn


class Signature(NamedTuple):
    R: EcPt
    s: Bn

    def to_bytes(self):
        return encode_point(self.R) + encode_scalar(self.s)


def blind(public_key, commitment: bytes, message: bytes) -> Tuple[ClientState, bytes]:
    """Client step after leg 1: blind the commitment and derive challenge c."""
    R = decode_point(commitment)
    alpha = random_scalar()
    beta = random_scalar()
    R_prime = R + alpha * g + beta * public_key
    c_prime = hash_to_scalar(R_prime, message)
    c = c_prime.mod_add(beta, order)
    return ClientState(alpha, R, R_prime, c), encode_scalar(c)


def _minus(point, scalar):
    return (order - scalar) * point


def unblind(public_key, state: ClientState, response: bytes) -> Signature:
    """Check the signer's response and strip the blinding."""
    s = Bn.from_binary(response) if len(response) == SCALAR_BYTES else None
    if s is None or s >= order:
        raise MalformedInput("response is not a canonical scalar")
    if s * g != state.commitment + state.challenge * public_key:
        raise VerificationFailure("signer response does not match the commitment")
    return Signature(state.blinded_commitment, s.mod_add(state.alpha, order))


def finalization_proof(public_key, state: ClientState, response: bytes) -> bytes:
    """T = sG - cX, equal to R for an honest exchange."""
    s = Bn.from_binary(response)
    return encode_point(s * g + _minus(public_key, state.challenge))


def verify_signature(public_key, message: bytes, signature: Signature) -> bool:
    c_prime = hash_to_scalar(signature.R, message)
    return signature.s * g == signature.R + c_prime * public_key

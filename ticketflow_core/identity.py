"""
Caller identities for TicketFlow.

An identity is an address derived from a secp256k1 public key:

    address = "t" + hex(RIPEMD160(SHA256(pubkey)))

HTTP callers prove who they are by signing a canonical request string
with their key.  The server recovers nothing from the signature; it
verifies it against the public key the caller presents and then uses the
key's address as the caller identity.

    canonical = METHOD \\n PATH \\n TIMESTAMP \\n SHA256(body).hex()
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, BadSignatureError, SigningKey, VerifyingKey
from ecdsa.errors import MalformedPointError

ADDRESS_PREFIX = "t"


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def derive_address(public_key: bytes) -> str:
    return ADDRESS_PREFIX + hash160(public_key).hex()


def canonical_request(method: str, path: str, timestamp: str, body: bytes) -> bytes:
    digest = hashlib.sha256(body).hexdigest()
    return f"{method.upper()}\n{path}\n{timestamp}\n{digest}".encode("utf-8")


@dataclass
class KeyPair:
    private_key: bytes
    public_key: bytes   # 65 bytes, uncompressed (0x04 prefix)

    @classmethod
    def generate(cls) -> KeyPair:
        sk = SigningKey.generate(curve=SECP256k1)
        return cls._from_signing_key(sk)

    @classmethod
    def from_seed(cls, seed: str) -> KeyPair:
        """Deterministic key pair, for fixtures and local tooling."""
        secret = hashlib.sha256(seed.encode("utf-8")).digest()
        return cls._from_signing_key(SigningKey.from_string(secret, curve=SECP256k1))

    @classmethod
    def _from_signing_key(cls, sk: SigningKey) -> KeyPair:
        pub = b"\x04" + sk.get_verifying_key().to_string()
        return cls(private_key=sk.to_string(), public_key=pub)

    @property
    def address(self) -> str:
        return derive_address(self.public_key)

    def sign(self, message: bytes) -> bytes:
        sk = SigningKey.from_string(self.private_key, curve=SECP256k1)
        return sk.sign_deterministic(message, hashfunc=hashlib.sha256)

    def sign_request(self, method: str, path: str, timestamp: str, body: bytes = b"") -> str:
        """Return the hex signature for an HTTP request."""
        return self.sign(canonical_request(method, path, timestamp, body)).hex()

    def request_headers(self, method: str, path: str, timestamp: str,
                        body: bytes = b"") -> dict[str, str]:
        return {
            "X-Public-Key": self.public_key.hex(),
            "X-Timestamp": timestamp,
            "X-Signature": self.sign_request(method, path, timestamp, body),
        }


def verify_signature(public_key: bytes, signature: bytes, message: bytes) -> bool:
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(signature, message, hashfunc=hashlib.sha256)
    except (BadSignatureError, MalformedPointError, ValueError):
        return False


def verify_request(public_key_hex: str, signature_hex: str, method: str,
                   path: str, timestamp: str, body: bytes = b"") -> str | None:
    """
    Verify a signed request.  Returns the caller's address, or None if the
    key or signature is malformed or does not match.
    """
    try:
        public_key = bytes.fromhex(public_key_hex)
        signature = bytes.fromhex(signature_hex)
    except ValueError:
        return None
    message = canonical_request(method, path, timestamp, body)
    if not verify_signature(public_key, signature, message):
        return None
    return derive_address(public_key)

"""Shared crypto utilities for the staked oracle protocol.

Provides:
- SHA-256 helpers and canonical JSON
- Commit-reveal commitments (answer bytes + 32-byte nonce)
- Judge-selection digest
- Ed25519 identity (keypair generation, signing, verification)
- Ed25519 request signing + replay protection for the HTTP API

Dependencies: hashlib, json, os, secrets, cryptography
"""

import hashlib
import json
import os
import secrets
import time as _time

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.exceptions import InvalidSignature

from protocol import COMMITMENT_HEX_LEN, NONCE_BYTES


# ---------------------------------------------------------------------------
# SHA-256 + canonical JSON
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Commit-reveal
# ---------------------------------------------------------------------------

def new_nonce() -> bytes:
    """Fresh random 32-byte reveal nonce."""
    return secrets.token_bytes(NONCE_BYTES)


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_commitment(answer: str | bytes, nonce: bytes) -> str:
    """Commitment = SHA-256(answer || nonce), hex.

    The nonce is fixed-length, so the concatenation is unambiguous.
    """
    if len(nonce) != NONCE_BYTES:
        raise ValueError(f"nonce must be {NONCE_BYTES} bytes, got {len(nonce)}")
    return sha256_hash(_as_bytes(answer) + nonce)


def normalize_commitment(commitment: str) -> str:
    """Lower-case a hex commitment and check its shape. Raises ValueError."""
    value = commitment.lower()
    if value.startswith("0x"):
        value = value[2:]
    if len(value) != COMMITMENT_HEX_LEN:
        raise ValueError(f"commitment must be {COMMITMENT_HEX_LEN} hex chars")
    if any(c not in "0123456789abcdef" for c in value):
        raise ValueError("commitment must be hex")
    return value


def commitment_matches(commitment: str, answer: str | bytes, nonce: bytes) -> bool:
    """Constant-time check that (answer, nonce) opens the stored commitment."""
    if len(nonce) != NONCE_BYTES:
        return False
    expected = compute_commitment(answer, nonce)
    return secrets.compare_digest(expected, commitment)


# ---------------------------------------------------------------------------
# Judge selection
# ---------------------------------------------------------------------------

def judge_selection_digest(block_hash: bytes, request_id: int, requester: str,
                           commit_deadline: int, commit_count: int,
                           pool_size: int) -> int:
    """Pseudo-random selection value. NOT secure against whoever picks the block."""
    fields = canonical_json({
        "request_id": request_id,
        "requester": requester,
        "commit_deadline": commit_deadline,
        "commit_count": commit_count,
        "pool_size": pool_size,
    })
    return int.from_bytes(hashlib.sha256(block_hash + fields).digest(), "big")


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------
# Keys are 32 raw bytes. An account id is derived from the public key.

ACCOUNT_PREFIX = "acct_"
ED25519_KEY_BYTES = 32


def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """New random identity. Returns (privkey_bytes, pubkey_bytes), 32 bytes each."""
    privkey = Ed25519PrivateKey.generate()
    return privkey.private_bytes_raw(), privkey.public_key().public_bytes_raw()


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).public_key().public_bytes_raw()


def load_ed25519_key(path: str) -> bytes:
    """Read a raw private key written by ``save_ed25519_key``."""
    with open(path, "rb") as f:
        key = f.read()
    if len(key) != ED25519_KEY_BYTES:
        raise ValueError(f"{path}: expected a {ED25519_KEY_BYTES}-byte Ed25519 key, got {len(key)} bytes")
    return key


def save_ed25519_key(path: str, key: bytes) -> None:
    """Write a raw private key readable only by the owner."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Hex-encoded signature over ``data``."""
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """True if ``sig_hex`` is a valid signature by ``pubkey_bytes`` over ``data``.
    Malformed keys or signatures count as invalid."""
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(bytes.fromhex(sig_hex), data)
    except (InvalidSignature, ValueError):
        return False
    return True


def pubkey_to_account(pubkey_bytes: bytes) -> str:
    """Account id for a public key: 'acct_' + 64 hex chars."""
    return ACCOUNT_PREFIX + pubkey_bytes.hex()


# ---------------------------------------------------------------------------
# Ed25519 request signing
# ---------------------------------------------------------------------------

REQUEST_MAX_AGE = 300  # seconds a signed request stays valid
REQUEST_MAX_SKEW = 30  # seconds a timestamp may run ahead of the server

HEADER_TIMESTAMP = "X-Oracle-Timestamp"
HEADER_SIGNATURE = "X-Oracle-Signature"
HEADER_PUBKEY = "X-Oracle-Pubkey"


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")


class ReplayGuard:
    """Remembers signatures until they would have expired anyway.

    A request replayed within ``ttl`` seconds is refused; after that its
    timestamp check fails on its own.
    """

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._ttl = ttl
        self._expiry: dict[str, float] = {}
        self._calls = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """False if ``sig_hex`` was seen within the TTL; otherwise record it and return True."""
        now = _time.time()
        self._calls += 1
        if self._calls % 100 == 0:
            self._expiry = {s: t for s, t in self._expiry.items() if t > now}
        if self._expiry.get(sig_hex, 0) > now:
            return False
        self._expiry[sig_hex] = now + self._ttl
        return True


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Headers authenticating one HTTP request.

    The signature covers METHOD, PATH, TIMESTAMP and BODY joined by newlines.
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: ed25519_sign(privkey_bytes, _request_payload(method, path, ts, body)),
        HEADER_PUBKEY: pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Check a signed request. Returns (ok, reason); reason is "" when ok."""
    try:
        age = _time.time() - int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"
    if age < -REQUEST_MAX_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey) != ED25519_KEY_BYTES:
        return False, "invalid pubkey length"

    if not ed25519_verify(pubkey, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"
    return True, ""

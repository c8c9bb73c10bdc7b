"""
NATS nkeys and JWTs: Ed25519 identities in the NATS wire formats.

Encodings follow the NATS decentralized-auth conventions so the files
produced here are accepted by ``nats-server`` and the NATS clients:

    public key  = base32( prefix | ed25519 pub (32) | crc16 )      → 56 chars
    seed        = base32( seed prefix (2) | ed25519 seed (32) | crc16 )
    JWT         = b64url(header) . b64url(claims) . b64url(ed25519 sig)

The CRC is CRC-16/XMODEM, stored little-endian.  Base32 and base64url
are unpadded.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

# ── Prefix bytes ────────────────────────────────────────────────

PREFIX_SEED = 18 << 3  # "S"
PREFIX_OPERATOR = 14 << 3  # "O"
PREFIX_ACCOUNT = 0  # "A"
PREFIX_USER = 20 << 3  # "U"

_PUBLIC_PREFIXES = {PREFIX_OPERATOR, PREFIX_ACCOUNT, PREFIX_USER}

JWT_HEADER = {"typ": "JWT", "alg": "ed25519-nkey"}
JWT_VERSION = 2

_CREDS_JWT_RE = re.compile(
    r"-{3,}BEGIN NATS USER JWT-{3,}\s*\n(?P<jwt>[^\n]+)\n\s*-{3,}END NATS USER JWT-{3,}"
)
_CREDS_SEED_RE = re.compile(
    r"-{3,}BEGIN USER NKEY SEED-{3,}\s*\n(?P<seed>[^\n]+)\n\s*-{3,}END USER NKEY SEED-{3,}"
)

_CREDS_TEMPLATE = """-----BEGIN NATS USER JWT-----
{jwt}
------END NATS USER JWT------

************************* IMPORTANT *************************
NKEY Seed printed below can be used to sign and prove identity.
NKEYs are sensitive and should be treated as secrets.

-----BEGIN USER NKEY SEED-----
{seed}
------END USER NKEY SEED------

*************************************************************
"""


class NKeyError(ValueError):
    """Raised for malformed keys, seeds, JWTs or creds files."""


# ── Checksums and base encodings ────────────────────────────────


def crc16(data: bytes) -> int:
    """CRC-16/XMODEM (poly 0x1021, init 0)."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def _b32encode(raw: bytes) -> str:
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 8)
    try:
        return base64.b32decode(text + padding)
    except (binascii.Error, ValueError) as e:
        raise NKeyError(f"invalid base32 encoding: {e}") from e


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(text + padding)
    except (binascii.Error, ValueError) as e:
        raise NKeyError(f"invalid base64url encoding: {e}") from e


def _with_crc(raw: bytes) -> bytes:
    return raw + crc16(raw).to_bytes(2, "little")


def _check_crc(raw: bytes) -> bytes:
    if len(raw) < 3:
        raise NKeyError("key too short")
    body, checksum = raw[:-2], int.from_bytes(raw[-2:], "little")
    if crc16(body) != checksum:
        raise NKeyError("invalid checksum")
    return body


# ── Key encoding ────────────────────────────────────────────────


def encode_public_key(prefix: int, key: bytes) -> str:
    if prefix not in _PUBLIC_PREFIXES:
        raise NKeyError(f"invalid public key prefix: {prefix}")
    return _b32encode(_with_crc(bytes([prefix]) + key))


def decode_public_key(encoded: str) -> tuple[int, bytes]:
    """Return ``(prefix, raw 32-byte key)`` for an encoded public key."""
    body = _check_crc(_b32decode(encoded))
    prefix, key = body[0], body[1:]
    if prefix not in _PUBLIC_PREFIXES or len(key) != 32:
        raise NKeyError("not a public nkey")
    return prefix, key


def encode_seed(prefix: int, seed: bytes) -> str:
    if prefix not in _PUBLIC_PREFIXES:
        raise NKeyError(f"invalid seed type prefix: {prefix}")
    b1 = PREFIX_SEED | (prefix >> 5)
    b2 = (prefix & 31) << 3
    return _b32encode(_with_crc(bytes([b1, b2]) + seed))


def decode_seed(encoded: str) -> tuple[int, bytes]:
    """Return ``(public prefix, raw 32-byte seed)`` for an encoded seed."""
    body = _check_crc(_b32decode(encoded))
    if len(body) != 34:
        raise NKeyError("invalid seed length")
    b1, b2 = body[0], body[1]
    if b1 & 248 != PREFIX_SEED:
        raise NKeyError("not a seed")
    prefix = ((b1 & 7) << 5) | ((b2 & 248) >> 3)
    if prefix not in _PUBLIC_PREFIXES:
        raise NKeyError(f"invalid seed type prefix: {prefix}")
    return prefix, body[2:]


class KeyPair:
    """An Ed25519 nkey of one type (operator, account or user)."""

    def __init__(self, prefix: int, private_key: Ed25519PrivateKey):
        self.prefix = prefix
        self._private = private_key

    @classmethod
    def create(cls, prefix: int) -> KeyPair:
        return cls(prefix, Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: str) -> KeyPair:
        prefix, raw = decode_seed(seed.strip())
        return cls(prefix, Ed25519PrivateKey.from_private_bytes(raw))

    @property
    def public_key(self) -> str:
        raw = self._private.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return encode_public_key(self.prefix, raw)

    @property
    def seed(self) -> str:
        raw = self._private.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return encode_seed(self.prefix, raw)

    def sign(self, data: bytes) -> bytes:
        return self._private.sign(data)

    def __repr__(self) -> str:
        return f"<KeyPair {self.public_key}>"


def verify(public_key: str, data: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against an encoded public key."""
    _prefix, raw = decode_public_key(public_key)
    try:
        Ed25519PublicKey.from_public_bytes(raw).verify(signature, data)
    except InvalidSignature:
        return False
    return True


# ── JWT ─────────────────────────────────────────────────────────


def _json(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def encode_jwt(
    issuer: KeyPair,
    subject: str,
    name: str,
    nats: dict[str, Any],
    issued_at: int | None = None,
) -> str:
    """Build and sign a NATS JWT.

    The ``jti`` is the base32 SHA-256 of the claims serialized with an
    empty ``jti``, so identical claims yield identical IDs.
    """
    claims: dict[str, Any] = {
        "jti": "",
        "iat": int(time.time()) if issued_at is None else issued_at,
        "iss": issuer.public_key,
        "name": name,
        "sub": subject,
        "nats": {**nats, "version": JWT_VERSION},
    }
    claims["jti"] = _b32encode(hashlib.sha256(_json(claims)).digest())

    signing_input = f"{b64url_encode(_json(JWT_HEADER))}.{b64url_encode(_json(claims))}"
    signature = issuer.sign(signing_input.encode("ascii"))
    return f"{signing_input}.{b64url_encode(signature)}"


def decode_jwt_claims(token: str) -> dict[str, Any]:
    """Decode the payload segment of a JWT (no signature check)."""
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise NKeyError("JWT must have three segments")
    try:
        claims = json.loads(b64url_decode(parts[1]))
    except ValueError as e:
        raise NKeyError(f"invalid JWT payload: {e}") from e
    if not isinstance(claims, dict):
        raise NKeyError("JWT payload is not an object")
    return claims


def jwt_subject(token: str) -> str:
    """The ``sub`` claim of a JWT.  Raises NKeyError if absent."""
    subject = decode_jwt_claims(token).get("sub", "")
    if not isinstance(subject, str) or not subject:
        raise NKeyError("JWT has no subject")
    return subject


def verify_jwt(token: str) -> bool:
    """Check header, issuer encoding and signature of a JWT."""
    try:
        header_b64, payload_b64, sig_b64 = token.strip().split(".")
        header = json.loads(b64url_decode(header_b64))
        claims = decode_jwt_claims(token)
        if not isinstance(header, dict) or header.get("alg") != JWT_HEADER["alg"]:
            return False
        issuer = claims.get("iss")
        if not isinstance(issuer, str):
            return False
        return verify(
            issuer,
            f"{header_b64}.{payload_b64}".encode("ascii"),
            b64url_decode(sig_b64),
        )
    except (ValueError, TypeError):
        return False


# ── Claim builders ──────────────────────────────────────────────


def operator_jwt(operator: KeyPair, name: str, system_account: str) -> str:
    return encode_jwt(
        operator,
        operator.public_key,
        name,
        {"type": "operator", "system_account": system_account},
    )


def account_jwt(operator: KeyPair, account: KeyPair, name: str, jetstream: bool = False) -> str:
    limits: dict[str, Any] = {
        "subs": -1,
        "data": -1,
        "payload": -1,
        "imports": -1,
        "exports": -1,
        "wildcards": True,
        "conn": -1,
        "leaf": -1,
    }
    if jetstream:
        limits.update({"mem_storage": -1, "disk_storage": -1, "streams": -1, "consumer": -1})
    return encode_jwt(
        operator,
        account.public_key,
        name,
        {
            "type": "account",
            "limits": limits,
            "default_permissions": {"pub": {}, "sub": {}},
        },
    )


def user_jwt(account: KeyPair, user: KeyPair, name: str) -> str:
    return encode_jwt(
        account,
        user.public_key,
        name,
        {
            "type": "user",
            "pub": {},
            "sub": {},
            "subs": -1,
            "data": -1,
            "payload": -1,
        },
    )


# ── Creds files ─────────────────────────────────────────────────


def format_user_creds(jwt: str, seed: str) -> str:
    return _CREDS_TEMPLATE.format(jwt=jwt.strip(), seed=seed.strip())


def parse_user_creds(text: str) -> tuple[str, str]:
    """Extract ``(jwt, seed)`` from a creds file."""
    jwt_match = _CREDS_JWT_RE.search(text)
    seed_match = _CREDS_SEED_RE.search(text)
    if jwt_match is None or seed_match is None:
        raise NKeyError("malformed creds file")
    return jwt_match.group("jwt").strip(), seed_match.group("seed").strip()

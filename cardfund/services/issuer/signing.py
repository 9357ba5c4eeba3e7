"""Bearer-token construction for the card issuer API.

The issuer expects the JSON auth payload encrypted with our RSA private key
using PKCS#1 v1.5 block type 1 (what OpenSSL calls `RSA_private_encrypt`),
base64 encoded. The issuer recovers the payload with our public key.
"""

import base64
import json
import math
import secrets
import time
from pathlib import Path
from uuid import uuid4

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey


def load_private_key(path: str) -> RSAPrivateKey:
    pem = Path(path).read_bytes()
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("issuer key must be an RSA private key")
    return key


def auth_payload(secret: str, timestamp_ms: int, issuer_user_id: str | None = None) -> bytes:
    """Compact JSON with a fixed key order: secret, timestamp[, childUserId]."""

    payload: dict[str, object] = {"secret": secret, "timestamp": timestamp_ms}
    if issuer_user_id:
        payload["childUserId"] = issuer_user_id
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def private_encrypt(key: RSAPrivateKey, message: bytes) -> bytes:
    """RSA private-key operation over an EMSA-PKCS1-v1_5 type 1 block.

    `cryptography` exposes no raw private-encrypt, so the exponentiation runs on
    Python ints. The input is blinded with a random r (m * r^e, then * r^-1),
    which decorrelates timing from the message. Python's `pow` is still not
    constant time in the exponent; keep the signing host trusted.
    """

    numbers = key.private_numbers()
    modulus = numbers.public_numbers.n
    size = (modulus.bit_length() + 7) // 8
    if len(message) > size - 11:
        raise ValueError("auth payload too long for key size")
    block = b"\x00\x01" + b"\xff" * (size - len(message) - 3) + b"\x00" + message
    exponent = numbers.public_numbers.e
    while True:
        r = secrets.randbelow(modulus - 2) + 2
        if math.gcd(r, modulus) == 1:
            break
    blinded = int.from_bytes(block, "big") * pow(r, exponent, modulus) % modulus
    signed = pow(blinded, numbers.d, modulus) * pow(r, -1, modulus) % modulus
    return signed.to_bytes(size, "big")


def public_decrypt(key: RSAPrivateKey, token: str) -> bytes:
    """Inverse of `private_encrypt`; used to verify tokens locally."""

    public = key.public_key().public_numbers()
    size = (public.n.bit_length() + 7) // 8
    raw = pow(int.from_bytes(base64.b64decode(token), "big"), public.e, public.n).to_bytes(size, "big")
    if not raw.startswith(b"\x00\x01"):
        raise ValueError("bad block type")
    return raw[raw.index(b"\x00", 2) + 1 :]


def build_token(
    key: RSAPrivateKey,
    secret: str,
    issuer_user_id: str | None = None,
    timestamp_ms: int | None = None,
) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return base64.b64encode(private_encrypt(key, auth_payload(secret, timestamp_ms, issuer_user_id))).decode("ascii")


def request_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4()}"

"""
Canonical parameter signing (RSA-SHA256, PKCS#1 v1.5, base64).

Used by providers without a managed SDK (UnionPay) and for inbound Alipay
notify verification. Canonical form: drop empty values and excluded keys,
sort keys byte-wise, join as ``k1=v1&k2=v2``.
"""
from __future__ import annotations

import base64
import binascii
import os
from typing import Iterable, Mapping, Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


DEFAULT_SIGN_FIELD = "signature"

KeySource = Union[str, bytes]


def canonicalize(params: Mapping[str, object], exclude: Iterable[str] = ()) -> str:
    """Build the signing string; key insertion order does not matter."""
    skip = set(exclude)
    items = []
    for key, value in params.items():
        if key in skip or value is None:
            continue
        text = str(value)
        if text == "":
            continue
        items.append((key.encode("utf-8"), key, text))
    items.sort(key=lambda item: item[0])
    return "&".join(f"{key}={text}" for _, key, text in items)


def sign(
    params: Mapping[str, object],
    private_key: rsa.RSAPrivateKey,
    exclude: Iterable[str] = (DEFAULT_SIGN_FIELD,),
) -> str:
    message = canonicalize(params, exclude).encode("utf-8")
    raw = private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(raw).decode("ascii")


def verify(
    params: Mapping[str, object],
    signature: Optional[str],
    public_key: rsa.RSAPublicKey,
    exclude: Iterable[str] = (DEFAULT_SIGN_FIELD,),
) -> bool:
    """Return True iff ``signature`` matches; never raises on bad input."""
    if not signature:
        return False
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    message = canonicalize(params, exclude).encode("utf-8")
    try:
        public_key.verify(raw, message, padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, ValueError):
        return False
    return True


def _read_source(source: KeySource) -> bytes:
    if isinstance(source, bytes):
        return source
    if "-----BEGIN" in source:
        return source.encode("utf-8")
    if os.path.exists(source):
        with open(source, "rb") as fh:
            return fh.read()
    # Bare base64 body as printed by provider consoles
    return source.encode("ascii")


def _wrap_pem(body: bytes, label: str) -> bytes:
    text = b"".join(body.split())
    lines = [text[i:i + 64] for i in range(0, len(text), 64)]
    return b"\n".join([f"-----BEGIN {label}-----".encode(), *lines, f"-----END {label}-----".encode()]) + b"\n"


def load_private_key(source: KeySource, password: Optional[str] = None) -> rsa.RSAPrivateKey:
    """Load an RSA private key from inline PEM, a PEM file path or a bare base64 body.

    PKCS#1 (``RSA PRIVATE KEY``) and PKCS#8 (``PRIVATE KEY``, optionally
    encrypted) are both accepted.
    """
    data = _read_source(source)
    if b"-----BEGIN" not in data:
        data = _wrap_pem(data, "PRIVATE KEY")
    pwd = password.encode("utf-8") if password else None
    try:
        key = serialization.load_pem_private_key(data, password=pwd)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"invalid RSA private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("not an RSA private key")
    return key


def load_public_key(source: KeySource) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM (SPKI or PKCS#1) or an X.509 certificate."""
    data = _read_source(source)
    if b"-----BEGIN" not in data:
        data = _wrap_pem(data, "PUBLIC KEY")
    try:
        if b"-----BEGIN CERTIFICATE" in data:
            key = x509.load_pem_x509_certificate(data).public_key()
        else:
            key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"invalid RSA public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("not an RSA public key")
    return key

from __future__ import annotations

from pathlib import Path
from typing import Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

MIN_RSA_BITS = 2048


def load_public_key(pem: bytes):
    return serialization.load_pem_public_key(pem)


def load_private_key(pem: bytes):
    return serialization.load_pem_private_key(pem, password=None)


def accept_pubkey(pubkey_pem: bytes) -> bool:
    """Only RSA keys of at least MIN_RSA_BITS may verify RS256 tokens."""

    try:
        pub = load_public_key(pubkey_pem)
    except (ValueError, UnsupportedAlgorithm):
        return False
    return isinstance(pub, rsa.RSAPublicKey) and pub.key_size >= MIN_RSA_BITS


def load_verifying_key(path: Path | str) -> bytes:
    pem = Path(path).read_bytes()
    if not accept_pubkey(pem):
        raise ValueError(f"{path}: RSA public key of at least {MIN_RSA_BITS} bits required")
    return pem


def ensure_rsa_pair(
    private_path: Path | str, public_path: Path | str, *, key_size: int = 4096
) -> Tuple[bytes, bytes]:
    priv_path = Path(private_path)
    pub_path = Path(public_path)
    if priv_path.exists() and pub_path.exists():
        return priv_path.read_bytes(), pub_path.read_bytes()

    priv = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    priv_bytes = priv.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    pub_bytes = priv.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    priv_path.parent.mkdir(parents=True, exist_ok=True)
    pub_path.parent.mkdir(parents=True, exist_ok=True)
    priv_path.write_bytes(priv_bytes)
    pub_path.write_bytes(pub_bytes)
    return priv_bytes, pub_bytes


__all__ = [
    "MIN_RSA_BITS",
    "load_public_key",
    "load_private_key",
    "accept_pubkey",
    "load_verifying_key",
    "ensure_rsa_pair",
]

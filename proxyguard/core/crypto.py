"""Keccak-256 hashing (the EVM's SHA-3 variant, not FIPS SHA3-256)."""

from __future__ import annotations

from Crypto.Hash import keccak


def keccak256(data: bytes) -> bytes:
    f_hash = keccak.new(digest_bits=256)
    f_hash.update(data)
    return f_hash.digest()


def keccak256_hex(data: bytes) -> str:
    return "0x" + keccak256(data).hex()

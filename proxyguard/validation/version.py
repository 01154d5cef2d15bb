"""Bytecode version hashing.

An implementation is identified in the manifest by the keccak256 of its
creation bytecode. solc appends a CBOR-encoded metadata section (ending with
its own two-byte length) that changes with comments and file paths, so a
second hash is taken with that section removed.

Unlinked bytecode carries ``__$...$__`` library placeholders and is not valid
hex; it is hashed as text.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

import cbor2

from proxyguard.core.crypto import keccak256_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Version:
    with_metadata: str
    without_metadata: str
    linked_without_metadata: str


def _split_prefix(bytecode: str) -> tuple[str, str]:
    if bytecode.startswith("0x"):
        return "0x", bytecode[2:]
    return "", bytecode


def hash_bytecode(bytecode: str) -> str:
    """keccak256 of hex-encoded bytecode, ``0x``-prefixed."""
    _, body = _split_prefix(bytecode)
    try:
        data = bytes.fromhex(body)
    except ValueError:
        data = body.encode()
    return keccak256_hex(data)


def _is_cbor_map(data: bytes) -> bool:
    fp = io.BytesIO(data)
    try:
        value = cbor2.CBORDecoder(fp).decode()
    except (cbor2.CBORDecodeError, ValueError, EOFError):
        return False
    return isinstance(value, dict) and fp.tell() == len(data)


def without_metadata(bytecode: str) -> str:
    """Drop the trailing CBOR metadata, or return ``bytecode`` unchanged if there is none."""
    prefix, body = _split_prefix(bytecode)
    if len(body) < 4:
        return bytecode

    try:
        metadata_length = int(body[-4:], 16)
    except ValueError:
        return bytecode
    start = len(body) - 4 - metadata_length * 2
    if metadata_length == 0 or start < 0:
        return bytecode

    try:
        metadata = bytes.fromhex(body[start:-4])
    except ValueError:
        return bytecode
    if not _is_cbor_map(metadata):
        logger.debug("Trailing bytes are not a CBOR metadata map; hashing full bytecode")
        return bytecode

    return prefix + body[:start]


def get_version(bytecode: str, linked_bytecode: str | None = None) -> Version:
    """Hashes identifying a compiled contract.

    ``linked_bytecode`` is the deployed form with library addresses filled
    in; it defaults to ``bytecode``.
    """
    _, body = _split_prefix(bytecode)
    if not body:
        raise ValueError("Abstract contract has no bytecode")
    return Version(
        with_metadata=hash_bytecode(bytecode),
        without_metadata=hash_bytecode(without_metadata(bytecode)),
        linked_without_metadata=hash_bytecode(without_metadata(linked_bytecode or bytecode)),
    )

"""Script hashes and the fixed-size rows stored in the index database."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass

from .encoding import HASH_SIZE, HEADER_SIZE, BlockHeader, OutPoint, hash_to_hex, hex_to_hash

HASH_PREFIX_LEN = 8
HEIGHT_SIZE = 4
HASH_PREFIX_ROW_SIZE = HASH_PREFIX_LEN + HEIGHT_SIZE
HEADER_ROW_SIZE = HEADER_SIZE

_MAX_HEIGHT = 0xFFFF_FFFF


@dataclass(frozen=True, order=True)
class ScriptHash:
    """SHA-256 of an output script, shown byte-reversed as in the Electrum protocol."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != HASH_SIZE:
            raise ValueError(f"script hash must be {HASH_SIZE} bytes")

    @classmethod
    def from_script(cls, script: bytes) -> ScriptHash:
        return cls(hashlib.sha256(bytes(script)).digest())

    @classmethod
    def from_hex(cls, text: str) -> ScriptHash:
        return cls(hex_to_hash(text))

    def prefix(self) -> bytes:
        return self.raw[:HASH_PREFIX_LEN]

    def __str__(self) -> str:
        return hash_to_hex(self.raw)


@dataclass(frozen=True)
class HashPrefixRow:
    """A hash prefix with the height of the block it was confirmed in."""

    prefix: bytes
    height: int

    def __post_init__(self) -> None:
        if len(self.prefix) != HASH_PREFIX_LEN:
            raise ValueError(f"prefix must be {HASH_PREFIX_LEN} bytes")
        if not 0 <= self.height <= _MAX_HEIGHT:
            raise ValueError(f"invalid height: {self.height}")

    def to_db_row(self) -> bytes:
        return self.prefix + struct.pack("<I", self.height)

    @classmethod
    def from_db_row(cls, row: bytes) -> HashPrefixRow:
        if len(row) != HASH_PREFIX_ROW_SIZE:
            raise ValueError(f"bad HashPrefixRow: {len(row)} bytes")
        return cls(bytes(row[:HASH_PREFIX_LEN]), struct.unpack("<I", row[HASH_PREFIX_LEN:])[0])


@dataclass(frozen=True)
class HeaderRow:
    """A block header as stored in the database."""

    header: BlockHeader

    def to_db_row(self) -> bytes:
        return self.header.serialize()

    @classmethod
    def from_db_row(cls, row: bytes) -> HeaderRow:
        if len(row) != HEADER_ROW_SIZE:
            raise ValueError(f"bad HeaderRow: {len(row)} bytes")
        return cls(BlockHeader.from_bytes(row))


def scripthash_scan_prefix(scripthash: ScriptHash) -> bytes:
    return scripthash.prefix()


def scripthash_row(scripthash: ScriptHash, height: int) -> HashPrefixRow:
    return HashPrefixRow(scripthash.prefix(), height)


def spending_prefix(outpoint: OutPoint) -> bytes:
    """Txid prefix (as a big-endian integer) plus the output index, wrapping."""
    value = int.from_bytes(outpoint.txid[:HASH_PREFIX_LEN], "big")
    value = (value + outpoint.vout) % (1 << (8 * HASH_PREFIX_LEN))
    return value.to_bytes(HASH_PREFIX_LEN, "big")


def spending_row(outpoint: OutPoint, height: int) -> HashPrefixRow:
    return HashPrefixRow(spending_prefix(outpoint), height)


def txid_prefix(txid: bytes) -> bytes:
    if len(txid) != HASH_SIZE:
        raise ValueError(f"txid must be {HASH_SIZE} bytes")
    return bytes(txid[:HASH_PREFIX_LEN])


def txid_row(txid: bytes, height: int) -> HashPrefixRow:
    return HashPrefixRow(txid_prefix(txid), height)
"""Bitcoin consensus encoding of hashes, transactions and block headers."""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Iterator
from dataclasses import dataclass

HASH_SIZE = 32
HEADER_SIZE = 80

_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


def sha256d(data: bytes) -> bytes:
    """Double SHA-256 of ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash_to_hex(raw: bytes) -> str:
    """Hex of a hash in display order (byte-reversed)."""
    return bytes(raw)[::-1].hex()


def hex_to_hash(text: str) -> bytes:
    """Raw 32-byte hash from its byte-reversed display hex."""
    try:
        raw = bytes.fromhex(text)
    except ValueError as err:
        raise ValueError(f"invalid hash hex: {text!r}") from err
    if len(raw) != HASH_SIZE:
        raise ValueError(f"hash must be {HASH_SIZE} bytes, got {len(raw)}")
    return raw[::-1]


def encode_varint(value: int) -> bytes:
    """Compact-size encoding of an unsigned 64-bit integer."""
    if not 0 <= value <= _U64_MAX:
        raise ValueError(f"varint out of range: {value}")
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= _U32_MAX:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


class ByteReader:
    """Sequential reader over a byte string; ``len()`` gives the bytes left."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data) - self._pos

    def read(self, size: int) -> bytes:
        """Read exactly ``size`` bytes."""
        if size < 0:
            raise ValueError(f"negative read size: {size}")
        end = self._pos + size
        if end > len(self._data):
            raise ValueError(
                f"unexpected end of data: wanted {size} bytes, {len(self)} left"
            )
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def read_u64(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]

    def _read_i32(self) -> int:
        return struct.unpack("<i", self.read(4))[0]

    def read_varint(self) -> int:
        """Read a compact-size integer, rejecting non-minimal encodings."""
        first = self.read(1)[0]
        if first < 0xFD:
            return first
        if first == 0xFD:
            value, minimum = struct.unpack("<H", self.read(2))[0], 0xFD
        elif first == 0xFE:
            value, minimum = self.read_u32(), 0x1_0000
        else:
            value, minimum = self.read_u64(), 0x1_0000_0000
        if value < minimum:
            raise ValueError("non-minimal varint")
        return value


@dataclass(frozen=True, order=True)
class OutPoint:
    """A reference to an output: raw txid (internal order) and output index."""

    txid: bytes
    vout: int

    def __post_init__(self) -> None:
        if len(self.txid) != HASH_SIZE:
            raise ValueError(f"txid must be {HASH_SIZE} bytes")
        if not 0 <= self.vout <= _U32_MAX:
            raise ValueError(f"vout out of range: {self.vout}")

    @classmethod
    def from_str(cls, text: str) -> OutPoint:
        """Parse ``<txid hex>:<vout>``."""
        txid_hex, sep, vout = text.rpartition(":")
        if not sep:
            raise ValueError(f"missing ':' in outpoint: {text!r}")
        if not (vout.isascii() and vout.isdigit()):
            raise ValueError(f"invalid vout in outpoint: {text!r}")
        return cls(hex_to_hash(txid_hex), int(vout))

    def __str__(self) -> str:
        return f"{hash_to_hex(self.txid)}:{self.vout}"


def _read_outpoint(reader: ByteReader) -> OutPoint:
    txid = reader.read(HASH_SIZE)
    return OutPoint(txid, reader.read_u32())


def _read_bytes(reader: ByteReader) -> bytes:
    return reader.read(reader.read_varint())


def _encode_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


@dataclass(frozen=True)
class TxIn:
    """A transaction input."""

    previous_output: OutPoint
    script_sig: bytes = b""
    sequence: int = _U32_MAX
    witness: tuple[bytes, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "witness", tuple(self.witness))


@dataclass(frozen=True)
class TxOut:
    """A transaction output: value in satoshis and its locking script."""

    value: int
    script_pubkey: bytes


@dataclass(frozen=True)
class Transaction:
    """A bitcoin transaction, with optional segregated witness data."""

    version: int
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    lock_time: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))

    @classmethod
    def parse(cls, reader: ByteReader) -> Transaction:
        """Read one transaction from ``reader``."""
        version = reader._read_i32()
        count = reader.read_varint()
        segwit = False
        if count == 0:
            flag = reader.read(1)[0]
            if flag != 1:
                raise ValueError(f"unsupported segwit flag: {flag}")
            segwit = True
            count = reader.read_varint()
        raw_inputs = [
            (_read_outpoint(reader), _read_bytes(reader), reader.read_u32())
            for _ in range(count)
        ]
        outputs = tuple(
            TxOut(reader.read_u64(), _read_bytes(reader))
            for _ in range(reader.read_varint())
        )
        if segwit:
            witnesses = [
                tuple(_read_bytes(reader) for _ in range(reader.read_varint()))
                for _ in raw_inputs
            ]
            if not any(witnesses):
                raise ValueError("witness flag set but no witnesses present")
        else:
            witnesses = [() for _ in raw_inputs]
        inputs = tuple(
            TxIn(prevout, script_sig, sequence, witness)
            for (prevout, script_sig, sequence), witness in zip(raw_inputs, witnesses)
        )
        return cls(version, inputs, outputs, reader.read_u32())

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        """Parse a whole serialized transaction."""
        reader = ByteReader(data)
        tx = cls.parse(reader)
        if len(reader):
            raise ValueError(f"{len(reader)} trailing bytes after transaction")
        return tx

    def _has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def _encode(self, with_witness: bool) -> bytes:
        parts = [struct.pack("<i", self.version)]
        if with_witness:
            parts.append(b"\x00\x01")
        parts.append(encode_varint(len(self.inputs)))
        for txin in self.inputs:
            parts.append(txin.previous_output.txid)
            parts.append(struct.pack("<I", txin.previous_output.vout))
            parts.append(_encode_bytes(txin.script_sig))
            parts.append(struct.pack("<I", txin.sequence))
        parts.append(encode_varint(len(self.outputs)))
        for txout in self.outputs:
            parts.append(struct.pack("<Q", txout.value))
            parts.append(_encode_bytes(txout.script_pubkey))
        if with_witness:
            for txin in self.inputs:
                parts.append(encode_varint(len(txin.witness)))
                parts.extend(_encode_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def serialize(self) -> bytes:
        """Consensus serialization, including witness data when present."""
        return self._encode(self._has_witness())

    def txid(self) -> bytes:
        """Raw txid (internal byte order), computed without witness data."""
        return sha256d(self._encode(False))


@dataclass(frozen=True)
class BlockHeader:
    """An 80-byte block header; hashes are raw, in internal byte order."""

    version: int
    prev_blockhash: bytes
    merkle_root: bytes
    time: int
    bits: int
    nonce: int

    @classmethod
    def _read(cls, reader: ByteReader) -> BlockHeader:
        return cls(
            version=reader._read_i32(),
            prev_blockhash=reader.read(HASH_SIZE),
            merkle_root=reader.read(HASH_SIZE),
            time=reader.read_u32(),
            bits=reader.read_u32(),
            nonce=reader.read_u32(),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> BlockHeader:
        if len(data) != HEADER_SIZE:
            raise ValueError(f"block header must be {HEADER_SIZE} bytes, got {len(data)}")
        return cls._read(ByteReader(data))

    def serialize(self) -> bytes:
        return b"".join(
            (
                struct.pack("<i", self.version),
                self.prev_blockhash,
                self.merkle_root,
                struct.pack("<III", self.time, self.bits, self.nonce),
            )
        )

    def block_hash(self) -> bytes:
        """Raw block hash (internal byte order)."""
        return sha256d(self.serialize())


def iter_block_transactions(block: bytes) -> Iterator[Transaction]:
    """Yield the transactions of a serialized block, in block order."""
    reader = ByteReader(block)
    BlockHeader._read(reader)
    for _ in range(reader.read_varint()):
        yield Transaction.parse(reader)
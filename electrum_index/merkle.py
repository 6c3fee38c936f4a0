"""Merkle inclusion proofs for the transactions of a block."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass


def _sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


@dataclass(frozen=True)
class Proof:
    """Sibling hashes leading from one transaction to the merkle root.

    Hashes are raw 32-byte values in internal byte order.
    """

    proof: tuple[bytes, ...]
    position: int

    @classmethod
    def create(cls, txids: Sequence[bytes], position: int) -> Proof:
        """Build the proof for the transaction at ``position`` in ``txids``."""
        hashes = [bytes(txid) for txid in txids]
        if not 0 <= position < len(hashes):
            raise IndexError(f"position {position} out of range for {len(hashes)} txids")
        if any(len(h) != 32 for h in hashes):
            raise ValueError("txids must be 32 bytes long")
        offset = position
        proof = []
        while len(hashes) > 1:
            if len(hashes) % 2:
                hashes.append(hashes[-1])
            offset ^= 1
            proof.append(hashes[offset])
            offset //= 2
            hashes = [_sha256d(left + right) for left, right in zip(hashes[::2], hashes[1::2])]
        return cls(tuple(proof), position)

    def to_hex(self) -> list[str]:
        """The proof's hashes as hex, in the usual reversed display order."""
        return [node[::-1].hex() for node in self.proof]
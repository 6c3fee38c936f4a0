"""Looking up confirmed transactions by txid."""

from __future__ import annotations

from typing import Any

from .encoding import iter_block_transactions


def find_transaction(block: bytes, txid: bytes) -> bytes | None:
    """Serialized bytes of the first transaction in ``block`` with ``txid``."""
    for tx in iter_block_transactions(block):
        if tx.txid() == txid:
            return tx.serialize()
    return None


def lookup_transaction(index: Any, daemon: Any, txid: bytes) -> tuple[bytes, bytes] | None:
    """Find a confirmed transaction and the hash of the block holding it.

    ``index.filter_by_txid(txid)`` names candidate blocks, which are fetched
    with ``daemon.for_blocks(blockhashes, func)``. Two blocks may hold
    coinbase transactions with the same txid; the first match is kept.
    """
    found: tuple[bytes, bytes] | None = None

    def visit(blockhash: bytes, block: bytes) -> None:
        nonlocal found
        if found is not None:
            return
        tx_bytes = find_transaction(block, txid)
        if tx_bytes is not None:
            found = (blockhash, tx_bytes)

    daemon.for_blocks(index.filter_by_txid(txid), visit)
    return found
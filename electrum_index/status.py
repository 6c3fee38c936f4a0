"""Per-script-hash subscription status: history, balance and unspent outputs."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .encoding import OutPoint, Transaction, hash_to_hex, iter_block_transactions
from .types import ScriptHash

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ZERO_HASH = bytes(32)


@dataclass(frozen=True)
class TxOutput:
    """A funded output of a transaction: its index and value in satoshis."""

    index: int
    value: int


@dataclass
class TxEntry:
    """The outputs a transaction funds and the outpoints it spends for one script hash."""

    txid: bytes
    outputs: list[TxOutput] = field(default_factory=list)
    spent: list[OutPoint] = field(default_factory=list)

    def funding_outpoints(self) -> Iterator[OutPoint]:
        """Outpoints of the relevant funded outputs."""
        return _make_outpoints(self.txid, self.outputs)


@dataclass(frozen=True)
class FilteredTx(Generic[T]):
    """A transaction of a block with the items found in it."""

    tx_bytes: bytes
    txid: bytes
    pos: int
    result: list[T]


@dataclass(frozen=True)
class HistoryEntry:
    """One entry of a script hash's history.

    ``height`` is the confirmation height, or for mempool transactions -1
    when some input is unconfirmed and 0 otherwise.
    """

    txid: bytes
    height: int
    fee: int | None = None

    @classmethod
    def confirmed(cls, txid: bytes, height: int) -> HistoryEntry:
        if height < 0:
            raise ValueError(f"invalid height: {height}")
        return cls(txid, height)

    @classmethod
    def unconfirmed(cls, txid: bytes, has_unconfirmed_inputs: bool, fee: int) -> HistoryEntry:
        return cls(txid, -1 if has_unconfirmed_inputs else 0, fee)

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {"tx_hash": hash_to_hex(self.txid), "height": self.height}
        if self.fee is not None:
            result["fee"] = self.fee
        return result

    def _status_bytes(self) -> bytes:
        return f"{hash_to_hex(self.txid)}:{self.height}:".encode()


@dataclass(frozen=True)
class Balance:
    """Confirmed balance and the mempool's signed change to it, in satoshis."""

    confirmed_balance: int = 0
    mempool_delta: int = 0

    def to_json(self) -> dict[str, int]:
        return {"confirmed": self.confirmed_balance, "unconfirmed": self.mempool_delta}


@dataclass(frozen=True)
class UnspentEntry:
    """An unspent output; height 0 marks a mempool transaction."""

    height: int
    tx_hash: bytes
    tx_pos: int
    value: int

    def to_json(self) -> dict[str, Any]:
        return {
            "height": self.height,
            "tx_hash": hash_to_hex(self.tx_hash),
            "tx_pos": self.tx_pos,
            "value": self.value,
        }


class _Unspent:
    """Unspent outpoints with their values and heights, plus the balance."""

    def __init__(self, status: ScriptHashStatus, chain: Any) -> None:
        self.outpoints: dict[OutPoint, tuple[int, int]] = {}
        height_entries = list(status._confirmed_height_entries(chain))
        for height, entries in height_entries:
            for entry in entries:
                self._insert(entry, height)
        for _height, entries in height_entries:
            for entry in entries:
                self._remove(entry)
        confirmed = self._total()
        for entry in status._mempool:
            self._insert(entry, 0)
        for entry in status._mempool:
            self._remove(entry)
        self.balance = Balance(confirmed, self._total() - confirmed)

    def _total(self) -> int:
        return sum(value for value, _height in self.outpoints.values())

    def _insert(self, entry: TxEntry, height: int) -> None:
        for output in entry.outputs:
            self.outpoints[OutPoint(entry.txid, output.index)] = (output.value, height)

    def _remove(self, entry: TxEntry) -> None:
        for spent in entry.spent:
            self.outpoints.pop(spent, None)

    def entries(self) -> list[UnspentEntry]:
        return [
            UnspentEntry(height, outpoint.txid, outpoint.vout, value)
            for outpoint, (value, height) in self.outpoints.items()
        ]


class ScriptHashStatus:
    """Subscription status of one script hash, kept in sync with chain and mempool.

    The collaborators are duck-typed: ``chain`` has ``get_block_height(blockhash)``
    (None for stale blocks) and ``tip()``; ``index`` has ``chain()``,
    ``filter_by_funding(scripthash)``, ``filter_by_spending(outpoint)`` and
    ``limit_result(blockhashes)``; ``daemon`` has ``for_blocks(blockhashes, func)``;
    ``cache`` has ``add_tx(txid, get_bytes)``.
    """

    def __init__(self, scripthash: ScriptHash) -> None:
        self.scripthash = scripthash
        self._tip = _ZERO_HASH
        self._confirmed: dict[bytes, list[TxEntry]] = {}
        self._mempool: list[TxEntry] = []
        self._history: list[HistoryEntry] = []
        self._statushash: bytes | None = None

    @property
    def statushash(self) -> bytes | None:
        """Current status hash; None while the history is empty."""
        return self._statushash

    def _confirmed_height_entries(self, chain: Any) -> Iterator[tuple[int, list[TxEntry]]]:
        for blockhash, entries in self._confirmed.items():
            height = chain.get_block_height(blockhash)
            if height is not None:
                yield height, entries

    def _confirmed_entries(self, chain: Any) -> Iterator[TxEntry]:
        for _height, entries in self._confirmed_height_entries(chain):
            yield from entries

    def _confirmed_outpoints(self, chain: Any) -> set[OutPoint]:
        return {
            outpoint
            for entry in self._confirmed_entries(chain)
            for outpoint in entry.funding_outpoints()
        }

    def get_unspent(self, chain: Any) -> list[UnspentEntry]:
        return _Unspent(self, chain).entries()

    def get_balance(self, chain: Any) -> Balance:
        return _Unspent(self, chain).balance

    def get_history(self) -> list[HistoryEntry]:
        return list(self._history)

    def _get_confirmed_history(self, chain: Any) -> list[HistoryEntry]:
        by_height = dict(self._confirmed_height_entries(chain))
        return [
            HistoryEntry.confirmed(entry.txid, height)
            for height, entries in sorted(by_height.items())
            for entry in entries
        ]

    def _get_mempool_history(self, mempool: Any) -> list[HistoryEntry]:
        entries = [
            found for found in (mempool.get(e.txid) for e in self._mempool) if found is not None
        ]
        entries.sort(key=lambda e: (e.has_unconfirmed_inputs, e.txid))
        return [
            HistoryEntry.unconfirmed(e.txid, e.has_unconfirmed_inputs, e.fee) for e in entries
        ]

    def _for_new_blocks(
        self, blockhashes: Iterable[bytes], daemon: Any, func: Callable[[bytes, bytes], None]
    ) -> None:
        daemon.for_blocks(
            [blockhash for blockhash in blockhashes if blockhash not in self._confirmed], func
        )

    def _sync_confirmed(
        self, index: Any, daemon: Any, cache: Any, outpoints: set[OutPoint]
    ) -> dict[bytes, list[TxEntry]]:
        result: dict[bytes, dict[int, TxEntry]] = {}

        def on_funding_block(blockhash: bytes, block: bytes) -> None:
            block_entries = result.setdefault(blockhash, {})
            for filtered in filter_block_txs_outputs(block, self.scripthash):
                cache.add_tx(filtered.txid, lambda data=filtered.tx_bytes: data)
                outpoints.update(_make_outpoints(filtered.txid, filtered.result))
                entry = block_entries.setdefault(filtered.pos, TxEntry(filtered.txid))
                entry.outputs = filtered.result

        funding_blockhashes = index.limit_result(index.filter_by_funding(self.scripthash))
        self._for_new_blocks(funding_blockhashes, daemon, on_funding_block)

        spending_blockhashes = {
            blockhash
            for outpoint in outpoints
            for blockhash in index.filter_by_spending(outpoint)
        }

        def on_spending_block(blockhash: bytes, block: bytes) -> None:
            block_entries = result.setdefault(blockhash, {})
            for filtered in filter_block_txs_inputs(block, outpoints):
                cache.add_tx(filtered.txid, lambda data=filtered.tx_bytes: data)
                entry = block_entries.setdefault(filtered.pos, TxEntry(filtered.txid))
                entry.spent = filtered.result

        self._for_new_blocks(spending_blockhashes, daemon, on_spending_block)

        return {
            blockhash: [entries[pos] for pos in sorted(entries)]
            for blockhash, entries in result.items()
        }

    def _sync_mempool(self, mempool: Any, cache: Any, outpoints: set[OutPoint]) -> list[TxEntry]:
        result: dict[bytes, TxEntry] = {}
        for entry in mempool.filter_by_funding(self.scripthash):
            funding_outputs = _filter_outputs(entry.tx, self.scripthash)
            if not funding_outputs:
                raise RuntimeError("mempool funding index is inconsistent")
            outpoints.update(_make_outpoints(entry.txid, funding_outputs))
            result.setdefault(entry.txid, TxEntry(entry.txid)).outputs = funding_outputs
            cache.add_tx(entry.txid, entry.tx.serialize)
        spending = [e for outpoint in outpoints for e in mempool.filter_by_spending(outpoint)]
        for entry in spending:
            spent_outpoints = _filter_inputs(entry.tx, outpoints)
            if not spent_outpoints:
                raise RuntimeError("mempool spending index is inconsistent")
            result.setdefault(entry.txid, TxEntry(entry.txid)).spent = spent_outpoints
            cache.add_tx(entry.txid, entry.tx.serialize)
        return list(result.values())

    def sync(self, index: Any, mempool: Any, daemon: Any, cache: Any) -> None:
        """Sync with the confirmed chain and the mempool, then recompute history and status."""
        chain = index.chain()
        outpoints = self._confirmed_outpoints(chain)
        new_tip = chain.tip()
        if self._tip != new_tip:
            update = self._sync_confirmed(index, daemon, cache, outpoints)
            self._confirmed.update(update)
            self._tip = new_tip
        if self._confirmed:
            logger.debug(
                "%d transactions from %d blocks",
                sum(len(entries) for entries in self._confirmed.values()),
                len(self._confirmed),
            )
        self._mempool = self._sync_mempool(mempool, cache, outpoints)
        if self._mempool:
            logger.debug("%d mempool transactions", len(self._mempool))
        self._history = self._get_confirmed_history(chain) + self._get_mempool_history(mempool)
        self._statushash = compute_status_hash(self._history)


def _make_outpoints(txid: bytes, outputs: Iterable[TxOutput]) -> Iterator[OutPoint]:
    return (OutPoint(txid, output.index) for output in outputs)


def _filter_outputs(tx: Transaction, scripthash: ScriptHash) -> list[TxOutput]:
    return [
        TxOutput(vout, txout.value)
        for vout, txout in enumerate(tx.outputs)
        if ScriptHash.from_script(txout.script_pubkey) == scripthash
    ]


def _filter_inputs(tx: Transaction, outpoints: set[OutPoint]) -> list[OutPoint]:
    return [txin.previous_output for txin in tx.inputs if txin.previous_output in outpoints]


def compute_status_hash(history: Iterable[HistoryEntry]) -> bytes | None:
    """SHA-256 over ``txid:height:`` of every entry; None for an empty history."""
    engine = hashlib.sha256()
    empty = True
    for entry in history:
        engine.update(entry._status_bytes())
        empty = False
    return None if empty else engine.digest()


def filter_block_txs_outputs(block: bytes, scripthash: ScriptHash) -> list[FilteredTx[TxOutput]]:
    """Transactions of ``block`` that fund ``scripthash``, with the funded outputs."""
    result = []
    for pos, tx in enumerate(iter_block_transactions(block)):
        outputs = _filter_outputs(tx, scripthash)
        if outputs:
            result.append(FilteredTx(tx.serialize(), tx.txid(), pos, outputs))
    return result


def filter_block_txs_inputs(
    block: bytes, outpoints: set[OutPoint]
) -> list[FilteredTx[OutPoint]]:
    """Transactions of ``block`` that spend any of ``outpoints``, with those outpoints."""
    result = []
    for pos, tx in enumerate(iter_block_transactions(block)):
        spent = _filter_inputs(tx, outpoints)
        if spent:
            result.append(FilteredTx(tx.serialize(), tx.txid(), pos, spent))
    return result
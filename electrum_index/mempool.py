"""The node's mempool: cached entries, lookup indexes and a fee histogram."""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .encoding import OutPoint, Transaction
from .metrics import Metrics
from .types import ScriptHash

logger = logging.getLogger(__name__)

_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF
_CHUNK_SIZE = 1000


@dataclass(frozen=True)
class Entry:
    """A mempool transaction with its fee (in satoshis) and virtual size."""

    txid: bytes
    tx: Transaction
    fee: int
    vsize: int
    has_unconfirmed_inputs: bool


class FeeHistogram:
    """Total vsize and transaction count per power-of-two fee-rate band.

    Bin ``64 - i`` holds fee rates in ``[2**(i-1), 2**i)`` sat/vB; bin 64
    holds rates below 1 sat/vB and bin 0 rates in ``[2**63, 2**64)``.
    """

    BINS = 65

    def __init__(self) -> None:
        self.vsize = [0] * self.BINS
        self.count = [0] * self.BINS

    @staticmethod
    def bin_index(fee: int, vsize: int) -> int:
        """Bin of a transaction paying ``fee`` satoshis for ``vsize`` vbytes."""
        fee_rate = fee // vsize
        if not 0 <= fee_rate <= _U64_MAX:
            raise ValueError(f"fee rate out of range: {fee_rate}")
        return 64 - fee_rate.bit_length()

    @staticmethod
    def bin_range(bin_index: int) -> tuple[int, int]:
        """Half-open fee-rate range ``[lower, upper)`` covered by a bin."""
        limit = 1 << (FeeHistogram.BINS - bin_index - 1)
        return limit // 2, limit

    def _valid(self, bin_index: int) -> bool:
        return 0 <= bin_index < self.BINS

    def insert(self, bin_index: int, vsize: int) -> None:
        if not self._valid(bin_index):
            return
        self.vsize[bin_index] += vsize
        self.count[bin_index] += 1

    def remove(self, bin_index: int, vsize: int) -> None:
        """Take a transaction out of a bin; totals never drop below zero."""
        if not self._valid(bin_index):
            return
        if self.vsize[bin_index] < vsize:
            logger.warning(
                "removing TX from mempool caused bin vsize to unexpectedly drop below zero"
            )
            self.vsize[bin_index] = 0
        else:
            self.vsize[bin_index] -= vsize
        if self.count[bin_index] < 1:
            logger.warning(
                "removing TX from mempool caused bin count to unexpectedly drop below zero"
            )
            self.count[bin_index] = 0
        else:
            self.count[bin_index] -= 1

    def to_json(self) -> list[list[int]]:
        """``[fee_rate, vsize]`` pairs from the highest non-empty bin down."""
        pairs = ([_U64_MAX >> i, vsize] for i, vsize in enumerate(self.vsize))
        return list(itertools.dropwhile(lambda pair: pair[1] == 0, pairs))


@dataclass
class MempoolSyncUpdate:
    """Entries to add to and txids to remove from a :class:`Mempool`."""

    new_entries: list[Entry] = field(default_factory=list)
    removed_entries: set[bytes] = field(default_factory=set)

    @classmethod
    def poll(cls, daemon: Any, old_txids: Iterable[bytes], exit_flag: Any) -> MempoolSyncUpdate:
        """Ask the node for its mempool and compute the changes against ``old_txids``.

        ``daemon.get_mempool_txids()`` lists the current txids;
        ``daemon.get_mempool_entries(txids)`` gives, per txid, an object with
        ``vsize``, ``fee`` and ``depends`` or None; and
        ``daemon.get_mempool_transactions(txids)`` gives a
        :class:`Transaction` or None. Transactions that left the mempool in
        the meantime are skipped.
        """
        txids = list(daemon.get_mempool_txids())
        logger.debug("loading %d mempool transactions", len(txids))
        new_txids = set(txids)
        old = set(old_txids)
        to_add = sorted(new_txids - old)
        to_remove = old - new_txids

        new_entries: list[Entry] = []
        for start in range(0, len(to_add), _CHUNK_SIZE):
            chunk = to_add[start:start + _CHUNK_SIZE]
            exit_flag.poll()
            infos = list(daemon.get_mempool_entries(chunk))
            if len(infos) != len(chunk):
                raise ValueError(
                    f"got {len(infos)} mempools entries, expected {len(chunk)}"
                )
            txs = list(daemon.get_mempool_transactions(chunk))
            if len(txs) != len(chunk):
                raise ValueError(
                    f"got {len(txs)} mempools transactions, expected {len(chunk)}"
                )
            for txid, info, tx in zip(chunk, infos, txs):
                if info is None:
                    logger.debug("missing mempool entry: %s", txid[::-1].hex())
                    continue
                if tx is None:
                    logger.debug("missing mempool tx: %s", txid[::-1].hex())
                    continue
                new_entries.append(
                    Entry(
                        txid=txid,
                        tx=tx,
                        fee=info.fee,
                        vsize=info.vsize,
                        has_unconfirmed_inputs=bool(info.depends),
                    )
                )
        return cls(new_entries=new_entries, removed_entries=to_remove)


class Mempool:
    """Current mempool state, indexed by funded script hash and spent outpoint."""

    def __init__(self, metrics: Metrics) -> None:
        self._entries: dict[bytes, Entry] = {}
        self._by_funding: defaultdict[ScriptHash, set[bytes]] = defaultdict(set)
        self._by_spending: defaultdict[OutPoint, set[bytes]] = defaultdict(set)
        self.fees = FeeHistogram()
        self._vsize_gauge = metrics.gauge(
            "mempool_txs_vsize",
            "Total vsize of mempool transactions (in bytes)",
            "fee_rate",
        )
        self._count_gauge = metrics.gauge(
            "mempool_txs_count",
            "Total number of mempool transactions",
            "fee_rate",
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, txid: object) -> bool:
        return txid in self._entries

    def get(self, txid: bytes) -> Entry | None:
        return self._entries.get(txid)

    def filter_by_funding(self, scripthash: ScriptHash) -> list[Entry]:
        """Entries with an output to ``scripthash``, ordered by txid."""
        txids = self._by_funding.get(scripthash, ())
        return [self._entries[txid] for txid in sorted(txids)]

    def filter_by_spending(self, outpoint: OutPoint) -> list[Entry]:
        """Entries spending ``outpoint``, ordered by txid."""
        txids = self._by_spending.get(outpoint, ())
        return [self._entries[txid] for txid in sorted(txids)]

    def apply_sync_update(self, update: MempoolSyncUpdate) -> None:
        for txid in update.removed_entries:
            self._remove_entry(txid)
        for entry in update.new_entries:
            self._add_entry(entry)
        self._update_metrics()
        logger.debug(
            "%d mempool txs: %d added, %d removed",
            len(self._entries),
            len(update.new_entries),
            len(update.removed_entries),
        )

    def sync(self, daemon: Any, exit_flag: Any) -> None:
        """Bring the mempool up to date; failures are logged, not raised."""
        try:
            info = daemon.get_mempool_info()
        except Exception as err:  # noqa: BLE001 - a failed sync is retried later
            logger.warning("mempool sync failed: %s", err)
            return
        loaded = getattr(info, "loaded", None)
        if loaded is not None and not loaded:
            logger.warning("mempool not loaded")
            return
        try:
            update = MempoolSyncUpdate.poll(daemon, set(self._entries), exit_flag)
        except Exception as err:  # noqa: BLE001 - a failed sync is retried later
            logger.warning("mempool sync failed: %s", err)
            return
        self.apply_sync_update(update)

    def _update_metrics(self) -> None:
        for bin_index in reversed(range(FeeHistogram.BINS)):
            lower, upper = FeeHistogram.bin_range(bin_index)
            label = f"[{lower:>20}, {upper:>20})"
            self._vsize_gauge.set(label, float(self.fees.vsize[bin_index]))
            self._count_gauge.set(label, float(self.fees.count[bin_index]))

    def _add_entry(self, entry: Entry) -> None:
        if entry.txid in self._entries:
            raise ValueError(f"duplicate mempool txid: {entry.txid[::-1].hex()}")
        for txin in entry.tx.inputs:
            self._by_spending[txin.previous_output].add(entry.txid)
        for txout in entry.tx.outputs:
            self._by_funding[ScriptHash.from_script(txout.script_pubkey)].add(entry.txid)
        self._modify_fee_histogram(entry.fee, entry.vsize)
        self._entries[entry.txid] = entry

    def _remove_entry(self, txid: bytes) -> None:
        try:
            entry = self._entries.pop(txid)
        except KeyError:
            raise KeyError(f"missing tx from mempool: {txid[::-1].hex()}") from None
        for txin in entry.tx.inputs:
            self._discard(self._by_spending, txin.previous_output, txid)
        for txout in entry.tx.outputs:
            self._discard(self._by_funding, ScriptHash.from_script(txout.script_pubkey), txid)
        self._modify_fee_histogram(entry.fee, -entry.vsize)

    @staticmethod
    def _discard(index: defaultdict[Any, set[bytes]], key: Any, txid: bytes) -> None:
        txids = index.get(key)
        if txids is None:
            return
        txids.discard(txid)
        if not txids:
            del index[key]

    def _modify_fee_histogram(self, fee: int, vsize_change: int) -> None:
        vsize = abs(vsize_change)
        bin_index = FeeHistogram.bin_index(fee, vsize)
        if vsize_change >= 0:
            self.fees.insert(bin_index, vsize)
        else:
            self.fees.remove(bin_index, vsize)
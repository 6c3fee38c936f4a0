from types import SimpleNamespace

import pytest

from electrum_index.encoding import OutPoint, Transaction, TxIn, TxOut
from electrum_index.mempool import Entry, FeeHistogram, Mempool, MempoolSyncUpdate
from electrum_index.metrics import Metrics
from electrum_index.signals import ExitError, ExitFlag
from electrum_index.types import ScriptHash

SCRIPT_A = b"\x51"
SCRIPT_B = b"\x52"


def make_tx(seed: int, script: bytes = SCRIPT_A, prevout: OutPoint | None = None) -> Transaction:
    prevout = prevout or OutPoint(bytes([seed]) * 32, seed)
    return Transaction(
        version=2,
        inputs=(TxIn(prevout),),
        outputs=(TxOut(1000 + seed, script),),
    )


def make_entry(seed, fee=1000, vsize=100, script=SCRIPT_A, prevout=None, unconfirmed=False):
    tx = make_tx(seed, script, prevout)
    return Entry(tx.txid(), tx, fee, vsize, unconfirmed)


class FakeDaemon:
    def __init__(self, txs, infos=None, loaded=True, fail_info=False):
        self.txs = {tx.txid(): tx for tx in txs}
        self.infos = infos or {
            txid: SimpleNamespace(vsize=100, fee=500, depends=[]) for txid in self.txs
        }
        self.loaded = loaded
        self.fail_info = fail_info
        self.entry_calls = []

    def get_mempool_info(self):
        if self.fail_info:
            raise ConnectionError("node unreachable")
        return SimpleNamespace(loaded=self.loaded)

    def get_mempool_txids(self):
        return list(self.txs)

    def get_mempool_entries(self, txids):
        self.entry_calls.append(list(txids))
        return [self.infos.get(txid) for txid in txids]

    def get_mempool_transactions(self, txids):
        return [self.txs.get(txid) for txid in txids]


def test_histogram():
    items = [(20, 10), (10, 10), (60, 10), (30, 10), (70, 10), (50, 10), (40, 10), (80, 10), (1, 100)]
    hist = FeeHistogram()
    for amount, vsize in items:
        hist.insert(FeeHistogram.bin_index(amount, vsize), vsize)
    assert hist.to_json() == [[15, 10], [7, 40], [3, 20], [1, 10], [0, 100]]

    hist.remove(FeeHistogram.bin_index(5, 1), 11)
    assert hist.to_json() == [[15, 10], [7, 29], [3, 20], [1, 10], [0, 100]]

    hist.insert(FeeHistogram.bin_index(13, 1), 80)
    assert hist.to_json() == [[15, 90], [7, 29], [3, 20], [1, 10], [0, 100]]

    hist.insert(FeeHistogram.bin_index(99, 1), 15)
    assert hist.to_json() == [
        [127, 15], [63, 0], [31, 0], [15, 90], [7, 29], [3, 20], [1, 10], [0, 100],
    ]


def test_empty_histogram_serializes_to_empty_list():
    assert FeeHistogram().to_json() == []


@pytest.mark.parametrize(
    "fee, vsize, expected",
    [(0, 1, 64), (1, 1, 63), (3, 1, 62), (4, 1, 61), (2**64 - 1, 1, 0), (99, 100, 64)],
)
def test_bin_index(fee, vsize, expected):
    assert FeeHistogram.bin_index(fee, vsize) == expected


def test_bin_index_zero_vsize_raises():
    with pytest.raises(ZeroDivisionError):
        FeeHistogram.bin_index(10, 0)


@pytest.mark.parametrize(
    "index, expected", [(64, (0, 1)), (63, (1, 2)), (62, (2, 4)), (0, (2**63, 2**64))]
)
def test_bin_range(index, expected):
    assert FeeHistogram.bin_range(index) == expected


def test_remove_saturates_at_zero():
    hist = FeeHistogram()
    hist.insert(63, 5)
    hist.remove(63, 10)
    hist.remove(63, 1)
    assert hist.vsize[63] == 0
    assert hist.count[63] == 0


def test_apply_update_indexes_entries():
    mempool = Mempool(Metrics())
    first = make_entry(1)
    second = make_entry(2)
    other = make_entry(3, script=SCRIPT_B)
    mempool.apply_sync_update(MempoolSyncUpdate([first, second, other], set()))

    assert len(mempool) == 3
    assert mempool.get(first.txid) == first
    funded = mempool.filter_by_funding(ScriptHash.from_script(SCRIPT_A))
    assert [e.txid for e in funded] == sorted([first.txid, second.txid])
    assert mempool.filter_by_funding(ScriptHash.from_script(SCRIPT_B)) == [other]
    assert mempool.filter_by_spending(OutPoint(bytes([2]) * 32, 2)) == [second]
    assert mempool.filter_by_spending(OutPoint(bytes([9]) * 32, 9)) == []


def test_remove_entry_clears_indexes_and_histogram():
    mempool = Mempool(Metrics())
    entry = make_entry(1, fee=1000, vsize=100)
    mempool.apply_sync_update(MempoolSyncUpdate([entry], set()))
    assert mempool.fees.to_json() == [[15, 100], [7, 0], [3, 0], [1, 0], [0, 0]]

    mempool.apply_sync_update(MempoolSyncUpdate([], {entry.txid}))
    assert mempool.get(entry.txid) is None
    assert mempool.filter_by_funding(ScriptHash.from_script(SCRIPT_A)) == []
    assert mempool.filter_by_spending(entry.tx.inputs[0].previous_output) == []
    assert mempool.fees.to_json() == []


def test_duplicate_and_missing_entries_raise():
    mempool = Mempool(Metrics())
    entry = make_entry(1)
    mempool.apply_sync_update(MempoolSyncUpdate([entry], set()))
    with pytest.raises(ValueError):
        mempool.apply_sync_update(MempoolSyncUpdate([entry], set()))
    with pytest.raises(KeyError):
        mempool.apply_sync_update(MempoolSyncUpdate([], {b"\x00" * 32}))


def test_metrics_track_histogram():
    metrics = Metrics()
    mempool = Mempool(metrics)
    mempool.apply_sync_update(MempoolSyncUpdate([make_entry(1, fee=300, vsize=100)], set()))
    label = "[" + "2".rjust(20) + ", " + "4".rjust(20) + ")"
    assert "electrum_index_mempool_txs_vsize" in metrics.render()
    gauge_lines = [line for line in metrics.render().splitlines() if label in line]
    assert any(line.startswith("electrum_index_mempool_txs_vsize") and line.endswith(" 100") for line in gauge_lines)
    assert any(line.startswith("electrum_index_mempool_txs_count") and line.endswith(" 1") for line in gauge_lines)


def test_poll_computes_additions_and_removals():
    tx_new = make_tx(1)
    tx_kept = make_tx(2)
    gone = b"\x77" * 32
    daemon = FakeDaemon([tx_new, tx_kept])
    daemon.infos[tx_new.txid()] = SimpleNamespace(vsize=50, fee=700, depends=["parent"])
    update = MempoolSyncUpdate.poll(daemon, {tx_kept.txid(), gone}, ExitFlag())
    assert update.removed_entries == {gone}
    assert update.new_entries == [Entry(tx_new.txid(), tx_new, 700, 50, True)]


def test_poll_skips_missing_entries():
    tx_a, tx_b = make_tx(1), make_tx(2)
    daemon = FakeDaemon([tx_a, tx_b])
    del daemon.infos[tx_a.txid()]
    update = MempoolSyncUpdate.poll(daemon, set(), ExitFlag())
    assert [e.txid for e in update.new_entries] == [tx_b.txid()]


def test_poll_requests_in_chunks():
    txs = [make_tx(i % 256, prevout=OutPoint(i.to_bytes(32, "big"), 0)) for i in range(1001)]
    daemon = FakeDaemon(txs)
    update = MempoolSyncUpdate.poll(daemon, set(), ExitFlag())
    assert [len(call) for call in daemon.entry_calls] == [1000, 1]
    assert len(update.new_entries) == 1001


def test_poll_length_mismatch_raises():
    daemon = FakeDaemon([make_tx(1)])
    daemon.get_mempool_entries = lambda txids: []
    with pytest.raises(ValueError, match="expected 1"):
        MempoolSyncUpdate.poll(daemon, set(), ExitFlag())


def test_poll_interrupted_by_exit_flag():
    flag = ExitFlag()
    flag.set()
    with pytest.raises(ExitError):
        MempoolSyncUpdate.poll(FakeDaemon([make_tx(1)]), set(), flag)


def test_sync_loads_transactions():
    mempool = Mempool(Metrics())
    tx = make_tx(4)
    mempool.sync(FakeDaemon([tx]), ExitFlag())
    assert mempool.get(tx.txid()).fee == 500
    mempool.sync(FakeDaemon([]), ExitFlag())
    assert len(mempool) == 0


@pytest.mark.parametrize("daemon_kwargs", [{"loaded": False}, {"fail_info": True}])
def test_sync_leaves_state_on_unavailable_mempool(daemon_kwargs):
    mempool = Mempool(Metrics())
    mempool.sync(FakeDaemon([make_tx(1)], **daemon_kwargs), ExitFlag())
    assert len(mempool) == 0


def test_sync_swallows_exit_request():
    mempool = Mempool(Metrics())
    flag = ExitFlag()
    flag.set()
    mempool.sync(FakeDaemon([make_tx(1)]), flag)
    assert len(mempool) == 0
# electrum_index

A pure-Python library with the core pieces of an Electrum protocol server
that follows a Bitcoin node. It uses only the standard library.

Hashes (txids, block hashes, script hashes) are handled as raw 32-byte
values in internal byte order; `encoding.hash_to_hex` and
`encoding.hex_to_hash` convert to and from the byte-reversed hex that is
usually displayed.

## Modules

- `electrum_index.encoding`: consensus encoding. `sha256d`, `hash_to_hex`,
  `hex_to_hash`, `encode_varint`, `ByteReader` (with `read`, `read_u32`,
  `read_u64`, `read_varint`), `OutPoint` (`OutPoint.from_str("<txid>:<vout>")`),
  `TxIn`, `TxOut`, `Transaction` (`parse`, `from_bytes`, `serialize`, `txid`,
  segwit included), `BlockHeader` (`from_bytes`, `serialize`, `block_hash`)
  and `iter_block_transactions(block)`.
- `electrum_index.types`: `ScriptHash` (`from_script`, `from_hex`, `prefix`),
  the 12-byte `HashPrefixRow` (8-byte prefix plus little-endian height) with
  `to_db_row` / `from_db_row`, the 80-byte `HeaderRow`, and the row and scan
  prefix helpers `scripthash_row`, `scripthash_scan_prefix`, `spending_row`,
  `spending_prefix`, `txid_row`, `txid_prefix`.
- `electrum_index.merkle`: `Proof.create(txids, position)` and
  `Proof.to_hex()`.
- `electrum_index.mempool`: `Mempool` (lookup by txid, by funded script hash
  and by spent outpoint), `MempoolSyncUpdate.poll` to compute changes from a
  node, `Entry`, and `FeeHistogram` whose `to_json()` gives the
  `[fee_rate, vsize]` pairs of `mempool.get_fee_histogram`.
- `electrum_index.status`: `ScriptHashStatus` with `sync`, `get_history`,
  `get_balance`, `get_unspent` and the `statushash` property;
  `HistoryEntry`, `Balance`, `UnspentEntry` (each with `to_json`),
  `compute_status_hash`, `filter_block_txs_outputs`,
  `filter_block_txs_inputs`.
- `electrum_index.tracker`: `find_transaction(block, txid)` and
  `lookup_transaction(index, daemon, txid)`.
- `electrum_index.p2p`: `Connection.connect(network, address, metrics, magic)`
  performs the version handshake and then offers `get_new_headers(chain)`,
  `for_blocks(blockhashes, func)` and `new_block_notification()`. Also
  `encode_message`, `RawNetworkMessage` (`decode`, `parse`),
  `build_version_message`, `NewHeader` and `duration_to_seconds`.
- `electrum_index.metrics`: `Metrics` registry with `gauge`,
  `histogram_vec`, `render` (Prometheus text format), `serve(addr)` over HTTP
  and `close`; `Gauge`, `Histogram`, `default_duration_buckets`,
  `default_size_buckets`. Metric names get the prefix `electrum_index_`.
- `electrum_index.signals`: `Signal` (installs handlers for SIGINT, SIGTERM
  and SIGUSR1 unless `install=False`; `trigger`, `wait`), `ExitFlag`
  (`poll`, `set`) and `ExitError`.
- `electrum_index.threads`: `spawn(name, func)` runs a daemon thread and logs
  any exception it raises, with its causes.

## Installation

    pip install .

To run the tests:

    pip install ".[test]"
    pytest

## Examples

Merkle proof for the third transaction of a block:

```python
from electrum_index.merkle import Proof

proof = Proof.create(txids, 2)   # txids: list of raw 32-byte txids
print(proof.position, proof.to_hex())
```

Index row for a script hash at a given height:

```python
from electrum_index.types import ScriptHash, scripthash_row

scripthash = ScriptHash.from_hex(
    "4b3d912c1523ece4615e91bf0d27381ca72169dbf6b1c2ffcc9f92381d4984a3"
)
row = scripthash_row(scripthash, 123456)
print(row.to_db_row().hex())   # a384491d38929fcc40e20100
```

Fee histogram (a transaction paying 20 sat for 10 vbytes, i.e. 2 sat/vB):

```python
from electrum_index.mempool import FeeHistogram

hist = FeeHistogram()
hist.insert(FeeHistogram.bin_index(20, 10), 10)
print(hist.to_json())          # [[3, 10], [1, 0], [0, 0]]
```

## What it does not do

This is a library, not a running server. It has no command-line program, no
Electrum JSON-RPC server for wallets, no database storage for the index rows
it encodes, no block-chain header store and no RPC client for the node.
`ScriptHashStatus.sync`, `Mempool.sync`, `MempoolSyncUpdate.poll` and
`lookup_transaction` take those collaborators (`index`, `chain`, `daemon`,
`cache`) as plain objects with the methods their docstrings name, which the
caller has to supply.
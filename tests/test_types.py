import hashlib
import json

import pytest

from electrum_index.encoding import BlockHeader, OutPoint, hex_to_hash
from electrum_index.types import (
    HashPrefixRow,
    HeaderRow,
    ScriptHash,
    scripthash_row,
    scripthash_scan_prefix,
    spending_prefix,
    spending_row,
    txid_prefix,
    txid_row,
)

_B58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
SCRIPTHASH_HEX = "4b3d912c1523ece4615e91bf0d27381ca72169dbf6b1c2ffcc9f92381d4984a3"


def _p2pkh_script(address: str) -> bytes:
    number = 0
    for char in address:
        number = number * 58 + _B58.index(char)
    pad = len(address) - len(address.lstrip("1"))
    raw = b"\x00" * pad + number.to_bytes((number.bit_length() + 7) // 8, "big")
    payload, checksum = raw[:-4], raw[-4:]
    assert hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] == checksum
    return b"\x76\xa9\x14" + payload[1:] + b"\x88\xac"


def test_scripthash_serde():
    quoted = f'"{SCRIPTHASH_HEX}"'
    scripthash = ScriptHash.from_hex(json.loads(quoted))
    assert f'"{scripthash}"' == quoted
    assert json.dumps(str(scripthash)) == quoted


def test_scripthash_row():
    scripthash = ScriptHash.from_hex(SCRIPTHASH_HEX)
    row1 = scripthash_row(scripthash, 123456)
    db_row = row1.to_db_row()
    assert db_row == bytes.fromhex("a384491d38929fcc40e20100")
    row2 = HashPrefixRow.from_db_row(db_row)
    assert row1 == row2


def test_scripthash():
    script = _p2pkh_script("1KVNjD3AAnQ3gTMqoTKcWFeqSFujq9gTBT")
    scripthash = ScriptHash.from_script(script)
    assert scripthash == ScriptHash.from_hex(
        "00dfb264221d07712a144bda338e89237d1abd2db4086057573895ea2659766a"
    )


def test_txid1_prefix():
    txid = hex_to_hash("d5d27987d2a3dfc724e359870c6644b40e497bdc0589a033220fe15429d88599")
    assert txid_row(txid, 91812).to_db_row() == bytes.fromhex("9985d82954e10f22a4660100")
    assert txid_row(txid, 91842).to_db_row() == bytes.fromhex("9985d82954e10f22c2660100")


def test_txid2_prefix():
    txid = hex_to_hash("e3bf3d07d4b0375638d5f1db5255fe07ba2c4cb067cd81b84ee974b6585fb468")
    assert txid_row(txid, 91722).to_db_row() == bytes.fromhex("68b45f58b674e94e4a660100")
    assert txid_row(txid, 91880).to_db_row() == bytes.fromhex("68b45f58b674e94ee8660100")


@pytest.mark.parametrize(
    "vout, expected",
    [
        (0, [31, 30, 29, 28, 27, 26, 25, 24]),
        (10, [31, 30, 29, 28, 27, 26, 25, 34]),
        (255, [31, 30, 29, 28, 27, 26, 26, 23]),
        (256, [31, 30, 29, 28, 27, 26, 26, 24]),
    ],
)
def test_spending_prefix(vout, expected):
    txid = hex_to_hash("000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f")
    assert spending_prefix(OutPoint(txid, vout)) == bytes(expected)


def test_spending_prefix_wraps():
    outpoint = OutPoint(b"\xff" * 8 + bytes(24), 1)
    assert spending_prefix(outpoint) == bytes(8)


def test_scan_prefixes_match_rows():
    scripthash = ScriptHash.from_hex(SCRIPTHASH_HEX)
    assert scripthash_scan_prefix(scripthash) == scripthash_row(scripthash, 5).prefix
    outpoint = OutPoint(hashlib.sha256(b"tx").digest(), 9)
    assert spending_row(outpoint, 5).prefix == spending_prefix(outpoint)
    assert txid_row(outpoint.txid, 5).prefix == txid_prefix(outpoint.txid)


@pytest.mark.parametrize("height", [-1, 2**32])
def test_invalid_height(height):
    with pytest.raises(ValueError):
        txid_row(bytes(32), height)


def test_from_db_row_wrong_size():
    with pytest.raises(ValueError):
        HashPrefixRow.from_db_row(bytes(11))
    with pytest.raises(ValueError):
        HeaderRow.from_db_row(bytes(79))


def test_header_row_round_trip():
    header = BlockHeader(1, bytes(32), bytes(range(32)), 1000, 0x1D00FFFF, 99)
    row = HeaderRow(header)
    db_row = row.to_db_row()
    assert len(db_row) == 80
    assert HeaderRow.from_db_row(db_row) == row
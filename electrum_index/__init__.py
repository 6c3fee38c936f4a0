"""Library pieces for an Electrum protocol server: encoding, index rows, mempool, status, merkle proofs, p2p and metrics."""

__version__ = "0.10.9"
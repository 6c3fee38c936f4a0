"""Connection to a bitcoin node over the peer-to-peer protocol."""

from __future__ import annotations

import ipaddress
import logging
import queue
import secrets
import socket
import struct
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, BinaryIO

from .encoding import (
    HASH_SIZE,
    HEADER_SIZE,
    BlockHeader,
    ByteReader,
    Transaction,
    encode_varint,
    hash_to_hex,
    sha256d,
)
from .metrics import Histogram, Metrics, default_duration_buckets, default_size_buckets
from .threads import spawn

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 70001
CLIENT_VERSION = "0.1.0"
USER_AGENT = f"/electrum_index:{CLIENT_VERSION}/"

INV_BLOCK = 2
INV_WITNESS_BLOCK = 0x4000_0002

MAGIC_SIZE = 4
COMMAND_SIZE = 12

_ZERO_HASH = bytes(HASH_SIZE)
_UNSPECIFIED_ADDRESS = bytes(10) + b"\xff\xff" + ipaddress.IPv4Address("0.0.0.0").packed

# Marks a queue whose producer has gone away.
_CLOSED = object()
# Sources of the items on a connection's inbound queue.
_PEER = "peer"
_REQUEST = "request"


def duration_to_seconds(duration: timedelta) -> float:
    """A duration in (fractional) seconds."""
    return duration / timedelta(seconds=1)


def encode_message(magic: bytes, command: str, payload: bytes) -> bytes:
    """Frame ``payload`` as a network message: magic, command, length, checksum."""
    magic = bytes(magic)
    if len(magic) != MAGIC_SIZE:
        raise ValueError(f"magic must be {MAGIC_SIZE} bytes, got {len(magic)}")
    name = command.encode("ascii")
    if len(name) > COMMAND_SIZE:
        raise ValueError(f"command too long: {command!r}")
    payload = bytes(payload)
    return b"".join(
        (
            magic,
            name.ljust(COMMAND_SIZE, b"\0"),
            struct.pack("<I", len(payload)),
            sha256d(payload)[:4],
            payload,
        )
    )


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError(f"unexpected end of stream: wanted {size} bytes")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


@dataclass(frozen=True)
class _NetAddress:
    services: int
    address: bytes
    port: int

    def encode(self) -> bytes:
        return struct.pack("<Q", self.services) + self.address + struct.pack(">H", self.port)

    @classmethod
    def decode(cls, reader: ByteReader) -> _NetAddress:
        services = reader.read_u64()
        address = reader.read(16)
        (port,) = struct.unpack(">H", reader.read(2))
        return cls(services, address, port)


@dataclass(frozen=True)
class _VersionMessage:
    version: int
    services: int
    timestamp: int
    receiver: _NetAddress
    sender: _NetAddress
    nonce: int
    user_agent: str
    start_height: int
    relay: bool

    def encode(self) -> bytes:
        agent = self.user_agent.encode()
        return b"".join(
            (
                struct.pack("<iQq", self.version, self.services, self.timestamp),
                self.receiver.encode(),
                self.sender.encode(),
                struct.pack("<Q", self.nonce),
                encode_varint(len(agent)),
                agent,
                struct.pack("<i", self.start_height),
                bytes([int(self.relay)]),
            )
        )

    @classmethod
    def decode(cls, reader: ByteReader) -> _VersionMessage:
        version, services, timestamp = struct.unpack("<iQq", reader.read(20))
        receiver = _NetAddress.decode(reader)
        sender = _NetAddress.decode(reader)
        nonce = reader.read_u64()
        user_agent = reader.read(reader.read_varint()).decode()
        (start_height,) = struct.unpack("<i", reader.read(4))
        relay = bool(reader.read(1)[0]) if len(reader) else False
        return cls(
            version, services, timestamp, receiver, sender, nonce, user_agent, start_height, relay
        )


def build_version_message() -> bytes:
    """Payload of the ``version`` message this client introduces itself with."""
    address = _NetAddress(0, _UNSPECIFIED_ADDRESS, 0)
    return _VersionMessage(
        version=PROTOCOL_VERSION,
        services=0,
        timestamp=int(time.time()),
        receiver=address,
        sender=address,
        nonce=secrets.randbits(64),
        user_agent=USER_AGENT,
        start_height=0,
        relay=False,
    ).encode()


@dataclass(frozen=True)
class RawNetworkMessage:
    """A received message whose payload is not decoded yet."""

    magic: bytes
    cmd: str
    raw: bytes

    @classmethod
    def decode(cls, stream: BinaryIO) -> RawNetworkMessage:
        """Read one message from a binary stream; the checksum is not verified.

        Raises :class:`EOFError` if the stream ends before the message does.
        """
        magic = _read_exact(stream, MAGIC_SIZE)
        cmd = bytes(b for b in _read_exact(stream, COMMAND_SIZE) if b).decode("latin-1")
        (length,) = struct.unpack("<I", _read_exact(stream, 4))
        _read_exact(stream, 4)  # checksum
        return cls(magic, cmd, _read_exact(stream, length))

    def parse(self) -> tuple[str, Any]:
        """Decode the payload into ``(kind, value)``.

        Kinds: ``version`` (a version message), ``verack`` (None), ``inv``
        (a list of ``(type, hash)``), ``ping`` (the nonce), ``headers`` (a
        list of :class:`BlockHeader`), ``block`` (the raw block) and
        ``ignored`` (None) for messages that are not used.
        """
        reader = ByteReader(self.raw)
        match self.cmd:
            case "version":
                return "version", _VersionMessage.decode(reader)
            case "verack":
                return "verack", None
            case "inv":
                count = reader.read_varint()
                return "inv", [(reader.read_u32(), reader.read(HASH_SIZE)) for _ in range(count)]
            case "block":
                return "block", self.raw
            case "headers":
                headers = []
                for _ in range(reader.read_varint()):
                    headers.append(BlockHeader.from_bytes(reader.read(HEADER_SIZE)))
                    for _ in range(reader.read_varint()):
                        Transaction.parse(reader)
                return "headers", headers
            case "ping":
                return "ping", reader.read_u64()
            case "pong" | "addr" | "alert":
                return "ignored", None
            case _:
                raise ValueError(
                    f"unsupported message: command={self.cmd}, payload={self.raw!r}"
                )


@dataclass(frozen=True)
class NewHeader:
    """A block header received from the peer, with the height it would have."""

    header: BlockHeader
    height: int

    @property
    def hash(self) -> bytes:
        return self.header.block_hash()


def _force_put(channel: queue.Queue[Any], item: Any) -> None:
    """Put ``item`` without blocking, dropping the oldest item if full."""
    while True:
        try:
            channel.put_nowait(item)
            return
        except queue.Full:
            try:
                channel.get_nowait()
            except queue.Empty:
                pass


class Connection:
    """A handshaken peer-to-peer connection served by background threads."""

    def __init__(self, sock: socket.socket, magic: bytes, blocks_duration: Histogram) -> None:
        self._sock = sock
        self._magic = magic
        self._blocks_duration = blocks_duration
        self._outgoing: queue.SimpleQueue[tuple[str, bytes] | None] = queue.SimpleQueue()
        self._inbound: queue.SimpleQueue[tuple[str, Any]] = queue.SimpleQueue()
        self._blocks: queue.Queue[Any] = queue.Queue(maxsize=10)
        self._headers: queue.Queue[Any] = queue.Queue(maxsize=1)
        self._new_block: queue.Queue[bool | None] = queue.Queue(maxsize=1)
        self._init: queue.SimpleQueue[bool] = queue.SimpleQueue()

    @classmethod
    def connect(
        cls, network: str, address: tuple[str, int], metrics: Metrics, magic: bytes
    ) -> Connection:
        """Connect to ``address`` and return once the peer acknowledged our version."""
        magic = bytes(magic)
        if len(magic) != MAGIC_SIZE:
            raise ValueError(f"magic must be {MAGIC_SIZE} bytes, got {len(magic)}")
        try:
            sock = socket.create_connection(address)
        except OSError as err:
            raise ConnectionError(f"{network} p2p failed to connect: {address!r}") from err

        send_duration = metrics.histogram_vec(
            "p2p_send_duration",
            "Time spent sending p2p messages (in seconds)",
            "step",
            default_duration_buckets(),
        )
        recv_duration = metrics.histogram_vec(
            "p2p_recv_duration",
            "Time spent receiving p2p messages (in seconds)",
            "step",
            default_duration_buckets(),
        )
        parse_duration = metrics.histogram_vec(
            "p2p_parse_duration",
            "Time spent parsing p2p messages (in seconds)",
            "step",
            default_duration_buckets(),
        )
        recv_size = metrics.histogram_vec(
            "p2p_recv_size",
            "Size of p2p messages read (in bytes)",
            "message",
            default_size_buckets(),
        )
        blocks_duration = metrics.histogram_vec(
            "p2p_blocks_duration",
            "Time spent getting blocks via p2p protocol (in seconds)",
            "step",
            default_duration_buckets(),
        )

        conn = cls(sock, magic, blocks_duration)
        recv_thread = spawn("p2p_recv", partial(conn._recv_loop, recv_duration, recv_size))
        spawn("p2p_send", partial(conn._send_loop, send_duration, recv_thread))
        conn._outgoing.put(("version", build_version_message()))
        spawn("p2p_loop", partial(conn._event_loop, parse_duration))

        if not conn._init.get():
            raise ConnectionError("p2p handshake failed: peer has disconnected")
        return conn

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._inbound.put((_REQUEST, None))

    def _request(self, command: str, payload: bytes) -> None:
        self._inbound.put((_REQUEST, (command, payload)))

    @staticmethod
    def _take(channel: queue.Queue[Any], error: str) -> Any:
        item = channel.get()
        if item is _CLOSED:
            _force_put(channel, _CLOSED)  # keep failing later calls too
            raise ConnectionError(error)
        return item

    def get_new_headers(self, chain: Any) -> list[NewHeader]:
        """Headers following ``chain.locator()``, with their heights (reorgs included).

        ``chain.get_block_height(blockhash)`` gives the height of a known block.
        """
        locator = [bytes(blockhash) for blockhash in chain.locator()]
        payload = b"".join(
            (
                struct.pack("<I", PROTOCOL_VERSION),
                encode_varint(len(locator)),
                *locator,
                _ZERO_HASH,
            )
        )
        self._request("getheaders", payload)
        headers = self._take(self._headers, "failed to get new headers")
        logger.debug("got %d new headers", len(headers))
        if not headers:
            return []
        prev_blockhash = headers[0].prev_blockhash
        last_height = chain.get_block_height(prev_blockhash)
        if last_height is None:
            raise ValueError(f"missing prev_blockhash: {hash_to_hex(prev_blockhash)}")
        return [
            NewHeader(header, height)
            for height, header in enumerate(headers, start=last_height + 1)
        ]

    def for_blocks(
        self, blockhashes: Iterable[bytes], func: Callable[[bytes, bytes], None]
    ) -> None:
        """Fetch the given blocks and call ``func(blockhash, block)`` for each, in order."""
        self._blocks_duration.observe_duration(
            "total", partial(self._for_blocks, blockhashes, func)
        )

    def _for_blocks(
        self, blockhashes: Iterable[bytes], func: Callable[[bytes, bytes], None]
    ) -> None:
        hashes = [bytes(blockhash) for blockhash in blockhashes]
        if not hashes:
            return
        self._blocks_duration.observe_duration("request", partial(self._request_blocks, hashes))
        for blockhash in hashes:
            block = self._blocks_duration.observe_duration(
                "response", partial(self._receive_block, blockhash)
            )
            self._blocks_duration.observe_duration("process", partial(func, blockhash, block))

    def _request_blocks(self, hashes: list[bytes]) -> None:
        logger.debug("loading %d blocks", len(hashes))
        inventory = (struct.pack("<I", INV_WITNESS_BLOCK) + blockhash for blockhash in hashes)
        self._request("getdata", encode_varint(len(hashes)) + b"".join(inventory))

    def _receive_block(self, blockhash: bytes) -> bytes:
        block = self._take(self._blocks, f"failed to get block {hash_to_hex(blockhash)}")
        if len(block) < HEADER_SIZE:
            raise ValueError("core returned invalid blockheader")
        if sha256d(block[:HEADER_SIZE]) != blockhash:
            raise ValueError("got unexpected block")
        return block

    def new_block_notification(self) -> queue.Queue[bool | None]:
        """Queue receiving True when the peer announces a block, None once it disconnects.

        Notifications are best-effort: at most one is kept pending.
        """
        return self._new_block

    def _send_loop(self, duration: Histogram, recv_thread: threading.Thread) -> None:
        try:
            while True:
                item = duration.observe_duration("wait", self._outgoing.get)
                if item is None:
                    logger.debug("closing p2p_send thread: no more messages to send")
                    return
                command, payload = item
                logger.debug("send: %s", command)
                data = encode_message(self._magic, command, payload)
                try:
                    duration.observe_duration("send", partial(self._sock.sendall, data))
                except OSError as err:
                    raise ConnectionError("p2p failed to send") from err
        finally:
            try:
                self._sock.shutdown(socket.SHUT_RD)  # wakes up the receiving thread
            except OSError as err:
                logger.warning("failed to shutdown p2p connection: %s", err)
            recv_thread.join()
            self._sock.close()

    def _recv_loop(self, duration: Histogram, size: Histogram) -> None:
        reader = self._sock.makefile("rb")
        try:
            while True:
                start = time.perf_counter()
                try:
                    message = RawNetworkMessage.decode(reader)
                except EOFError:
                    duration.observe("recv_err", time.perf_counter() - start)
                    logger.debug("closing p2p_recv thread: connection closed")
                    return
                except OSError as err:
                    duration.observe("recv_err", time.perf_counter() - start)
                    raise ConnectionError(f"failed to recv a message from peer: {err}") from err
                duration.observe(f"recv_{message.cmd}", time.perf_counter() - start)
                size.observe(message.cmd, len(message.raw))
                if message.magic != self._magic:
                    raise ValueError(
                        f"unexpected magic {message.magic.hex()} (instead of {self._magic.hex()})"
                    )
                duration.observe_duration("wait", partial(self._inbound.put, (_PEER, message)))
        finally:
            self._inbound.put((_PEER, None))
            reader.close()

    def _event_loop(self, parse_duration: Histogram) -> None:
        try:
            while True:
                source, item = self._inbound.get()
                if source == _REQUEST:
                    if item is None:
                        logger.debug("closing p2p_loop thread: no more requests to handle")
                        return
                    self._outgoing.put(item)
                    continue
                if item is None:
                    logger.debug("closing p2p_loop thread: peer has disconnected")
                    return
                try:
                    kind, value = parse_duration.observe_duration(
                        f"parse_{item.cmd}", item.parse
                    )
                except ValueError as err:
                    raise ValueError(f"failed to parse {err}") from err
                self._dispatch(kind, value)
        finally:
            self._outgoing.put(None)
            _force_put(self._headers, _CLOSED)
            _force_put(self._blocks, _CLOSED)
            self._init.put(False)
            _force_put(self._new_block, None)

    def _dispatch(self, kind: str, value: Any) -> None:
        match kind:
            case "version":
                logger.debug("peer version: %s", value)
                self._outgoing.put(("verack", b""))
            case "inv":
                logger.debug("peer inventory: %d items", len(value))
                if any(inv_type == INV_BLOCK for inv_type, _hash in value):
                    try:
                        self._new_block.put_nowait(True)
                    except queue.Full:
                        pass
            case "ping":
                self._outgoing.put(("pong", struct.pack("<Q", value)))
            case "verack":
                self._init.put(True)
            case "block":
                self._blocks.put(value)
            case "headers":
                self._headers.put(value)
#!/usr/bin/env python3
"""
FNIRSI DPS-150 WebSocket relay

Owns the single USB-serial connection to the power supply and shares it with
any number of WebSocket clients: every frame read from the device is
broadcast to all of them, and every message a client sends is written to the
device unchanged.

Requires: pyserial, pyserial-asyncio-fast, starlette, uvicorn

Run:
    python dps150_relay.py                          # auto-detect 2e3c:5740
    python dps150_relay.py --port 8080
    SERIAL_PORT=/dev/ttyACM0 python dps150_relay.py
"""

import argparse
import asyncio
import functools
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import serial
import serial_asyncio_fast
import uvicorn
from serial.tools import list_ports
from starlette.applications import Starlette
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from dps150_protocol import StreamFramer, log_hexdump

logger = logging.getLogger(__name__)

TARGET_VID = 0x2E3C
TARGET_PID = 0x5740
TARGET_PNP_SUBSTRING = "usb modem"

DEFAULT_BAUD = 115200
READ_CHUNK = 4096
SEND_BUFFER_FRAMES = 64


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    serial_port: Optional[str] = None
    baudrate: int = DEFAULT_BAUD
    log_level: str = "INFO"

    @classmethod
    def from_args(cls, argv=None, environ=None) -> "RelayConfig":
        environ = os.environ if environ is None else environ
        parser = argparse.ArgumentParser(
            prog="dps150-relay",
            description="Share a DPS-150 serial link with WebSocket clients",
        )
        parser.add_argument("--host", default=cls.host, help="bind address (default: %(default)s)")
        parser.add_argument("-p", "--port", type=_tcp_port, default=cls.port,
                            help="HTTP/WebSocket port (default: %(default)s)")
        parser.add_argument("-s", "--serial-port", default=environ.get("SERIAL_PORT"),
                            help="serial device path (default: $SERIAL_PORT or auto-detect)")
        parser.add_argument("-b", "--baud", type=int, default=cls.baudrate,
                            help="serial baud rate (default: %(default)s)")
        parser.add_argument("--log-level", default=cls.log_level,
                            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                            type=str.upper)
        args = parser.parse_args(argv)
        return cls(
            host=args.host,
            port=args.port,
            serial_port=args.serial_port or None,
            baudrate=args.baud,
            log_level=args.log_level,
        )


def _tcp_port(value: str) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port must be 1-65535, got {port}")
    return port


# ---------------------------------------------------------------------------
# Physical link
# ---------------------------------------------------------------------------
def discover_port() -> Optional[str]:
    """Find the DPS-150 by USB VID:PID (or its CDC "USB Modem" name)."""
    ports = list_ports.comports()
    logger.info("Serial: available ports: %s", ", ".join(p.device for p in ports))
    for p in ports:
        if p.vid == TARGET_VID and p.pid == TARGET_PID:
            return p.device
        names = f"{p.description or ''} {p.hwid or ''}".lower()
        if TARGET_PNP_SUBSTRING in names:
            return p.device
    return None


async def open_link(path: str, baudrate: int = DEFAULT_BAUD):
    """Open the serial port as an asyncio (reader, writer) pair, 8N1."""
    reader, writer = await serial_asyncio_fast.open_serial_connection(
        url=path,
        baudrate=baudrate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
    )
    logger.info("Serial: opened %s @%d", path, baudrate)
    return reader, writer


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------
class LogicalClient:
    """One remote subscriber.

    Frames go through a small fixed-size send buffer drained by one task.
    When the buffer is full the client is not ready and new frames are
    skipped for it; nothing beyond the buffer is kept for slow clients.
    """

    def __init__(self, send: Callable[[bytes], Awaitable[None]], name: str = "client",
                 buffer_frames: int = SEND_BUFFER_FRAMES):
        self.name = name
        self._send = send
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=buffer_frames)
        self._sender: Optional[asyncio.Task] = None
        self.closed = False
        self.skipped = 0

    @property
    def ready(self) -> bool:
        return not self.closed and not self._outbox.full()

    def offer(self, frame: bytes) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            self.skipped += 1
            return False
        if self._sender is None:
            self._sender = asyncio.get_running_loop().create_task(self._pump())
        return True

    async def _pump(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self._send(frame)
            except (OSError, RuntimeError, WebSocketDisconnect) as exc:
                logger.info("WebSocket: send to %s failed: %s", self.name, exc)
                self.closed = True
                return
            except Exception:
                logger.exception("WebSocket: unexpected error sending to %s", self.name)
                self.closed = True
                return

    def close(self):
        self.closed = True
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()

    def __repr__(self):
        return f"LogicalClient({self.name!r})"


class RelayBroadcaster:
    """Binds one serial link to many logical clients."""

    def __init__(self, framer: Optional[StreamFramer] = None):
        self._framer = framer or StreamFramer()
        self._clients: set = set()
        self._writer = None
        self.frames_relayed = 0

    @property
    def clients(self) -> frozenset:
        return frozenset(self._clients)

    @property
    def link_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    # -- Membership ----------------------------------------------------------

    def join(self, client: LogicalClient):
        self._clients.add(client)
        logger.info("WebSocket: %s connected (%d total)", client.name, len(self._clients))

    def leave(self, client: LogicalClient) -> bool:
        """Remove a client. Safe to call more than once."""
        client.close()
        if client not in self._clients:
            return False
        self._clients.discard(client)
        logger.info("WebSocket: %s disconnected (%d left)", client.name, len(self._clients))
        return True

    # -- Link → clients ------------------------------------------------------

    def broadcast(self, frame: bytes) -> int:
        """Offer a frame to every client; returns how many accepted it."""
        delivered = 0
        for client in list(self._clients):
            if client.offer(frame):
                delivered += 1
        self.frames_relayed += 1
        return delivered

    def feed(self, chunk: bytes) -> int:
        """Frame a chunk from the link and broadcast each frame in order."""
        count = 0
        for frame in self._framer.feed(chunk):
            log_hexdump(logger, logging.DEBUG, "Serial <=", frame)
            self.broadcast(frame)
            count += 1
        return count

    # -- Clients → link ------------------------------------------------------

    def forward(self, data: bytes) -> bool:
        """Write client bytes to the link verbatim; dropped if there is none."""
        if not self.link_open:
            logger.debug("Serial: no link, dropping %d bytes", len(data))
            return False
        try:
            self._writer.write(data)
        except OSError as exc:
            logger.error("Serial write error: %s", exc)
            return False
        return True

    # -- Link lifecycle ------------------------------------------------------

    def attach(self, writer):
        self._framer.reset()
        self._writer = writer

    def detach(self):
        self._writer = None

    async def run_link(self, reader: asyncio.StreamReader, writer):
        """Read loop for the serial link; returns when the link closes."""
        self.attach(writer)
        logger.info("Serial: starting read loop")
        try:
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    logger.warning("Serial: port closed")
                    break
                self.feed(chunk)
        except OSError as exc:
            logger.error("Serial read error: %s", exc)
        finally:
            self.detach()
            writer.close()
            logger.warning("Serial: connection closed")


# ---------------------------------------------------------------------------
# WebSocket server
# ---------------------------------------------------------------------------
def create_app(broadcaster: RelayBroadcaster, link_opener=None) -> Starlette:
    """Build the ASGI app; ``link_opener`` is awaited at startup for (reader, writer)."""

    @asynccontextmanager
    async def lifespan(app):
        task = None
        if link_opener is not None:
            try:
                reader, writer = await link_opener()
            except OSError as exc:
                logger.error("Serial: failed to open: %s", exc)
            else:
                task = asyncio.create_task(broadcaster.run_link(reader, writer))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def relay_endpoint(websocket: WebSocket):
        await websocket.accept()
        peer = websocket.client
        name = f"{peer.host}:{peer.port}" if peer else "websocket"
        client = LogicalClient(websocket.send_bytes, name=name)
        broadcaster.join(client)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data is None and message.get("text") is not None:
                    data = message["text"].encode("utf-8")
                if not data:
                    logger.warning("WebSocket: unsupported message from %s", name)
                    continue
                log_hexdump(logger, logging.DEBUG, "WebSocket <=", data)
                broadcaster.forward(data)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.leave(client)

    return Starlette(routes=[WebSocketRoute("/ws", relay_endpoint)], lifespan=lifespan)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None):
    config = RelayConfig.from_args(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    path = config.serial_port
    if path:
        logger.info("Serial: using explicit path %s", path)
    else:
        path = discover_port()
        if path is None:
            logger.error("Serial: DPS-150 device not found (vid:pid 2e3c:5740)")
            logger.error("Serial: set SERIAL_PORT or --serial-port to choose the device")
            sys.exit(1)

    broadcaster = RelayBroadcaster()
    app = create_app(broadcaster, functools.partial(open_link, path, config.baudrate))
    logger.info("Starting web server on http://%s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()

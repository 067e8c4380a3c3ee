"""
Python client for the DPS-150 WebSocket relay.

Connects as one logical client, paces outgoing commands through a
``CommandSequencer`` and keeps a ``DeviceState`` up to date from the frames
the relay broadcasts.

Usage::

    async with RelayClient("ws://localhost:8000/ws") as psu:
        await psu.set_voltage(5.0)
        await psu.set_output(True)
        print(psu.state.actual_voltage)
"""

import asyncio
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

import dps150_protocol as proto
from dps150_protocol import log_hexdump, parse_frame
from dps150_sequencer import CMD_DELAY, CommandSequencer, LinkClosedError
from dps150_telemetry import DeviceState, TelemetryInterpreter

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://localhost:8000/ws"
POLL_INTERVAL = 0.5

# Default capabilities before the device reports actual values
DEFAULT_MAX_VOLTAGE = 24.0
DEFAULT_MAX_CURRENT = 5.0

POLLED_REGISTERS = (proto.REG_INPUT_VOLTAGE, proto.REG_OUTPUT_VIP, proto.REG_TEMPERATURE)

# LinkClosedError is itself a ConnectionError
TRANSPORT_ERRORS = (ConnectionError, ConnectionClosed)


async def _cancel(task: asyncio.Task):
    """Cancel a background task and wait for it to finish."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except TRANSPORT_ERRORS as exc:
        logger.warning("%s ended with %s", task.get_name(), exc)


class RelayClient:
    def __init__(self, url: str = DEFAULT_URL, interval: float = CMD_DELAY,
                 poll_interval: float = POLL_INTERVAL):
        self.url = url
        self._interval = interval
        self._poll_interval = poll_interval
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self.sequencer: Optional[CommandSequencer] = None
        self.interpreter = TelemetryInterpreter()

    # -- Properties ----------------------------------------------------------

    @property
    def state(self) -> DeviceState:
        return self.interpreter.state

    @property
    def connected(self) -> bool:
        return self._reader is not None and not self._reader.done()

    @property
    def max_voltage(self) -> float:
        return self.state.full_state.get("max_voltage") or DEFAULT_MAX_VOLTAGE

    @property
    def max_current(self) -> float:
        return self.state.full_state.get("max_current") or DEFAULT_MAX_CURRENT

    # -- Context manager -----------------------------------------------------

    async def __aenter__(self):
        await self.connect()
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # -- Connection lifecycle ------------------------------------------------

    async def connect(self):
        """Open the WebSocket to the relay."""
        ws = await websockets.connect(self.url)
        logger.info("Connected to relay %s", self.url)
        self.attach(ws)

    def attach(self, ws):
        """Bind to an already-open WebSocket; state starts from defaults."""
        self._ws = ws
        self.interpreter = TelemetryInterpreter()
        self.sequencer = CommandSequencer(ws.send, self._interval)
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(ws, self.sequencer))

    async def start(self, poll: bool = True):
        """Open the device session, load the full state, then start polling."""
        await self.send(proto.session_open())
        await asyncio.sleep(0.1)
        await self.send(proto.request_all())
        await asyncio.sleep(0.2)
        for register in (proto.REG_VOLTAGE_SET, proto.REG_CURRENT_SET, proto.REG_OUTPUT_STATE):
            await self.send(proto.request(register))
        await self.poll_once()
        if poll:
            self._poller = asyncio.get_running_loop().create_task(self._poll_loop())

    async def close(self):
        """Stop polling, fail anything still queued and close the socket."""
        poller, self._poller = self._poller, None
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        try:
            if poller is not None:
                await _cancel(poller)
            if self.sequencer is not None:
                await self.sequencer.close()
            if ws is not None:
                await ws.close()
        finally:
            if reader is not None:
                await _cancel(reader)
        logger.info("Disconnected from relay %s", self.url)

    # -- Inbound -------------------------------------------------------------

    async def _read_loop(self, ws, sequencer: CommandSequencer):
        try:
            async for message in ws:
                if isinstance(message, str):
                    logger.debug("Ignoring text message from relay")
                    continue
                self.handle_message(message)
        except ConnectionClosed as exc:
            logger.warning("Relay connection closed: %s", exc)
        # Queued commands can no longer reach the relay
        await sequencer.close()

    def handle_message(self, data: bytes) -> bool:
        """Validate one relayed frame and fold it into the state."""
        log_hexdump(logger, logging.DEBUG, "Relay <=", data)
        frame = parse_frame(data)
        if frame is None:
            return False
        return self.interpreter.apply(frame)

    # -- Outbound ------------------------------------------------------------

    async def send(self, frame: bytes):
        """Queue a frame and wait until it has been transmitted."""
        if self.sequencer is None:
            raise LinkClosedError("Not connected")
        await self.sequencer.submit(frame)

    async def poll_once(self):
        for register in POLLED_REGISTERS:
            await self.send(proto.request(register))

    async def _poll_loop(self):
        while True:
            try:
                await self.poll_once()
            except TRANSPORT_ERRORS as exc:
                logger.warning("Telemetry polling stopped: %s", exc)
                return
            await asyncio.sleep(self._poll_interval)

    async def request_state(self):
        await self.send(proto.request_all())

    async def set_voltage(self, volts: float):
        """Set the voltage setpoint. Validates against device max."""
        if volts < 0 or volts > self.max_voltage:
            raise ValueError(
                f"Voltage {volts:.3f}V out of range [0, {self.max_voltage:.1f}V]"
            )
        await self.send(proto.set_voltage(volts))

    async def set_current(self, amps: float):
        """Set the current limit. Validates against device max."""
        if amps < 0 or amps > self.max_current:
            raise ValueError(
                f"Current {amps:.3f}A out of range [0, {self.max_current:.1f}A]"
            )
        await self.send(proto.set_current(amps))

    async def set_output(self, enabled: bool):
        await self.send(proto.set_output(enabled))

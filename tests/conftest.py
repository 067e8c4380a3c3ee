"""Shared fixtures for DPS-150 relay tests."""

import asyncio
import struct

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dps150_protocol import HEADER_RX, REG_ALL, build_packet


@pytest.fixture
def fake_state_payload():
    """Build a 139-byte payload with known values.

    Values:
        input_voltage=12.0, voltage_setpoint=5.0, current_setpoint=1.0,
        output_voltage=4.99, output_current=0.5, output_power=2.495,
        temperature=35.0, 6 presets all 5V/1A,
        ovp=25.0, ocp=5.5, opp=130.0, otp=80.0, lvp=3.0,
        brightness=128, volume=64, metering=stopped(1),
        ah_counter=0.0, wh_counter=0.0,
        output_on=True, protection_code=2(OCP), mode=CV(1),
        max_voltage=24.0, max_current=5.0,
        ovp_ceiling=25.0, ocp_ceiling=5.5, opp_ceiling=130.0,
        otp_ceiling=80.0, lvp_ceiling=3.0
    """
    d = bytearray(139)
    offset = 0

    def put_float(val):
        nonlocal offset
        struct.pack_into("<f", d, offset, val)
        offset += 4

    # input_voltage through temperature
    put_float(12.0)
    put_float(5.0)
    put_float(1.0)
    put_float(4.99)
    put_float(0.5)
    put_float(2.495)
    put_float(35.0)

    # 6 presets (each voltage + current)
    for _ in range(6):
        put_float(5.0)
        put_float(1.0)

    # protection thresholds
    put_float(25.0)
    put_float(5.5)
    put_float(130.0)
    put_float(80.0)
    put_float(3.0)

    d[96] = 128       # brightness
    d[97] = 64        # volume
    d[98] = 1         # metering stopped
    offset = 99

    put_float(0.0)    # ah_counter
    put_float(0.0)    # wh_counter

    d[107] = 1        # output on
    d[108] = 2        # OCP tripped
    d[109] = 1        # CV mode
    d[110] = 0
    offset = 111

    put_float(24.0)   # max voltage
    put_float(5.0)    # max current

    put_float(25.0)   # ovp ceiling
    put_float(5.5)    # ocp ceiling
    put_float(130.0)  # opp ceiling
    put_float(80.0)   # otp ceiling
    put_float(3.0)    # lvp ceiling

    return bytes(d)


@pytest.fixture
def fake_state_packet(fake_state_payload):
    """Wrap fake_state_payload in a valid F0 A1 FF <len> <payload> <checksum> packet."""
    return build_packet(HEADER_RX, 0xA1, REG_ALL, fake_state_payload)


class FakeWriter:
    """Stands in for the serial StreamWriter."""

    def __init__(self):
        self.written = []
        self.closed = False

    def write(self, data):
        self.written.append(bytes(data))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


class FakeWebSocket:
    """Minimal websockets-style connection: async send, async iteration."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    def drop(self, exc):
        """Simulate the peer vanishing: sends fail and iteration raises exc."""
        self.closed = True
        self._inbox.put_nowait(exc)

    async def send(self, data):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(bytes(data))

    def push(self, message):
        self._inbox.put_nowait(message)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is None:
            raise StopAsyncIteration
        if isinstance(message, BaseException):
            raise message
        return message


@pytest.fixture
def fake_writer():
    return FakeWriter()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


async def settle(rounds: int = 10):
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)

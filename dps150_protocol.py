"""
FNIRSI DPS-150 wire protocol — frame codec and stream framer.

Every frame on the serial link has the same layout::

    header | command | register | length | payload... | checksum

where ``checksum = (register + length + sum(payload)) & 0xFF``. Frames coming
from the device start with 0xF0, which the stream framer also uses as its
delimiter.

No I/O happens here; the relay and the client both build on these helpers.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from types import MappingProxyType
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants — packet structure
# ---------------------------------------------------------------------------
HEADER_TX = 0xF1  # host → device
HEADER_RX = 0xF0  # device → host
SENTINEL = HEADER_RX

MAX_PAYLOAD = 255
FULL_STATE_SIZE = 139


class Direction(IntEnum):
    TO_DEVICE = HEADER_TX
    FROM_DEVICE = HEADER_RX


class Command(IntEnum):
    GET = 0xA1
    BAUD = 0xB0
    SET = 0xB1
    RESTART = 0xC0
    ENABLE = 0xC1  # session open/close


# Readable registers
REG_INPUT_VOLTAGE = 0xC0
REG_VOLTAGE_SET = 0xC1
REG_CURRENT_SET = 0xC2
REG_OUTPUT_VIP = 0xC3  # 3×float32: V, I, P
REG_TEMPERATURE = 0xC4
REG_OUTPUT_STATE = 0xDB
REG_PROTECTION = 0xDC
REG_CVCC_MODE = 0xDD
REG_ALL = 0xFF

# Write-only registers
REG_W_OVP = 0xD1
REG_W_OCP = 0xD2
REG_W_OPP = 0xD3
REG_W_OTP = 0xD4
REG_W_LVP = 0xD5
REG_W_BRIGHTNESS = 0xD6
REG_W_VOLUME = 0xD7
REG_W_METERING = 0xD8

# Preset M1..M6: voltage = 0xC3 + 2*n, current = 0xC3 + 2*n + 1
PRESET_REGS = [(0xC3 + 2 * n, 0xC3 + 2 * n + 1) for n in range(1, 7)]

# Baud table index understood by CMD_BAUD (5 = 115200)
BAUD_RATES = [9600, 19200, 38400, 57600, 115200]

PROTECTION_NAMES = ["OK", "OVP", "OCP", "OPP", "OTP", "LVP"]
MODE_NAMES = ["CC", "CV"]


# ---------------------------------------------------------------------------
# Register catalogue
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RegisterSpec:
    """One addressable device value: what it is called and how it decodes."""

    register: int
    name: str
    kind: str  # "float", "float3", "bool", "enum", "composite"
    width: int
    labels: tuple = ()


REGISTERS = MappingProxyType({
    spec.register: spec
    for spec in (
        RegisterSpec(REG_INPUT_VOLTAGE, "input_voltage", "float", 4),
        RegisterSpec(REG_VOLTAGE_SET, "voltage_setpoint", "float", 4),
        RegisterSpec(REG_CURRENT_SET, "current_limit", "float", 4),
        RegisterSpec(REG_OUTPUT_VIP, "output", "float3", 12),
        RegisterSpec(REG_TEMPERATURE, "internal_temperature", "float", 4),
        RegisterSpec(REG_OUTPUT_STATE, "output_enabled", "bool", 1),
        RegisterSpec(REG_PROTECTION, "protection_status", "enum", 1,
                     tuple(PROTECTION_NAMES)),
        RegisterSpec(REG_CVCC_MODE, "mode", "enum", 1, tuple(MODE_NAMES)),
        RegisterSpec(REG_ALL, "full_state", "composite", FULL_STATE_SIZE),
    )
})


def log_hexdump(log: logging.Logger, level: int, label: str, data: bytes):
    """Log binary data as ``[LABEL] LEN=n HEX=F0 A1 ...``."""
    if not log.isEnabledFor(level):
        return
    log.log(level, "[%s] LEN=%d HEX=%s", label, len(data), " ".join(f"{b:02X}" for b in data))


def label_for(labels, ordinal: int) -> str:
    """Map an enum ordinal to its label.

    Out-of-range ordinals fall back to the first label, so an unknown mode
    byte (2 or more) reads as "CC" and an unknown protection code as "OK".
    """
    if 0 <= ordinal < len(labels):
        return labels[ordinal]
    return labels[0]


# ---------------------------------------------------------------------------
# Packet helpers
# ---------------------------------------------------------------------------
def checksum(register: int, payload: bytes = b"") -> int:
    """Checksum byte shared by the encode and validate paths."""
    return (register + len(payload) + sum(payload)) & 0xFF


def build_packet(header: int, command: int, register: int, data: bytes = b"") -> bytes:
    """Build a wire packet: header | command | register | length | data | checksum."""
    if len(data) > MAX_PAYLOAD:
        raise ValueError(f"Payload of {len(data)} bytes exceeds {MAX_PAYLOAD}")
    return bytes([header, command, register, len(data)]) + data + bytes([checksum(register, data)])


def encode(command: int, register: int, payload: bytes = b"") -> bytes:
    """Encode a host → device command frame."""
    return build_packet(HEADER_TX, command, register, payload)


@dataclass(frozen=True)
class Frame:
    header: int
    command: int
    register: int
    payload: bytes
    checksum: int

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def direction(self) -> Direction:
        return Direction(self.header)


def parse_frame(candidate: bytes) -> Optional[Frame]:
    """Validate a candidate frame and split it into fields.

    Returns None (after logging) when the candidate is too short, carries an
    unknown header, has a size that disagrees with its length byte, or fails
    the checksum.
    """
    if len(candidate) < 5:
        logger.debug("Dropping runt frame (%d bytes)", len(candidate))
        return None
    header, command, register, length = candidate[0], candidate[1], candidate[2], candidate[3]
    if header not in (HEADER_RX, HEADER_TX):
        logger.debug("Dropping frame with header 0x%02X", header)
        return None
    if len(candidate) != 5 + length:
        logger.warning(
            "Dropping frame for register 0x%02X: size %d does not match length %d",
            register, len(candidate), length,
        )
        return None
    payload = bytes(candidate[4:4 + length])
    expected = checksum(register, payload)
    if candidate[-1] != expected:
        logger.warning(
            "Dropping frame for register 0x%02X: checksum 0x%02X != 0x%02X",
            register, candidate[-1], expected,
        )
        return None
    return Frame(header, command, register, payload, expected)


def parse_float(data: bytes, offset: int = 0) -> float:
    """Extract an IEEE 754 LE float32, or 0.0 if the buffer is too short."""
    if offset < 0 or len(data) - offset < 4:
        logger.warning(
            "float32 at offset %d needs 4 bytes, only %d available",
            offset, max(len(data) - offset, 0),
        )
        return 0.0
    return struct.unpack_from("<f", data, offset)[0]


decode_float32 = parse_float


def encode_float(value: float) -> bytes:
    """Encode a float32 as IEEE 754 LE."""
    return struct.pack("<f", value)


# ---------------------------------------------------------------------------
# Full state dump (register 0xFF)
# ---------------------------------------------------------------------------
def decode_composite(payload: bytes) -> Optional[dict]:
    """Decode the DeviceState fields carried by a full state dump.

    All-or-nothing: a payload shorter than 139 bytes yields None.
    """
    if len(payload) < FULL_STATE_SIZE:
        logger.warning("Full state incomplete: %d bytes", len(payload))
        return None
    d = payload
    return {
        "input_voltage": parse_float(d, 0),
        "voltage_setpoint": parse_float(d, 4),
        "current_limit": parse_float(d, 8),
        "actual_voltage": parse_float(d, 12),
        "actual_current": parse_float(d, 16),
        "output_power": parse_float(d, 20),
        "internal_temperature": parse_float(d, 24),
        "output_enabled": d[107] == 1,
        "protection_status": label_for(PROTECTION_NAMES, d[108]),
        "mode": label_for(MODE_NAMES, d[109]),
    }


def decode_full_state(payload: bytes) -> Optional[dict]:
    """Decode every documented field of the 139-byte dump.

    Covers the bytes ``decode_composite`` leaves alone: presets, protection
    thresholds and ceilings, display settings, metering counters and device
    maximums.
    """
    if len(payload) < FULL_STATE_SIZE:
        return None
    d = payload
    prot_code = d[108]
    return {
        "input_voltage": parse_float(d, 0),
        "voltage_setpoint": parse_float(d, 4),
        "current_setpoint": parse_float(d, 8),
        "output_voltage": parse_float(d, 12),
        "output_current": parse_float(d, 16),
        "output_power": parse_float(d, 20),
        "temperature": parse_float(d, 24),
        "presets": [
            {
                "voltage": parse_float(d, 28 + i * 8),
                "current": parse_float(d, 32 + i * 8),
            }
            for i in range(6)
        ],
        "ovp": parse_float(d, 76),
        "ocp": parse_float(d, 80),
        "opp": parse_float(d, 84),
        "otp": parse_float(d, 88),
        "lvp": parse_float(d, 92),
        "brightness": d[96],
        "volume": d[97],
        "metering": "running" if d[98] == 0 else "stopped",
        "ah_counter": parse_float(d, 99),
        "wh_counter": parse_float(d, 103),
        "output_on": bool(d[107]),
        "protection_code": prot_code,
        "protection": label_for(PROTECTION_NAMES, prot_code),
        "mode": label_for(MODE_NAMES, d[109]),
        "max_voltage": parse_float(d, 111),
        "max_current": parse_float(d, 115),
        "ovp_ceiling": parse_float(d, 119),
        "ocp_ceiling": parse_float(d, 123),
        "opp_ceiling": parse_float(d, 127),
        "otp_ceiling": parse_float(d, 131),
        "lvp_ceiling": parse_float(d, 135),
    }


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------
def session_open() -> bytes:
    return encode(Command.ENABLE, 0x00, b"\x01")


def session_close() -> bytes:
    return encode(Command.ENABLE, 0x00, b"\x00")


def set_baud(baudrate: int = 115200) -> bytes:
    """Switch the device UART speed; the wire value is a 1-based table index."""
    if baudrate not in BAUD_RATES:
        raise ValueError(f"Unsupported baud rate {baudrate}")
    return encode(Command.BAUD, 0x00, bytes([BAUD_RATES.index(baudrate) + 1]))


def restart() -> bytes:
    return encode(Command.RESTART, 0x00, b"\x01")


def write_float(register: int, value: float) -> bytes:
    return encode(Command.SET, register, encode_float(value))


def write_byte(register: int, value: int) -> bytes:
    return encode(Command.SET, register, bytes([value & 0xFF]))


def set_voltage(volts: float) -> bytes:
    return write_float(REG_VOLTAGE_SET, volts)


def set_current(amps: float) -> bytes:
    return write_float(REG_CURRENT_SET, amps)


def set_output(enabled: bool) -> bytes:
    return write_byte(REG_OUTPUT_STATE, 1 if enabled else 0)


PROTECTION_REGS = {
    "ovp": REG_W_OVP,
    "ocp": REG_W_OCP,
    "opp": REG_W_OPP,
    "otp": REG_W_OTP,
    "lvp": REG_W_LVP,
}


def set_protection(kind: str, value: float) -> bytes:
    """Set an OVP/OCP/OPP/OTP/LVP threshold (V, A, W, °C, V)."""
    register = PROTECTION_REGS.get(kind.lower())
    if register is None:
        raise ValueError(f"Unknown protection {kind!r}")
    if value < 0:
        raise ValueError(f"{kind.upper()} must be non-negative")
    return write_float(register, value)


def set_brightness(level: int) -> bytes:
    """Set display brightness (0-255)."""
    if not 0 <= level <= 255:
        raise ValueError(f"Brightness must be 0-255, got {level}")
    return write_byte(REG_W_BRIGHTNESS, level)


def set_volume(level: int) -> bytes:
    """Set beep volume level."""
    if not 0 <= level <= 255:
        raise ValueError(f"Volume must be 0-255, got {level}")
    return write_byte(REG_W_VOLUME, level)


def set_metering(enabled: bool) -> bytes:
    """Start or stop the Ah/Wh metering counters."""
    return write_byte(REG_W_METERING, 1 if enabled else 0)


def set_preset(n: int, volts: float, amps: float) -> list[bytes]:
    """Frames that store preset M1-M6 (n=1..6)."""
    if n < 1 or n > 6:
        raise ValueError(f"Preset number must be 1-6, got {n}")
    v_reg, i_reg = PRESET_REGS[n - 1]
    return [write_float(v_reg, volts), write_float(i_reg, amps)]


def request(register: int) -> bytes:
    """GET a single register."""
    return encode(Command.GET, register)


def request_all() -> bytes:
    """GET the full state dump."""
    return encode(Command.GET, REG_ALL, b"\x00")


# ---------------------------------------------------------------------------
# Stream framer
# ---------------------------------------------------------------------------
class StreamFramer:
    """Reassemble 0xF0-delimited frames from a chunked byte stream.

    A frame is emitted once the sentinel that starts the *next* frame has
    arrived, so the most recent frame is held back until more bytes come in.
    Bytes preceding the first sentinel are discarded.
    """

    def __init__(self, sentinel: int = SENTINEL):
        self._sentinel = sentinel
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes held back waiting for the next sentinel."""
        return bytes(self._buffer)

    def reset(self):
        self._buffer.clear()

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Append a chunk and lazily yield each complete candidate frame."""
        self._buffer.extend(chunk)
        return self._drain()

    def _drain(self) -> Iterator[bytes]:
        buf = self._buffer
        start = buf.find(self._sentinel)
        if start == -1:
            # Nothing can ever start before a sentinel.
            buf.clear()
            return
        if start:
            del buf[:start]
        while True:
            end = buf.find(self._sentinel, 1)
            if end == -1:
                return
            frame = bytes(buf[:end])
            del buf[:end]
            yield frame


def extract_frames(chunks: Iterable[bytes], framer: Optional[StreamFramer] = None) -> Iterator[Frame]:
    """Frame a stream of chunks and yield only the frames that validate."""
    framer = framer or StreamFramer()
    for chunk in chunks:
        for candidate in framer.feed(chunk):
            frame = parse_frame(candidate)
            if frame is not None:
                yield frame

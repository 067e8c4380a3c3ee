"""Fold validated DPS-150 frames into a client-side state snapshot."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from dps150_protocol import (
    HEADER_RX,
    MODE_NAMES,
    PROTECTION_NAMES,
    REGISTERS,
    Frame,
    decode_composite,
    decode_full_state,
    label_for,
    parse_float,
)

logger = logging.getLogger(__name__)


@dataclass
class DeviceState:
    """Last known device values as seen by one client connection."""

    output_enabled: bool = False
    voltage_setpoint: float = 0.0
    current_limit: float = 0.0
    actual_voltage: float = 0.0
    actual_current: float = 0.0
    output_power: float = 0.0
    internal_temperature: float = 0.0
    input_voltage: float = 0.0
    mode: str = MODE_NAMES[0]
    protection_status: str = PROTECTION_NAMES[0]

    # Last full dump, kept verbatim, plus its decoded extended fields
    raw_full_state: bytes = b""
    full_state: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        d = asdict(self)
        d.pop("raw_full_state")
        return d


class TelemetryInterpreter:
    """Single writer for a ``DeviceState``.

    Each call to :meth:`apply` performs at most one update: one field for a
    single-value register, or the whole covered set for a full state dump.
    """

    def __init__(self, state: Optional[DeviceState] = None):
        self.state = state or DeviceState()
        self.frames_applied = 0

    def apply(self, frame: Frame) -> bool:
        """Apply one frame. Returns True if the state changed."""
        if frame.header != HEADER_RX or not frame.payload:
            return False
        spec = REGISTERS.get(frame.register)
        if spec is None:
            logger.debug("Ignoring unknown register 0x%02X", frame.register)
            return False
        if len(frame.payload) < spec.width:
            logger.warning(
                "Ignoring short payload for %s: %d < %d bytes",
                spec.name, len(frame.payload), spec.width,
            )
            return False

        updates = self._decode(spec, frame.payload)
        if not updates:
            return False
        for name, value in updates.items():
            setattr(self.state, name, value)
        self.frames_applied += 1
        return True

    @staticmethod
    def _decode(spec, payload: bytes) -> Optional[dict]:
        if spec.kind == "float":
            return {spec.name: parse_float(payload)}
        if spec.kind == "float3":
            return {
                "actual_voltage": parse_float(payload, 0),
                "actual_current": parse_float(payload, 4),
                "output_power": parse_float(payload, 8),
            }
        if spec.kind == "bool":
            return {spec.name: payload[0] == 1}
        if spec.kind == "enum":
            return {spec.name: label_for(spec.labels, payload[0])}
        if spec.kind == "composite":
            updates = decode_composite(payload)
            if updates is None:
                return None
            updates["raw_full_state"] = bytes(payload)
            updates["full_state"] = decode_full_state(payload)
            return updates
        return None

#!/usr/bin/env python3
"""
FNIRSI DPS-150 MCP Server

Exposes a DPS-150 behind the WebSocket relay as MCP tools for LLM-driven
control. The server is just another relay client, so it can run alongside
browser dashboards watching the same supply.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), websockets

Run:
    python dps150_relay.py &                  # share the serial link
    python dps150_mcp.py                      # stdio transport (default)
"""

import json
from typing import Optional

from fastmcp import FastMCP

from dps150_client import DEFAULT_URL, RelayClient

mcp = FastMCP(
    "FNIRSI DPS-150 Power Supply (relay)",
    instructions=(
        "Controls an FNIRSI DPS-150 programmable DC power supply through a "
        "WebSocket relay. Always connect() first, then use other tools. "
        "Voltage and current values are validated against the maximums the "
        "device reports in its full state dump. Telemetry is refreshed in the "
        "background every 500 ms; read_state() returns the latest snapshot."
    ),
)

# One relay connection at a time
_client: Optional[RelayClient] = None


def _require_connection() -> RelayClient:
    if _client is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _client


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


async def connect(url: str = DEFAULT_URL) -> str:
    """Connect to the DPS-150 relay.

    Opens the WebSocket, starts a device session, requests the full state
    dump and begins polling telemetry.

    Args:
        url: Relay WebSocket URL, e.g. "ws://localhost:8000/ws".
    """
    global _client
    if _client is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    client = RelayClient(url)
    await client.connect()
    try:
        await client.start()
    except Exception:
        await client.close()
        raise
    _client = client

    return json.dumps({"status": "connected", "url": url})


async def disconnect() -> str:
    """Disconnect from the relay. The device output is left as it is."""
    global _client
    if _client is None:
        return json.dumps({"status": "already disconnected"})

    client, _client = _client, None
    await client.close()
    return json.dumps({"status": "disconnected"})


async def read_state() -> str:
    """Read the latest known state of the DPS-150.

    Returns output state, setpoints, measured V/I/P, temperature, input
    voltage, CV/CC mode and protection status. When a full state dump has
    been received, its extended fields (presets, thresholds, maximums) are
    included under "full_state".
    """
    client = _require_connection()
    state = client.state.as_dict()

    for key in ["voltage_setpoint", "actual_voltage", "input_voltage", "output_power"]:
        state[key] = _fmt(state[key], 2)
    for key in ["current_limit", "actual_current"]:
        state[key] = _fmt(state[key], 3)
    state["internal_temperature"] = _fmt(state["internal_temperature"], 1)
    state["connected"] = client.connected

    return json.dumps(state)


async def set_voltage(volts: float) -> str:
    """Set the voltage setpoint on the DPS-150.

    Writes register 0xC1. Validated against the device's maximum voltage
    (typically 24V). This only changes the setpoint — it does not enable
    the output.

    Args:
        volts: Desired voltage in volts (0 to max_voltage).
    """
    client = _require_connection()
    await client.set_voltage(volts)
    return json.dumps({"status": "ok", "voltage_setpoint": _fmt(volts, 3)})


async def set_current(amps: float) -> str:
    """Set the current limit on the DPS-150.

    Writes register 0xC2. Validated against the device's maximum current
    (typically 5A).

    Args:
        amps: Desired current limit in amps (0 to max_current).
    """
    client = _require_connection()
    await client.set_current(amps)
    return json.dumps({"status": "ok", "current_setpoint": _fmt(amps, 3)})


async def set_output(volts: float, amps: float) -> str:
    """Set voltage and current, then enable the output.

    Safety: always sets V and A *before* enabling output to prevent
    transient overshoot.

    Args:
        volts: Desired voltage in volts.
        amps: Desired current limit in amps.
    """
    client = _require_connection()
    await client.set_voltage(volts)
    await client.set_current(amps)
    await client.set_output(True)
    return json.dumps({
        "status": "ok",
        "output": "on",
        "voltage_setpoint": _fmt(volts, 3),
        "current_setpoint": _fmt(amps, 3),
    })


async def output_on() -> str:
    """Enable the DPS-150 output (writes 1 to register 0xDB)."""
    client = _require_connection()
    await client.set_output(True)
    return json.dumps({"status": "ok", "output": "on"})


async def output_off() -> str:
    """Disable the DPS-150 output (writes 0 to register 0xDB)."""
    client = _require_connection()
    await client.set_output(False)
    return json.dumps({"status": "ok", "output": "off"})


for _tool in (connect, disconnect, read_state, set_voltage, set_current,
              set_output, output_on, output_off):
    mcp.tool()(_tool)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()

"""RelayClient tests -- runs against a fake WebSocket."""

import asyncio

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from conftest import settle
from dps150_client import RelayClient
from dps150_protocol import (
    REG_ALL,
    build_packet,
    encode_float,
    request,
    request_all,
    session_open,
    set_current,
    set_output,
    set_voltage,
)
from dps150_sequencer import LinkClosedError

INTERVAL = 0.001


def rx(register, payload):
    return build_packet(0xF0, 0xA1, register, payload)


@pytest_asyncio.fixture
async def client(fake_ws):
    c = RelayClient("ws://test/ws", interval=INTERVAL, poll_interval=0.01)
    c.attach(fake_ws)
    yield c
    await c.close()


class TestInbound:

    @pytest.mark.asyncio
    async def test_frames_update_state(self, client, fake_ws):
        fake_ws.push(rx(0xC1, encode_float(12.0)))
        fake_ws.push(rx(0xDB, b"\x01"))
        await settle()
        assert client.state.voltage_setpoint == 12.0
        assert client.state.output_enabled is True

    @pytest.mark.asyncio
    async def test_corrupt_frame_ignored(self, client, fake_ws):
        fake_ws.push(bytes.fromhex("F0 B1 DB 01 01 DC"))
        fake_ws.push("text is ignored")
        await settle()
        assert client.state.output_enabled is False

    @pytest.mark.asyncio
    async def test_full_state_sets_limits(self, client, fake_state_packet):
        assert client.max_voltage == 24.0
        assert client.handle_message(fake_state_packet)
        assert client.state.mode == "CV"
        assert client.max_current == 5.0

    @pytest.mark.asyncio
    async def test_state_is_fresh_per_connection(self, fake_ws):
        from conftest import FakeWebSocket

        c = RelayClient("ws://test/ws", interval=INTERVAL)
        c.attach(fake_ws)
        c.handle_message(rx(0xC1, encode_float(9.0)))
        await c.close()

        c.attach(FakeWebSocket())
        assert c.state.voltage_setpoint == 0.0
        await c.close()


class TestOutbound:

    @pytest.mark.asyncio
    async def test_start_sequence(self, client, fake_ws):
        await client.start(poll=False)
        assert fake_ws.sent == [
            session_open(),
            request_all(),
            request(0xC1),
            request(0xC2),
            request(0xDB),
            request(0xC0),
            request(0xC3),
            request(0xC4),
        ]

    @pytest.mark.asyncio
    async def test_polling_repeats(self, client, fake_ws):
        await client.start(poll=True)
        await asyncio.sleep(0.05)
        polls = [f for f in fake_ws.sent if f == request(0xC3)]
        assert len(polls) >= 2

    @pytest.mark.asyncio
    async def test_controls(self, client, fake_ws):
        await client.set_voltage(5.0)
        await client.set_current(1.0)
        await client.set_output(True)
        assert fake_ws.sent == [set_voltage(5.0), set_current(1.0), set_output(True)]

    @pytest.mark.asyncio
    async def test_range_checks(self, client, fake_ws):
        with pytest.raises(ValueError):
            await client.set_voltage(-1.0)
        with pytest.raises(ValueError):
            await client.set_voltage(25.0)
        with pytest.raises(ValueError):
            await client.set_current(5.1)
        assert fake_ws.sent == []

    @pytest.mark.asyncio
    async def test_request_state(self, client, fake_ws):
        await client.request_state()
        assert fake_ws.sent[-1][2] == REG_ALL

    @pytest.mark.asyncio
    async def test_send_after_close(self, client):
        await client.close()
        with pytest.raises(LinkClosedError):
            await client.set_output(False)

    @pytest.mark.asyncio
    async def test_not_attached(self):
        c = RelayClient()
        with pytest.raises(LinkClosedError):
            await c.set_output(False)


class TestTransportLoss:

    @pytest.mark.asyncio
    async def test_close_after_relay_drops_while_polling(self, client, fake_ws):
        await client.start(poll=True)
        poller = client._poller
        fake_ws.closed = True
        await asyncio.sleep(0.05)

        assert poller.done() and not poller.cancelled()
        assert poller.exception() is None

        await client.close()
        assert client._ws is None
        assert not client.connected
        assert client.sequencer.closed

    @pytest.mark.asyncio
    async def test_queued_commands_fail_when_link_drops(self, client, fake_ws):
        fake_ws.closed = True
        results = await asyncio.gather(
            client.set_output(True),
            client.set_voltage(5.0),
            client.set_current(1.0),
            return_exceptions=True,
        )
        assert isinstance(results[0], ConnectionResetError)
        assert all(isinstance(r, LinkClosedError) for r in results[1:])
        with pytest.raises(LinkClosedError):
            await client.set_output(False)

    @pytest.mark.asyncio
    async def test_relay_close_ends_reader(self, client, fake_ws):
        fake_ws.drop(ConnectionClosedError(None, None))
        await settle()

        assert not client.connected
        assert client.sequencer.closed
        with pytest.raises(LinkClosedError):
            await client.set_output(True)
        await client.close()

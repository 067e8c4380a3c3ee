"""
Outbound command pacing for the DPS-150.

The device's UART input buffer is small; commands sent back-to-back get
dropped. ``CommandSequencer`` funnels every producer into one FIFO queue and
lets a single worker transmit one frame, then wait a fixed delay before the
next.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Inter-command delay
CMD_DELAY = 0.05  # 50 ms

Transmit = Callable[[bytes], Awaitable[None]]


class LinkClosedError(ConnectionError):
    """The link a command was queued for is gone."""


class CommandSequencer:
    """Serialize frames onto a link with a fixed gap between transmissions.

    Usage::

        seq = CommandSequencer(websocket.send)
        await seq.submit(session_open())
        ...
        await seq.close()
    """

    def __init__(self, transmit: Transmit, interval: float = CMD_DELAY):
        self._transmit = transmit
        self._interval = interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, frame: bytes) -> asyncio.Future:
        """Queue a frame without blocking.

        The returned future resolves once this frame has been handed to the
        link, or fails with the transmit error / ``LinkClosedError``.
        """
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        if self._closed:
            done.set_exception(LinkClosedError("Sequencer is closed"))
            return done
        self._queue.put_nowait((frame, done))
        if self._worker is None:
            self._worker = loop.create_task(self._run())
        return done

    async def _run(self):
        while True:
            frame, done = await self._queue.get()
            if done.cancelled():
                continue
            try:
                await self._transmit(frame)
            except asyncio.CancelledError:
                if not done.done():
                    done.set_exception(LinkClosedError("Sequencer closed mid-transmit"))
                raise
            except Exception as exc:
                logger.error("Transmit failed: %s", exc)
                if not done.done():
                    done.set_exception(exc)
                self._closed = True
                self._fail_pending("link closed after transmit failure")
                return
            if not done.done():
                done.set_result(None)
            await asyncio.sleep(self._interval)

    def _fail_pending(self, reason: str):
        dropped = 0
        while True:
            try:
                frame, done = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
            if not done.done():
                done.set_exception(LinkClosedError(reason))
        if dropped:
            logger.warning("Dropped %d queued command(s): %s", dropped, reason)

    async def close(self):
        """Stop the worker and fail every command still waiting."""
        self._closed = True
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._fail_pending("sequencer closed")

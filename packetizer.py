import asyncio
import logging
from typing import Callable, Optional, Tuple

from nal_unit import EncodedUnit, UnitKind
from protocol import Packet, ProtocolError
from stats_manager import StatsManager
from stream_protocol import (
    CONFIG_WRITE_TIMEOUT,
    FRAME_WRITE_ATTEMPTS,
    OUTBOUND_QUEUE_SIZE,
    WRITE_RETRY_INTERVAL,
)
from transport import TransportError

logger = logging.getLogger(__name__)

class Packetizer:
    """
    Outbound stream for one peer: wraps each encoded unit in a length-prefixed
    packet and writes it to the transport from a background task.

    emit() never blocks; it only queues. It must be called on the event loop
    thread. Configuration pairs are queued primary-then-secondary ahead of the
    frames that depend on them, and a cached pair is queued first when the
    stream is opened so a freshly connected receiver can bootstrap.
    """

    def __init__(self, transport, peer: tuple,
                 on_fault: Optional[Callable[[tuple, Exception], None]] = None,
                 initial_config: Optional[Tuple[bytes, bytes]] = None,
                 queue_size: int = OUTBOUND_QUEUE_SIZE,
                 retry_interval: float = WRITE_RETRY_INTERVAL,
                 frame_write_attempts: int = FRAME_WRITE_ATTEMPTS,
                 config_write_timeout: float = CONFIG_WRITE_TIMEOUT):
        self.transport = transport
        self.peer = peer
        self.on_fault = on_fault
        self.queue_size = queue_size
        self.retry_interval = retry_interval
        self.frame_write_attempts = frame_write_attempts
        self.config_write_timeout = config_write_timeout

        # Last complete (primary, secondary) pair queued on this stream
        self.config_pair: Optional[Tuple[bytes, bytes]] = initial_config
        # Primary received from the encoder whose secondary hasn't arrived yet
        self._pending_primary: Optional[bytes] = None

        self.queue: asyncio.Queue = asyncio.Queue()
        self._queued_frames = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None

        if self.config_pair is not None and not self._enqueue_config(*self.config_pair):
            self.config_pair = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self):
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def emit(self, unit: EncodedUnit):
        if self._closed:
            return

        kind = unit.kind
        if kind is UnitKind.CONFIG_PRIMARY:
            self._pending_primary = unit.data
            return

        if kind is UnitKind.CONFIG_SECONDARY:
            primary = self._pending_primary
            if primary is None and self.config_pair is not None:
                primary = self.config_pair[0]
            if primary is None:
                StatsManager().incr("config_out_of_order")
                logger.warning("Secondary configuration without a primary, dropped")
                return
            self._pending_primary = None
            if self._enqueue_config(primary, unit.data):
                self.config_pair = (primary, unit.data)
            else:
                # Frames after this pair couldn't be decoded against the previous one.
                self.config_pair = None
            return

        if self._pending_primary is not None or self.config_pair is None:
            # The receiver couldn't decode this frame.
            StatsManager().incr("frames_dropped_no_config")
            logger.debug(f"No complete configuration yet, dropping {unit!r}")
            return

        if self._queued_frames >= self.queue_size:
            StatsManager().incr("frames_dropped_saturation")
            logger.warning(f"Outbound queue to {self.peer} full, dropping {unit!r}")
            return

        data = self._pack(unit.data)
        if data is not None:
            self._queued_frames += 1
            self.queue.put_nowait((data, False))

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        self._queued_frames = 0

    async def wait_closed(self):
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def drain(self):
        """Waits until every queued packet has been written (or dropped)."""
        await self.queue.join()

    def _enqueue_config(self, primary: bytes, secondary: bytes) -> bool:
        packed = [self._pack(primary), self._pack(secondary)]
        if None in packed:
            return False
        for data in packed:
            self.queue.put_nowait((data, True))
        return True

    def _pack(self, payload: bytes) -> Optional[bytes]:
        try:
            return Packet(payload).pack()
        except ProtocolError as e:
            StatsManager().incr("protocol_violations")
            logger.warning(f"Refusing to send unit to {self.peer}: {e}")
            return None

    async def _run(self):
        try:
            while True:
                data, is_config = await self.queue.get()
                try:
                    if is_config:
                        await self._write_all(data)
                    else:
                        self._queued_frames -= 1
                        await self._write_frame(data)
                finally:
                    self.queue.task_done()
        except TransportError as e:
            self._fault(e)

    async def _write_frame(self, data: bytes):
        """
        Frames may be dropped on saturation, but only before any of their
        bytes reached the transport. A started packet has to be finished or
        the receiver loses packet alignment.
        """
        attempts = 0
        while True:
            written = self._send(data)
            if written > 0:
                break
            attempts += 1
            if attempts >= self.frame_write_attempts:
                StatsManager().incr("frames_dropped_saturation")
                logger.warning(f"Transport to {self.peer} saturated, dropped {len(data)}-byte packet")
                return
            StatsManager().incr("write_retries")
            await asyncio.sleep(self.retry_interval)

        await self._write_all(data, written)

    async def _write_all(self, data: bytes, offset: int = 0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config_write_timeout
        while offset < len(data):
            offset += self._send(data[offset:])
            if offset < len(data):
                if loop.time() >= deadline:
                    raise TransportError(f"Write to {self.peer} stalled at {offset}/{len(data)} bytes")
                StatsManager().incr("write_retries")
                await asyncio.sleep(self.retry_interval)

        StatsManager().incr("packets_sent")

    def _send(self, chunk: bytes) -> int:
        written = self.transport.send(chunk, self.peer)
        if written < 0:
            raise TransportError(f"Transport rejected write to {self.peer}")
        return written

    def _fault(self, exc: Exception):
        if self._closed:
            return
        StatsManager().incr("peer_faults")
        logger.error(f"Outbound stream to {self.peer} failed: {exc}")
        self.close()
        if self.on_fault:
            self.on_fault(self.peer, exc)

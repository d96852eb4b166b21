import asyncio
import logging
from typing import Callable, Optional

from bootstrap import BootstrapStateMachine
from codec import DecodedFrame, Decoder, DecoderError
from nal_unit import EncodedUnit
from stats_manager import StatsManager
from stream_protocol import DECODE_QUEUE_SIZE

logger = logging.getLogger(__name__)

_TEARDOWN = object()

class DecodePipeline:
    """
    Per-peer decode worker.

    Bootstrap transitions (which may invalidate the decoder session) and
    decode submissions go through one queue and one task, so a session is
    never invalidated while a decode on it is in flight. Teardown is queued
    behind the work already submitted; once close() returns no new frame is
    decoded, and the session is invalidated only after the worker has left
    any decode call.
    """

    def __init__(self, decoder: Decoder, on_frame: Optional[Callable[[DecodedFrame], None]] = None,
                 max_backlog: int = DECODE_QUEUE_SIZE):
        self.decoder = decoder
        self.on_frame = on_frame
        self.max_backlog = max_backlog
        self.bootstrap = BootstrapStateMachine(decoder)
        self.queue: asyncio.Queue = asyncio.Queue()
        self._queued_frames = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def submit(self, unit: EncodedUnit) -> bool:
        """
        Queues one reassembled unit. Returns False if it was not accepted.
        Configuration units are always queued; frames are dropped when the
        decoder falls too far behind.
        """
        if self._closed:
            return False

        if not unit.is_config:
            if self._queued_frames >= self.max_backlog:
                StatsManager().incr("frames_dropped_backlog")
                logger.warning(f"Decode backlog full ({self._queued_frames}), dropping {unit!r}")
                return False
            self._queued_frames += 1

        self.queue.put_nowait(unit)
        return True

    def close(self):
        """Stops accepting units and queues session invalidation behind pending work."""
        if self._closed:
            return
        self._closed = True
        self.queue.put_nowait(_TEARDOWN)
        if self._task is None:
            # Worker never started; nothing can be decoding.
            self.bootstrap.reset()

    async def wait_closed(self):
        if self._task is not None:
            await self._task

    async def drain(self):
        """Waits until every queued unit has been processed."""
        await self.queue.join()

    async def _run(self):
        while True:
            item = await self.queue.get()
            try:
                if item is _TEARDOWN:
                    self.bootstrap.reset()
                    return
                if not item.is_config:
                    self._queued_frames -= 1
                if self._closed:
                    continue
                frame_unit = self.bootstrap.admit(item)
                if frame_unit is not None:
                    await self._decode(frame_unit)
            except Exception as e:
                StatsManager().incr("pipeline_errors")
                logger.exception(f"Decode pipeline error: {e}")
            finally:
                self.queue.task_done()

    async def _decode(self, unit: EncodedUnit):
        try:
            frame = await self.decoder.decode(self.bootstrap.session, unit)
        except DecoderError as e:
            # Single frame failures are skipped; the next usable frame recovers.
            StatsManager().incr("decode_errors")
            logger.warning(f"Decode failed for {unit!r}: {e}")
            return

        StatsManager().incr("frames_decoded")
        if self.on_frame:
            self.on_frame(frame)

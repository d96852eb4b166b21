import asyncio
import logging
from typing import Optional

from codec import JpegUnitDecoder, JpegUnitEncoder
from nal_unit import EncodedUnit
from peer_manager import ROLE_HOST, ROLE_VIEWER, PeerBinding, SessionBinder
from stats_manager import StatsManager
from stream_protocol import DEFAULT_FPS, DEFAULT_JPEG_QUALITY, KEYFRAME_INTERVAL
from transport import StreamTransport
from video_player import VideoRenderer

logger = logging.getLogger(__name__)

class StreamNode:
    """
    One end of a stream. The host captures, encodes and sends to the single
    bound viewer; the viewer reassembles, bootstraps and decodes.
    """

    def __init__(self, role: str, host: str = "0.0.0.0", port: int = 0, source=None,
                 quality: int = DEFAULT_JPEG_QUALITY, fps: float = DEFAULT_FPS,
                 keyframe_interval: int = KEYFRAME_INTERVAL, renderer: Optional[VideoRenderer] = None):
        self.role = role
        self.host = host
        self.port = port
        self.fps = fps
        self.source = source
        self.running = False
        self._capture_task: Optional[asyncio.Task] = None
        self._force_keyframe = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.transport = StreamTransport()
        self.encoder = None
        self.decoder = None
        self.renderer = None

        if role == ROLE_HOST:
            if source is None:
                raise ValueError("A host needs a frame source")
            self.encoder = JpegUnitEncoder(quality=quality, keyframe_interval=keyframe_interval,
                                           on_unit_produced=self._on_unit_produced)
            self.binder = SessionBinder(ROLE_HOST, self.transport, on_bound=self._on_bound)
        elif role == ROLE_VIEWER:
            self.decoder = JpegUnitDecoder()
            self.renderer = renderer or VideoRenderer("Peer Stream Viewer")
            self.binder = SessionBinder(ROLE_VIEWER, self.transport, decoder=self.decoder,
                                        on_frame=self.renderer.render)
        else:
            raise ValueError(f"Unknown role {role!r}")

        self.transport.on_bytes_received = self.binder.on_bytes_received
        self.transport.on_peer_state_changed = self.binder.on_peer_state_changed

        StatsManager().set_role(role)
        logger.info(f"Initialized StreamNode as {role}")

    async def start(self, listen: bool = True) -> Optional[int]:
        """
        Starts the node, listening for the peer unless listen is False
        (the node will connect() out instead). Returns the bound port.
        """
        self._loop = asyncio.get_running_loop()
        self.running = True
        if listen:
            self.port = await self.transport.start_server(self.host, self.port)
            logger.info(f"StreamNode started on {self.host}:{self.port}")
        if self.role == ROLE_HOST:
            self._capture_task = asyncio.create_task(self.loop_capture())
        return self.port if listen else None

    async def connect(self, host: str, port: int) -> tuple:
        return await self.transport.connect(host, port)

    async def stop(self):
        self.running = False
        if self._capture_task:
            self._capture_task.cancel()
            try:
                await self._capture_task
            except asyncio.CancelledError:
                pass
        await self.binder.close()
        self.transport.close()
        await self.transport.wait_closed()
        if self.source:
            self.source.close()
        if self.renderer:
            self.renderer.close()

    async def loop_capture(self):
        """
        Capture -> encode off the event loop; produced units come back to the
        loop through call_soon_threadsafe, in order.
        """
        interval = 1.0 / self.fps
        loop = asyncio.get_running_loop()
        while self.running:
            started = loop.time()
            if self.binder.binding is not None:
                frame = await loop.run_in_executor(None, self.source.capture_frame)
                if frame is not None:
                    force, self._force_keyframe = self._force_keyframe, False
                    try:
                        await loop.run_in_executor(None, self.encoder.encode, frame, force)
                    except RuntimeError as e:
                        logger.error(f"Encode failed: {e}")
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    def _on_unit_produced(self, unit: EncodedUnit):
        # Encoder callback, runs on an executor thread.
        self._loop.call_soon_threadsafe(self.binder.emit, unit)

    def _on_bound(self, binding: PeerBinding):
        # Fresh configuration pair for the new peer.
        self._force_keyframe = True

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Set, Tuple

from codec import DecodedFrame, Decoder
from decode_pipeline import DecodePipeline
from nal_unit import EncodedUnit, UnitKind
from packetizer import Packetizer
from stats_manager import StatsManager
from stream_reassembler import StreamReassembler
from transport import PeerState

logger = logging.getLogger(__name__)

ROLE_HOST = "host"      # sends: one outbound stream per bound peer
ROLE_VIEWER = "viewer"  # receives: one reassembler + decoder pipeline per bound peer


class PeerRejectedError(RuntimeError):
    """A second peer tried to connect while another one is bound."""


@dataclass
class PeerBinding:
    peer: tuple
    role: str
    packetizer: Optional[Packetizer] = None
    reassembler: Optional[StreamReassembler] = None
    pipeline: Optional[DecodePipeline] = None
    connected_at: float = field(default_factory=time.time)

    def close(self):
        """
        Outbound stream first, then the receive buffer, then the decoder:
        the pipeline stops accepting frames before its session is invalidated.
        """
        if self.packetizer:
            self.packetizer.close()
        if self.reassembler:
            self.reassembler.reset()
        if self.pipeline:
            self.pipeline.close()

    async def wait_closed(self):
        if self.packetizer:
            await self.packetizer.wait_closed()
        if self.pipeline:
            await self.pipeline.wait_closed()

    def __repr__(self):
        return f"<PeerBinding {self.peer[0]}:{self.peer[1]} ({self.role})>"


class SessionBinder:
    """
    Owns the single active peer binding and reacts to transport events.
    First connected peer wins; later ones are rejected until it disconnects.
    """

    def __init__(self, role: str, transport, decoder: Optional[Decoder] = None,
                 on_frame: Optional[Callable[[DecodedFrame], None]] = None,
                 on_bound: Optional[Callable[[PeerBinding], None]] = None):
        if role not in (ROLE_HOST, ROLE_VIEWER):
            raise ValueError(f"Unknown role {role!r}")
        if role == ROLE_VIEWER and decoder is None:
            raise ValueError("A viewer needs a decoder")

        self.role = role
        self.transport = transport
        self.decoder = decoder
        self.on_frame = on_frame
        self.on_bound = on_bound
        self.binding: Optional[PeerBinding] = None

        # Sender side: configuration survives reconnects so a new peer can bootstrap.
        self._last_config: Optional[Tuple[bytes, bytes]] = None
        self._orphan_primary: Optional[bytes] = None
        self._closing: Set[asyncio.Task] = set()

    # Transport callbacks

    def on_peer_state_changed(self, peer: tuple, state: PeerState):
        if state is PeerState.CONNECTING:
            logger.info(f"Peer {peer} connecting")
        elif state is PeerState.CONNECTED:
            try:
                self.bind(peer)
            except PeerRejectedError as e:
                StatsManager().incr("peers_rejected")
                logger.warning(f"Rejected peer {peer}: {e}")
                self.transport.disconnect(peer)
        elif state is PeerState.DISCONNECTED:
            self.unbind(peer)

    def on_bytes_received(self, peer: tuple, data: bytes):
        binding = self.binding
        if binding is None or binding.peer != peer or binding.reassembler is None:
            logger.debug(f"Ignoring {len(data)} bytes from unbound peer {peer}")
            return

        for unit in binding.reassembler.feed(data):
            binding.pipeline.submit(unit)

    def on_fault(self, peer: tuple, exc: Exception):
        logger.error(f"Peer {peer} faulted: {exc}")
        if self.unbind(peer):
            self.transport.disconnect(peer)

    # Binding lifecycle

    def bind(self, peer: tuple) -> PeerBinding:
        if self.binding is not None:
            raise PeerRejectedError(f"already streaming with {self.binding.peer}, refusing {peer}")

        binding = PeerBinding(peer=peer, role=self.role)
        if self.role == ROLE_HOST:
            binding.packetizer = Packetizer(self.transport, peer, on_fault=self.on_fault,
                                            initial_config=self._last_config)
            binding.packetizer.start()
        else:
            binding.reassembler = StreamReassembler()
            binding.pipeline = DecodePipeline(self.decoder, on_frame=self.on_frame)
            binding.pipeline.start()

        self.binding = binding
        StatsManager().update_peer(peer)
        logger.info(f"Bound {binding}")
        if self.on_bound:
            self.on_bound(binding)
        return binding

    def unbind(self, peer: tuple) -> bool:
        binding = self.binding
        if binding is None or binding.peer != peer:
            logger.debug(f"Peer {peer} is not bound, nothing to tear down")
            return False

        self.binding = None
        if binding.packetizer:
            self._last_config = binding.packetizer.config_pair
        binding.close()
        StatsManager().update_peer(None)
        logger.info(f"Unbound {binding}")

        task = asyncio.ensure_future(binding.wait_closed())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        return True

    # Sender side

    def emit(self, unit: EncodedUnit, peer: Optional[tuple] = None):
        """
        Routes an encoded unit to the bound peer's outbound stream.
        With no peer bound, frames are discarded and configuration is kept
        for the next peer.
        """
        binding = self.binding
        if binding is None or binding.packetizer is None or (peer is not None and peer != binding.peer):
            self._remember_config(unit)
            return
        binding.packetizer.emit(unit)

    def _remember_config(self, unit: EncodedUnit):
        kind = unit.kind
        if kind is UnitKind.CONFIG_PRIMARY:
            self._orphan_primary = unit.data
        elif kind is UnitKind.CONFIG_SECONDARY and self._orphan_primary is not None:
            self._last_config = (self._orphan_primary, unit.data)
            self._orphan_primary = None
        elif kind is UnitKind.FRAME:
            StatsManager().incr("frames_dropped_unbound")
            logger.debug(f"No bound peer, dropping {unit!r}")

    # Shutdown

    async def drain(self):
        """Waits for queued work on the bound peer (tests, graceful stop)."""
        binding = self.binding
        if binding is None:
            return
        if binding.packetizer:
            await binding.packetizer.drain()
        if binding.pipeline:
            await binding.pipeline.drain()

    async def close(self):
        if self.binding is not None:
            self.unbind(self.binding.peer)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

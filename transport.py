import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Optional

from stats_manager import StatsManager
from stream_protocol import READ_CHUNK_SIZE, WRITE_HIGH_WATER

logger = logging.getLogger(__name__)


class PeerState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TransportError(ConnectionError):
    """The outbound stream to a peer cannot accept any more data."""


class StreamTransport:
    def __init__(self,
                 on_bytes_received: Optional[Callable[[tuple, bytes], None]] = None,
                 on_peer_state_changed: Optional[Callable[[tuple, PeerState], None]] = None,
                 write_high_water: int = WRITE_HIGH_WATER):
        """
        Pairwise, ordered byte streams over TCP. A peer is identified by its
        remote (host, port).

        :param on_bytes_received: Callback function (peer, data) -> None
        :param on_peer_state_changed: Callback function (peer, state) -> None
        :param write_high_water: send buffer size beyond which send() accepts no more bytes
        """
        self.server = None
        self.connections: Dict[tuple, asyncio.Transport] = {}
        self.on_bytes_received = on_bytes_received
        self.on_peer_state_changed = on_peer_state_changed
        self.write_high_water = write_high_water

    class _Protocol(asyncio.BufferedProtocol):
        def __init__(self, outer):
            self.outer = outer
            self.peer = None
            self._buffer = bytearray(READ_CHUNK_SIZE)

        def connection_made(self, transport):
            self.peer = tuple(transport.get_extra_info("peername")[:2])
            self.outer._register(self.peer, transport)

        def get_buffer(self, sizehint):
            return self._buffer

        def buffer_updated(self, nbytes):
            data = bytes(self._buffer[:nbytes])
            StatsManager().add_download(nbytes)
            if self.outer.on_bytes_received:
                try:
                    self.outer.on_bytes_received(self.peer, data)
                except Exception as e:
                    logger.exception(f"Error handling {nbytes} bytes from {self.peer}: {e}")

        def eof_received(self):
            logger.info(f"Peer {self.peer} closed its stream")
            return False

        def connection_lost(self, exc):
            self.outer._unregister(self.peer, exc)

    async def start_server(self, host: str, port: int) -> int:
        """
        Listens for incoming streams. Returns the bound port (useful with port 0).
        """
        loop = asyncio.get_running_loop()
        self.server = await loop.create_server(lambda: self._Protocol(self), host, port)
        bound_port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Stream transport listening on {host}:{bound_port}")
        return bound_port

    async def connect(self, host: str, port: int) -> tuple:
        """
        Opens a stream to host:port. Returns the peer identity.
        Raises TransportError if the connection cannot be established.
        """
        self._notify((host, port), PeerState.CONNECTING)
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_connection(lambda: self._Protocol(self), host, port)
        except OSError as e:
            self._notify((host, port), PeerState.DISCONNECTED)
            raise TransportError(f"Cannot connect to {host}:{port}: {e}") from e
        return protocol.peer

    def send(self, data: bytes, peer: tuple) -> int:
        """
        Writes as much of data as the peer's send buffer allows.
        Returns the number of bytes accepted (0 if the buffer is full).
        Raises TransportError if there is no usable stream to peer.
        """
        transport = self.connections.get(peer)
        if transport is None or transport.is_closing():
            raise TransportError(f"No open stream to {peer}")

        room = self.write_high_water - transport.get_write_buffer_size()
        if room <= 0:
            return 0

        chunk = data[:room]
        try:
            transport.write(chunk)
        except (OSError, RuntimeError) as e:
            raise TransportError(f"Write to {peer} failed: {e}") from e

        StatsManager().add_upload(len(chunk))
        return len(chunk)

    def disconnect(self, peer: tuple):
        transport = self.connections.get(peer)
        if transport:
            transport.close()

    def close(self):
        """
        Closes every stream and the listener.
        """
        for transport in list(self.connections.values()):
            transport.close()
        if self.server:
            self.server.close()
            logger.info("Stream transport closed")

    async def wait_closed(self):
        if self.server:
            await self.server.wait_closed()

    def _register(self, peer: tuple, transport: asyncio.Transport):
        self.connections[peer] = transport
        logger.info(f"Stream to {peer} connected")
        self._notify(peer, PeerState.CONNECTED)

    def _unregister(self, peer: tuple, exc: Optional[Exception]):
        if self.connections.pop(peer, None) is None:
            return
        if exc:
            logger.warning(f"Stream to {peer} lost: {exc}")
        else:
            logger.info(f"Stream to {peer} closed")
        self._notify(peer, PeerState.DISCONNECTED)

    def _notify(self, peer: tuple, state: PeerState):
        if self.on_peer_state_changed:
            self.on_peer_state_changed(peer, state)

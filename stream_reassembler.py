import logging
from typing import Iterator

from nal_unit import EncodedUnit
from protocol import HEADER_SIZE, Packet, read_length
from stats_manager import StatsManager
from stream_protocol import MAX_UNIT_SIZE

logger = logging.getLogger(__name__)

class StreamReassembler:
    """
    Rebuilds length-prefixed units from an ordered byte stream that arrives
    in arbitrary chunks.

    Bytes are only appended at the tail and only removed as a complete
    packet prefix, so a partial packet simply waits for the next feed().
    One reader context per stream; no locking.
    """

    def __init__(self, max_unit_size: int = MAX_UNIT_SIZE):
        self.max_unit_size = max_unit_size
        self.buffer = bytearray()
        # Bytes of an oversize packet that are still on the wire and must be discarded
        self._skip_remaining = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a complete packet."""
        return len(self.buffer)

    def feed(self, data: bytes) -> Iterator[EncodedUnit]:
        """
        Appends data to the receive buffer and returns a lazy iterator over
        every unit that is now complete, in the order the packets were written.

        The bytes are buffered immediately; units not consumed from the
        iterator stay in the buffer and are yielded by the next feed().
        """
        self._append(data)
        return self._extract()

    def reset(self):
        self.buffer.clear()
        self._skip_remaining = 0

    def _append(self, data: bytes):
        if self._skip_remaining:
            dropped = min(self._skip_remaining, len(data))
            self._skip_remaining -= dropped
            data = data[dropped:]
        if data:
            self.buffer.extend(data)

    def _extract(self) -> Iterator[EncodedUnit]:
        while not self._skip_remaining:
            length = read_length(self.buffer)
            if length is None:
                return

            if length == 0:
                # Nothing to yield; step over the length field only.
                del self.buffer[:HEADER_SIZE]
                StatsManager().incr("protocol_violations")
                logger.warning("Protocol violation: zero-length packet, skipping 4 header bytes")
                continue

            if length > self.max_unit_size:
                self._discard_oversize(length)
                continue

            if len(self.buffer) < HEADER_SIZE + length:
                # Partial packet, wait for more data.
                return

            packet, consumed = Packet.unpack(self.buffer, self.max_unit_size)
            del self.buffer[:consumed]
            StatsManager().incr("units_reassembled")
            yield EncodedUnit(packet.payload)

    def _discard_oversize(self, length: int):
        del self.buffer[:HEADER_SIZE]
        available = min(length, len(self.buffer))
        del self.buffer[:available]
        self._skip_remaining = length - available

        StatsManager().incr("protocol_violations")
        StatsManager().incr("oversize_units")
        logger.warning(f"Protocol violation: {length}-byte unit exceeds limit {self.max_unit_size}, dropped")

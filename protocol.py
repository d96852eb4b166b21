import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from stream_protocol import LENGTH_PREFIX_FORMAT, LENGTH_PREFIX_SIZE, MAX_UNIT_SIZE

# Packet format:
# length (I), payload (length bytes)
# ! = Network byte order (big-endian)
# I = unsigned int (4 bytes)
HEADER_FORMAT = LENGTH_PREFIX_FORMAT
HEADER_SIZE = LENGTH_PREFIX_SIZE


class ProtocolError(ValueError):
    """A packet that can never become a valid unit (zero length, oversize)."""


@dataclass(frozen=True)
class Packet:
    payload: bytes

    def pack(self) -> bytes:
        """
        Serializes the packet into bytes.
        Raises ProtocolError for an empty or oversize payload.
        """
        check_length(len(self.payload))
        return struct.pack(HEADER_FORMAT, len(self.payload)) + self.payload

    @classmethod
    def unpack(cls, data: bytes, max_size: int = MAX_UNIT_SIZE) -> Tuple['Packet', int]:
        """
        Deserializes the first packet found at the start of data.
        Returns (packet, bytes_consumed).
        Raises ValueError if data is too short, ProtocolError if the length is invalid.
        """
        length = read_length(data)
        if length is None:
            raise ValueError(f"Data too short for header. Expected at least {HEADER_SIZE}, got {len(data)}")

        check_length(length, max_size)

        if len(data) < HEADER_SIZE + length:
            raise ValueError(f"Data too short for payload. Expected {HEADER_SIZE + length}, got {len(data)}")

        payload = bytes(data[HEADER_SIZE:HEADER_SIZE + length])
        return cls(payload=payload), HEADER_SIZE + length


def read_length(data) -> Optional[int]:
    """Length field of the packet at the start of data, or None if fewer than 4 bytes."""
    if len(data) < HEADER_SIZE:
        return None
    (length,) = struct.unpack_from(HEADER_FORMAT, data, 0)
    return length


def check_length(length: int, max_size: int = MAX_UNIT_SIZE):
    if length == 0:
        raise ProtocolError("Zero-length payload")
    if length > max_size:
        raise ProtocolError(f"Payload length {length} exceeds limit {max_size}")

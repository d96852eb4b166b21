"""
Encoder / decoder boundary.

The framing layer only needs the Decoder contract (create, decode,
invalidate) and the Encoder's on_unit_produced callback. JpegUnitEncoder and
JpegUnitDecoder implement both with OpenCV so a host and a viewer can run
end to end; they emit the same unit vocabulary as an H.264 encoder
(SPS-style primary config, PPS-style secondary config, IDR / non-IDR frames).
"""
import asyncio
import itertools
import logging
import struct
import time
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import cv2
import numpy as np

from nal_unit import EncodedUnit
from stream_protocol import (
    DEFAULT_JPEG_QUALITY,
    KEYFRAME_INTERVAL,
    MARKER_DELTA_FRAME,
    MARKER_KEY_FRAME,
    MARKER_PRIMARY,
    MARKER_SECONDARY,
)

logger = logging.getLogger(__name__)

# Primary config body: width (H), height (H), channels (B)
PRIMARY_FORMAT = "!HHB"
# Secondary config body: jpeg quality (B)
SECONDARY_FORMAT = "!B"


class DecoderError(RuntimeError):
    """The decoder rejected a configuration set or a frame."""


@dataclass
class DecoderSessionHandle:
    session_id: int
    width: int
    height: int
    channels: int
    valid: bool = True


@dataclass
class DecodedFrame:
    image: np.ndarray
    session_id: int
    sequence: int
    timestamp: float = field(default_factory=time.time)

    @property
    def shape(self):
        return self.image.shape


class Decoder(metaclass=ABCMeta):
    @abstractmethod
    def create(self, config_set) -> DecoderSessionHandle:
        """Build a session from a complete ConfigurationSet. Raises DecoderError."""

    @abstractmethod
    async def decode(self, handle: DecoderSessionHandle, unit: EncodedUnit) -> DecodedFrame:
        """Decode one frame unit. Raises DecoderError."""

    @abstractmethod
    def invalidate(self, handle: DecoderSessionHandle):
        """Release the session. The handle must not be used afterwards."""


class Encoder(metaclass=ABCMeta):
    def __init__(self, on_unit_produced: Optional[Callable[[EncodedUnit], None]] = None):
        """
        :param on_unit_produced: Callback function (unit) -> None, called once per unit
        """
        self.on_unit_produced = on_unit_produced

    @abstractmethod
    def encode(self, image: np.ndarray, force_keyframe: bool = False) -> List[EncodedUnit]:
        pass

    def _produce(self, data: bytes) -> EncodedUnit:
        unit = EncodedUnit(data)
        if self.on_unit_produced:
            self.on_unit_produced(unit)
        return unit


class JpegUnitEncoder(Encoder):
    def __init__(self, quality: int = DEFAULT_JPEG_QUALITY, keyframe_interval: int = KEYFRAME_INTERVAL,
                 on_unit_produced: Optional[Callable[[EncodedUnit], None]] = None):
        super().__init__(on_unit_produced)
        if not 1 <= quality <= 100:
            raise ValueError(f"JPEG quality must be 1..100, got {quality}")
        self.quality = quality
        self.keyframe_interval = max(1, keyframe_interval)
        self.frame_count = 0
        self._format = None

    def encode(self, image: np.ndarray, force_keyframe: bool = False) -> List[EncodedUnit]:
        """
        Compresses one image. Emits a fresh configuration pair ahead of every
        key frame (first frame, size change, every keyframe_interval frames).
        """
        height, width = image.shape[:2]
        channels = image.shape[2] if image.ndim == 3 else 1
        fmt = (width, height, channels)

        is_key = force_keyframe or fmt != self._format or self.frame_count % self.keyframe_interval == 0
        if fmt != self._format:
            logger.info(f"Encoder format {width}x{height}x{channels}")
            self._format = fmt

        retval, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), self.quality])
        if not retval:
            raise RuntimeError("Failed to encode frame to JPEG")

        units = []
        if is_key:
            units.append(self._produce(bytes([MARKER_PRIMARY[0]]) + struct.pack(PRIMARY_FORMAT, *fmt)))
            units.append(self._produce(bytes([MARKER_SECONDARY[0]]) + struct.pack(SECONDARY_FORMAT, self.quality)))

        marker = MARKER_KEY_FRAME if is_key else MARKER_DELTA_FRAME
        units.append(self._produce(bytes([marker]) + buffer.tobytes()))
        self.frame_count += 1
        return units


class JpegUnitDecoder(Decoder):
    _ids = itertools.count(1)

    def __init__(self):
        self._sequence = 0

    def create(self, config_set) -> DecoderSessionHandle:
        primary, secondary = config_set.primary, config_set.secondary
        if primary is None or secondary is None:
            raise DecoderError("Configuration set is incomplete")

        try:
            width, height, channels = struct.unpack(PRIMARY_FORMAT, primary[1:])
            (quality,) = struct.unpack(SECONDARY_FORMAT, secondary[1:])
        except struct.error as e:
            raise DecoderError(f"Malformed configuration: {e}") from e

        if width == 0 or height == 0 or channels not in (1, 3):
            raise DecoderError(f"Unsupported format {width}x{height}x{channels}")

        handle = DecoderSessionHandle(next(self._ids), width, height, channels)
        logger.info(f"Decoder session {handle.session_id} created for {width}x{height}x{channels} (q={quality})")
        return handle

    async def decode(self, handle: DecoderSessionHandle, unit: EncodedUnit) -> DecodedFrame:
        if not handle.valid:
            raise DecoderError(f"Session {handle.session_id} has been invalidated")

        data = unit.data
        if not data or data[0] not in (MARKER_KEY_FRAME, MARKER_DELTA_FRAME):
            raise DecoderError(f"Unsupported frame marker in {unit!r}")

        loop = asyncio.get_running_loop()
        img = await loop.run_in_executor(None, self._decode_jpeg, data[1:], handle.channels)

        if img is None:
            raise DecoderError("Failed to decode JPEG frame")
        if img.shape[0] != handle.height or img.shape[1] != handle.width:
            raise DecoderError(f"Frame {img.shape[1]}x{img.shape[0]} does not match session "
                               f"{handle.width}x{handle.height}")

        self._sequence += 1
        return DecodedFrame(image=img, session_id=handle.session_id, sequence=self._sequence)

    def invalidate(self, handle: DecoderSessionHandle):
        if handle.valid:
            handle.valid = False
            logger.info(f"Decoder session {handle.session_id} invalidated")

    @staticmethod
    def _decode_jpeg(jpeg_data: bytes, channels: int) -> Optional[np.ndarray]:
        if not jpeg_data:
            return None
        np_arr = np.frombuffer(jpeg_data, np.uint8)
        flag = cv2.IMREAD_GRAYSCALE if channels == 1 else cv2.IMREAD_COLOR
        try:
            return cv2.imdecode(np_arr, flag)
        except cv2.error as e:
            logger.debug(f"imdecode error: {e}")
            return None

# stream_protocol.py
import struct

# Wire format: LEN (4 bytes, big-endian, unsigned) || PAYLOAD (LEN bytes)
LENGTH_PREFIX_FORMAT = "!I"
LENGTH_PREFIX_SIZE = struct.calcsize(LENGTH_PREFIX_FORMAT)

# Upper bound for one payload. Anything larger is treated as stream garbage.
MAX_UNIT_SIZE = 8 * 1024 * 1024

# Leading marker bytes (H.264 NAL header: forbidden bit, nal_ref_idc, nal_unit_type)
MARKER_PRIMARY = (0x67, 0x27)     # SPS with and without the reference bits
MARKER_SECONDARY = (0x68, 0x28)   # PPS with and without the reference bits
MARKER_KEY_FRAME = 0x65           # IDR slice
MARKER_DELTA_FRAME = 0x41         # non-IDR slice

# Sender side
OUTBOUND_QUEUE_SIZE = 32          # units waiting for the writer task
WRITE_RETRY_INTERVAL = 0.005      # seconds between attempts when the transport is full
FRAME_WRITE_ATTEMPTS = 20         # a frame that still can't start writing is dropped
CONFIG_WRITE_TIMEOUT = 2.0        # config / half-written packets may block this long
WRITE_HIGH_WATER = 256 * 1024     # transport send buffer cap, bytes

# Receiver side
READ_CHUNK_SIZE = 16 * 1024
DECODE_QUEUE_SIZE = 64

# Runtime defaults
DEFAULT_PORT = 9300
DEFAULT_DASHBOARD_PORT = 8888
KEYFRAME_INTERVAL = 30
DEFAULT_JPEG_QUALITY = 60
CAPTURE_WIDTH = 640
CAPTURE_HEIGHT = 480
DEFAULT_FPS = 20

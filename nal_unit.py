from dataclasses import dataclass
from enum import Enum

from stream_protocol import MARKER_PRIMARY, MARKER_SECONDARY


class UnitKind(Enum):
    CONFIG_PRIMARY = "config_primary"
    CONFIG_SECONDARY = "config_secondary"
    FRAME = "frame"


# Only the marker byte is inspected. Anything unrecognised is a frame; the
# decoder decides whether it is actually valid.
_MARKER_KINDS = {marker: UnitKind.CONFIG_PRIMARY for marker in MARKER_PRIMARY}
_MARKER_KINDS.update({marker: UnitKind.CONFIG_SECONDARY for marker in MARKER_SECONDARY})


def classify_marker(marker: int) -> UnitKind:
    return _MARKER_KINDS.get(marker, UnitKind.FRAME)


def classify(data: bytes) -> UnitKind:
    if not data:
        return UnitKind.FRAME
    return classify_marker(data[0])


@dataclass(frozen=True)
class EncodedUnit:
    """One access unit as produced by the encoder."""
    data: bytes

    @property
    def kind(self) -> UnitKind:
        return classify(self.data)

    @property
    def is_config(self) -> bool:
        return self.kind is not UnitKind.FRAME

    def __len__(self):
        return len(self.data)

    def __repr__(self):
        return f"<EncodedUnit {self.kind.name} {len(self.data)}B>"

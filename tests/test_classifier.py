import pytest

import fakes  # noqa: F401  (puts the repo root on sys.path)
from nal_unit import EncodedUnit, UnitKind, classify, classify_marker


@pytest.mark.parametrize("marker", [0x67, 0x27])
def test_primary_markers(marker):
    assert classify_marker(marker) is UnitKind.CONFIG_PRIMARY


@pytest.mark.parametrize("marker", [0x68, 0x28])
def test_secondary_markers(marker):
    assert classify_marker(marker) is UnitKind.CONFIG_SECONDARY


@pytest.mark.parametrize("marker", [0x65, 0x41, 0x01, 0x06, 0x07, 0x47, 0x00, 0xFF])
def test_everything_else_is_a_frame(marker):
    assert classify_marker(marker) is UnitKind.FRAME


def test_only_the_first_byte_matters():
    assert classify(b"\x67" + b"\x68" * 10) is UnitKind.CONFIG_PRIMARY
    assert classify(b"\x41\x67") is UnitKind.FRAME
    assert classify(b"") is UnitKind.FRAME


def test_encoded_unit_kind():
    assert EncodedUnit(b"\x27abc").kind is UnitKind.CONFIG_PRIMARY
    assert EncodedUnit(b"\x28abc").is_config
    assert not EncodedUnit(b"\x65abc").is_config
    assert len(EncodedUnit(b"\x65abc")) == 4


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))

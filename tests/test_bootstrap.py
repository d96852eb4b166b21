import pytest

from fakes import FakeDecoder, fresh_stats, frame, primary, secondary
from bootstrap import BootstrapState, BootstrapStateMachine, ConfigurationSet


def feed(machine, *units):
    return [machine.admit(u) for u in units]


def test_frames_are_gated_until_configuration_completes():
    stats = fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)
    f1, f2 = frame(b"f1"), frame(b"f2")

    assert feed(machine, f1) == [None]
    assert feed(machine, primary()) == [None]
    assert machine.state is BootstrapState.AWAITING_SECONDARY
    assert feed(machine, f2) == [None]
    assert stats.count("dropped_not_ready") == 2

    feed(machine, secondary())
    assert machine.state is BootstrapState.READY
    assert machine.session is decoder.created[0]
    assert feed(machine, f1, f2) == [f1, f2]


def test_configuration_set_is_passed_to_decoder():
    fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)
    feed(machine, primary(b"A"), secondary(b"B"))

    config = decoder.configs[0]
    assert config.complete
    assert config.primary == primary(b"A").data
    assert config.secondary == secondary(b"B").data


def test_changed_primary_renegotiates_once():
    stats = fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)

    feed(machine, primary(b"A"), secondary(b"B"))
    feed(machine, primary(b"A2"))
    assert machine.state is BootstrapState.AWAITING_SECONDARY
    assert machine.session is None
    assert feed(machine, frame(b"late")) == [None]

    feed(machine, secondary(b"B"))
    assert machine.state is BootstrapState.READY
    assert decoder.invalidated == [1]
    assert decoder.events == [("create", 1), ("invalidate", 1), ("create", 2)]
    assert stats.count("renegotiations") == 1
    assert decoder.configs[1].primary == primary(b"A2").data


def test_identical_configuration_does_not_rebuild_session():
    stats = fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)

    feed(machine, primary(), secondary(), frame(), primary(), secondary(), frame())
    assert len(decoder.created) == 1
    assert decoder.invalidated == []
    assert machine.state is BootstrapState.READY
    assert stats.count("config_repeated") == 2


def test_changed_secondary_keeps_latest_primary():
    fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)

    feed(machine, primary(b"A"), secondary(b"B"), primary(b"A"), secondary(b"B2"))
    assert machine.state is BootstrapState.READY
    assert decoder.events == [("create", 1), ("invalidate", 1), ("create", 2)]
    assert decoder.configs[1] == ConfigurationSet(primary(b"A").data, secondary(b"B2").data)


def test_secondary_without_primary_is_dropped():
    stats = fresh_stats()
    machine = BootstrapStateMachine(FakeDecoder())

    feed(machine, secondary())
    assert machine.state is BootstrapState.AWAITING_PRIMARY
    assert stats.count("config_out_of_order") == 1


def test_newer_primary_replaces_pending_one():
    fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)

    feed(machine, primary(b"old"), primary(b"new"), secondary())
    assert decoder.configs[0].primary == primary(b"new").data


def test_rejected_configuration_rearms_on_next_pair():
    stats = fresh_stats()
    decoder = FakeDecoder(fail_create=True)
    machine = BootstrapStateMachine(decoder)

    feed(machine, primary(), secondary())
    assert machine.state is BootstrapState.AWAITING_PRIMARY
    assert machine.session is None
    assert stats.count("config_rejected") == 1
    assert feed(machine, frame()) == [None]

    decoder.fail_create = False
    feed(machine, primary(), secondary())
    assert machine.ready


def test_reset_invalidates_session():
    fresh_stats()
    decoder = FakeDecoder()
    machine = BootstrapStateMachine(decoder)
    feed(machine, primary(), secondary())

    machine.reset()
    assert decoder.invalidated == [1]
    assert machine.state is BootstrapState.AWAITING_PRIMARY
    assert machine.config == ConfigurationSet()

    machine.reset()
    assert decoder.invalidated == [1]


def test_complete_configuration_set_is_immutable():
    config = ConfigurationSet(b"\x67a").with_secondary(b"\x68b")
    assert config.complete
    with pytest.raises(ValueError):
        config.with_secondary(b"\x68c")


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))

import asyncio

import pytest

from fakes import PEER_A, FakeTransport, fresh_stats, frame, primary, secondary, wire
from packetizer import Packetizer
from stream_protocol import MAX_UNIT_SIZE
from stream_reassembler import StreamReassembler


def decoded_wire(transport, peer=PEER_A):
    return [u.data for u in StreamReassembler().feed(transport.written(peer))]


def test_configuration_precedes_frames():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, retry_interval=0)
        p.start()

        p.emit(frame(b"early"))
        p.emit(primary())
        p.emit(frame(b"half-configured"))
        p.emit(secondary())
        p.emit(frame(b"f1"))
        p.emit(frame(b"f2"))
        await p.drain()
        p.close()

        assert decoded_wire(transport) == [primary().data, secondary().data, frame(b"f1").data, frame(b"f2").data]
        assert stats.count("frames_dropped_no_config") == 2
        assert stats.count("packets_sent") == 4

    asyncio.run(scenario())


def test_cached_configuration_is_replayed_first_on_start():
    async def scenario():
        fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, initial_config=(primary().data, secondary().data))
        p.emit(frame(b"f1"))
        p.start()
        await p.drain()

        assert transport.written(PEER_A).startswith(wire(primary(), secondary()))
        assert decoded_wire(transport)[2:] == [frame(b"f1").data]

    asyncio.run(scenario())


def test_secondary_refresh_reuses_cached_primary():
    async def scenario():
        fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, retry_interval=0)
        p.start()
        for unit in (primary(), secondary(), frame(b"f1"), secondary(b"pps2"), frame(b"f2")):
            p.emit(unit)
        await p.drain()

        assert decoded_wire(transport) == [
            primary().data, secondary().data, frame(b"f1").data,
            primary().data, secondary(b"pps2").data, frame(b"f2").data,
        ]
        assert p.config_pair == (primary().data, secondary(b"pps2").data)

    asyncio.run(scenario())


def test_partial_writes_are_completed():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport(limits=[3, 0, 2, 1, 0, 0, 5])
        p = Packetizer(transport, PEER_A, retry_interval=0)
        p.start()
        units = [primary(), secondary(), frame(b"x" * 40)]
        for unit in units:
            p.emit(unit)
        await p.drain()

        assert transport.written(PEER_A) == wire(*units)
        assert stats.count("write_retries") > 0

    asyncio.run(scenario())


def test_frame_dropped_when_transport_stays_saturated():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, retry_interval=0, frame_write_attempts=3)
        p.start()
        p.emit(primary())
        p.emit(secondary())
        await p.drain()

        transport.stalled = True
        p.emit(frame(b"f1"))
        await p.drain()
        assert stats.count("frames_dropped_saturation") == 1
        assert not p.closed

        transport.stalled = False
        p.emit(frame(b"f2"))
        await p.drain()
        assert decoded_wire(transport) == [primary().data, secondary().data, frame(b"f2").data]

    asyncio.run(scenario())


def test_bounded_queue_drops_newest_frames():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, queue_size=2)
        p.start()
        for unit in (primary(), secondary(), frame(b"f1"), frame(b"f2"), frame(b"f3")):
            p.emit(unit)
        await p.drain()

        assert stats.count("frames_dropped_saturation") == 1
        assert decoded_wire(transport) == [primary().data, secondary().data, frame(b"f1").data, frame(b"f2").data]

    asyncio.run(scenario())


def test_write_error_is_reported_as_peer_fault():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport()
        transport.fail = True
        faults = []
        p = Packetizer(transport, PEER_A, on_fault=lambda peer, exc: faults.append(peer))
        p.start()
        p.emit(primary())
        p.emit(secondary())
        await p.wait_closed()

        assert faults == [PEER_A]
        assert p.closed
        assert stats.count("peer_faults") == 1

    asyncio.run(scenario())


def test_stalled_configuration_write_faults_peer():
    async def scenario():
        fresh_stats()
        transport = FakeTransport()
        transport.stalled = True
        faults = []
        p = Packetizer(transport, PEER_A, on_fault=lambda peer, exc: faults.append(exc),
                       retry_interval=0.001, config_write_timeout=0.02)
        p.start()
        p.emit(primary())
        p.emit(secondary())
        await asyncio.wait_for(p.wait_closed(), timeout=2)

        assert len(faults) == 1
        assert isinstance(faults[0], ConnectionError)

    asyncio.run(scenario())


def test_unsendable_configuration_is_not_cached():
    async def scenario():
        stats = fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A, retry_interval=0)
        p.start()
        oversize = secondary(b"x" * MAX_UNIT_SIZE)

        for unit in (primary(b"A"), secondary(b"B"), frame(b"f1")):
            p.emit(unit)
        p.emit(primary(b"A2"))
        p.emit(oversize)
        p.emit(frame(b"f2"))
        await p.drain()

        assert p.config_pair is None
        assert stats.count("protocol_violations") == 1
        assert stats.count("frames_dropped_no_config") == 1
        assert decoded_wire(transport) == [primary(b"A").data, secondary(b"B").data, frame(b"f1").data]

        # The next good pair restores the stream.
        p.emit(primary(b"A2"))
        p.emit(secondary(b"B2"))
        p.emit(frame(b"f3"))
        await p.drain()
        assert p.config_pair == (primary(b"A2").data, secondary(b"B2").data)
        assert decoded_wire(transport)[3:] == [primary(b"A2").data, secondary(b"B2").data, frame(b"f3").data]

    asyncio.run(scenario())


def test_unsendable_initial_configuration_is_dropped():
    async def scenario():
        fresh_stats()
        oversize = secondary(b"x" * MAX_UNIT_SIZE).data
        p = Packetizer(FakeTransport(), PEER_A, initial_config=(primary().data, oversize))
        assert p.config_pair is None
        assert p.queue.empty()

    asyncio.run(scenario())


def test_closed_packetizer_ignores_units():
    async def scenario():
        fresh_stats()
        transport = FakeTransport()
        p = Packetizer(transport, PEER_A)
        p.start()
        p.close()
        p.emit(primary())
        await p.wait_closed()
        assert transport.written(PEER_A) == b""

    asyncio.run(scenario())


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))

import asyncio

import pytest
from aiohttp import test_utils

from fakes import PEER_A, fresh_stats
from dashboard import create_app


def test_stats_endpoint_reports_counters_and_peer():
    async def scenario():
        stats = fresh_stats()
        stats.set_role("viewer")
        stats.update_peer(PEER_A)
        stats.update_bootstrap_state("READY")
        stats.incr("frames_decoded", 3)
        stats.add_download(1024)

        async with test_utils.TestClient(test_utils.TestServer(create_app())) as client:
            resp = await client.get("/api/stats")
            assert resp.status == 200
            body = await resp.json()

        assert body["role"] == "viewer"
        assert body["active_peer"] == f"{PEER_A[0]}:{PEER_A[1]}"
        assert body["bootstrap_state"] == "READY"
        assert body["counters"] == {"frames_decoded": 3}
        assert body["total_download"] == 1024

    asyncio.run(scenario())


def test_index_serves_html():
    async def scenario():
        async with test_utils.TestClient(test_utils.TestServer(create_app())) as client:
            resp = await client.get("/")
            assert resp.status == 200
            assert "text/html" in resp.headers["Content-Type"]
            assert "/api/stats" in await resp.text()

    asyncio.run(scenario())


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))

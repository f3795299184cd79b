import asyncio
import json

import pytest

from conftest import FailingStore, MemoryStore, zero_bytes
from dash_model import MAX_SEGMENT_SIZE, MIN_SEGMENT_SIZE, ClientResults
from dash_server import (
    HANDLER_KEY,
    ServerConfig,
    clamp_segment_size,
    create_app,
    genbody,
    parse_args,
    split_endpoint,
)
from dash_sessions import SessionState, SessionTable


async def negotiate(client) -> str:
    resp = await client.post("/negotiate/dash", json={"dash_rates": [100, 200]})
    assert resp.status == 200
    body = await resp.json()
    return body["authorization"]


# =============================================================================
# SEGMENT GENERATOR
# =============================================================================

@pytest.mark.parametrize("count,expected", [
    (-1, MIN_SEGMENT_SIZE),
    (0, MIN_SEGMENT_SIZE),
    (MIN_SEGMENT_SIZE - 1, MIN_SEGMENT_SIZE),
    (MIN_SEGMENT_SIZE, MIN_SEGMENT_SIZE),
    (100000, 100000),
    (MAX_SEGMENT_SIZE, MAX_SEGMENT_SIZE),
    (MAX_SEGMENT_SIZE + 1, MAX_SEGMENT_SIZE),
    (1125899906842624, MAX_SEGMENT_SIZE),
])
def test_genbody_clamps(count, expected):
    assert clamp_segment_size(count) == expected
    assert len(genbody(count, zero_bytes)) == expected


def test_genbody_default_source_is_random():
    a = genbody(MIN_SEGMENT_SIZE)
    b = genbody(MIN_SEGMENT_SIZE)
    assert len(a) == MIN_SEGMENT_SIZE
    assert a != b


# =============================================================================
# NEGOTIATE
# =============================================================================

async def test_negotiate_creates_session(aiohttp_client, dash_app, table):
    client = await aiohttp_client(dash_app)
    resp = await client.post("/negotiate/dash", json={"dash_rates": [100]})
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("application/json")
    body = await resp.json()
    assert body["authorization"]
    assert body["queue_pos"] == 0
    assert body["unchoked"] == 1
    assert body["real_address"] == "127.0.0.1"
    assert table.count() == 1
    assert table.state(body["authorization"]) is SessionState.ACTIVE


async def test_negotiate_tolerates_missing_body(aiohttp_client, table, store):
    app = create_app(table=table, store=store, new_token=lambda: "fixed-token")
    client = await aiohttp_client(app)
    resp = await client.post("/negotiate/dash")
    assert resp.status == 200
    assert (await resp.json())["authorization"] == "fixed-token"


async def test_negotiate_tokens_are_unique(aiohttp_client, dash_app, table):
    client = await aiohttp_client(dash_app)
    tokens = {await negotiate(client) for _ in range(5)}
    assert len(tokens) == 5
    assert table.count() == 5


async def test_negotiate_token_failure_is_500(aiohttp_client, table, store):
    def broken_token():
        raise OSError("no entropy")

    client = await aiohttp_client(create_app(table=table, store=store, new_token=broken_token))
    resp = await client.post("/negotiate/dash")
    assert resp.status == 500
    assert table.count() == 0


# =============================================================================
# DOWNLOAD
# =============================================================================

async def test_download_without_session_is_400(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    resp = await client.get("/dash/download/30000")
    assert resp.status == 400
    resp = await client.get("/dash/download/30000", headers={"Authorization": "never-issued"})
    assert resp.status == 400


async def test_download_without_size_returns_min(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    for path in ("/dash/download", "/dash/download/"):
        resp = await client.get(path, headers={"Authorization": token})
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "video/mp4"
        assert int(resp.headers["Content-Length"]) == MIN_SEGMENT_SIZE
        assert len(await resp.read()) == MIN_SEGMENT_SIZE


async def test_download_negative_size_returns_min(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.get("/dash/download/-1", headers={"Authorization": token})
    assert resp.status == 200
    assert len(await resp.read()) == 25000


async def test_download_huge_size_returns_max(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.get("/dash/download/1125899906842624", headers={"Authorization": token})
    assert resp.status == 200
    assert int(resp.headers["Content-Length"]) == 7500000
    assert len(await resp.read()) == 7500000


async def test_download_exact_size(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.get("/dash/download/123456", headers={"Authorization": token})
    assert resp.status == 200
    assert len(await resp.read()) == 123456


@pytest.mark.parametrize("suffix", ["abc", "12x", "1/2", "1.5", "99999999999999999999", "9" * 5000])
async def test_download_malformed_size_is_400(aiohttp_client, dash_app, table, suffix):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.get(f"/dash/download/{suffix}", headers={"Authorization": token})
    assert resp.status == 400
    # A rejected request is not an iteration
    session = table.pop(token)
    assert session.iteration == 0


async def test_download_cap_is_429_and_session_survives(aiohttp_client, dash_app, table):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    for _ in range(17):
        resp = await client.get("/dash/download/25000", headers={"Authorization": token})
        assert resp.status == 200
        await resp.read()
    resp = await client.get("/dash/download/25000", headers={"Authorization": token})
    assert resp.status == 429
    assert table.state(token) is SessionState.EXPIRED


async def test_download_random_failure_is_500(aiohttp_client, table, store):
    def broken_source(n):
        raise OSError("no randomness")

    client = await aiohttp_client(create_app(table=table, store=store, random_bytes=broken_source))
    token = await negotiate(client)
    resp = await client.get("/dash/download", headers={"Authorization": token})
    assert resp.status == 500
    assert table.pop(token).iteration == 0


# =============================================================================
# COLLECT
# =============================================================================

async def test_collect_after_single_download(aiohttp_client, dash_app, store, table):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.get("/dash/download", headers={"Authorization": token})
    assert resp.status == 200
    await resp.read()

    resp = await client.post("/collect/dash", data=b"[]", headers={"Authorization": token})
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("application/json")
    server_results = await resp.json()
    assert len(server_results) == 1
    assert server_results[0]["iteration"] == 0
    assert set(server_results[0]) == {"iteration", "ticks", "timestamp"}

    assert table.count() == 0
    [(schema, _)] = store.saved
    assert schema.client == []
    assert schema.srvr_schema_version == 4
    assert [s.to_dict() for s in schema.server] == server_results


async def test_collect_returns_all_iterations_in_order(aiohttp_client, dash_app, store):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    for size in (30000, 40000, 50000):
        resp = await client.get(f"/dash/download/{size}", headers={"Authorization": token})
        await resp.read()

    mine = [ClientResults(iteration=i, rate=3000, received=30000, elapsed=0.5).to_dict()
            for i in range(3)]
    resp = await client.post("/collect/dash", data=json.dumps(mine),
                             headers={"Authorization": token})
    assert resp.status == 200
    server_results = await resp.json()
    assert [s["iteration"] for s in server_results] == [0, 1, 2]
    ticks = [s["ticks"] for s in server_results]
    assert ticks == sorted(ticks)

    [(schema, _)] = store.saved
    assert [c.to_dict() for c in schema.client] == mine
    assert [s.to_dict() for s in schema.server] == server_results


async def test_collect_unknown_session_is_400(aiohttp_client, dash_app, store):
    client = await aiohttp_client(dash_app)
    resp = await client.post("/collect/dash", data=b"[]", headers={"Authorization": "never-issued"})
    assert resp.status == 400
    assert store.saved == []


async def test_collect_is_one_shot(aiohttp_client, dash_app):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.post("/collect/dash", data=b"[]", headers={"Authorization": token})
    assert resp.status == 200
    resp = await client.post("/collect/dash", data=b"[]", headers={"Authorization": token})
    assert resp.status == 400
    resp = await client.get("/dash/download", headers={"Authorization": token})
    assert resp.status == 400


@pytest.mark.parametrize("body", [b"", b"{broken", b'{"iteration": 0}', b'[{"rate": "fast"}]'])
async def test_collect_malformed_body_is_400_and_consumes_session(
        aiohttp_client, dash_app, store, table, body):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.post("/collect/dash", data=body, headers={"Authorization": token})
    assert resp.status == 400
    assert table.state(token) is SessionState.MISSING
    assert store.saved == []


async def test_collect_persistence_failure_is_500(aiohttp_client):
    client = await aiohttp_client(create_app(store=FailingStore(), random_bytes=zero_bytes))
    token = await negotiate(client)
    resp = await client.post("/collect/dash", data=b"[]", headers={"Authorization": token})
    assert resp.status == 500


async def test_collect_with_null_body(aiohttp_client, dash_app, store):
    client = await aiohttp_client(dash_app)
    token = await negotiate(client)
    resp = await client.post("/collect/dash", data=b"null", headers={"Authorization": token})
    assert resp.status == 200
    assert await resp.json() == []
    assert store.saved[0][0].client == []


# =============================================================================
# APPLICATION AND CONFIG
# =============================================================================

async def test_app_reaper_lifecycle(aiohttp_server, clock):
    table = SessionTable(clock=clock)
    app = create_app(
        ServerConfig(reap_interval_sec=0.01, max_idle_sec=60.0),
        table=table,
        store=MemoryStore(),
    )
    server = await aiohttp_server(app)
    assert app[HANDLER_KEY].table is table

    table.create("abandoned")
    clock.advance(120)
    for _ in range(100):
        if table.count() == 0:
            break
        await asyncio.sleep(0.01)
    assert table.count() == 0

    await server.close()


def test_parse_args_defaults():
    cfg = parse_args([])
    assert cfg.datadir == "."
    assert cfg.listen == (":80",)
    assert cfg.max_iterations == 17
    assert cfg.max_idle_sec == 60.0
    assert cfg.reap_interval_sec == 14.0


def test_parse_args_flags():
    cfg = parse_args(["--datadir", "/tmp/x", "--listen", ":8080", "--listen", "[::1]:8081",
                      "--verbose"])
    assert cfg.datadir == "/tmp/x"
    assert cfg.listen == (":8080", "[::1]:8081")
    assert cfg.verbose


def test_parse_args_json_config(tmp_path):
    path = tmp_path / "server.json"
    path.write_text(json.dumps({"datadir": "data", "listen": "127.0.0.1:9000",
                                "max_idle": 30, "reap_interval": 5}))
    cfg = parse_args(["--config", str(path)])
    assert cfg == ServerConfig(datadir="data", listen=("127.0.0.1:9000",),
                               max_idle_sec=30.0, reap_interval_sec=5.0)


@pytest.mark.parametrize("endpoint,expected", [
    (":80", (None, 80)),
    ("0.0.0.0:8080", ("0.0.0.0", 8080)),
    ("[::1]:8080", ("::1", 8080)),
    ("localhost:1", ("localhost", 1)),
])
def test_split_endpoint(endpoint, expected):
    assert split_endpoint(endpoint) == expected


@pytest.mark.parametrize("endpoint", ["80", "host:", "host:http"])
def test_split_endpoint_rejects_garbage(endpoint):
    with pytest.raises(ValueError):
        split_endpoint(endpoint)

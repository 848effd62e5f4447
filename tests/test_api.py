"""End-to-end HTTP tests: FastAPI app, fake adapter services, in-memory database."""

import contextlib

import httpx
import pytest

from conftest import FakeAdapter, sample_sheet
from Sheetbridge.app import create_app
from Sheetbridge.config import Settings

USER = {"X-User-Id": "u1"}
OTHER_USER = {"X-User-Id": "u2"}


@pytest.fixture
async def start(make_registry, network, sessionmaker, midgard):
    """Start the app with the given fake adapters; returns an httpx client."""
    stack = contextlib.AsyncExitStack()

    async def _start(*adapters: FakeAdapter, **overrides) -> httpx.AsyncClient:
        settings = Settings(
            logging_enabled=False,
            ssrf_protection=False,
            metrics_endpoint_enabled=True,
            **overrides,
        )
        reg = make_registry()
        for a in adapters:
            network.add(a)
            await reg.register(a.metadata(healthy=False))
        app = create_app(settings, registry=reg, sessionmaker=sessionmaker)
        await stack.enter_async_context(app.router.lifespan_context(app))
        return await stack.enter_async_context(
            httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        )

    yield _start
    await stack.aclose()


def _upload(name: str = "hero.json", body: bytes = b'{"native": true}'):
    return {"file": (name, body, "application/octet-stream")}


async def _import(client, **kwargs) -> httpx.Response:
    return await client.post("/api/import/import", files=_upload(**kwargs), headers=USER)


async def test_requests_without_user_are_rejected(start):
    client = await start(FakeAdapter("foundry", "foundry.test"))
    resp = await client.post("/api/import/detect", files=_upload())
    assert resp.status_code == 401
    assert (await client.get("/api/import/history")).status_code == 401


async def test_detect_by_extension(start):
    client = await start(FakeAdapter("foundry", "foundry.test"))
    resp = await client.post("/api/import/detect", files=_upload(), headers=USER)
    assert resp.status_code == 200
    assert resp.json() == {
        "adapter_id": "foundry",
        "confidence": 1.0,
        "method": "extension",
        "suggested_adapter_name": "Foundry",
    }


async def test_detect_low_confidence_returns_hint(start):
    client = await start(FakeAdapter("moam", "moam.test", confidence=0.4, extensions=[]))
    resp = await client.post("/api/import/detect", files=_upload("sheet.dat"), headers=USER)
    assert resp.status_code == 400
    body = resp.json()
    assert body["confidence"] == pytest.approx(0.4)
    assert "adapter_id" in body["hint"]


async def test_import_end_to_end_then_history(start):
    client = await start(FakeAdapter("foundry", "foundry.test"))

    resp = await _import(client)
    assert resp.status_code == 200, resp.text
    result = resp.json()
    assert result["status"] == "success"
    assert result["adapter_id"] == "foundry"
    assert result["created_items"]["skills"] == 1

    page = (await client.get("/api/import/history", headers=USER)).json()
    assert page["total"] == 1 and page["page"] == 1 and page["per_page"] == 20
    (entry,) = page["histories"]
    assert entry["id"] == result["import_id"]
    assert entry["status"] == "success"
    assert entry["source_format"] == "foundry-vtt"
    assert entry["source_filename"] == "hero.json"

    detail = await client.get(f"/api/import/history/{result['import_id']}", headers=USER)
    assert detail.status_code == 200
    mdi = detail.json()["master_data_imports"]
    assert {(m["item_type"], m["external_name"], m["match_type"]) for m in mdi} >= {
        ("skill", "Klettern", "exact"),
        ("skill", "Schwimmen", "created_personal"),
    }

    # History is private to its owner
    assert (await client.get(f"/api/import/history/{result['import_id']}", headers=OTHER_USER)).status_code == 404
    assert (await client.get("/api/import/history", headers=OTHER_USER)).json()["total"] == 0


async def test_import_with_umlaut_filename(start):
    foundry = FakeAdapter("foundry", "foundry.test")
    client = await start(foundry)

    resp = await _import(client, name="Bärbel.json")

    assert resp.status_code == 200, resp.text
    assert foundry.filenames == ["Bärbel.json"]
    page = (await client.get("/api/import/history", headers=USER)).json()
    assert page["histories"][0]["source_filename"] == "Bärbel.json"


async def test_history_pagination_caps_page_size(start):
    client = await start(FakeAdapter("foundry", "foundry.test"), rate_limit_import=10)
    for _ in range(3):
        assert (await _import(client)).status_code == 200

    resp = await client.get("/api/import/history", params={"page": 2, "per_page": 2}, headers=USER)
    page = resp.json()
    assert page["total"] == 3 and len(page["histories"]) == 1

    resp = await client.get("/api/import/history", params={"per_page": 500}, headers=USER)
    assert resp.json()["per_page"] == 100


async def test_import_with_explicit_adapter_skips_detection(start):
    foundry = FakeAdapter("foundry", "foundry.test", extensions=[])
    client = await start(foundry)
    resp = await client.post(
        "/api/import/import",
        files=_upload("export.xml"),
        data={"adapter_id": "foundry"},
        headers=USER,
    )
    assert resp.status_code == 200, resp.text
    assert "/detect" not in foundry.calls


async def test_import_unknown_or_unhealthy_adapter_is_503(start):
    sick = FakeAdapter("sick", "sick.test", metadata_status=500)
    client = await start(FakeAdapter("foundry", "foundry.test"), sick)

    for adapter_id in ("nope", "sick"):
        resp = await client.post(
            "/api/import/import", files=_upload(), params={"adapter_id": adapter_id}, headers=USER
        )
        assert resp.status_code == 503


async def test_import_below_threshold_returns_confidence(start):
    client = await start(FakeAdapter("moam", "moam.test", confidence=0.5, extensions=[]))
    resp = await _import(client, name="hero.dat")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Could not reliably detect format"
    assert resp.json()["confidence"] == pytest.approx(0.5)


async def test_adapter_parse_error_is_422(start):
    client = await start(FakeAdapter("foundry", "foundry.test", import_status=400))
    resp = await _import(client)
    assert resp.status_code == 422
    assert resp.json()["adapter_status"] == 400


async def test_invalid_character_is_rejected_without_history(start):
    attrs = dict(sample_sheet()["eigenschaften"], st=-3)
    client = await start(FakeAdapter("foundry", "foundry.test", sheet=sample_sheet(eigenschaften=attrs)))

    resp = await _import(client)

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Character validation failed"
    assert body["errors"][0]["field"] == "eigenschaften.St"
    assert (await client.get("/api/import/history", headers=USER)).json()["total"] == 0


async def test_import_warnings_are_returned(start):
    attrs = dict(sample_sheet()["eigenschaften"], au=140)
    client = await start(FakeAdapter("foundry", "foundry.test", sheet=sample_sheet(eigenschaften=attrs)))
    resp = await _import(client)
    assert resp.status_code == 200
    assert [w["field"] for w in resp.json()["warnings"]] == ["eigenschaften.Au"]


async def test_import_rate_limit(start):
    client = await start(FakeAdapter("foundry", "foundry.test"), rate_limit_import=1)
    assert (await _import(client)).status_code == 200
    resp = await _import(client)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "60"
    # Other users have their own budget
    resp = await client.post("/api/import/import", files=_upload(), headers=OTHER_USER)
    assert resp.status_code == 200


async def test_oversized_upload_is_413(start):
    client = await start(FakeAdapter("foundry", "foundry.test"), max_upload_bytes=16)
    resp = await _import(client, body=b"x" * 17)
    assert resp.status_code == 413


async def test_deeply_nested_json_is_400(start):
    foundry = FakeAdapter("foundry", "foundry.test")
    client = await start(foundry, max_json_depth=10)
    resp = await _import(client, body=b"[" * 11 + b"]" * 11)
    assert resp.status_code == 400
    assert "depth" in resp.json()["error"]
    assert "/import" not in foundry.calls


async def test_adapters_listing(start):
    sick = FakeAdapter("sick", "sick.test", metadata_status=500)
    client = await start(FakeAdapter("foundry", "foundry.test"), sick)

    healthy = (await client.get("/api/import/adapters", headers=USER)).json()
    assert [a["id"] for a in healthy["adapters"]] == ["foundry"]

    everything = (
        await client.get("/api/import/adapters", params={"include_unhealthy": True}, headers=USER)
    ).json()
    assert {a["id"]: a["healthy"] for a in everything["adapters"]} == {"foundry": True, "sick": False}
    assert everything["count"] == 2


async def test_export_defaults_to_import_adapter(start):
    foundry = FakeAdapter("foundry", "foundry.test", export_body=b'{"native": "export"}')
    client = await start(foundry)
    character_id = (await _import(client)).json()["character_id"]

    resp = await client.post(f"/api/import/export/{character_id}", headers=USER)

    assert resp.status_code == 200
    assert resp.content == b'{"native": "export"}'
    assert resp.headers["content-disposition"] == "attachment; filename=Bjarnfinnur_foundry.json"
    assert foundry.calls[-1] == "/export"


async def test_export_errors(start):
    client = await start(FakeAdapter("foundry", "foundry.test"))
    character_id = (await _import(client)).json()["character_id"]

    missing = await client.post("/api/import/export/9999", headers=USER)
    assert missing.status_code == 404

    not_mine = await client.post(f"/api/import/export/{character_id}", headers=OTHER_USER)
    assert not_mine.status_code == 404

    unknown = await client.post(
        f"/api/import/export/{character_id}", params={"adapter_id": "nope"}, headers=USER
    )
    assert unknown.status_code == 409
    assert unknown.json()["available_adapters"] == ["foundry"]


async def test_healthz_and_metrics(start):
    client = await start(FakeAdapter("foundry", "foundry.test"))
    assert (await client.get("/healthz")).json() == {"status": "ok"}
    assert (await _import(client)).status_code == 200
    counters = (await client.get("/metrics")).json()
    assert counters["import.success"] == 1

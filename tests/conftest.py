# tests/conftest.py

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

import httpx
import orjson
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Keep app modules away from any developer database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from Sheetbridge import models  # noqa: E402
from Sheetbridge.adapters import AdapterRegistry, HTTPAdapterClient  # noqa: E402
from Sheetbridge.db import build_engine, build_sessionmaker, create_schema  # noqa: E402
from Sheetbridge.metrics import reset_counters  # noqa: E402
from Sheetbridge.reconciler import Reconciler  # noqa: E402
from Sheetbridge.schemas import AdapterMetadata, Capability  # noqa: E402
from Sheetbridge.services.import_service import ImportService  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset metrics before each test."""
    reset_counters()


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    eng = build_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
async def db(sessionmaker) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()


@pytest.fixture
async def midgard(sessionmaker) -> models.GameSystem:
    """Default game system with a small seeded catalog."""
    async with sessionmaker() as s:
        gs = models.GameSystem(code="midgard", name="Midgard", is_default=True)
        s.add(gs)
        await s.flush()
        s.add_all(
            [
                models.Skill(name="Klettern", game_system="midgard", game_system_id=gs.id,
                             initial_value=12, bonus_attribute="Gw"),
                models.Spell(name="Feuerkugel", game_system="midgard", game_system_id=gs.id),
                models.Weapon(name="Langschwert", game_system="midgard", game_system_id=gs.id,
                              weight=1.5, value=30),
            ]
        )
        await s.commit()
        return gs


@pytest.fixture
def import_service(sessionmaker) -> ImportService:
    return ImportService(sessionmaker, Reconciler(default_game_system="midgard"))


# -----------------------------
# Fake adapter services
# -----------------------------


def sample_sheet(name: str = "Bjarnfinnur", **overrides: Any) -> dict[str, Any]:
    """Canonical character in wire form (German keys), as an adapter returns it."""
    sheet: dict[str, Any] = {
        "bmrt_version": "1.0",
        "name": name,
        "rasse": "Mensch",
        "typ": "Krieger",
        "grad": 3,
        "alter": 27,
        "eigenschaften": {"st": 80, "gs": 70, "gw": 65, "ko": 75, "in": 60,
                          "zt": 40, "au": 55, "pa": 50, "wk": 45},
        "lp": {"max": 16, "value": 14},
        "ap": {"max": 20, "value": 20},
        "b": {"max": 24, "value": 24},
        "erfahrungsschatz": {"value": 320},
        "bennies": {"gg": 1, "gp": 2, "sg": 0},
        "fertigkeiten": [
            {"name": "Klettern", "fertigkeitswert": 14},
            {"name": "Schwimmen", "fertigkeitswert": 10, "quelle": "KOD"},
        ],
        "zauber": [],
        "waffenfertigkeiten": [{"name": "Einhandschwerter", "fertigkeitswert": 9}],
        "waffen": [{"name": "Langschwert", "gewicht": 1.5, "wert": 30}],
        "ausruestung": [{"name": "Seil", "anzahl": 1, "gewicht": 2.0}],
        "behaeltnisse": [{"name": "Rucksack", "tragkraft": 25, "volumen": 30}],
        "_metadata": {"source_format": "foundry-vtt", "adapter_id": "foundry"},
    }
    sheet.update(overrides)
    return sheet


@dataclass
class FakeAdapter:
    id: str
    host: str
    confidence: float = 0.0
    extensions: list[str] = field(default_factory=lambda: [".json"])
    capabilities: list[str] = field(default_factory=lambda: ["detect", "import", "export"])
    sheet: dict[str, Any] = field(default_factory=sample_sheet)
    export_body: bytes = b'{"exported": true}'
    metadata_status: int = 200
    import_status: int = 200
    connect_error: bool = False
    calls: list[str] = field(default_factory=list)
    filenames: list[str] = field(default_factory=list)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}"

    def metadata(self, *, healthy: bool = False) -> AdapterMetadata:
        return AdapterMetadata(
            id=self.id,
            name=self.id.title(),
            version="1.0",
            bmrt_versions=["1.0"],
            supported_extensions=self.extensions,
            base_url=self.base_url,
            capabilities=[Capability(c) for c in self.capabilities],
            healthy=healthy,
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if self.connect_error:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if "X-Filename" in request.headers:
            self.filenames.append(unquote(request.headers["X-Filename"]))
        if path == "/metadata":
            if self.metadata_status != 200:
                return httpx.Response(self.metadata_status, text="down")
            return httpx.Response(200, json=self.metadata().model_dump(mode="json"))
        if path == "/detect":
            return httpx.Response(200, json={"confidence": self.confidence, "version": "1"})
        if path == "/import":
            if self.import_status != 200:
                return httpx.Response(self.import_status, json={"error": "cannot parse"})
            return httpx.Response(200, content=orjson.dumps(self.sheet))
        if path == "/export":
            return httpx.Response(200, content=self.export_body)
        return httpx.Response(404)


class FakeAdapterNetwork:
    """Routes requests by host to the matching FakeAdapter."""

    def __init__(self) -> None:
        self.adapters: dict[str, FakeAdapter] = {}

    def add(self, adapter: FakeAdapter) -> FakeAdapter:
        self.adapters[adapter.host] = adapter
        return adapter

    def handler(self, request: httpx.Request) -> httpx.Response:
        adapter = self.adapters.get(request.url.host)
        if adapter is None:
            raise httpx.ConnectError("unknown host", request=request)
        return adapter.handle(request)

    def client(self) -> HTTPAdapterClient:
        return HTTPAdapterClient(httpx.AsyncClient(transport=httpx.MockTransport(self.handler)))


@pytest.fixture
def network() -> FakeAdapterNetwork:
    return FakeAdapterNetwork()


@pytest.fixture
async def make_registry(network) -> AsyncIterator[Callable[..., AdapterRegistry]]:
    created: list[AdapterRegistry] = []

    def _make(**kwargs: Any) -> AdapterRegistry:
        kwargs.setdefault("client", network.client())
        kwargs.setdefault("health_check_interval", 0.05)
        reg = AdapterRegistry(**kwargs)
        created.append(reg)
        return reg

    yield _make
    for reg in created:
        await reg.stop_health_checker()

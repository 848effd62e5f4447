"""Import orchestration: one transaction per import, history row survives failures."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import sample_sheet
from Sheetbridge import models
from Sheetbridge.errors import ImportFailedError, ReconciliationError
from Sheetbridge.metrics import get_counter
from Sheetbridge.reconciler import Reconciler
from Sheetbridge.schemas import BMRTCharacter, ValidationIssue
from Sheetbridge.services.import_service import (
    CREATED_ITEM_KEYS,
    ImportService,
    compress_snapshot,
    decompress_snapshot,
)


def _character(**overrides) -> BMRTCharacter:
    return BMRTCharacter.model_validate(sample_sheet(**overrides))


async def _count(sm, model) -> int:
    async with sm() as s:
        return (await s.execute(select(func.count()).select_from(model))).scalar_one()


async def _histories(sm) -> list[models.ImportHistory]:
    async with sm() as s:
        return list((await s.execute(select(models.ImportHistory))).scalars().all())


async def test_successful_import_persists_aggregate(import_service, sessionmaker, midgard):
    raw = b'{"native": "sheet"}'
    warning = ValidationIssue(field="eigenschaften.St", message="high", source="gamesystem")

    result = await import_service.import_character(
        _character().as_import(),
        user_id="u1",
        adapter_id="foundry",
        raw_data=raw,
        filename="hero.json",
        source_format="foundry-vtt",
        warnings=[warning],
    )

    assert result.status == "success"
    assert result.adapter_id == "foundry"
    assert result.warnings == [warning]
    assert set(result.created_items) == set(CREATED_ITEM_KEYS)
    # Klettern and Langschwert exist in the seeded catalog
    assert result.created_items == {
        "skills": 1, "spells": 0, "weapon_skills": 1,
        "weapons": 0, "equipment": 1, "containers": 1,
    }

    async with sessionmaker() as s:
        history = await s.get(models.ImportHistory, result.import_id)
        assert history.status is models.ImportStatus.success
        assert history.character_id == result.character_id
        assert history.source_format == "foundry-vtt"
        assert history.source_filename == "hero.json"
        assert history.error_log == ""
        assert decompress_snapshot(history.source_snapshot) == raw

        char = await s.get(models.Character, result.character_id)
        assert char.user_id == "u1"
        assert char.name == "Bjarnfinnur"
        assert char.game_system == "midgard"
        assert char.imported_from_adapter == "foundry"
        assert char.sheet["fertigkeiten"][0]["name"] == "Klettern"

        attrs = {
            a.code: a.value
            for a in (
                await s.execute(
                    select(models.CharacterAttribute).where(
                        models.CharacterAttribute.character_id == char.id
                    )
                )
            ).scalars()
        }
        assert attrs == {"St": 80, "Gs": 70, "Gw": 65, "Ko": 75, "In": 60,
                         "Zt": 40, "Au": 55, "Pa": 50, "Wk": 45}
        pools = (
            await s.execute(
                select(models.CharacterPointPool).where(
                    models.CharacterPointPool.character_id == char.id
                )
            )
        ).scalars().all()
        assert {(p.kind, p.max, p.value) for p in pools} == {
            ("lp", 16, 14), ("ap", 20, 20), ("b", 24, 24)
        }
        provenance = (
            await s.execute(
                select(models.MasterDataImport).where(
                    models.MasterDataImport.import_history_id == result.import_id
                )
            )
        ).scalars().all()
        # One row per reconciled item
        assert len(provenance) == 6

    assert get_counter("import.success") == 1
    assert get_counter("import.started") == 1


async def test_source_format_defaults_to_adapter_and_filename_is_generated(import_service, sessionmaker, midgard):
    result = await import_service.import_character(
        _character().as_import(), user_id="u1", adapter_id="moam", raw_data=b"x"
    )
    async with sessionmaker() as s:
        history = await s.get(models.ImportHistory, result.import_id)
    assert history.source_format == "moam"
    assert history.source_filename.startswith("Bjarnfinnur_import_")
    assert history.source_filename.endswith(".json")


class _FailsOnThirdSkill(Reconciler):
    def __init__(self):
        super().__init__()
        self.skill_calls = 0

    async def reconcile_skill(self, session, item, **kwargs):
        self.skill_calls += 1
        if self.skill_calls == 3:
            raise ReconciliationError("skill", item.name)
        return await super().reconcile_skill(session, item, **kwargs)


async def test_failure_mid_reconciliation_rolls_back_everything(sessionmaker, midgard):
    service = ImportService(sessionmaker, _FailsOnThirdSkill())
    skills_before = await _count(sessionmaker, models.Skill)
    character = _character(
        fertigkeiten=[{"name": f"Neu{i}", "fertigkeitswert": i} for i in range(5)]
    ).as_import()

    with pytest.raises(ImportFailedError) as ei:
        await service.import_character(character, user_id="u1", adapter_id="foundry", raw_data=b"{}")

    assert ei.value.import_id is not None
    assert "Failed to reconcile skill Neu2" in str(ei.value)
    # Neu0 and Neu1 were minted before the failure and are gone again
    assert await _count(sessionmaker, models.Skill) == skills_before
    assert await _count(sessionmaker, models.Character) == 0
    assert await _count(sessionmaker, models.MasterDataImport) == 0

    (history,) = await _histories(sessionmaker)
    assert history.id == ei.value.import_id
    assert history.status is models.ImportStatus.failed
    assert history.character_id is None
    assert "Neu2" in history.error_log
    assert get_counter("import.failed") == 1
    assert get_counter("import.rollback.reconcile") == 1


class _CommitFails(AsyncSession):
    failures_left = 1

    async def commit(self) -> None:
        if _CommitFails.failures_left > 0:
            _CommitFails.failures_left -= 1
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))
        await super().commit()


async def test_commit_failure_leaves_failed_history_and_nothing_else(engine, midgard):
    _CommitFails.failures_left = 1
    sm = async_sessionmaker(engine, class_=_CommitFails, expire_on_commit=False)
    service = ImportService(sm, Reconciler())
    skills_before = await _count(sm, models.Skill)

    with pytest.raises(ImportFailedError) as ei:
        await service.import_character(
            _character().as_import(), user_id="u1", adapter_id="foundry", raw_data=b"{}"
        )

    assert "commit failed" in str(ei.value)
    assert await _count(sm, models.Character) == 0
    assert await _count(sm, models.Skill) == skills_before
    (history,) = await _histories(sm)
    assert history.status is models.ImportStatus.failed
    assert history.character_id is None
    assert "disk I/O error" in history.error_log
    assert get_counter("import.rollback.commit") == 1


async def test_failed_bookkeeping_commit_still_leaves_failed_history(engine, midgard):
    # The reconciler fails, then committing the failed status fails too
    _CommitFails.failures_left = 1
    sm = async_sessionmaker(engine, class_=_CommitFails, expire_on_commit=False)
    service = ImportService(sm, _FailsOnThirdSkill())
    skills_before = await _count(sm, models.Skill)
    character = _character(
        fertigkeiten=[{"name": f"Neu{i}", "fertigkeitswert": i} for i in range(5)]
    ).as_import()

    with pytest.raises(ImportFailedError) as ei:
        await service.import_character(character, user_id="u1", adapter_id="foundry", raw_data=b"{}")

    assert "Failed to reconcile skill Neu2" in str(ei.value)
    assert await _count(sm, models.Skill) == skills_before
    assert await _count(sm, models.Character) == 0
    (history,) = await _histories(sm)
    assert history.id == ei.value.import_id
    assert history.status is models.ImportStatus.failed
    assert "Neu2" in history.error_log


class _FlushFails(AsyncSession):
    failures_left = 1

    async def flush(self, objects=None) -> None:
        if _FlushFails.failures_left > 0:
            _FlushFails.failures_left -= 1
            raise OperationalError("INSERT", {}, Exception("value too long for type character varying(64)"))
        await super().flush(objects)


async def test_history_insert_failure_is_an_import_failure(engine, midgard):
    _FlushFails.failures_left = 1
    sm = async_sessionmaker(engine, class_=_FlushFails, expire_on_commit=False)
    service = ImportService(sm, Reconciler())

    with pytest.raises(ImportFailedError) as ei:
        await service.import_character(
            _character().as_import(), user_id="u1", adapter_id="foundry", raw_data=b"{}"
        )

    assert str(ei.value).startswith("failed to create import history")
    assert ei.value.import_id is None
    assert await _histories(sm) == []
    assert await _count(sm, models.Character) == 0
    assert get_counter("import.failed") == 1


async def test_unknown_game_system_label_uses_default(import_service, sessionmaker):
    # No game_systems rows at all: the configured default code is used
    result = await import_service.import_character(
        _character(game_system="Rolemaster").as_import(),
        user_id="u1", adapter_id="foundry", raw_data=b"{}",
    )
    async with sessionmaker() as s:
        char = await s.get(models.Character, result.character_id)
        skill = (
            await s.execute(select(models.Skill).where(models.Skill.name == "Schwimmen"))
        ).scalar_one()
    assert char.game_system == "midgard"
    assert skill.game_system == "midgard" and skill.game_system_id is None


async def test_history_is_per_attempt(import_service, sessionmaker, midgard):
    for _ in range(2):
        await import_service.import_character(
            _character().as_import(), user_id="u1", adapter_id="foundry", raw_data=b"{}"
        )
    histories = await _histories(sessionmaker)
    assert len(histories) == 2
    assert len({h.character_id for h in histories}) == 2
    # Second import matches the personal rows minted by the first
    assert await _count(sessionmaker, models.Skill) == 2


@given(st.binary(max_size=4096))
def test_snapshot_compression_is_lossless(data):
    assert decompress_snapshot(compress_snapshot(data)) == data

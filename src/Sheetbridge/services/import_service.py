"""Transactional character import.

The history row and the import's business writes live in one session. The
history row is inserted first; everything else runs inside a SAVEPOINT so a
failure can discard the character and any minted catalog rows while the
history row survives, marked ``failed``, in the same commit.
"""

from __future__ import annotations

import gzip
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from Sheetbridge import models
from Sheetbridge.errors import ImportFailedError, ReconciliationError
from Sheetbridge.metrics import inc_counter, record_import_outcome, timed
from Sheetbridge.reconciler import Reconciler, ResolvedGameSystem
from Sheetbridge.schemas import (
    CURRENT_BMRT_VERSION,
    CharacterImport,
    ImportResult,
    ValidationIssue,
)

log = structlog.get_logger()

# Keys of ImportResult.created_items, in reconciliation order
CREATED_ITEM_KEYS = ("skills", "spells", "weapon_skills", "weapons", "equipment", "containers")


def compress_snapshot(data: bytes) -> bytes:
    return gzip.compress(data)


def decompress_snapshot(data: bytes) -> bytes:
    return gzip.decompress(data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_rollback(stage: str, import_id: int, reason: str) -> None:
    inc_counter("import.rollback")
    inc_counter(f"import.rollback.{stage}")
    log.warning("import.rollback", stage=stage, import_id=import_id, reason=reason)


class _StageError(Exception):
    """Carries the failing stage and a user-facing description."""

    def __init__(self, stage: str, description: str):
        super().__init__(description)
        self.stage = stage
        self.description = description


class ImportService:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        reconciler: Reconciler,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._sm = sessionmaker
        self._reconciler = reconciler
        self._clock = clock

    async def import_character(
        self,
        character: CharacterImport,
        *,
        user_id: str,
        adapter_id: str,
        raw_data: bytes,
        filename: str = "",
        source_format: str | None = None,
        bmrt_version: str = CURRENT_BMRT_VERSION,
        warnings: list[ValidationIssue] | None = None,
    ) -> ImportResult:
        try:
            snapshot = compress_snapshot(raw_data)
        except (OSError, TypeError, ValueError) as exc:
            inc_counter("import.compress_failed")
            raise ImportFailedError(f"failed to compress source data: {exc}") from exc

        now = self._clock()
        history_fields = dict(
            user_id=user_id,
            adapter_id=adapter_id,
            source_format=source_format or adapter_id,
            source_filename=filename or f"{character.name}_import_{int(time.time())}.json",
            source_snapshot=snapshot,
            bmrt_version=bmrt_version,
            imported_at=now,
        )
        history = models.ImportHistory(
            **history_fields, status=models.ImportStatus.in_progress, error_log=""
        )
        inc_counter("import.started")

        async with self._sm() as session:
            try:
                session.add(history)
                try:
                    await session.flush()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    inc_counter("import.history_failed")
                    record_import_outcome("failed")
                    log.error("import.history_failed", adapter_id=adapter_id, error=str(exc))
                    raise ImportFailedError(f"failed to create import history: {exc}") from exc
                import_id = history.id
                log.info("import.started", import_id=import_id, adapter_id=adapter_id, user_id=user_id)

                savepoint = await session.begin_nested()
                try:
                    with timed("import.persist.ms"):
                        character_row, created = await self._persist(
                            session, character, user_id=user_id, adapter_id=adapter_id,
                            import_history_id=import_id, imported_at=now,
                        )
                except _StageError as exc:
                    await savepoint.rollback()
                    failed_id = await self._fail(
                        session, history, import_id, history_fields, exc.stage, exc.description
                    )
                    raise ImportFailedError(exc.description, import_id=failed_id) from exc.__cause__
                await savepoint.commit()

                history.character_id = character_row.id
                history.status = models.ImportStatus.success
                try:
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    reason = f"commit failed: {exc}"
                    record_rollback("commit", import_id, reason)
                    record_import_outcome("failed")
                    failed_id = await self._mark_failed_best_effort(import_id, history_fields, reason)
                    raise ImportFailedError(reason, import_id=failed_id) from exc
            except BaseException:
                if session.in_transaction():
                    await session.rollback()
                raise

        record_import_outcome("success")
        log.info(
            "import.completed",
            import_id=import_id,
            character_id=character_row.id,
            adapter_id=adapter_id,
            created_items=created,
        )
        return ImportResult(
            character_id=character_row.id,
            import_id=import_id,
            adapter_id=adapter_id,
            warnings=list(warnings or []),
            created_items=created,
            status=models.ImportStatus.success.value,
        )

    async def _fail(
        self,
        session: AsyncSession,
        history: models.ImportHistory,
        import_id: int,
        history_fields: dict[str, Any],
        stage: str,
        description: str,
    ) -> int | None:
        """Commit the history row as ``failed``; returns the id of the row holding the failure."""
        history.status = models.ImportStatus.failed
        history.error_log = description
        record_rollback(stage, import_id, description)
        record_import_outcome("failed")
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            log.error("import.fail_commit.error", import_id=import_id, exc_info=True)
            return await self._mark_failed_best_effort(import_id, history_fields, description)
        return import_id

    async def _mark_failed_best_effort(
        self, import_id: int, history_fields: dict[str, Any], reason: str
    ) -> int | None:
        """Record the failure in a fresh session; never raises.

        Returns the id of the failed history row, or None if nothing could be written.
        """
        try:
            async with self._sm() as session:
                row = await session.get(models.ImportHistory, import_id)
                if row is None:
                    # The failed commit took the history row with it; write a fresh one
                    row = models.ImportHistory(**history_fields)
                    session.add(row)
                row.character_id = None
                row.status = models.ImportStatus.failed
                row.error_log = reason
                await session.commit()
                return row.id
        except SQLAlchemyError:
            inc_counter("import.mark_failed.error")
            log.error("import.mark_failed.error", import_id=import_id, exc_info=True)
            return None

    async def _persist(
        self,
        session: AsyncSession,
        character: CharacterImport,
        *,
        user_id: str,
        adapter_id: str,
        import_history_id: int,
        imported_at: datetime,
    ) -> tuple[models.Character, dict[str, int]]:
        try:
            game_system = await self._reconciler.resolve_game_system(
                session, character.system_label()
            )
        except ReconciliationError as exc:
            raise _StageError("reconcile", str(exc)) from exc

        created = await self._reconcile_all(session, character, game_system, import_history_id)

        try:
            row = await self._create_character(
                session, character, game_system, user_id=user_id,
                adapter_id=adapter_id, imported_at=imported_at,
            )
        except SQLAlchemyError as exc:
            raise _StageError("character", f"failed to create character: {exc}") from exc
        return row, created

    async def _reconcile_all(
        self,
        session: AsyncSession,
        character: CharacterImport,
        game_system: ResolvedGameSystem,
        import_history_id: int,
    ) -> dict[str, int]:
        r = self._reconciler
        steps: tuple[tuple[str, str, Any, list[Any]], ...] = (
            ("skills", "skill", r.reconcile_skill, character.skills),
            ("spells", "spell", r.reconcile_spell, character.spells),
            ("weapon_skills", "weapon skill", r.reconcile_weapon_skill, character.weapon_skills),
            ("weapons", "weapon", r.reconcile_weapon, character.weapons),
            ("equipment", "equipment", r.reconcile_equipment, character.equipment),
            ("containers", "container", r.reconcile_container, character.containers),
        )
        created = dict.fromkeys(CREATED_ITEM_KEYS, 0)
        for key, label, reconcile, items in steps:
            for item in items:
                try:
                    outcome = await reconcile(
                        session, item, game_system=game_system,
                        import_history_id=import_history_id,
                    )
                except (ReconciliationError, SQLAlchemyError) as exc:
                    raise _StageError(
                        "reconcile", f"Failed to reconcile {label} {item.name}: {exc}"
                    ) from exc
                if outcome.created:
                    created[key] += 1
        return created

    async def _create_character(
        self,
        session: AsyncSession,
        character: CharacterImport,
        game_system: ResolvedGameSystem,
        *,
        user_id: str,
        adapter_id: str,
        imported_at: datetime,
    ) -> models.Character:
        row = models.Character(
            user_id=user_id,
            name=character.name,
            race=character.race,
            char_class=character.char_class,
            game_system=game_system.code,
            grade=character.grade,
            age=character.age,
            salutation=character.salutation,
            height=character.height,
            weight=character.weight,
            faith=character.faith,
            handedness=character.handedness,
            image=character.image,
            imported_from_adapter=adapter_id,
            imported_at=imported_at,
            sheet=character.to_wire(),
        )
        session.add(row)
        await session.flush()

        for code, value in character.attributes.as_codes().items():
            session.add(models.CharacterAttribute(character_id=row.id, code=code, value=value))
        for kind, pool in (
            ("lp", character.life_points),
            ("ap", character.action_points),
            ("b", character.movement),
        ):
            session.add(
                models.CharacterPointPool(
                    character_id=row.id, kind=kind, max=pool.max, value=pool.value
                )
            )
        session.add(models.CharacterExperience(character_id=row.id, value=character.experience.value))
        luck = character.luck_points
        session.add(models.CharacterLuckPoints(character_id=row.id, gg=luck.gg, gp=luck.gp, sg=luck.sg))
        await session.flush()
        return row

"""Match imported items against the master catalog, minting personal copies.

Every call runs on the caller's session so that all catalog writes of one
import share its transaction and vanish together on rollback.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from Sheetbridge import models
from Sheetbridge.errors import ReconciliationError
from Sheetbridge.metrics import inc_counter
from Sheetbridge.schemas import (
    ImportedContainer,
    ImportedEquipment,
    ImportedItem,
    ImportedSkill,
    ImportedSpell,
    ImportedWeapon,
    ImportedWeaponSkill,
)

log = structlog.get_logger()

# Bonus attribute given to skills minted from an import
DEFAULT_SKILL_BONUS_ATTRIBUTE = "check"


@dataclass(frozen=True)
class ResolvedGameSystem:
    id: int | None
    code: str


@dataclass(frozen=True)
class ReconcileOutcome:
    record: Any
    match_type: models.MatchType

    @property
    def created(self) -> bool:
        return self.match_type is models.MatchType.created_personal


def _skill_fields(item: ImportedSkill) -> dict[str, Any]:
    return {
        "description": item.description,
        "source": item.source,
        "initial_value": item.value,
        "bonus_attribute": DEFAULT_SKILL_BONUS_ATTRIBUTE,
        "improvable": True,
    }


def _spell_fields(item: ImportedSpell) -> dict[str, Any]:
    return {"description": item.description, "source": item.source, "bonus": item.bonus}


def _priced_fields(item: ImportedEquipment) -> dict[str, Any]:
    return {"description": item.description, "weight": item.weight, "value": item.value}


def _container_fields(item: ImportedContainer) -> dict[str, Any]:
    return {
        "description": item.description,
        "weight": item.weight,
        "value": item.value,
        "capacity": item.capacity,
        "volume": item.volume,
    }


@dataclass(frozen=True)
class _Kind:
    item_type: models.ItemType
    model: type
    fields: Callable[[Any], dict[str, Any]]


_KINDS: dict[models.ItemType, _Kind] = {
    k.item_type: k
    for k in (
        _Kind(models.ItemType.skill, models.Skill, _skill_fields),
        _Kind(models.ItemType.spell, models.Spell, _spell_fields),
        _Kind(models.ItemType.weapon_skill, models.WeaponSkill, _skill_fields),
        _Kind(models.ItemType.weapon, models.Weapon, _priced_fields),
        _Kind(models.ItemType.equipment, models.Equipment, _priced_fields),
        _Kind(models.ItemType.container, models.Container, _container_fields),
    )
}


class Reconciler:
    def __init__(self, *, default_game_system: str = "midgard"):
        self.default_game_system = default_game_system

    async def resolve_game_system(self, session: AsyncSession, label: str | None) -> ResolvedGameSystem:
        """Resolve ``label`` by code, then by name, then fall back to the default system."""
        label = (label or "").strip()
        try:
            if label:
                row = (
                    await session.execute(
                        select(models.GameSystem).where(
                            func.lower(models.GameSystem.code) == label.lower()
                        )
                    )
                ).scalars().first()
                if row is None:
                    row = (
                        await session.execute(
                            select(models.GameSystem).where(
                                func.lower(models.GameSystem.name) == label.lower()
                            )
                        )
                    ).scalars().first()
                if row is not None:
                    return ResolvedGameSystem(row.id, row.code)
            row = (
                await session.execute(
                    select(models.GameSystem)
                    .where(
                        or_(
                            models.GameSystem.is_default.is_(True),
                            func.lower(models.GameSystem.code) == self.default_game_system.lower(),
                        )
                    )
                    .order_by(models.GameSystem.is_default.desc(), models.GameSystem.id)
                )
            ).scalars().first()
        except SQLAlchemyError as exc:
            raise ReconciliationError("game_system", label, exc) from exc
        if row is not None:
            return ResolvedGameSystem(row.id, row.code)
        return ResolvedGameSystem(None, self.default_game_system)

    def _provenance_row(
        self,
        import_history_id: int,
        item_type: models.ItemType,
        item_id: int,
        external_name: str,
        match_type: models.MatchType,
    ) -> models.MasterDataImport:
        return models.MasterDataImport(
            import_history_id=import_history_id,
            item_type=item_type,
            item_id=item_id,
            external_name=external_name,
            match_type=match_type,
        )

    async def _record_provenance(
        self,
        session: AsyncSession,
        import_history_id: int | None,
        item_type: models.ItemType,
        item_id: int,
        external_name: str,
        match_type: models.MatchType,
    ) -> None:
        if import_history_id is None:
            return
        # Own savepoint: a failed provenance row must not poison the import
        try:
            async with session.begin_nested():
                session.add(
                    self._provenance_row(
                        import_history_id, item_type, item_id, external_name, match_type
                    )
                )
        except SQLAlchemyError as exc:
            inc_counter("reconcile.provenance.write_failed")
            log.warning(
                "reconcile.provenance.write_failed",
                import_history_id=import_history_id,
                item_type=item_type.value,
                item_id=item_id,
                external_name=external_name,
                match_type=match_type.value,
                error=str(exc),
            )

    async def _reconcile(
        self,
        session: AsyncSession,
        kind: _Kind,
        item: ImportedItem,
        *,
        game_system: ResolvedGameSystem | str | None,
        import_history_id: int | None,
    ) -> ReconcileOutcome:
        if not isinstance(game_system, ResolvedGameSystem):
            game_system = await self.resolve_game_system(session, game_system)
        model = kind.model

        try:
            existing = (
                await session.execute(
                    select(model)
                    .where(model.name == item.name, model.game_system == game_system.code)
                    .order_by(model.id)
                    .limit(1)
                )
            ).scalars().first()
        except SQLAlchemyError as exc:
            raise ReconciliationError(kind.item_type.value, item.name, exc) from exc

        if existing is not None:
            inc_counter(f"reconcile.{kind.item_type.value}.exact")
            await self._record_provenance(
                session, import_history_id, kind.item_type, existing.id, item.name,
                models.MatchType.exact,
            )
            return ReconcileOutcome(existing, models.MatchType.exact)

        record = model(
            name=item.name,
            game_system=game_system.code,
            game_system_id=game_system.id,
            personal_item=True,
            **kind.fields(item),
        )
        try:
            session.add(record)
            await session.flush()
        except SQLAlchemyError as exc:
            raise ReconciliationError(kind.item_type.value, item.name, exc) from exc

        inc_counter(f"reconcile.{kind.item_type.value}.created_personal")
        log.info(
            "reconcile.created_personal",
            item_type=kind.item_type.value,
            name=item.name,
            game_system=game_system.code,
            item_id=record.id,
        )
        await self._record_provenance(
            session, import_history_id, kind.item_type, record.id, item.name,
            models.MatchType.created_personal,
        )
        return ReconcileOutcome(record, models.MatchType.created_personal)

    async def reconcile(
        self,
        session: AsyncSession,
        item_type: models.ItemType,
        item: ImportedItem,
        *,
        game_system: ResolvedGameSystem | str | None = None,
        import_history_id: int | None = None,
    ) -> ReconcileOutcome:
        return await self._reconcile(
            session,
            _KINDS[item_type],
            item,
            game_system=game_system,
            import_history_id=import_history_id,
        )

    async def reconcile_skill(
        self, session: AsyncSession, item: ImportedSkill, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.skill, item, **kwargs)

    async def reconcile_spell(
        self, session: AsyncSession, item: ImportedSpell, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.spell, item, **kwargs)

    async def reconcile_weapon_skill(
        self, session: AsyncSession, item: ImportedWeaponSkill, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.weapon_skill, item, **kwargs)

    async def reconcile_weapon(
        self, session: AsyncSession, item: ImportedWeapon, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.weapon, item, **kwargs)

    async def reconcile_equipment(
        self, session: AsyncSession, item: ImportedEquipment, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.equipment, item, **kwargs)

    async def reconcile_container(
        self, session: AsyncSession, item: ImportedContainer, **kwargs: Any
    ) -> ReconcileOutcome:
        return await self.reconcile(session, models.ItemType.container, item, **kwargs)

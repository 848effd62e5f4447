"""Rebuild the canonical character from its stored aggregate for export."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from Sheetbridge import models
from Sheetbridge.schemas import ATTRIBUTE_CODES, CharacterImport


async def load_character_import(session: AsyncSession, character: models.Character) -> CharacterImport:
    """Stored rows win over the import-time sheet snapshot for scalar values.

    Collections (skills, items, ...) only live in the snapshot.
    """
    base = CharacterImport.model_validate(character.sheet or {})

    attr_rows = (
        await session.execute(
            select(models.CharacterAttribute).where(
                models.CharacterAttribute.character_id == character.id
            )
        )
    ).scalars().all()
    by_code = {row.code: row.value for row in attr_rows}
    attributes = base.attributes.model_copy(
        update={f: by_code[c] for f, c in ATTRIBUTE_CODES.items() if c in by_code}
    )

    pools = {
        row.kind: row
        for row in (
            await session.execute(
                select(models.CharacterPointPool).where(
                    models.CharacterPointPool.character_id == character.id
                )
            )
        ).scalars()
    }

    def _pool(kind: str, current):
        row = pools.get(kind)
        if row is None:
            return current
        return current.model_copy(update={"max": row.max, "value": row.value})

    experience = (
        await session.execute(
            select(models.CharacterExperience).where(
                models.CharacterExperience.character_id == character.id
            )
        )
    ).scalar_one_or_none()
    luck = (
        await session.execute(
            select(models.CharacterLuckPoints).where(
                models.CharacterLuckPoints.character_id == character.id
            )
        )
    ).scalar_one_or_none()

    update = {
        "name": character.name,
        "race": character.race,
        "char_class": character.char_class,
        "grade": character.grade,
        "age": character.age,
        "salutation": character.salutation,
        "height": character.height,
        "weight": character.weight,
        "faith": character.faith,
        "handedness": character.handedness,
        "image": character.image,
        "attributes": attributes,
        "life_points": _pool("lp", base.life_points),
        "action_points": _pool("ap", base.action_points),
        "movement": _pool("b", base.movement),
    }
    if experience is not None:
        update["experience"] = base.experience.model_copy(update={"value": experience.value})
    if luck is not None:
        update["luck_points"] = base.luck_points.model_copy(
            update={"gg": luck.gg, "gp": luck.gp, "sg": luck.sg}
        )
    return base.model_copy(update=update)

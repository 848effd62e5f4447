# models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from Sheetbridge.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportStatus(str, enum.Enum):
    in_progress = "in_progress"
    success = "success"
    failed = "failed"


class MatchType(str, enum.Enum):
    exact = "exact"
    created_personal = "created_personal"


class ItemType(str, enum.Enum):
    skill = "skill"
    spell = "spell"
    weapon_skill = "weapon_skill"
    weapon = "weapon"
    equipment = "equipment"
    container = "container"


class GameSystem(Base):
    __tablename__ = "game_systems"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)


# --- master catalog ---


class CatalogItemMixin:
    """Columns shared by every master-catalog table.

    Rows with ``personal_item`` set were minted by an import because no
    catalog entry with the same name existed in that game system.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), index=True)
    game_system: Mapped[str] = mapped_column(String(32), default="midgard", index=True)
    game_system_id: Mapped[int | None] = mapped_column(
        ForeignKey("game_systems.id", ondelete="SET NULL"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, default="")
    source: Mapped[str] = mapped_column(String(120), default="")
    personal_item: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Skill(CatalogItemMixin, Base):
    __tablename__ = "skills"
    initial_value: Mapped[int] = mapped_column(Integer, default=0)
    bonus_attribute: Mapped[str] = mapped_column(String(32), default="")
    improvable: Mapped[bool] = mapped_column(Boolean, default=True)
    __table_args__ = (Index("ix_skills_system_name", "game_system", "name"),)


class WeaponSkill(CatalogItemMixin, Base):
    __tablename__ = "weapon_skills"
    initial_value: Mapped[int] = mapped_column(Integer, default=0)
    bonus_attribute: Mapped[str] = mapped_column(String(32), default="")
    improvable: Mapped[bool] = mapped_column(Boolean, default=True)
    __table_args__ = (Index("ix_weapon_skills_system_name", "game_system", "name"),)


class Spell(CatalogItemMixin, Base):
    __tablename__ = "spells"
    bonus: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (Index("ix_spells_system_name", "game_system", "name"),)


class Weapon(CatalogItemMixin, Base):
    __tablename__ = "weapons"
    weight: Mapped[float] = mapped_column(Float, default=0.0)
    value: Mapped[float] = mapped_column(Float, default=0.0)
    __table_args__ = (Index("ix_weapons_system_name", "game_system", "name"),)


class Equipment(CatalogItemMixin, Base):
    __tablename__ = "equipment"
    weight: Mapped[float] = mapped_column(Float, default=0.0)
    value: Mapped[float] = mapped_column(Float, default=0.0)
    __table_args__ = (Index("ix_equipment_system_name", "game_system", "name"),)


class Container(CatalogItemMixin, Base):
    __tablename__ = "containers"
    weight: Mapped[float] = mapped_column(Float, default=0.0)
    value: Mapped[float] = mapped_column(Float, default=0.0)
    capacity: Mapped[float] = mapped_column(Float, default=0.0)
    volume: Mapped[float] = mapped_column(Float, default=0.0)
    __table_args__ = (Index("ix_containers_system_name", "game_system", "name"),)


# --- character aggregate ---


class Character(Base):
    __tablename__ = "characters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    race: Mapped[str] = mapped_column(String(64), default="")
    char_class: Mapped[str] = mapped_column(String(64), default="")
    game_system: Mapped[str] = mapped_column(String(32), default="midgard")
    grade: Mapped[int] = mapped_column(Integer, default=0)
    age: Mapped[int] = mapped_column(Integer, default=0)
    salutation: Mapped[str] = mapped_column(String(32), default="")
    height: Mapped[int] = mapped_column(Integer, default=0)
    weight: Mapped[int] = mapped_column(Integer, default=0)
    faith: Mapped[str] = mapped_column(String(120), default="")
    handedness: Mapped[str] = mapped_column(String(32), default="")
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_from_adapter: Mapped[str | None] = mapped_column(String(64), nullable=True)
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Canonical snapshot of the imported sheet; source of truth for export
    sheet: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class CharacterAttribute(Base):
    __tablename__ = "character_attributes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_id: Mapped[int] = mapped_column(
        ForeignKey("characters.id", ondelete="CASCADE"), index=True
    )
    code: Mapped[str] = mapped_column(String(4))
    value: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (UniqueConstraint("character_id", "code", name="ux_character_attribute"),)


class CharacterPointPool(Base):
    """Life (lp), action (ap) and movement (b) points as max/current pairs."""

    __tablename__ = "character_point_pools"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_id: Mapped[int] = mapped_column(
        ForeignKey("characters.id", ondelete="CASCADE"), index=True
    )
    kind: Mapped[str] = mapped_column(String(8))
    max: Mapped[int] = mapped_column(Integer, default=0)
    value: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (UniqueConstraint("character_id", "kind", name="ux_character_pool"),)


class CharacterExperience(Base):
    __tablename__ = "character_experience"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_id: Mapped[int] = mapped_column(
        ForeignKey("characters.id", ondelete="CASCADE"), unique=True
    )
    value: Mapped[int] = mapped_column(Integer, default=0)


class CharacterLuckPoints(Base):
    __tablename__ = "character_luck_points"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_id: Mapped[int] = mapped_column(
        ForeignKey("characters.id", ondelete="CASCADE"), unique=True
    )
    gg: Mapped[int] = mapped_column(Integer, default=0)
    gp: Mapped[int] = mapped_column(Integer, default=0)
    sg: Mapped[int] = mapped_column(Integer, default=0)


# --- import ledger ---


class ImportHistory(Base):
    __tablename__ = "import_histories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    character_id: Mapped[int | None] = mapped_column(
        ForeignKey("characters.id", ondelete="SET NULL"), nullable=True, index=True
    )
    adapter_id: Mapped[str] = mapped_column(String(64))
    source_format: Mapped[str] = mapped_column(String(64), default="")
    source_filename: Mapped[str] = mapped_column(String(255), default="")
    source_snapshot: Mapped[bytes] = mapped_column(LargeBinary)
    bmrt_version: Mapped[str] = mapped_column(String(16), default="1.0")
    status: Mapped[ImportStatus] = mapped_column(
        SAEnum(ImportStatus, name="import_status"), default=ImportStatus.in_progress
    )
    error_log: Mapped[str] = mapped_column(Text, default="")
    imported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class MasterDataImport(Base):
    """Write-once provenance row for one catalog decision."""

    __tablename__ = "master_data_imports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    import_history_id: Mapped[int] = mapped_column(
        ForeignKey("import_histories.id", ondelete="CASCADE"), index=True
    )
    item_type: Mapped[ItemType] = mapped_column(SAEnum(ItemType, name="item_type"))
    item_id: Mapped[int] = mapped_column(Integer)
    external_name: Mapped[str] = mapped_column(String(200))
    match_type: Mapped[MatchType] = mapped_column(SAEnum(MatchType, name="match_type"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

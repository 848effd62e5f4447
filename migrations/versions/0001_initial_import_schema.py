"""initial import schema: game systems, master catalog, characters, import ledger

Revision ID: 0001a1b2c3d4
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001a1b2c3d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_CATALOG_TABLES = ("skills", "weapon_skills", "spells", "weapons", "equipment", "containers")

_import_status = sa.Enum("in_progress", "success", "failed", name="import_status")
_item_type = sa.Enum(
    "skill", "spell", "weapon_skill", "weapon", "equipment", "container", name="item_type"
)
_match_type = sa.Enum("exact", "created_personal", name="match_type")


def _now() -> sa.TextClause:
    return sa.text("CURRENT_TIMESTAMP")


def _catalog_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("game_system", sa.String(length=32), nullable=False, server_default="midgard"),
        sa.Column(
            "game_system_id",
            sa.Integer(),
            sa.ForeignKey("game_systems.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("source", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("personal_item", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
    ]


def _skill_columns() -> list[sa.Column]:
    return [
        sa.Column("initial_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_attribute", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("improvable", sa.Boolean(), nullable=False, server_default=sa.true()),
    ]


def _priced_columns() -> list[sa.Column]:
    return [
        sa.Column("weight", sa.Float(), nullable=False, server_default="0"),
        sa.Column("value", sa.Float(), nullable=False, server_default="0"),
    ]


def upgrade() -> None:
    op.create_table(
        "game_systems",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("code"),
    )

    extra = {
        "skills": _skill_columns,
        "weapon_skills": _skill_columns,
        "spells": lambda: [sa.Column("bonus", sa.Integer(), nullable=False, server_default="0")],
        "weapons": _priced_columns,
        "equipment": _priced_columns,
        "containers": lambda: _priced_columns()
        + [
            sa.Column("capacity", sa.Float(), nullable=False, server_default="0"),
            sa.Column("volume", sa.Float(), nullable=False, server_default="0"),
        ],
    }
    for table in _CATALOG_TABLES:
        op.create_table(table, *_catalog_columns(), *extra[table]())
        op.create_index(op.f(f"ix_{table}_name"), table, ["name"], unique=False)
        op.create_index(op.f(f"ix_{table}_game_system"), table, ["game_system"], unique=False)
        op.create_index(f"ix_{table}_system_name", table, ["game_system", "name"], unique=False)

    op.create_table(
        "characters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("race", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("char_class", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("game_system", sa.String(length=32), nullable=False, server_default="midgard"),
        sa.Column("grade", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("age", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("salutation", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("height", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("weight", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("faith", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("handedness", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("image", sa.Text(), nullable=True),
        sa.Column("imported_from_adapter", sa.String(length=64), nullable=True),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sheet", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
    )
    op.create_index(op.f("ix_characters_user_id"), "characters", ["user_id"], unique=False)
    op.create_index(op.f("ix_characters_name"), "characters", ["name"], unique=False)

    op.create_table(
        "character_attributes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "character_id",
            sa.Integer(),
            sa.ForeignKey("characters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.String(length=4), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("character_id", "code", name="ux_character_attribute"),
    )
    op.create_index(
        op.f("ix_character_attributes_character_id"), "character_attributes", ["character_id"]
    )

    op.create_table(
        "character_point_pools",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "character_id",
            sa.Integer(),
            sa.ForeignKey("characters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(length=8), nullable=False),
        sa.Column("max", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("character_id", "kind", name="ux_character_pool"),
    )
    op.create_index(
        op.f("ix_character_point_pools_character_id"), "character_point_pools", ["character_id"]
    )

    op.create_table(
        "character_experience",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "character_id",
            sa.Integer(),
            sa.ForeignKey("characters.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "character_luck_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "character_id",
            sa.Integer(),
            sa.ForeignKey("characters.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("gg", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sg", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "import_histories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "character_id",
            sa.Integer(),
            sa.ForeignKey("characters.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("adapter_id", sa.String(length=64), nullable=False),
        sa.Column("source_format", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("source_filename", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("source_snapshot", sa.LargeBinary(), nullable=False),
        sa.Column("bmrt_version", sa.String(length=16), nullable=False, server_default="1.0"),
        sa.Column("status", _import_status, nullable=False, server_default="in_progress"),
        sa.Column("error_log", sa.Text(), nullable=False, server_default=""),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
    )
    op.create_index(op.f("ix_import_histories_user_id"), "import_histories", ["user_id"])
    op.create_index(op.f("ix_import_histories_character_id"), "import_histories", ["character_id"])

    op.create_table(
        "master_data_imports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "import_history_id",
            sa.Integer(),
            sa.ForeignKey("import_histories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_type", _item_type, nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("external_name", sa.String(length=200), nullable=False),
        sa.Column("match_type", _match_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now()),
    )
    op.create_index(
        op.f("ix_master_data_imports_import_history_id"),
        "master_data_imports",
        ["import_history_id"],
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_master_data_imports_import_history_id"), table_name="master_data_imports")
    op.drop_table("master_data_imports")
    op.drop_index(op.f("ix_import_histories_character_id"), table_name="import_histories")
    op.drop_index(op.f("ix_import_histories_user_id"), table_name="import_histories")
    op.drop_table("import_histories")
    op.drop_table("character_luck_points")
    op.drop_table("character_experience")
    op.drop_index(op.f("ix_character_point_pools_character_id"), table_name="character_point_pools")
    op.drop_table("character_point_pools")
    op.drop_index(op.f("ix_character_attributes_character_id"), table_name="character_attributes")
    op.drop_table("character_attributes")
    op.drop_index(op.f("ix_characters_name"), table_name="characters")
    op.drop_index(op.f("ix_characters_user_id"), table_name="characters")
    op.drop_table("characters")
    for table in reversed(_CATALOG_TABLES):
        op.drop_index(f"ix_{table}_system_name", table_name=table)
        op.drop_index(op.f(f"ix_{table}_game_system"), table_name=table)
        op.drop_index(op.f(f"ix_{table}_name"), table_name=table)
        op.drop_table(table)
    op.drop_table("game_systems")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum in (_match_type, _item_type, _import_status):
            enum.drop(bind, checkfirst=True)

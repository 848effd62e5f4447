# schemas.py
"""Canonical interchange models (BMRT) and API payloads.

Field names are English; the wire keys adapters exchange are the German
aliases, so always dump with ``by_alias=True`` when talking to an adapter.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

CURRENT_BMRT_VERSION = "1.0"
SUPPORTED_BMRT_VERSIONS = ("1.0",)

_WIRE = dict(populate_by_name=True, extra="ignore")

# Attribute field name -> short code stored on character_attributes rows
ATTRIBUTE_CODES = {
    "st": "St", "gs": "Gs", "gw": "Gw", "ko": "Ko", "in_": "In",
    "zt": "Zt", "au": "Au", "pa": "Pa", "wk": "Wk",
}


class Capability(str, enum.Enum):
    detect = "detect"
    import_ = "import"
    export = "export"


# -----------------------------
# Embedded items
# -----------------------------


class Magic(BaseModel):
    is_magic: bool = Field(default=False, alias="ist_magisch")
    abw: int = 0
    burnt_out: bool = Field(default=False, alias="ausgebrannt")

    model_config = _WIRE


class ImportedItem(BaseModel):
    id: str = ""
    name: str
    description: str = Field(default="", alias="beschreibung")

    model_config = _WIRE


class ImportedSkill(ImportedItem):
    value: int = Field(default=0, alias="fertigkeitswert")
    bonus: int = 0
    practice_points: int = Field(default=0, alias="pp")
    source: str = Field(default="", alias="quelle")


class ImportedWeaponSkill(ImportedSkill):
    pass


class ImportedSpell(ImportedItem):
    bonus: int = 0
    source: str = Field(default="", alias="quelle")


class ImportedEquipment(ImportedItem):
    quantity: int = Field(default=0, alias="anzahl")
    contained_in: str = Field(default="", alias="beinhaltet_in")
    bonus: int = 0
    weight: float = Field(default=0.0, alias="gewicht")
    value: float = Field(default=0.0, alias="wert")
    magic: Magic = Field(default_factory=Magic, alias="magisch")


class ImportedWeapon(ImportedEquipment):
    abwb: int = 0
    anb: int = 0
    schb: int = 0
    specialization_name: str = Field(default="", alias="nameFuerSpezialisierung")


class ImportedContainer(ImportedItem):
    contained_in: str = Field(default="", alias="beinhaltet_in")
    weight: float = Field(default=0.0, alias="gewicht")
    value: float = Field(default=0.0, alias="wert")
    capacity: float = Field(default=0.0, alias="tragkraft")
    volume: float = Field(default=0.0, alias="volumen")
    magic: Magic = Field(default_factory=Magic, alias="magisch")


class ImportedVehicle(ImportedContainer):
    pass


# -----------------------------
# Character scalars
# -----------------------------


class Attributes(BaseModel):
    au: int = 0
    gs: int = 0
    gw: int = 0
    in_: int = Field(default=0, alias="in")
    ko: int = 0
    pa: int = 0
    st: int = 0
    wk: int = 0
    zt: int = 0

    model_config = _WIRE

    def as_codes(self) -> dict[str, int]:
        return {code: getattr(self, field) for field, code in ATTRIBUTE_CODES.items()}


class PointPool(BaseModel):
    max: int = 0
    value: int = 0


class Experience(BaseModel):
    value: int = 0


class LuckPoints(BaseModel):
    gg: int = 0
    gp: int = 0
    sg: int = 0


class Traits(BaseModel):
    eye_color: str = Field(default="", alias="augenfarbe")
    hair_color: str = Field(default="", alias="haarfarbe")
    other: str = Field(default="", alias="sonstige")

    model_config = _WIRE


class Build(BaseModel):
    width: str = Field(default="", alias="breite")
    size: str = Field(default="", alias="groesse")

    model_config = _WIRE


class CharacterImport(BaseModel):
    """The contract every adapter produces on import and accepts on export."""

    id: str = ""
    name: str = ""
    race: str = Field(default="", alias="rasse")
    char_class: str = Field(default="", alias="typ")
    game_system: str | None = None
    age: int = Field(default=0, alias="alter")
    salutation: str = Field(default="", alias="anrede")
    grade: int = Field(default=0, alias="grad")
    height: int = Field(default=0, alias="groesse")
    weight: int = Field(default=0, alias="gewicht")
    faith: str = Field(default="", alias="glaube")
    handedness: str = Field(default="", alias="hand")
    attributes: Attributes = Field(default_factory=Attributes, alias="eigenschaften")
    life_points: PointPool = Field(default_factory=PointPool, alias="lp")
    action_points: PointPool = Field(default_factory=PointPool, alias="ap")
    movement: PointPool = Field(default_factory=PointPool, alias="b")
    experience: Experience = Field(default_factory=Experience, alias="erfahrungsschatz")
    luck_points: LuckPoints = Field(default_factory=LuckPoints, alias="bennies")
    traits: Traits = Field(default_factory=Traits, alias="merkmale")
    build: Build = Field(default_factory=Build, alias="gestalt")
    skills: list[ImportedSkill] = Field(default_factory=list, alias="fertigkeiten")
    spells: list[ImportedSpell] = Field(default_factory=list, alias="zauber")
    weapon_skills: list[ImportedWeaponSkill] = Field(
        default_factory=list, alias="waffenfertigkeiten"
    )
    weapons: list[ImportedWeapon] = Field(default_factory=list, alias="waffen")
    equipment: list[ImportedEquipment] = Field(default_factory=list, alias="ausruestung")
    containers: list[ImportedContainer] = Field(default_factory=list, alias="behaeltnisse")
    vehicles: list[ImportedVehicle] = Field(default_factory=list, alias="transportmittel")
    specializations: list[str] = Field(default_factory=list, alias="spezialisierung")
    image: str | None = None

    model_config = _WIRE

    def system_label(self) -> str:
        """Label used to resolve the game system for catalog lookups."""
        return self.game_system or self.char_class

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SourceMetadata(BaseModel):
    source_format: str = ""
    adapter_id: str = ""
    imported_at: datetime | None = None


class BMRTCharacter(CharacterImport):
    """CharacterImport wrapped with version, extensions and source info."""

    bmrt_version: str = CURRENT_BMRT_VERSION
    extensions: dict[str, Any] = Field(default_factory=dict)
    source_metadata: SourceMetadata | None = Field(default=None, alias="_metadata")

    def as_import(self) -> CharacterImport:
        return CharacterImport.model_validate(
            self.model_dump(by_alias=True, exclude={"bmrt_version", "extensions", "source_metadata"})
        )


# -----------------------------
# Adapter descriptors
# -----------------------------


class AdapterMetadata(BaseModel):
    id: str = ""
    name: str = ""
    version: str = ""
    bmrt_versions: list[str] = Field(default_factory=list)
    supported_extensions: list[str] = Field(default_factory=list)
    base_url: str = ""
    capabilities: list[Capability] = Field(default_factory=list)
    healthy: bool = False
    last_checked_at: datetime | None = None
    last_error: str = ""

    model_config = dict(extra="ignore")

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def handles_extension(self, ext: str) -> bool:
        ext = ext.lower().lstrip(".")
        return any(e.lower().lstrip(".") == ext for e in self.supported_extensions)


class DetectProbeResponse(BaseModel):
    """Body returned by an adapter's ``POST /detect``."""

    confidence: float = 0.0
    version: str | None = None


# -----------------------------
# API payloads
# -----------------------------


class DetectResponse(BaseModel):
    adapter_id: str
    confidence: float
    method: str
    suggested_adapter_name: str = ""


class ValidationIssue(BaseModel):
    field: str
    message: str
    source: str


class ImportResult(BaseModel):
    character_id: int
    import_id: int
    adapter_id: str
    warnings: list[ValidationIssue] = Field(default_factory=list)
    created_items: dict[str, int] = Field(default_factory=dict)
    status: str


class ImportHistoryOut(BaseModel):
    id: int
    character_id: int | None
    adapter_id: str
    source_format: str
    source_filename: str
    bmrt_version: str
    status: str
    error_log: str
    imported_at: datetime

    model_config = dict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def _enum_value(cls, v):
        return getattr(v, "value", v)


class MasterDataImportOut(BaseModel):
    id: int
    item_type: str
    item_id: int
    external_name: str
    match_type: str
    created_at: datetime

    model_config = dict(from_attributes=True)

    @field_validator("item_type", "match_type", mode="before")
    @classmethod
    def _enum_value(cls, v):
        return getattr(v, "value", v)


class ImportHistoryPage(BaseModel):
    histories: list[ImportHistoryOut]
    total: int
    page: int
    per_page: int


class ImportDetail(BaseModel):
    history: ImportHistoryOut
    master_data_imports: list[MasterDataImportOut]

"""TakeoffCalc Pydantic models for type-safe data validation.

Feature props are a tagged union: the feature type selects one props model
through PROPS_BY_TYPE, and rule lookups go through that model's accessors.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_number(value: Any) -> bool:
    """True for real numbers (bools excluded)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def as_number(value: Any) -> float | None:
    """Numbers and numeric strings ("9", " 2.5 ") as floats; anything else is None."""
    if is_number(value):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


class FeatureType(str, Enum):
    """Known feature types produced by extraction."""

    ROOM = "ROOM"
    WALL = "WALL"
    OPENING = "OPENING"
    PIPE = "PIPE"
    DUCT = "DUCT"
    FIXTURE = "FIXTURE"


class Severity(str, Enum):
    """Issue severity levels shared by validation and consistency reports."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# --- Feature props (one variant per feature type) ---------------------------


def _field(*aliases: str) -> Any:
    """Optional prop accepting its snake_case name or any camelCase alias."""
    return Field(default=None, validation_alias=AliasChoices(*aliases), serialization_alias=aliases[-1])


class FeatureProps(BaseModel):
    """Common base for typed feature props; unknown keys are kept as extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    kind: str = Field(default="GENERIC", exclude=True)

    @classmethod
    def _alias_index(cls) -> dict[str, str]:
        index: dict[str, str] = {}
        for name, info in cls.model_fields.items():
            if name == "kind":
                continue
            index[name] = name
            if info.serialization_alias:
                index[info.serialization_alias] = name
            choices = info.validation_alias
            if isinstance(choices, AliasChoices):
                for choice in choices.choices:
                    if isinstance(choice, str):
                        index[choice] = name
        return index

    def get(self, key: str, default: Any = None) -> Any:
        """Read a prop by field name, alias or extra key."""
        attribute = self._alias_index().get(key)
        if attribute is not None:
            value = getattr(self, attribute)
            return default if value is None else value
        extras = self.model_extra or {}
        return extras.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._alias_index() or key in (self.model_extra or {})

    def numeric_items(self) -> dict[str, float]:
        """Every numeric prop, keyed by field name and by alias."""
        numbers: dict[str, float] = {}
        for key, attribute in self._alias_index().items():
            number = as_number(getattr(self, attribute))
            if number is not None:
                numbers[key] = number
        for key, value in (self.model_extra or {}).items():
            number = as_number(value)
            if number is not None:
                numbers[key] = number
        return numbers

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RoomProps(FeatureProps):
    kind: Literal["ROOM"] = Field(default="ROOM", exclude=True)
    name: str | None = None
    program: str | None = None
    level: str | None = None
    room_number: str | None = _field("room_number", "roomNumber")
    height_ft: float | None = _field("height_ft", "heightFt")
    source_id: str | None = _field("source_id", "sourceId")


class WallProps(FeatureProps):
    kind: Literal["WALL"] = Field(default="WALL", exclude=True)
    partition_type: str | None = _field("partition_type", "partitionType")
    level: str | None = None
    height_ft: float | None = _field("height_ft", "heightFt")


class OpeningProps(FeatureProps):
    kind: Literal["OPENING"] = Field(default="OPENING", exclude=True)
    opening_type: str | None = _field("opening_type", "openingType")
    width_ft: float | None = _field("width_ft", "widthFt")
    height_ft: float | None = _field("height_ft", "heightFt")


class PipeProps(FeatureProps):
    kind: Literal["PIPE"] = Field(default="PIPE", exclude=True)
    service: str | None = None
    diameter_in: float | None = _field("diameter_in", "diameterIn")
    room: str | None = _field("room", "roomName")


class DuctProps(FeatureProps):
    kind: Literal["DUCT"] = Field(default="DUCT", exclude=True)
    service: str | None = None
    size: str | None = None
    room: str | None = _field("room", "roomName")


class FixtureProps(FeatureProps):
    kind: Literal["FIXTURE"] = Field(default="FIXTURE", exclude=True)
    fixture_type: str | None = _field("fixture_type", "fixtureType")
    service: str | None = None
    room: str | None = _field("room", "roomName")


class GenericProps(FeatureProps):
    kind: Literal["GENERIC"] = Field(default="GENERIC", exclude=True)


PROPS_BY_TYPE: dict[str, type[FeatureProps]] = {
    FeatureType.ROOM.value: RoomProps,
    FeatureType.WALL.value: WallProps,
    FeatureType.OPENING.value: OpeningProps,
    FeatureType.PIPE.value: PipeProps,
    FeatureType.DUCT.value: DuctProps,
    FeatureType.FIXTURE.value: FixtureProps,
}

AnyProps = Annotated[
    Union[RoomProps, WallProps, OpeningProps, PipeProps, DuctProps, FixtureProps, GenericProps],
    Field(discriminator="kind"),
]


def props_model_for(feature_type: str | None) -> type[FeatureProps]:
    return PROPS_BY_TYPE.get((feature_type or "").upper(), GenericProps)


# --- Features ----------------------------------------------------------------


class Provenance(BaseModel):
    """Where a feature came from."""

    method: str = "vision"
    source: str | None = None  # model or tool identifier
    confidence: float | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class ValidationIssue(BaseModel):
    """One finding from the per-feature validator."""

    type: Literal["dimension", "geometry", "consistency", "provenance", "material"]
    severity: Severity
    message: str
    field: str | None = None
    value: Any = None
    expected_range: tuple[float, float] | None = None


class FeatureValidation(BaseModel):
    """Validation result attached to a feature."""

    is_valid: bool
    confidence: float
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == Severity.WARNING)


class Feature(BaseModel):
    """One extracted building element."""

    id: UUID = Field(default_factory=uuid4)
    job_id: str | None = None
    sheet_id: str | None = None  # id of the Sheet the feature was read from
    type: str | None = None

    area: float | None = None
    length: float | None = None
    count: float | None = None

    polygon: list[tuple[float, float]] | None = None
    polyline: list[tuple[float, float]] | None = None

    props: AnyProps = Field(default_factory=GenericProps)
    provenance: Provenance | None = None
    validation: FeatureValidation | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "type": "WALL",
                "sheet_id": "A-101",
                "length": 20.0,
                "props": {"partitionType": "PT-1", "level": "L1"},
                "provenance": {"method": "vision", "source": "gpt-4o-mini"},
            }
        }

    @model_validator(mode="before")
    @classmethod
    def _select_props_variant(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("type"), str):
            data["type"] = data["type"].strip().upper() or None
        props_cls = props_model_for(data.get("type"))
        raw = data.get("props")
        if raw is None:
            raw = {}
        elif isinstance(raw, FeatureProps):
            if isinstance(raw, props_cls):
                return data
            raw = {**raw.model_dump(by_alias=True, exclude_none=True), **(raw.model_extra or {})}
        elif not isinstance(raw, dict):
            raise ValueError("props must be a mapping")
        data["props"] = {**raw, "kind": props_cls.model_fields["kind"].default}
        return data

    def lookup(self, path: str) -> Any:
        """Resolve a rule condition key against this feature.

        Top-level numeric fields come first, then typed props (by name or
        alias), then prop extras, then dotted paths into nested mappings.
        """
        if path in ("length", "area", "count"):
            value = getattr(self, path)
            if value is not None:
                return value
        if self.props.has(path):
            return self.props.get(path)
        head, _, rest = path.partition(".")
        if not rest:
            return None
        current: Any = self.props.get(head)
        if current is None and head == "props":
            current = self.props.as_dict()
        for part in rest.split("."):
            if isinstance(current, FeatureProps):
                current = current.get(part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return None
        return current

    def numeric_props(self) -> dict[str, float]:
        return self.props.numeric_items()


# --- Sheets ------------------------------------------------------------------


class SheetCategory(str, Enum):
    """Drawing sheet categories assigned by classification."""

    SITE = "site"
    DEMO_FLOOR = "demo_floor"
    FLOOR = "floor"
    FIXTURE = "fixture"
    RCP = "rcp"
    ELEVATIONS = "elevations"
    SECTIONS = "sections"
    MATERIALS = "materials"
    FURNITURE = "furniture"
    ARTWORK = "artwork"
    RR_DETAILS = "rr_details"
    OTHER = "other"


class ScaleRatio(BaseModel):
    """Plan-units to real-units pair, e.g. 0.25 inch : 1 foot."""

    plan_value: float | None = None
    plan_units: str | None = None
    real_value: float | None = None
    real_units: str | None = None


class SheetClassification(BaseModel):
    """Classification stage output for one sheet."""

    sheet_id: str | None = None
    title: str | None = None
    discipline: list[str] = Field(default_factory=list)
    category: SheetCategory = SheetCategory.OTHER
    confidence: float | None = None
    notes: str | None = None
    is_primary_plan: bool | None = None

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() not in {c.value for c in SheetCategory}:
            return SheetCategory.OTHER
        return v.lower() if isinstance(v, str) else v


class Sheet(BaseModel):
    """One page of a drawing set."""

    id: UUID = Field(default_factory=uuid4)
    job_id: str | None = None
    index: int
    name: str | None = None
    discipline: str | None = None
    scale: str | None = None  # free-text scale note
    units: str | None = None
    scale_ratio: ScaleRatio | None = None
    width_px: int | None = None
    height_px: int | None = None
    render_dpi: int | None = None
    classification: SheetClassification | None = None

    @property
    def category(self) -> str | None:
        return self.classification.category.value if self.classification else None

    @property
    def label(self) -> str:
        return self.name or f"Sheet {self.index + 1}"


# --- Rule sets ---------------------------------------------------------------


class RuleUnits(BaseModel):
    linear: str
    area: str
    volume: str | None = None


class RuleMaterial(BaseModel):
    """Material line produced when a rule matches."""

    sku: str
    qty: str  # quantity expression
    uom: str | None = None
    description: str | None = None

    @field_validator("qty", mode="before")
    @classmethod
    def coerce_qty(cls, v: Any) -> Any:
        if is_number(v):
            return str(v)
        return v

    @field_validator("sku", "qty")
    @classmethod
    def require_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Each material entry requires sku and qty")
        return v.strip()


class MaterialRule(BaseModel):
    """Condition map plus the materials it produces."""

    when: dict[str, Any]
    materials: list[RuleMaterial] = Field(min_length=1)


class RuleSet(BaseModel):
    """Versioned condition -> materials rule collection."""

    version: str
    units: RuleUnits
    vars: dict[str, Any] = Field(default_factory=dict)
    rules: list[MaterialRule]

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        if is_number(v):
            return str(v)
        return v

    @field_validator("version")
    @classmethod
    def require_version(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Rule set must include version")
        return v

    @field_validator("vars", mode="before")
    @classmethod
    def default_vars(cls, v: Any) -> Any:
        return {} if v is None else v

    def numeric_vars(self) -> dict[str, float]:
        numbers: dict[str, float] = {}
        for key, value in self.vars.items():
            number = as_number(value)
            if number is not None:
                numbers[key] = number
        return numbers


# --- Materials ---------------------------------------------------------------


class MaterialPricing(BaseModel):
    unit_price: Decimal | None = None
    total_price: Decimal | None = None
    currency: str = "USD"


class MaterialSources(BaseModel):
    features: list[str] = Field(default_factory=list)
    rule: str


class Material(BaseModel):
    """A bill-of-materials line derived from rules."""

    sku: str
    qty: float
    uom: str
    description: str | None = None
    rule_id: str
    sources: MaterialSources
    pricing: MaterialPricing | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "sku": "STUD-362-20GA",
                "qty": 15.0,
                "uom": "ea",
                "description": '3-5/8" Metal Stud, 20 GA',
                "rule_id": "eyJmZWF0",
                "sources": {"features": ["wall-1"], "rule": "STUD-362-20GA"},
                "pricing": {"unit_price": Decimal("8.50"), "total_price": Decimal("127.50"), "currency": "USD"},
            }
        }


# --- Jobs --------------------------------------------------------------------


class JobHistoryEntry(BaseModel):
    status: JobStatus
    timestamp: datetime = Field(default_factory=utcnow)
    message: str | None = None


class Job(BaseModel):
    """A takeoff job and its lifecycle state."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str | None = None
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    history: list[JobHistoryEntry] = Field(default_factory=list)
    error: str | None = None

    file_path: str | None = None
    rule_set_id: str | None = None
    webhook_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

"""Per-sheet extraction records consumed by fusion, and the fused outputs."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from takeoffcalc.models import ScaleRatio

Point = tuple[float, float]
BBox = tuple[float, float, float, float]

SpaceCategory = Literal["cafe", "sales", "boh", "restroom", "patio", "other"]
SPACE_CATEGORIES = ("cafe", "sales", "boh", "restroom", "patio", "other")


def _space_category(value: Any) -> str:
    if isinstance(value, str) and value.lower() in SPACE_CATEGORIES:
        return value.lower()
    return "other"


class SheetRecord(BaseModel):
    """Fields every per-sheet record carries."""

    sheet_index: int
    sheet_name: str | None = None


class RoomScheduleEntry(SheetRecord):
    room_number: str
    room_name: str | None = None
    floor_finish_code: str | None = None
    wall_finish_code: str | None = None
    ceiling_finish_code: str | None = None
    base_code: str | None = None
    source_category: str | None = None
    notes: str | None = None


class RoomSpatialMapping(SheetRecord):
    room_number: str
    room_name: str | None = None
    label_center_px: Point | None = None
    bounding_box_px: BBox | None = None
    confidence: float | None = None
    notes: str | None = None


class RoomCeilingHeight(SheetRecord):
    room_number: str | None = None
    space_id: str | None = None
    height_ft: float | None = None
    source_note: str | None = None
    source_sheet: str | None = None
    confidence: float | None = None
    notes: str | None = None


class ScaleAnnotation(SheetRecord):
    sheet_id: str | None = None
    viewport_label: str | None = None
    scale_note: str | None = None
    scale_ratio: ScaleRatio | None = None
    confidence: float | None = None
    notes: str | None = None


class SpaceDefinition(SheetRecord):
    space_id: str
    name: str | None = None
    raw_label_text: str | None = None
    raw_area_string: str | None = None
    category: SpaceCategory = "other"
    bbox_px: BBox | None = None
    approx_area_sqft: float | None = None
    confidence: float | None = None
    notes: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> Any:
        return _space_category(v)


class SpaceFinishDefinition(SheetRecord):
    category: SpaceCategory = "other"
    floor: str | None = None
    walls: list[str | None] = Field(default_factory=list)
    ceiling: str | None = None
    base: str | None = None
    notes: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> Any:
        return _space_category(v)


class PartitionTypeDefinition(SheetRecord):
    partition_type_id: str
    fire_rating: str | None = None
    layer_description: list[str] = Field(default_factory=list)
    stud_size: str | None = None
    stud_gauge: str | None = None
    has_acoustical_insulation: bool | None = None
    notes: str | None = None


class WallRunSegment(SheetRecord):
    id: str
    partition_type_id: str | None = None
    new_or_existing: Literal["new", "existing", "demo"] | None = None
    endpoints_px: list[Point] = Field(default_factory=list)
    adjacent_rooms: list[str | None] = Field(default_factory=list)
    space_ids: list[str | None] = Field(default_factory=list)
    notes: str | None = None
    confidence: float | None = None


class FusionInput(BaseModel):
    """Everything the extraction stages produced for one job."""

    room_schedules: list[RoomScheduleEntry] = Field(default_factory=list)
    room_spatial_mappings: list[RoomSpatialMapping] = Field(default_factory=list)
    ceiling_heights: list[RoomCeilingHeight] = Field(default_factory=list)
    wall_runs: list[WallRunSegment] = Field(default_factory=list)
    partition_types: list[PartitionTypeDefinition] = Field(default_factory=list)
    scale_annotations: list[ScaleAnnotation] = Field(default_factory=list)
    spaces: list[SpaceDefinition] = Field(default_factory=list)
    space_finishes: list[SpaceFinishDefinition] = Field(default_factory=list)


# --- fused outputs -----------------------------------------------------------


class RoomFinishes(BaseModel):
    floor: str | None = None
    walls: list[str | None] = Field(default_factory=list)
    ceiling: str | None = None
    base: str | None = None


class FusedRoom(BaseModel):
    room_number: str
    room_name: str | None = None
    floor_finish_code: str | None = None
    wall_finish_code: str | None = None
    ceiling_finish_code: str | None = None
    base_code: str | None = None
    space_id: str | None = None
    bounding_box_px: BBox | None = None
    label_center_px: Point | None = None
    height_ft: float | None = None
    finishes: RoomFinishes | None = None
    notes: list[str] = Field(default_factory=list)
    sheet_refs: list[str] = Field(default_factory=list)


class FusedWall(BaseModel):
    id: str
    sheet_index: int
    partition_type_id: str | None = None
    new_or_existing: str | None = None
    endpoints_px: list[Point] = Field(default_factory=list)
    adjacent_rooms: list[str | None] = Field(default_factory=list)
    adjacent_spaces: list[str | None] = Field(default_factory=list)
    length_px: float
    length_ft: float | None = None
    scale_source: str | None = None  # which scale produced length_ft
    notes: str | None = None


class FusionMeta(BaseModel):
    partition_types: list[PartitionTypeDefinition] = Field(default_factory=list)
    sheet_count: int = 0
    scale_annotations: list[ScaleAnnotation] = Field(default_factory=list)
    spaces: list[SpaceDefinition] = Field(default_factory=list)
    space_finishes: list[SpaceFinishDefinition] = Field(default_factory=list)


class FusedDataSummary(BaseModel):
    rooms: list[FusedRoom] = Field(default_factory=list)
    walls: list[FusedWall] = Field(default_factory=list)
    meta: FusionMeta = Field(default_factory=FusionMeta)

    @property
    def total_wall_length_ft(self) -> float:
        return round(sum(w.length_ft for w in self.walls if w.length_ft is not None), 2)

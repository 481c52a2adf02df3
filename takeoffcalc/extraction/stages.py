"""Extraction stage definitions: what each stage asks for and which sheets it reads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from takeoffcalc.errors import StageError
from takeoffcalc.extraction.features import PageFeatureSet
from takeoffcalc.fusion.records import (
    PartitionTypeDefinition,
    RoomCeilingHeight,
    RoomScheduleEntry,
    RoomSpatialMapping,
    ScaleAnnotation,
    SpaceDefinition,
    SpaceFinishDefinition,
    WallRunSegment,
)
from takeoffcalc.models import Sheet, SheetCategory, SheetClassification

PLAN_CATEGORIES = frozenset({SheetCategory.FLOOR.value, SheetCategory.DEMO_FLOOR.value})
ROOM_SCHEDULE_CATEGORIES = frozenset(
    {SheetCategory.MATERIALS.value, SheetCategory.FLOOR.value, SheetCategory.RR_DETAILS.value}
)


@dataclass
class PageContext:
    """A rasterized page and the sheet record the stages refine."""

    sheet: Sheet
    image: bytes | None = None
    text: str | None = None

    @property
    def has_raster(self) -> bool:
        return bool(self.image)

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    @property
    def is_primary_plan(self) -> bool:
        classification = self.sheet.classification
        return bool(classification and classification.is_primary_plan)


@dataclass(frozen=True)
class StageSpec:
    """A per-sheet extraction stage."""

    name: str
    schema_name: str
    record_model: type[BaseModel]
    instructions: str
    list_key: str | None = None  # None: the response is a single object
    needs_raster: bool = False
    needs_text: bool = False
    categories: frozenset[str] | None = None  # None: every sheet
    include_primary_plan: bool = False
    text_keywords: tuple[str, ...] = ()
    mandatory: bool = False
    sheet_fields: bool = True  # records carry sheet_index/sheet_name

    def selects(self, page: PageContext) -> bool:
        if self.needs_raster and not page.has_raster:
            return False
        if self.needs_text and not (page.has_text or page.has_raster):
            return False
        if self.categories is None:
            return True
        if page.sheet.category in self.categories:
            return True
        if self.include_primary_plan and page.is_primary_plan:
            return True
        if self.text_keywords and page.has_text:
            lowered = page.text.lower()
            return any(keyword in lowered for keyword in self.text_keywords)
        return False

    def response_schema(self) -> dict[str, Any]:
        item_schema = self.record_model.model_json_schema()
        if self.sheet_fields:
            for key in ("sheet_index", "sheet_name"):
                item_schema.get("properties", {}).pop(key, None)
                if key in item_schema.get("required", []):
                    item_schema["required"].remove(key)
        if self.list_key is None:
            return item_schema
        return {
            "type": "object",
            "properties": {self.list_key: {"type": "array", "items": item_schema}},
            "required": [self.list_key],
        }

    def parse(self, payload: dict[str, Any], page: PageContext) -> list[Any]:
        """Validate a provider response into records for one page.

        Raises:
            StageError: If the response does not match the stage schema.
        """
        if self.list_key is None:
            raw_items = [payload]
        else:
            if self.list_key not in payload:
                raise StageError(self.name, f"Response is missing {self.list_key!r}")
            raw_items = payload[self.list_key]
            if not isinstance(raw_items, list):
                raise StageError(self.name, f"Expected a list under {self.list_key!r}")

        records = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                raise StageError(self.name, "Response items must be JSON objects")
            data = dict(raw)
            if self.sheet_fields:
                data["sheet_index"] = page.sheet.index
                data["sheet_name"] = page.sheet.label
            try:
                records.append(self.record_model.model_validate(data))
            except ValidationError as e:
                raise StageError(self.name, f"Response does not match schema: {e.error_count()} error(s)") from e
        return records


CLASSIFICATION = StageSpec(
    name="classification",
    schema_name="sheet_classification",
    record_model=SheetClassification,
    sheet_fields=False,
    needs_text=True,
    instructions=(
        "Classify this drawing sheet. category must be one of: site, demo_floor, floor, "
        "fixture, rcp, elevations, sections, materials, furniture, artwork, rr_details, other. "
        "List the disciplines present and set is_primary_plan when this is the main floor plan."
    ),
)

SCALE = StageSpec(
    name="scale",
    schema_name="scale_annotations",
    record_model=ScaleAnnotation,
    list_key="annotations",
    needs_text=True,
    instructions=(
        "List every scale annotation on this sheet. For each viewport give its label, the scale "
        "note exactly as printed (e.g. 1/4\" = 1'-0\") and, when determinable, the ratio as "
        "plan_value/plan_units : real_value/real_units."
    ),
)

SPACES = StageSpec(
    name="spaces",
    schema_name="space_definitions",
    record_model=SpaceDefinition,
    list_key="spaces",
    needs_raster=True,
    categories=PLAN_CATEGORIES,
    include_primary_plan=True,
    instructions=(
        "Identify each enclosed space on this plan with a stable space_id, its label, category "
        "(cafe, sales, boh, restroom, patio, other), pixel bounding box [x1, y1, x2, y2] and any "
        "printed area."
    ),
)

FINISHES = StageSpec(
    name="finishes",
    schema_name="space_finishes",
    record_model=SpaceFinishDefinition,
    list_key="finishes",
    needs_text=True,
    categories=frozenset({SheetCategory.MATERIALS.value}),
    instructions=(
        "From the finish legend, list floor, wall, ceiling and base finish codes for each space "
        "category (cafe, sales, boh, restroom, patio, other)."
    ),
)

ROOM_SCHEDULES = StageSpec(
    name="room_schedules",
    schema_name="room_schedule",
    record_model=RoomScheduleEntry,
    list_key="rooms",
    needs_text=True,
    categories=ROOM_SCHEDULE_CATEGORIES,
    instructions=(
        "Read the room finish schedule. For each row give room_number, room_name and the floor, "
        "wall, ceiling and base finish codes exactly as printed."
    ),
)

ROOM_MAPPING = StageSpec(
    name="room_mapping",
    schema_name="room_spatial_mapping",
    record_model=RoomSpatialMapping,
    list_key="rooms",
    needs_raster=True,
    categories=PLAN_CATEGORIES,
    include_primary_plan=True,
    instructions=(
        "Locate each scheduled room (see CONTEXT) on this plan. Give the pixel center of its "
        "room tag and a pixel bounding box [x1, y1, x2, y2] of the room."
    ),
)

PARTITION_TYPES = StageSpec(
    name="partition_types",
    schema_name="partition_types",
    record_model=PartitionTypeDefinition,
    list_key="partition_types",
    needs_text=True,
    categories=frozenset({SheetCategory.MATERIALS.value, SheetCategory.FLOOR.value}),
    text_keywords=("partition",),
    instructions=(
        "List every partition type defined on this sheet: id (e.g. PT-1), fire rating, layer "
        "description, stud size and gauge, and whether acoustic insulation is included."
    ),
)

WALL_RUNS = StageSpec(
    name="wall_runs",
    schema_name="wall_runs",
    record_model=WallRunSegment,
    list_key="walls",
    needs_raster=True,
    categories=PLAN_CATEGORIES,
    include_primary_plan=True,
    instructions=(
        "Trace each wall run on this plan as a polyline of pixel endpoints. Give a stable id, the "
        "partition type tag if shown (see CONTEXT for known types), whether it is new, existing "
        "or demo, and the adjacent rooms."
    ),
)

CEILING_HEIGHTS = StageSpec(
    name="ceiling_heights",
    schema_name="ceiling_heights",
    record_model=RoomCeilingHeight,
    list_key="rooms",
    needs_text=True,
    categories=frozenset({SheetCategory.RCP.value}),
    instructions=(
        "From this reflected ceiling plan, give the ceiling height in feet for each room (see "
        "CONTEXT for known room numbers) and the note the height was read from."
    ),
)

FEATURE_ANALYSIS = StageSpec(
    name="feature_analysis",
    schema_name="page_feature_set",
    record_model=PageFeatureSet,
    sheet_fields=False,
    needs_raster=True,
    mandatory=True,
    instructions=(
        "Extract the takeoff elements on this page: rooms (name, program, level, areaSqFt), walls "
        "(partitionType, level, lengthFt, heightFt), openings (openingType door/window, widthFt, "
        "heightFt), pipes (service, diameterIn, lengthFt), ducts (service, size, lengthFt) and "
        "fixtures (fixtureType, service, count). Also give sheetTitle, discipline, scale and units."
    ),
)

# Per-sheet stages in execution order; fusion and takeoff run locally between them.
STAGES: dict[str, StageSpec] = {
    spec.name: spec
    for spec in (
        CLASSIFICATION,
        SCALE,
        SPACES,
        FINISHES,
        ROOM_SCHEDULES,
        ROOM_MAPPING,
        PARTITION_TYPES,
        WALL_RUNS,
        CEILING_HEIGHTS,
        FEATURE_ANALYSIS,
    )
}

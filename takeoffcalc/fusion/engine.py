"""Data fusion: merge independently-keyed extraction records into one model.

Rooms are keyed by room number (space id when no number is known). A room is
created by whichever source mentions it first and enriched by every other
source; a field set once is never overwritten. Records of each kind are
visited in a canonical order so the result does not depend on the order the
per-sheet results arrived in.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from takeoffcalc.fusion import scale as scale_math
from takeoffcalc.fusion.records import (
    FusedDataSummary,
    FusedRoom,
    FusedWall,
    FusionInput,
    FusionMeta,
    PartitionTypeDefinition,
    RoomCeilingHeight,
    RoomFinishes,
    RoomScheduleEntry,
    RoomSpatialMapping,
    ScaleAnnotation,
    SpaceDefinition,
    SpaceFinishDefinition,
    WallRunSegment,
)
from takeoffcalc.models import Sheet

logger = logging.getLogger(__name__)


def _canonical(records: Iterable[BaseModel]) -> list[Any]:
    return sorted(records, key=lambda r: (getattr(r, "sheet_index", 0), r.model_dump_json()))


def _coalesce(current: Any, incoming: Any) -> Any:
    return current if current is not None else incoming


@dataclass
class _RoomDraft:
    room: FusedRoom
    notes: set[str] = field(default_factory=set)
    sheet_refs: set[str] = field(default_factory=set)

    def add_ref(self, sheet_name: str | None) -> None:
        if sheet_name:
            self.sheet_refs.add(sheet_name)

    def add_note(self, note: str | None) -> None:
        if note:
            self.notes.add(note)

    def build(self) -> FusedRoom:
        return self.room.model_copy(
            update={"notes": sorted(self.notes), "sheet_refs": sorted(self.sheet_refs)}
        )


class DataFusionEngine:
    """Identity resolution and unit conversion across extraction outputs."""

    def __init__(self, default_dpi: int = scale_math.DEFAULT_RENDER_DPI):
        self.default_dpi = default_dpi

    def fuse(self, sheets: Sequence[Sheet], data: FusionInput | None = None) -> FusedDataSummary:
        data = data or FusionInput()
        sheets_by_index = {sheet.index: sheet for sheet in sheets}

        rooms = self.combine_rooms(
            data.room_schedules,
            data.room_spatial_mappings,
            data.ceiling_heights,
            data.spaces,
            data.space_finishes,
        )
        walls = self.combine_walls(data.wall_runs, sheets_by_index, data.scale_annotations)

        converted = sum(1 for w in walls if w.length_ft is not None)
        logger.info(
            f"Fused {len(rooms)} rooms and {len(walls)} walls "
            f"({converted} with real-world length) from {len(sheets)} sheets"
        )

        return FusedDataSummary(
            rooms=rooms,
            walls=walls,
            meta=FusionMeta(
                partition_types=data.partition_types,
                sheet_count=len(sheets),
                scale_annotations=data.scale_annotations,
                spaces=data.spaces,
                space_finishes=data.space_finishes,
            ),
        )

    def fuse_records(self, sheets: Sequence[Sheet], records: Iterable[BaseModel]) -> FusedDataSummary:
        """Fuse a flat, mixed list of extraction records."""
        buckets: dict[type, str] = {
            RoomScheduleEntry: "room_schedules",
            RoomSpatialMapping: "room_spatial_mappings",
            RoomCeilingHeight: "ceiling_heights",
            WallRunSegment: "wall_runs",
            ScaleAnnotation: "scale_annotations",
            SpaceDefinition: "spaces",
            SpaceFinishDefinition: "space_finishes",
            PartitionTypeDefinition: "partition_types",
        }
        grouped: dict[str, list[Any]] = {}
        for record in records:
            name = buckets.get(type(record))
            if name is None:
                raise TypeError(f"Unsupported extraction record: {type(record).__name__}")
            grouped.setdefault(name, []).append(record)
        return self.fuse(sheets, FusionInput(**grouped))

    # --- rooms ---------------------------------------------------------------

    def combine_rooms(
        self,
        schedules: Sequence[RoomScheduleEntry],
        mappings: Sequence[RoomSpatialMapping],
        heights: Sequence[RoomCeilingHeight],
        spaces: Sequence[SpaceDefinition],
        space_finishes: Sequence[SpaceFinishDefinition],
    ) -> list[FusedRoom]:
        drafts: dict[str, _RoomDraft] = {}

        def ensure(key: str, name: str | None = None) -> _RoomDraft:
            draft = drafts.get(key)
            if draft is None:
                draft = _RoomDraft(room=FusedRoom(room_number=key))
                drafts[key] = draft
            if name and not draft.room.room_name:
                draft.room.room_name = name
            return draft

        for schedule in _canonical(schedules):
            if not schedule.room_number:
                continue
            draft = ensure(schedule.room_number, schedule.room_name)
            room = draft.room
            room.floor_finish_code = _coalesce(room.floor_finish_code, schedule.floor_finish_code)
            room.wall_finish_code = _coalesce(room.wall_finish_code, schedule.wall_finish_code)
            room.ceiling_finish_code = _coalesce(room.ceiling_finish_code, schedule.ceiling_finish_code)
            room.base_code = _coalesce(room.base_code, schedule.base_code)
            draft.add_ref(schedule.sheet_name)
            draft.add_note(schedule.notes)

        for mapping in _canonical(mappings):
            if not mapping.room_number:
                continue
            draft = ensure(mapping.room_number, mapping.room_name)
            draft.room.bounding_box_px = _coalesce(draft.room.bounding_box_px, mapping.bounding_box_px)
            draft.room.label_center_px = _coalesce(draft.room.label_center_px, mapping.label_center_px)
            draft.add_ref(mapping.sheet_name)
            draft.add_note(mapping.notes)

        for height in _canonical(heights):
            key = height.room_number or height.space_id
            if not key:
                continue
            draft = ensure(key)
            draft.room.height_ft = _coalesce(draft.room.height_ft, height.height_ft)
            draft.add_note(height.source_note)
            draft.add_ref(height.sheet_name)

        finishes_by_category: dict[str, SpaceFinishDefinition] = {}
        for finish in _canonical(space_finishes):
            finishes_by_category.setdefault(finish.category, finish)

        for space in _canonical(spaces):
            draft = ensure(space.space_id, space.name)
            draft.room.space_id = _coalesce(draft.room.space_id, space.space_id)
            draft.room.bounding_box_px = _coalesce(draft.room.bounding_box_px, space.bbox_px)
            draft.add_ref(space.sheet_name)
            finish = finishes_by_category.get(space.category)
            if finish is not None and draft.room.finishes is None:
                draft.room.finishes = RoomFinishes(
                    floor=finish.floor or None,
                    walls=list(finish.walls),
                    ceiling=finish.ceiling or None,
                    base=finish.base or None,
                )

        return [drafts[key].build() for key in sorted(drafts)]

    # --- walls ---------------------------------------------------------------

    def combine_walls(
        self,
        wall_runs: Sequence[WallRunSegment],
        sheets_by_index: dict[int, Sheet],
        annotations: Sequence[ScaleAnnotation],
    ) -> list[FusedWall]:
        by_sheet: dict[int, list[ScaleAnnotation]] = {}
        for annotation in annotations:
            by_sheet.setdefault(annotation.sheet_index, []).append(annotation)

        walls = []
        for segment in sorted(wall_runs, key=lambda s: (s.sheet_index, s.id)):
            sheet = sheets_by_index.get(segment.sheet_index)
            length_px = scale_math.polyline_length(segment.endpoints_px)
            preferred = self.select_scale_annotation(by_sheet.get(segment.sheet_index, []), sheet)
            length_ft, source = (None, None)
            if sheet is not None:
                length_ft, source = self.convert_pixels_to_feet(length_px, sheet, preferred)

            walls.append(
                FusedWall(
                    id=segment.id,
                    sheet_index=segment.sheet_index,
                    partition_type_id=segment.partition_type_id or None,
                    new_or_existing=segment.new_or_existing,
                    endpoints_px=segment.endpoints_px,
                    adjacent_rooms=segment.adjacent_rooms,
                    adjacent_spaces=segment.space_ids,
                    length_px=round(length_px, 2),
                    length_ft=round(length_ft, 2) if length_ft is not None else None,
                    scale_source=source,
                    notes=segment.notes or None,
                )
            )
        return walls

    def select_scale_annotation(
        self, annotations: Sequence[ScaleAnnotation], sheet: Sheet | None
    ) -> ScaleAnnotation | None:
        """Pick the annotation whose viewport best matches the sheet; first wins ties."""
        if not annotations:
            return None
        category = sheet.category if sheet else None
        best = annotations[0]
        best_score = scale_math.viewport_priority(best.viewport_label, category)
        for annotation in annotations[1:]:
            score = scale_math.viewport_priority(annotation.viewport_label, category)
            if score > best_score:
                best, best_score = annotation, score
        return best

    def convert_pixels_to_feet(
        self, length_px: float, sheet: Sheet, annotation: ScaleAnnotation | None = None
    ) -> tuple[float | None, str | None]:
        """Convert a pixel length to feet.

        Tries the annotation's scale ratio, then the sheet's ratio, then the
        annotation's (or sheet's) scale note. Returns (feet, source label), or
        (None, None) when no scale is usable.
        """
        dpi = sheet.render_dpi or self.default_dpi

        candidates = [
            ("annotation_ratio", scale_math.parse_scale_ratio(annotation.scale_ratio if annotation else None)),
            ("sheet_ratio", scale_math.parse_scale_ratio(sheet.scale_ratio)),
        ]
        note = (annotation.scale_note if annotation else None) or sheet.scale
        candidates.append(("scale_note", scale_math.parse_scale_note(note)))

        for source, parsed in candidates:
            if parsed is None:
                continue
            feet = scale_math.pixels_to_feet(length_px, dpi, parsed)
            if feet is not None:
                return feet, source
        return None, None

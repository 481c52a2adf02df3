"""Unit tests for DataFusionEngine identity resolution and wall conversion."""

from __future__ import annotations

from itertools import permutations

import pytest

from takeoffcalc.fusion import DataFusionEngine, FusionInput
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
from takeoffcalc.models import ScaleRatio, SheetCategory, SheetClassification


@pytest.fixture
def engine() -> DataFusionEngine:
    return DataFusionEngine()


@pytest.fixture
def room_sources():
    schedule = RoomScheduleEntry(
        sheet_index=2, sheet_name="A-601", room_number="101", room_name="Office",
        floor_finish_code="CPT-1", notes="See finish legend",
    )
    mapping = RoomSpatialMapping(
        sheet_index=0, sheet_name="A-101", room_number="101", room_name="Open Office",
        label_center_px=(120, 80), bounding_box_px=(100, 60, 140, 100),
    )
    height = RoomCeilingHeight(
        sheet_index=1, sheet_name="A-201", room_number="101", height_ft=9.5, source_note="ACT @ 9'-6\"",
    )
    return schedule, mapping, height


class TestRoomIdentity:
    """Merging rooms keyed by room number."""

    def test_sources_merge_into_one_room(self, engine, room_sources):
        schedule, mapping, height = room_sources

        rooms = engine.combine_rooms([schedule], [mapping], [height], [], [])

        assert len(rooms) == 1
        room = rooms[0]
        assert room.room_number == "101"
        assert room.room_name == "Office"  # schedule is visited first
        assert room.floor_finish_code == "CPT-1"
        assert room.bounding_box_px == (100, 60, 140, 100)
        assert room.height_ft == 9.5
        assert room.sheet_refs == ["A-101", "A-201", "A-601"]
        assert room.notes == ["ACT @ 9'-6\"", "See finish legend"]

    def test_merge_is_order_independent(self, engine, room_sources, make_sheet):
        sheets = [make_sheet(i) for i in range(3)]
        results = set()
        for ordering in permutations(room_sources):
            fused = engine.fuse_records(sheets, ordering)
            results.add(tuple(room.model_dump_json() for room in fused.rooms))

        assert len(results) == 1

    def test_earlier_value_is_never_overwritten(self, engine):
        first = RoomScheduleEntry(sheet_index=0, room_number="7", floor_finish_code="VCT-1")
        second = RoomScheduleEntry(sheet_index=1, room_number="7", floor_finish_code="CPT-2", wall_finish_code="PT-1")

        room = engine.combine_rooms([second, first], [], [], [], [])[0]

        assert room.floor_finish_code == "VCT-1"
        assert room.wall_finish_code == "PT-1"

    def test_space_without_number_uses_space_id(self, engine):
        space = SpaceDefinition(sheet_index=0, space_id="S-3", name="Sales Floor", category="Sales",
                                bbox_px=(0, 0, 10, 10))
        finish = SpaceFinishDefinition(sheet_index=3, category="sales", floor="POL-CONC", walls=["PT-2"])
        height = RoomCeilingHeight(sheet_index=1, space_id="S-3", height_ft=14)

        rooms = engine.combine_rooms([], [], [height], [space], [finish])

        assert [r.room_number for r in rooms] == ["S-3"]
        assert rooms[0].space_id == "S-3"
        assert rooms[0].height_ft == 14
        assert rooms[0].finishes.floor == "POL-CONC"
        assert rooms[0].finishes.walls == ["PT-2"]

    def test_height_without_any_key_is_ignored(self, engine):
        assert engine.combine_rooms([], [], [RoomCeilingHeight(sheet_index=0, height_ft=9)], [], []) == []


class TestWalls:
    """Pixel length and scale-source selection."""

    def test_scale_note_on_sheet(self, engine, make_sheet):
        sheet = make_sheet(0, scale='1/4" = 1\'-0"', render_dpi=220)
        segment = WallRunSegment(sheet_index=0, id="W1", endpoints_px=[(0, 0), (220, 0)])

        wall = engine.combine_walls([segment], {0: sheet}, [])[0]

        assert wall.length_px == 220
        assert wall.length_ft == 4.0
        assert wall.scale_source == "scale_note"

    def test_annotation_ratio_preferred_over_note(self, engine, make_sheet):
        sheet = make_sheet(0, scale='1/4" = 1\'-0"', render_dpi=100)
        annotation = ScaleAnnotation(
            sheet_index=0, viewport_label="Floor Plan",
            scale_ratio=ScaleRatio(plan_value=1, plan_units="inch", real_value=10, real_units="foot"),
        )

        feet, source = engine.convert_pixels_to_feet(100, sheet, annotation)

        assert (feet, source) == (10.0, "annotation_ratio")

    def test_sheet_ratio_used_without_annotation(self, engine, make_sheet):
        sheet = make_sheet(
            0, render_dpi=100,
            scale_ratio={"plan_value": 0.125, "plan_units": "in", "real_value": 1, "real_units": "ft"},
        )

        assert engine.convert_pixels_to_feet(50, sheet) == (4.0, "sheet_ratio")

    def test_no_scale_leaves_length_unset(self, engine, make_sheet):
        segment = WallRunSegment(sheet_index=0, id="W1", endpoints_px=[(0, 0), (10, 0)])

        wall = engine.combine_walls([segment], {0: make_sheet(0)}, [])[0]

        assert wall.length_ft is None
        assert wall.scale_source is None

    def test_doubling_pixels_doubles_feet(self, engine, make_sheet):
        sheet = make_sheet(0, scale="1:100", render_dpi=220)

        single, _ = engine.convert_pixels_to_feet(333, sheet)
        double, _ = engine.convert_pixels_to_feet(666, sheet)

        assert double == pytest.approx(single * 2)

    def test_viewport_matching_sheet_category_wins(self, engine, make_sheet):
        sheet = make_sheet(0, classification=SheetClassification(category=SheetCategory.FLOOR))
        elevation = ScaleAnnotation(sheet_index=0, viewport_label="Elevation", scale_note="1/8\" = 1'-0\"")
        floor = ScaleAnnotation(sheet_index=0, viewport_label="First Floor Plan", scale_note="1/4\" = 1'-0\"")

        assert engine.select_scale_annotation([elevation, floor], sheet) is floor

    def test_first_annotation_wins_ties(self, engine, make_sheet):
        a = ScaleAnnotation(sheet_index=0, viewport_label="Plan A")
        b = ScaleAnnotation(sheet_index=0, viewport_label="Plan B")

        assert engine.select_scale_annotation([a, b], make_sheet(0)) is a


class TestFuse:
    """Full fusion output."""

    def test_summary_and_meta(self, engine, make_sheet):
        sheets = [make_sheet(0, scale='1/4" = 1\'-0"', render_dpi=220)]
        data = FusionInput(
            wall_runs=[
                WallRunSegment(sheet_index=0, id="W2", partition_type_id="PT-1", endpoints_px=[(0, 0), (0, 440)]),
                WallRunSegment(sheet_index=0, id="W1", endpoints_px=[(0, 0), (220, 0)]),
            ],
            partition_types=[PartitionTypeDefinition(sheet_index=0, partition_type_id="PT-1")],
        )

        summary = engine.fuse(sheets, data)

        assert [w.id for w in summary.walls] == ["W1", "W2"]
        assert summary.total_wall_length_ft == 12.0
        assert summary.meta.sheet_count == 1
        assert summary.meta.partition_types[0].partition_type_id == "PT-1"

    def test_unknown_record_type_rejected(self, engine):
        with pytest.raises(TypeError):
            engine.fuse_records([], [object()])

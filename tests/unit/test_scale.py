"""Unit tests for scale parsing and pixel-to-feet conversion."""

from __future__ import annotations

import pytest

from takeoffcalc.fusion import scale
from takeoffcalc.models import ScaleRatio


class TestScaleNotes:
    """Free-text scale note parsing."""

    def test_quarter_inch_architectural(self):
        parsed = scale.parse_scale_note('1/4" = 1\'-0"')

        assert parsed.plan_inches == 0.25
        assert parsed.real_feet == 1.0
        assert parsed.feet_per_plan_inch == 4.0

    def test_feet_and_inches(self):
        parsed = scale.parse_scale_note("3/16\" = 1'-6\"")

        assert parsed.real_feet == 1.5

    def test_metric(self):
        parsed = scale.parse_scale_note("SCALE 1:100")

        assert parsed.plan_inches == 1.0
        assert parsed.real_feet == pytest.approx(0.328084)

    @pytest.mark.parametrize("note", [None, "", "NTS", "0/4\" = 1'-0\"", "1:0"])
    def test_unparseable(self, note):
        assert scale.parse_scale_note(note) is None


class TestScaleRatio:
    """Structured ratio normalization."""

    def test_plan_inches_to_real_feet(self):
        parsed = scale.parse_scale_ratio(
            ScaleRatio(plan_value=0.25, plan_units="inch", real_value=1, real_units="foot")
        )

        assert parsed.feet_per_plan_inch == 4.0

    def test_metric_units(self):
        parsed = scale.parse_scale_ratio(
            ScaleRatio(plan_value=1, plan_units="mm", real_value=100, real_units="mm")
        )

        assert parsed.feet_per_plan_inch == pytest.approx((100 / 304.8) / (1 / 25.4))

    @pytest.mark.parametrize(
        "ratio",
        [
            None,
            ScaleRatio(plan_value=0, plan_units="inch", real_value=1, real_units="foot"),
            ScaleRatio(plan_value=1, plan_units="furlong", real_value=1, real_units="foot"),
            ScaleRatio(plan_value=1, plan_units="inch"),
        ],
    )
    def test_unusable_ratio(self, ratio):
        assert scale.parse_scale_ratio(ratio) is None


class TestConversion:
    """Geometry and conversion math."""

    def test_polyline_length(self):
        assert scale.polyline_length([(0, 0), (3, 4), (3, 10)]) == 11.0
        assert scale.polyline_length([(5, 5)]) == 0.0

    def test_one_inch_at_220_dpi_quarter_scale_is_four_feet(self):
        parsed = scale.parse_scale_note('1/4" = 1\'-0"')

        assert scale.pixels_to_feet(220, 220, parsed) == pytest.approx(4.0)

    @pytest.mark.parametrize("length_px", [1, 37.5, 220, 1234])
    def test_conversion_is_linear(self, length_px):
        parsed = scale.parse_scale_ratio(
            ScaleRatio(plan_value=1, plan_units="inch", real_value=8, real_units="foot")
        )

        single = scale.pixels_to_feet(length_px, 150, parsed)
        double = scale.pixels_to_feet(length_px * 2, 150, parsed)

        assert double == pytest.approx(single * 2)

    def test_zero_dpi(self):
        assert scale.pixels_to_feet(100, 0, scale.ParsedScale(1, 1)) is None


class TestViewportPriority:
    """Viewport label ranking."""

    def test_category_match_beats_generic_plan(self):
        assert scale.viewport_priority("FLOOR PLAN", "floor") == 3
        assert scale.viewport_priority("REFLECTED CEILING PLAN", "rcp") == 3
        assert scale.viewport_priority("ENLARGED PLAN", "floor") == 2

    def test_elevation_and_unlabelled(self):
        assert scale.viewport_priority("NORTH ELEVATION", "floor") == 1
        assert scale.viewport_priority("DETAIL 4", "floor") == 0
        assert scale.viewport_priority(None, "floor") == 0

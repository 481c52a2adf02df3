"""Pixel to real-world length conversion.

A measured pixel length becomes plan inches through the render DPI, then
feet through the sheet scale: feet = px / dpi * (real_feet / plan_inches).
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass

from takeoffcalc.models import ScaleRatio

DEFAULT_RENDER_DPI = 220

PLAN_UNITS_TO_INCHES = {
    "inch": 1.0, "in": 1.0, '"': 1.0,
    "foot": 12.0, "ft": 12.0, "'": 12.0,
    "mm": 1 / 25.4, "millimeter": 1 / 25.4, "millimetre": 1 / 25.4,
    "cm": 1 / 2.54, "centimeter": 1 / 2.54, "centimetre": 1 / 2.54,
    "m": 39.3700787, "meter": 39.3700787, "metre": 39.3700787,
}

REAL_UNITS_TO_FEET = {
    "foot": 1.0, "ft": 1.0, "'": 1.0,
    "inch": 1 / 12, "in": 1 / 12, '"': 1 / 12,
    "mm": 1 / 304.8, "millimeter": 1 / 304.8, "millimetre": 1 / 304.8,
    "cm": 1 / 30.48, "centimeter": 1 / 30.48, "centimetre": 1 / 30.48,
    "m": 3.28084, "meter": 3.28084, "metre": 3.28084,
}

# 1/4" = 1'-0"
ARCHITECTURAL_SCALE = re.compile(r"(\d+)\s*/\s*(\d+)\"?\s*=\s*(\d+)'(?:-(\d+)\")?")
# 1:100
METRIC_SCALE = re.compile(r"1\s*:\s*(\d+)")


@dataclass(frozen=True)
class ParsedScale:
    plan_inches: float
    real_feet: float

    @property
    def feet_per_plan_inch(self) -> float:
        return self.real_feet / self.plan_inches


def polyline_length(points: Sequence[Sequence[float]]) -> float:
    """Euclidean length of a polyline; fewer than two points is zero."""
    if len(points) < 2:
        return 0.0
    total = 0.0
    for (x1, y1), (x2, y2) in zip(points, points[1:]):
        total += math.hypot(x2 - x1, y2 - y1)
    return total


def plan_value_to_inches(value: float | None, units: str | None) -> float | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    factor = PLAN_UNITS_TO_INCHES.get((units or "inch").lower())
    return value * factor if factor is not None else None


def real_value_to_feet(value: float | None, units: str | None) -> float | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    factor = REAL_UNITS_TO_FEET.get((units or "foot").lower())
    return value * factor if factor is not None else None


def parse_scale_ratio(ratio: ScaleRatio | None) -> ParsedScale | None:
    if ratio is None:
        return None
    plan_inches = plan_value_to_inches(ratio.plan_value, ratio.plan_units)
    real_feet = real_value_to_feet(ratio.real_value, ratio.real_units)
    if not plan_inches or not real_feet:
        return None
    return ParsedScale(plan_inches, real_feet)


def parse_scale_note(note: str | None) -> ParsedScale | None:
    """Parse an architectural (1/4" = 1'-0") or metric (1:100) scale note."""
    if not note:
        return None

    match = ARCHITECTURAL_SCALE.search(note)
    if match:
        numerator, denominator = float(match.group(1)), float(match.group(2))
        real_feet = float(match.group(3)) + (float(match.group(4)) / 12 if match.group(4) else 0)
        if numerator > 0 and denominator > 0 and real_feet > 0:
            return ParsedScale(numerator / denominator, real_feet)

    match = METRIC_SCALE.search(note)
    if match:
        ratio = float(match.group(1))
        if ratio > 0:
            return ParsedScale(1.0, ratio / 1000 * 3.28084)

    return None


def pixels_to_feet(length_px: float, dpi: float, scale: ParsedScale) -> float | None:
    if not dpi or dpi <= 0:
        return None
    feet_per_plan_inch = scale.feet_per_plan_inch
    if not math.isfinite(feet_per_plan_inch):
        return None
    return (length_px / dpi) * feet_per_plan_inch


def viewport_priority(label: str | None, category: str | None) -> int:
    """Rank a viewport label against a sheet category (higher is better)."""
    label = (label or "").lower()
    if not label:
        return 0
    category = (category or "").lower()
    if "floor" in category and "floor" in label:
        return 3
    if ("ceiling" in category or category == "rcp") and "ceiling" in label:
        return 3
    if "plan" in label:
        return 2
    if "elevation" in label:
        return 1
    return 0

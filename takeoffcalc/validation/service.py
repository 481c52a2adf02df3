"""Per-feature dimension plausibility checks.

Dimensions are in feet (pipe diameter in inches). Values outside the
configured range are warnings, or errors in strict mode; heights are
always warnings. Missing dimensions are skipped unless strict mode makes
them required.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from takeoffcalc.models import (
    Feature,
    FeatureType,
    FeatureValidation,
    Severity,
    ValidationIssue,
    is_number,
)

logger = logging.getLogger(__name__)

ERROR_PENALTY = 0.3
WARNING_PENALTY = 0.1
STRICT_MIN_CONFIDENCE = 0.7


@dataclass(frozen=True)
class DimensionLimits:
    """Inclusive min/max bounds per checked dimension."""

    room_area: tuple[float, float] = (50, 50000)
    room_height: tuple[float, float] = (6, 30)
    wall_length: tuple[float, float] = (1, 1000)
    wall_height: tuple[float, float] = (6, 30)
    door_width: tuple[float, float] = (2, 8)
    door_height: tuple[float, float] = (6, 10)
    window_width: tuple[float, float] = (1, 20)
    window_height: tuple[float, float] = (1, 10)
    pipe_diameter: tuple[float, float] = (0.5, 24)
    pipe_length: tuple[float, float] = (1, 1000)
    duct_length: tuple[float, float] = (1, 1000)
    fixture_count: tuple[float, float] = (1, 1000)


DEFAULT_LIMITS = DimensionLimits()


def _first(*values: Any) -> Any:
    """First numeric value that is non-zero; zero counts as absent."""
    for value in values:
        if is_number(value) and value != 0:
            return value
    return None


class ValidationService:
    """Stateless dimension validator for extracted features."""

    def __init__(self, limits: DimensionLimits | None = None):
        self.limits = limits or DEFAULT_LIMITS

    def with_limits(self, **overrides: tuple[float, float]) -> ValidationService:
        return ValidationService(replace(self.limits, **overrides))

    def validate_feature(self, feature: Feature | None, strict_mode: bool = False) -> FeatureValidation:
        """Validate one feature and return its validation result."""
        if feature is None or not feature.type:
            return FeatureValidation(
                is_valid=False,
                confidence=0.0,
                issues=[
                    ValidationIssue(
                        type="geometry",
                        severity=Severity.ERROR,
                        message="Feature is missing type",
                    )
                ],
            )

        issues: list[ValidationIssue] = []
        confidence = 1.0

        checker = {
            FeatureType.ROOM.value: self._validate_room,
            FeatureType.WALL.value: self._validate_wall,
            FeatureType.OPENING.value: self._validate_opening,
            FeatureType.PIPE.value: self._validate_pipe,
            FeatureType.DUCT.value: self._validate_duct,
            FeatureType.FIXTURE.value: self._validate_fixture,
        }.get(feature.type)
        if checker is not None:
            checker(feature, issues, strict_mode)

        if strict_mode and feature.provenance is None:
            issues.append(
                ValidationIssue(
                    type="provenance",
                    severity=Severity.ERROR,
                    message="Missing provenance data (required in strict mode)",
                )
            )
            confidence *= 0.5

        errors = sum(1 for issue in issues if issue.severity == Severity.ERROR)
        warnings = sum(1 for issue in issues if issue.severity == Severity.WARNING)
        confidence *= max(0.0, 1 - errors * ERROR_PENALTY - warnings * WARNING_PENALTY)
        confidence = max(0.0, min(1.0, confidence))

        if strict_mode:
            is_valid = errors == 0 and confidence >= STRICT_MIN_CONFIDENCE
        else:
            is_valid = errors == 0

        return FeatureValidation(
            is_valid=is_valid,
            confidence=confidence,
            issues=issues,
            warnings=[issue.message for issue in issues if issue.severity == Severity.WARNING],
        )

    def filter_valid(self, features: Iterable[Feature], strict_mode: bool = False) -> list[Feature]:
        """Attach validation to each feature and keep only the valid ones."""
        kept: list[Feature] = []
        dropped = 0
        for feature in features:
            result = self.validate_feature(feature, strict_mode)
            feature.validation = result
            if result.is_valid:
                kept.append(feature)
            else:
                dropped += 1
                logger.warning(
                    f"Dropping {feature.type or 'untyped'} feature {feature.id}: "
                    + "; ".join(issue.message for issue in result.issues)
                )
        if dropped:
            logger.info(f"Validation kept {len(kept)} features, dropped {dropped}")
        return kept

    # --- per-type checks -----------------------------------------------------

    def _check_range(
        self,
        issues: list[ValidationIssue],
        value: float,
        bounds: tuple[float, float],
        field: str,
        message: str,
        severity: Severity,
    ) -> None:
        low, high = bounds
        if value < low or value > high:
            issues.append(
                ValidationIssue(
                    type="dimension",
                    severity=severity,
                    message=message,
                    field=field,
                    value=value,
                    expected_range=bounds,
                )
            )

    def _validate_room(self, room: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        range_severity = Severity.ERROR if strict else Severity.WARNING
        if room.area is not None:
            self._check_range(
                issues, room.area, self.limits.room_area, "area",
                f"Room area {room.area} sq ft is outside expected range", range_severity,
            )
        elif strict:
            issues.append(
                ValidationIssue(
                    type="dimension",
                    severity=Severity.ERROR,
                    message="Room area is missing (required in strict mode)",
                    field="area",
                )
            )

        height = _first(room.props.get("height_ft"))
        if height is not None:
            self._check_range(
                issues, height, self.limits.room_height, "heightFt",
                f"Room height {height} ft is outside typical range", Severity.WARNING,
            )

        if room.polygon is not None:
            self._validate_polygon(room.polygon, "room", issues)

    def _validate_wall(self, wall: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        length = _first(wall.length, wall.props.get("length"))
        if length is not None:
            self._check_range(
                issues, length, self.limits.wall_length, "length",
                f"Wall length {length} ft is outside typical range",
                Severity.ERROR if strict else Severity.WARNING,
            )
        elif strict:
            issues.append(
                ValidationIssue(
                    type="dimension",
                    severity=Severity.ERROR,
                    message="Wall length is missing (required in strict mode)",
                    field="length",
                )
            )

        height = _first(wall.props.get("height_ft"))
        if height is not None:
            self._check_range(
                issues, height, self.limits.wall_height, "heightFt",
                f"Wall height {height} ft is outside typical range", Severity.WARNING,
            )

        if wall.polyline is not None:
            self._validate_polyline(wall.polyline, "wall", issues)

    def _validate_opening(self, opening: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        width = _first(opening.props.get("width_ft"), opening.props.get("width"))
        height = _first(opening.props.get("height_ft"), opening.props.get("height"))
        opening_type = str(opening.props.get("opening_type") or "").lower()

        if opening_type == "door":
            width_bounds, height_bounds, label = self.limits.door_width, self.limits.door_height, "Door"
        elif opening_type == "window":
            width_bounds, height_bounds, label = self.limits.window_width, self.limits.window_height, "Window"
        else:
            return

        if width is not None:
            self._check_range(
                issues, width, width_bounds, "width",
                f"{label} width {width} ft is outside typical range",
                Severity.ERROR if strict else Severity.WARNING,
            )
        if height is not None:
            self._check_range(
                issues, height, height_bounds, "height",
                f"{label} height {height} ft is outside typical range", Severity.WARNING,
            )

    def _validate_pipe(self, pipe: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        severity = Severity.ERROR if strict else Severity.WARNING
        diameter = _first(pipe.props.get("diameter_in"), pipe.props.get("diameter"))
        if diameter is not None:
            self._check_range(
                issues, diameter, self.limits.pipe_diameter, "diameter",
                f"Pipe diameter {diameter} inches is outside typical range", severity,
            )
        length = _first(pipe.length, pipe.props.get("length"))
        if length is not None:
            self._check_range(
                issues, length, self.limits.pipe_length, "length",
                f"Pipe length {length} ft is outside typical range", severity,
            )

    def _validate_duct(self, duct: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        length = _first(duct.length, duct.props.get("length"))
        if length is not None:
            self._check_range(
                issues, length, self.limits.duct_length, "length",
                f"Duct length {length} ft is outside typical range",
                Severity.ERROR if strict else Severity.WARNING,
            )

    def _validate_fixture(self, fixture: Feature, issues: list[ValidationIssue], strict: bool) -> None:
        count = _first(fixture.count, fixture.props.get("count"))
        if count is not None:
            self._check_range(
                issues, count, self.limits.fixture_count, "count",
                f"Fixture count {count} is outside typical range",
                Severity.ERROR if strict else Severity.WARNING,
            )

    def _validate_polygon(self, points: list, label: str, issues: list[ValidationIssue]) -> None:
        if len(points) < 3:
            issues.append(
                ValidationIssue(
                    type="geometry",
                    severity=Severity.WARNING,
                    message=f"{label.capitalize()} polygon has fewer than 3 points",
                    field="polygon",
                    value=len(points),
                )
            )

    def _validate_polyline(self, points: list, label: str, issues: list[ValidationIssue]) -> None:
        if len(points) < 2:
            issues.append(
                ValidationIssue(
                    type="geometry",
                    severity=Severity.WARNING,
                    message=f"{label.capitalize()} polyline has fewer than 2 points",
                    field="polyline",
                    value=len(points),
                )
            )

"""Cross-sheet consistency analysis over a job's sheets and features.

Every check is advisory: findings are warnings, so a report is invalid only
if a future check starts emitting errors.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field

from takeoffcalc.models import Feature, FeatureType, Severity, Sheet, is_number

logger = logging.getLogger(__name__)

CONFLICT_THRESHOLD_PCT = 20.0
REFERENCING_TYPES = (FeatureType.PIPE.value, FeatureType.DUCT.value, FeatureType.FIXTURE.value)

IssueType = Literal["duplicate", "conflict", "missing", "scale_mismatch"]


class ConsistencyIssue(BaseModel):
    type: IssueType
    severity: Severity
    message: str
    affected_sheets: list[str] = Field(default_factory=list)
    affected_features: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class ConsistencySummary(BaseModel):
    total_issues: int = 0
    errors: int = 0
    warnings: int = 0
    duplicates: int = 0
    conflicts: int = 0
    scale_mismatches: int = 0


class ConsistencyReport(BaseModel):
    is_valid: bool
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    summary: ConsistencySummary = Field(default_factory=ConsistencySummary)


def normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()


def room_name(feature: Feature) -> str | None:
    name = feature.props.get("name") or feature.props.get("program")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def _sheet_key(sheet: Sheet) -> str:
    return str(sheet.id)


class ConsistencyChecker:
    """Runs the duplicate, scale, conflict and missing-reference checks."""

    def __init__(self, conflict_threshold_pct: float = CONFLICT_THRESHOLD_PCT):
        self.conflict_threshold_pct = conflict_threshold_pct

    def check(self, sheets: Sequence[Sheet], features: Sequence[Feature]) -> ConsistencyReport:
        issues: list[ConsistencyIssue] = []
        issues.extend(self.check_duplicates(features))
        issues.extend(self.check_scale_consistency(sheets))
        issues.extend(self.check_room_conflicts(features))
        issues.extend(self.check_missing_references(features))

        summary = ConsistencySummary(
            total_issues=len(issues),
            errors=sum(1 for i in issues if i.severity == Severity.ERROR),
            warnings=sum(1 for i in issues if i.severity == Severity.WARNING),
            duplicates=sum(1 for i in issues if i.type == "duplicate"),
            conflicts=sum(1 for i in issues if i.type == "conflict"),
            scale_mismatches=sum(1 for i in issues if i.type == "scale_mismatch"),
        )
        if issues:
            logger.info(
                f"Consistency check found {summary.total_issues} issue(s): "
                f"{summary.duplicates} duplicate, {summary.conflicts} conflict, "
                f"{summary.scale_mismatches} scale"
            )
        return ConsistencyReport(is_valid=summary.errors == 0, issues=issues, summary=summary)

    async def check_job(self, repository: Any, job_id: str) -> ConsistencyReport:
        """Load a job's sheets and features from the repository and check them."""
        sheets = await repository.list_sheets(job_id)
        features = await repository.list_features(job_id)
        return self.check(sheets, features)

    def _rooms_by_name(self, features: Iterable[Feature]) -> dict[str, list[Feature]]:
        groups: dict[str, list[Feature]] = {}
        for feature in features:
            if feature.type != FeatureType.ROOM.value:
                continue
            name = room_name(feature)
            if name:
                groups.setdefault(normalize_name(name), []).append(feature)
        return groups

    def check_duplicates(self, features: Sequence[Feature]) -> list[ConsistencyIssue]:
        issues = []
        for key, rooms in sorted(self._rooms_by_name(features).items()):
            if len(rooms) < 2:
                continue
            sheets = sorted({f.sheet_id for f in rooms if f.sheet_id})
            if len(sheets) < 2:
                continue
            display = room_name(rooms[0])
            issues.append(
                ConsistencyIssue(
                    type="duplicate",
                    severity=Severity.WARNING,
                    message=f'Room "{display}" appears on {len(sheets)} different sheets',
                    affected_sheets=sheets,
                    affected_features=sorted(str(f.id) for f in rooms),
                    details={"room_name": display, "occurrences": len(rooms)},
                )
            )
        return issues

    def check_scale_consistency(self, sheets: Sequence[Sheet]) -> list[ConsistencyIssue]:
        issues = []
        groups: dict[str, list[str]] = {}
        missing: list[str] = []
        for sheet in sheets:
            if sheet.scale:
                groups.setdefault(f"{sheet.scale}_{sheet.units or 'ft'}", []).append(_sheet_key(sheet))
            else:
                missing.append(_sheet_key(sheet))

        if len(groups) > 1:
            ordered = sorted(groups.items())
            issues.append(
                ConsistencyIssue(
                    type="scale_mismatch",
                    severity=Severity.WARNING,
                    message="Multiple scales detected across sheets: "
                    + ", ".join(scale for scale, _ in ordered),
                    affected_sheets=sorted(sid for _, ids in ordered for sid in ids),
                    details={
                        "scales": [
                            {"scale": scale, "sheet_count": len(ids)} for scale, ids in ordered
                        ]
                    },
                )
            )

        if missing:
            issues.append(
                ConsistencyIssue(
                    type="scale_mismatch",
                    severity=Severity.WARNING,
                    message=f"{len(missing)} sheet(s) missing scale information",
                    affected_sheets=sorted(missing),
                )
            )
        return issues

    def check_room_conflicts(self, features: Sequence[Feature]) -> list[ConsistencyIssue]:
        issues = []
        for key, rooms in sorted(self._rooms_by_name(features).items()):
            # One representative per sheet: the largest reported area
            per_sheet: dict[str, Feature] = {}
            for room in rooms:
                sheet = room.sheet_id or "unknown"
                current = per_sheet.get(sheet)
                if current is None or (room.area or 0) > (current.area or 0):
                    per_sheet[sheet] = room
            if len(per_sheet) < 2:
                continue

            areas = [r.area for r in per_sheet.values() if is_number(r.area)]
            if len(areas) < 2:
                continue
            low, high = min(areas), max(areas)
            diff_pct = (high - low) / max(low, 1) * 100
            if diff_pct <= self.conflict_threshold_pct:
                continue

            display = room_name(rooms[0])
            issues.append(
                ConsistencyIssue(
                    type="conflict",
                    severity=Severity.WARNING,
                    message=(
                        f'Room "{display}" has conflicting area values '
                        f"({low:.1f} - {high:.1f} sq ft, {diff_pct:.1f}% difference)"
                    ),
                    affected_sheets=sorted(per_sheet),
                    affected_features=sorted(str(r.id) for r in per_sheet.values()),
                    details={
                        "room_name": display,
                        "areas": sorted(areas),
                        "diff_percent": round(diff_pct, 1),
                    },
                )
            )
        return issues

    def check_missing_references(self, features: Sequence[Feature]) -> list[ConsistencyIssue]:
        known = set(self._rooms_by_name(features))
        if not known:
            # No rooms extracted: references cannot be checked
            return []
        issues = []
        for feature in features:
            if feature.type not in REFERENCING_TYPES:
                continue
            referenced = feature.props.get("room")
            if not isinstance(referenced, str) or not referenced.strip():
                continue
            if normalize_name(referenced) in known:
                continue
            issues.append(
                ConsistencyIssue(
                    type="missing",
                    severity=Severity.WARNING,
                    message=f'{feature.type} references room "{referenced}" which was not found',
                    affected_sheets=[feature.sheet_id] if feature.sheet_id else [],
                    affected_features=[str(feature.id)],
                    details={"feature_type": feature.type, "referenced_room": referenced},
                )
            )
        issues.sort(key=lambda i: (i.details["referenced_room"], i.affected_features[0]))
        return issues

"""Primary page analysis output and its conversion to sheets and features."""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from takeoffcalc.models import Feature, FeatureType, Provenance, Sheet


def _finite(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


class _Element(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None


class PageRoom(_Element):
    name: str | None = None
    program: str | None = None
    level: str | None = None
    area_sq_ft: float | None = Field(default=None, alias="areaSqFt")


class PageWall(_Element):
    partition_type: str | None = Field(default=None, alias="partitionType")
    level: str | None = None
    length_ft: float | None = Field(default=None, alias="lengthFt")
    height_ft: float | None = Field(default=None, alias="heightFt")


class PageOpening(_Element):
    opening_type: Literal["door", "window"] | None = Field(default=None, alias="openingType")
    width_ft: float | None = Field(default=None, alias="widthFt")
    height_ft: float | None = Field(default=None, alias="heightFt")

    @field_validator("opening_type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return v if v in ("door", "window") else None
        return v


class PagePipe(_Element):
    service: str | None = None
    diameter_in: float | None = Field(default=None, alias="diameterIn")
    length_ft: float | None = Field(default=None, alias="lengthFt")


class PageDuct(_Element):
    service: str | None = None
    size: str | None = None
    length_ft: float | None = Field(default=None, alias="lengthFt")


class PageFixture(_Element):
    fixture_type: str | None = Field(default=None, alias="fixtureType")
    service: str | None = None
    count: float | None = None


class PageFeatureSet(BaseModel):
    """Elements found on one page by the primary analysis."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    page_index: int = Field(default=0, alias="pageIndex")
    sheet_title: str | None = Field(default=None, alias="sheetTitle")
    discipline: str | None = None
    scale: str | None = None
    units: str | None = None
    rooms: list[PageRoom] = Field(default_factory=list)
    walls: list[PageWall] = Field(default_factory=list)
    openings: list[PageOpening] = Field(default_factory=list)
    pipes: list[PagePipe] = Field(default_factory=list)
    ducts: list[PageDuct] = Field(default_factory=list)
    fixtures: list[PageFixture] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @field_validator("rooms", "walls", "openings", "pipes", "ducts", "fixtures", "notes", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


def build_sheet(page: PageFeatureSet, base: Sheet | None = None) -> Sheet:
    """Merge the analysis header into the ingested sheet for that page."""
    sheet = base.model_copy(deep=True) if base is not None else Sheet(index=page.page_index)
    sheet.name = sheet.name or page.sheet_title or f"Sheet {page.page_index + 1}"
    sheet.discipline = sheet.discipline or page.discipline
    sheet.scale = sheet.scale or page.scale
    sheet.units = sheet.units or page.units
    return sheet


def page_features(page: PageFeatureSet, sheet: Sheet, provenance: Provenance) -> list[Feature]:
    """One feature per element on the page."""
    sheet_id = str(sheet.id)

    def make(feature_type: FeatureType, props: dict[str, Any], **numbers: float | None) -> Feature:
        return Feature(
            sheet_id=sheet_id,
            type=feature_type.value,
            props={k: v for k, v in props.items() if v is not None},
            provenance=provenance.model_copy(),
            **numbers,
        )

    features = []
    for room in page.rooms:
        features.append(make(
            FeatureType.ROOM,
            {"name": room.name, "program": room.program, "level": room.level, "sourceId": room.id},
            area=_finite(room.area_sq_ft),
        ))
    for wall in page.walls:
        features.append(make(
            FeatureType.WALL,
            {"partitionType": wall.partition_type, "level": wall.level,
             "heightFt": _finite(wall.height_ft), "sourceId": wall.id},
            length=_finite(wall.length_ft),
        ))
    for opening in page.openings:
        features.append(make(
            FeatureType.OPENING,
            {"openingType": opening.opening_type, "widthFt": _finite(opening.width_ft),
             "heightFt": _finite(opening.height_ft), "sourceId": opening.id},
        ))
    for pipe in page.pipes:
        features.append(make(
            FeatureType.PIPE,
            {"service": pipe.service, "diameterIn": _finite(pipe.diameter_in), "sourceId": pipe.id},
            length=_finite(pipe.length_ft),
        ))
    for duct in page.ducts:
        features.append(make(
            FeatureType.DUCT,
            {"service": duct.service, "size": duct.size, "sourceId": duct.id},
            length=_finite(duct.length_ft),
        ))
    for fixture in page.fixtures:
        count = _finite(fixture.count)
        features.append(make(
            FeatureType.FIXTURE,
            {"fixtureType": fixture.fixture_type, "service": fixture.service, "sourceId": fixture.id},
            count=count if count is not None else 1,
        ))
    return features


def summarize_features(features: list[Feature]) -> dict[str, int]:
    """Feature counts keyed by plural type name (rooms, walls, ...)."""
    names = {
        FeatureType.ROOM.value: "rooms",
        FeatureType.WALL.value: "walls",
        FeatureType.OPENING.value: "openings",
        FeatureType.PIPE.value: "pipes",
        FeatureType.DUCT.value: "ducts",
        FeatureType.FIXTURE.value: "fixtures",
    }
    counts: dict[str, int] = {}
    for feature in features:
        key = names.get(feature.type or "", "other")
        counts[key] = counts.get(key, 0) + 1
    return counts

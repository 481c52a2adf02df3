"""Pytest configuration and fixtures for TakeoffCalc tests.

Provides feature/sheet factories and an in-memory repository.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Collection
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from takeoffcalc.config import AppConfig, ExtractionConfig
from takeoffcalc.db.models import Base
from takeoffcalc.db.repository import TakeoffRepository
from takeoffcalc.errors import StageError
from takeoffcalc.extraction.provider import ExtractionRequest, RenderedPage
from takeoffcalc.extraction.stages import STAGES
from takeoffcalc.models import Feature, Provenance, ScaleRatio, Sheet


@pytest.fixture
def make_feature():
    """Factory for features: make_feature("WALL", length=20, partitionType="PT-1")."""

    def _make(feature_type: str, sheet_id: str | None = "sheet-1", with_provenance: bool = True, **fields: Any):
        numbers = {k: fields.pop(k) for k in ("area", "length", "count", "polygon", "polyline") if k in fields}
        return Feature(
            type=feature_type,
            sheet_id=sheet_id,
            props=fields,
            provenance=Provenance(source="test") if with_provenance else None,
            **numbers,
        )

    return _make


@pytest.fixture
def make_sheet():
    """Factory for sheets with an optional scale note or ratio."""

    def _make(index: int = 0, scale: str | None = None, units: str | None = None, **fields: Any) -> Sheet:
        ratio = fields.pop("scale_ratio", None)
        return Sheet(
            index=index,
            name=fields.pop("name", f"A-{101 + index}"),
            scale=scale,
            units=units,
            scale_ratio=ScaleRatio(**ratio) if isinstance(ratio, dict) else ratio,
            **fields,
        )

    return _make


@pytest.fixture
def app_config() -> AppConfig:
    """Config with fast extraction settings (no retry delay, tiny pool)."""
    return AppConfig(
        extraction=ExtractionConfig(
            api_key="test-key",
            concurrency=1,
            call_timeout_seconds=5.0,
            max_retries=1,
            retry_delay_seconds=0.0,
            render_timeout_seconds=5.0,
        )
    )


@pytest_asyncio.fixture()
async def repository() -> TakeoffRepository:
    """Repository over an in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield TakeoffRepository(session_factory)
    finally:
        await engine.dispose()


class FakeProvider:
    """Scripted extraction provider.

    ``responses`` maps a stage name to a payload or to a callable taking the
    request. ``fail`` maps a stage name to the sheet indexes that raise
    (None for every sheet). Unscripted stages return an empty payload.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        fail: dict[str, Collection[int] | None] | None = None,
        on_call: Callable[[ExtractionRequest], None] | None = None,
    ):
        self.responses = responses or {}
        self.fail = fail or {}
        self.on_call = on_call
        self.calls: list[ExtractionRequest] = []

    def calls_for(self, stage: str) -> list[ExtractionRequest]:
        return [call for call in self.calls if call.stage == stage]

    async def extract(self, request: ExtractionRequest) -> dict[str, Any]:
        self.calls.append(request)
        if self.on_call is not None:
            self.on_call(request)
        sheet_index = request.context.get("sheet_index")
        if request.stage in self.fail:
            failing = self.fail[request.stage]
            if failing is None or sheet_index in failing:
                raise StageError(request.stage, f"scripted failure on sheet {sheet_index}")

        response = self.responses.get(request.stage)
        if callable(response):
            response = response(request)
        if response is None:
            list_key = STAGES[request.stage].list_key
            response = {list_key: []} if list_key else {}
        return copy.deepcopy(response)


def per_sheet(responses: dict[int, Any], default: Any = None) -> Callable[[ExtractionRequest], Any]:
    """Response callable choosing a payload by the request's sheet index."""
    return lambda request: responses.get(request.context.get("sheet_index"), default)


@pytest.fixture
def make_pages():
    """Factory for rendered pages with a raster and some sheet text."""

    def _make(count: int = 1, text: str = "FLOOR PLAN") -> list[RenderedPage]:
        return [
            RenderedPage(index=i, image=b"\x89PNG page", width_px=2200, height_px=1700, text=text)
            for i in range(count)
        ]

    return _make


@pytest.fixture
def fake_provider():
    """The FakeProvider class, for building scripted providers in tests."""
    return FakeProvider


@pytest.fixture(name="per_sheet")
def per_sheet_fixture():
    return per_sheet

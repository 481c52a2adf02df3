"""Job-scoped persistence for jobs, sheets, features, materials and rule sets."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Collection, Sequence
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeoffcalc.db.models import FeatureModel, JobModel, MaterialModel, RuleSetModel, SheetModel
from takeoffcalc.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    RuleSetNotFoundError,
    RuleSetValidationError,
)
from takeoffcalc.models import (
    Feature,
    Job,
    JobHistoryEntry,
    JobStatus,
    Material,
    RuleSet,
    Sheet,
    utcnow,
)

logger = logging.getLogger(__name__)


def _job_from_row(row: JobModel) -> Job:
    return Job(
        id=row.id,
        name=row.name,
        status=JobStatus(row.status),
        progress=row.progress,
        history=[JobHistoryEntry.model_validate(entry) for entry in row.history or []],
        error=row.error,
        file_path=row.file_path,
        rule_set_id=row.rule_set_id,
        webhook_url=row.webhook_url,
        metadata=dict(row.metadata_ or {}),
        created_at=row.created_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


def _sheet_from_row(row: SheetModel) -> Sheet:
    return Sheet(
        id=row.id,
        job_id=row.job_id,
        index=row.index,
        name=row.name,
        discipline=row.discipline,
        scale=row.scale,
        units=row.units,
        scale_ratio=row.scale_ratio,
        width_px=row.width_px,
        height_px=row.height_px,
        render_dpi=row.render_dpi,
        classification=row.classification,
    )


def _feature_from_row(row: FeatureModel) -> Feature:
    geometry = row.geometry or {}
    return Feature(
        id=row.id,
        job_id=row.job_id,
        sheet_id=row.sheet_id,
        type=row.type,
        area=row.area,
        length=row.length,
        count=row.count,
        polygon=geometry.get("polygon"),
        polyline=geometry.get("polyline"),
        props=row.props or {},
        provenance=row.provenance,
        validation=row.validation,
    )


def _material_from_row(row: MaterialModel) -> Material:
    return Material(
        sku=row.sku,
        qty=row.qty,
        uom=row.uom,
        description=row.description,
        rule_id=row.rule_id,
        sources=row.sources,
        pricing=row.pricing,
    )


class TakeoffRepository:
    """Async repository over the takeoff tables.

    Every method runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def _require_job(self, session: AsyncSession, job_id: str) -> JobModel:
        row = await session.get(JobModel, job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    # --- jobs ----------------------------------------------------------------

    async def create_job(self, job: Job | None = None, **fields: Any) -> Job:
        job = job or Job(**fields)
        if not job.history:
            job.history.append(JobHistoryEntry(status=job.status, message="Job created"))
        async with self._session() as session:
            session.add(
                JobModel(
                    id=job.id,
                    name=job.name,
                    status=job.status.value,
                    progress=job.progress,
                    history=[entry.model_dump(mode="json") for entry in job.history],
                    error=job.error,
                    file_path=job.file_path,
                    rule_set_id=job.rule_set_id,
                    webhook_url=job.webhook_url,
                    metadata_=job.metadata,
                    created_at=job.created_at,
                )
            )
        return job

    async def get_job(self, job_id: str) -> Job:
        async with self._session() as session:
            return _job_from_row(await self._require_job(session, job_id))

    async def list_queued_jobs(self) -> list[Job]:
        """QUEUED jobs, oldest first."""
        async with self._session() as session:
            result = await session.execute(
                select(JobModel)
                .where(JobModel.status == JobStatus.QUEUED.value)
                .order_by(JobModel.created_at, JobModel.id)
            )
            return [_job_from_row(row) for row in result.scalars().all()]

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: int | None = None,
        message: str | None = None,
        error: str | None = None,
        allowed_from: Collection[JobStatus] | None = None,
    ) -> Job:
        """Set status, append a history entry and stamp start/finish times.

        Raises:
            InvalidTransitionError: If ``allowed_from`` is given and the stored
                status is not in it (checked in the same transaction)
        """
        async with self._session() as session:
            row = await self._require_job(session, job_id)
            current = JobStatus(row.status)
            if allowed_from is not None and current not in allowed_from:
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {current.value} to {status.value}"
                )
            now = utcnow()
            row.status = status.value
            if progress is not None:
                row.progress = progress
            if error is not None:
                row.error = error
            if status == JobStatus.PROCESSING:
                row.started_at = now
                row.finished_at = None
                row.error = None
            elif status.is_terminal:
                row.finished_at = now
            entry = JobHistoryEntry(status=status, timestamp=now, message=message or error)
            # Reassign so the JSON column is flagged dirty
            row.history = [*(row.history or []), entry.model_dump(mode="json")]
            return _job_from_row(row)

    async def update_job_progress(self, job_id: str, progress: int) -> None:
        async with self._session() as session:
            row = await self._require_job(session, job_id)
            row.progress = max(0, min(100, progress))

    async def merge_job_metadata(self, job_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        async with self._session() as session:
            row = await self._require_job(session, job_id)
            merged = {**(row.metadata_ or {}), **patch}
            row.metadata_ = merged
            return merged

    async def clear_job_data(self, job_id: str) -> None:
        """Delete every sheet, feature and material of a job."""
        async with self._session() as session:
            for model in (MaterialModel, FeatureModel, SheetModel):
                await session.execute(delete(model).where(model.job_id == job_id))

    # --- sheets & features ---------------------------------------------------

    async def add_sheets(self, job_id: str, sheets: Sequence[Sheet]) -> list[Sheet]:
        async with self._session() as session:
            for sheet in sheets:
                sheet.job_id = job_id
                session.add(
                    SheetModel(
                        id=sheet.id,
                        job_id=job_id,
                        index=sheet.index,
                        name=sheet.name,
                        discipline=sheet.discipline,
                        scale=sheet.scale,
                        units=sheet.units,
                        scale_ratio=sheet.scale_ratio.model_dump() if sheet.scale_ratio else None,
                        width_px=sheet.width_px,
                        height_px=sheet.height_px,
                        render_dpi=sheet.render_dpi,
                        classification=(
                            sheet.classification.model_dump(mode="json") if sheet.classification else None
                        ),
                    )
                )
        return list(sheets)

    async def list_sheets(self, job_id: str) -> list[Sheet]:
        async with self._session() as session:
            result = await session.execute(
                select(SheetModel).where(SheetModel.job_id == job_id).order_by(SheetModel.index)
            )
            return [_sheet_from_row(row) for row in result.scalars().all()]

    async def add_features(self, job_id: str, features: Sequence[Feature]) -> list[Feature]:
        """Append features to a job, keeping their insertion order."""
        async with self._session() as session:
            start = await session.scalar(
                select(func.coalesce(func.max(FeatureModel.seq), -1)).where(FeatureModel.job_id == job_id)
            )
            for offset, feature in enumerate(features, start=int(start) + 1):
                feature.job_id = job_id
                geometry = {}
                if feature.polygon is not None:
                    geometry["polygon"] = [list(p) for p in feature.polygon]
                if feature.polyline is not None:
                    geometry["polyline"] = [list(p) for p in feature.polyline]
                session.add(
                    FeatureModel(
                        id=feature.id,
                        job_id=job_id,
                        sheet_id=feature.sheet_id,
                        type=feature.type,
                        area=feature.area,
                        length=feature.length,
                        count=feature.count,
                        geometry=geometry,
                        props=feature.props.as_dict(),
                        provenance=feature.provenance.model_dump(mode="json") if feature.provenance else None,
                        validation=feature.validation.model_dump(mode="json") if feature.validation else None,
                        seq=offset,
                    )
                )
        return list(features)

    async def list_features(self, job_id: str) -> list[Feature]:
        async with self._session() as session:
            result = await session.execute(
                select(FeatureModel).where(FeatureModel.job_id == job_id).order_by(FeatureModel.seq)
            )
            return [_feature_from_row(row) for row in result.scalars().all()]

    # --- materials -----------------------------------------------------------

    async def replace_materials(self, job_id: str, materials: Sequence[Material]) -> int:
        """Delete then insert a job's materials in one transaction."""
        async with self._session() as session:
            await session.execute(delete(MaterialModel).where(MaterialModel.job_id == job_id))
            for position, material in enumerate(materials):
                session.add(
                    MaterialModel(
                        job_id=job_id,
                        position=position,
                        sku=material.sku,
                        qty=material.qty,
                        uom=material.uom,
                        description=material.description,
                        rule_id=material.rule_id,
                        sources=material.sources.model_dump(),
                        pricing=material.pricing.model_dump(mode="json") if material.pricing else None,
                    )
                )
        return len(materials)

    async def list_materials(self, job_id: str) -> list[Material]:
        async with self._session() as session:
            result = await session.execute(
                select(MaterialModel)
                .where(MaterialModel.job_id == job_id)
                .order_by(MaterialModel.position)
            )
            return [_material_from_row(row) for row in result.scalars().all()]

    # --- rule sets -----------------------------------------------------------

    async def save_rule_set(self, name: str, version: str, rule_set: RuleSet) -> str:
        """Store a validated rule set and return its id.

        Raises:
            RuleSetValidationError: If a rule set with that name/version exists.
        """
        row = RuleSetModel(name=name, version=version, rules=rule_set.model_dump(mode="json"))
        try:
            async with self._session() as session:
                session.add(row)
        except IntegrityError as exc:
            raise RuleSetValidationError(
                f"Rule set {name!r} version {version!r} already exists"
            ) from exc
        logger.info(f"Stored rule set {name} v{version} ({len(rule_set.rules)} rules)")
        return str(row.id)

    async def get_rule_set(self, rule_set_id: str) -> RuleSet:
        try:
            key = UUID(str(rule_set_id))
        except ValueError as exc:
            raise RuleSetNotFoundError(rule_set_id) from exc
        async with self._session() as session:
            row = await session.get(RuleSetModel, key)
            if row is None:
                raise RuleSetNotFoundError(rule_set_id)
            return RuleSet.model_validate(row.rules)

    async def find_rule_set(self, name: str, version: str) -> str | None:
        async with self._session() as session:
            result = await session.execute(
                select(RuleSetModel.id).where(RuleSetModel.name == name, RuleSetModel.version == version)
            )
            found = result.scalar_one_or_none()
            return str(found) if found is not None else None

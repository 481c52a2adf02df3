"""SQLAlchemy async database models for TakeoffCalc.

Portable JSON columns keep the schema usable on both PostgreSQL and SQLite.
Sheet, feature and material rows are scoped by job id and replaced as a set.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from takeoffcalc.models import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class JobModel(Base):
    """Takeoff job with status, progress and append-only history."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)

    file_path: Mapped[str | None] = mapped_column(Text)
    rule_set_id: Mapped[str | None] = mapped_column(String(36))
    webhook_url: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("idx_jobs_status_created", "status", "created_at"),)


class SheetModel(Base):
    """One drawing page of a job."""

    __tablename__ = "sheets"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(Text)
    discipline: Mapped[str | None] = mapped_column(Text)
    scale: Mapped[str | None] = mapped_column(Text)
    units: Mapped[str | None] = mapped_column(Text)
    scale_ratio: Mapped[dict | None] = mapped_column(JSON)
    width_px: Mapped[int | None] = mapped_column(Integer)
    height_px: Mapped[int | None] = mapped_column(Integer)
    render_dpi: Mapped[int | None] = mapped_column(Integer)
    classification: Mapped[dict | None] = mapped_column(JSON)

    __table_args__ = (Index("idx_sheets_job_index", "job_id", "index"),)


class FeatureModel(Base):
    """Extracted building element."""

    __tablename__ = "features"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sheet_id: Mapped[str | None] = mapped_column(String(36))
    type: Mapped[str | None] = mapped_column(String(32), index=True)
    area: Mapped[float | None] = mapped_column(Float)
    length: Mapped[float | None] = mapped_column(Float)
    count: Mapped[float | None] = mapped_column(Float)
    geometry: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)  # polygon / polyline
    props: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    provenance: Mapped[dict | None] = mapped_column(JSON)
    validation: Mapped[dict | None] = mapped_column(JSON)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # insertion order


class MaterialModel(Base):
    """Bill-of-materials line; fully replaced whenever rules are applied."""

    __tablename__ = "materials"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[float] = mapped_column(Float, nullable=False)
    uom: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    rule_id: Mapped[str] = mapped_column(String(16), nullable=False)
    sources: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    pricing: Mapped[dict | None] = mapped_column(JSON)


class RuleSetModel(Base):
    """Stored, validated rule set."""

    __tablename__ = "rule_sets"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    rules: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("name", "version", name="uq_rule_sets_name_version"),)

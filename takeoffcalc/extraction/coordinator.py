"""Extraction coordinator - runs the per-sheet extraction stages for one job.

Stages run in a fixed order. Optional stages are best-effort: a stage that
fails (or a sheet that fails inside a stage) is logged and contributes
nothing, and later stages work with what they got. The primary feature
analysis is mandatory; its failure fails the job.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from takeoffcalc.config import ExtractionConfig
from takeoffcalc.core.cancellation import NEVER, CancellationToken
from takeoffcalc.errors import JobCancelledError, MandatoryStageError, StageError
from takeoffcalc.extraction import stages as stage_specs
from takeoffcalc.extraction.features import (
    PageFeatureSet,
    build_sheet,
    page_features,
    summarize_features,
)
from takeoffcalc.extraction.pool import run_bounded, with_timeout
from takeoffcalc.extraction.provider import ExtractionProvider, ExtractionRequest, RenderedPage
from takeoffcalc.extraction.stages import PageContext, StageSpec
from takeoffcalc.fusion import DataFusionEngine, FusedDataSummary, FusionInput
from takeoffcalc.models import Feature, Provenance, Sheet, SheetCategory, SheetClassification
from takeoffcalc.validation import ValidationService

logger = logging.getLogger(__name__)

StageCallback = Callable[[str, Any], Awaitable[None]]
ProgressCallback = Callable[[int], Awaitable[None]]


class StageStatus(str, Enum):
    """Outcome of one extraction stage."""

    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class StageResult:
    """Records and statistics from one stage."""

    stage: str
    status: StageStatus
    records: list[Any] = field(default_factory=list)
    by_sheet: dict[int, list[Any]] = field(default_factory=dict)
    sheets_attempted: int = 0
    sheets_failed: int = 0
    message: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status in (StageStatus.SUCCESS, StageStatus.PARTIAL_SUCCESS)


@dataclass
class ExtractionResult:
    """Everything the coordinator produced for one job."""

    sheets: list[Sheet]
    features: list[Feature]
    fused: FusedDataSummary | None
    takeoff: dict[str, Any]
    stages: list[StageResult] = field(default_factory=list)
    dropped_features: int = 0

    def stage(self, name: str) -> StageResult | None:
        return next((s for s in self.stages if s.stage == name), None)


class ExtractionCoordinator:
    """Sequences extraction stages over a job's rasterized pages."""

    def __init__(
        self,
        provider: ExtractionProvider | None,
        config: ExtractionConfig | None = None,
        validation: ValidationService | None = None,
        fusion: DataFusionEngine | None = None,
        strict_mode: bool = False,
    ):
        self.provider = provider
        self.config = config or ExtractionConfig()
        self.validation = validation or ValidationService()
        self.fusion = fusion or DataFusionEngine(default_dpi=self.config.render_dpi)
        self.strict_mode = strict_mode

    # --- entry point ---------------------------------------------------------

    async def run(
        self,
        job_id: str,
        pages: Sequence[RenderedPage],
        token: CancellationToken = NEVER,
        on_stage_complete: StageCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """Run every stage for a job.

        Args:
            job_id: Job the sheets and features belong to
            pages: Rasterizer output in page order
            token: Checked at stage boundaries and between sheets
            on_stage_complete: Awaited with (stage, output) for each stage
                that produced something, in stage order
            on_progress: Awaited with progress checkpoints (50, 60, 75)

        Raises:
            MandatoryStageError: If feature analysis cannot complete
            JobCancelledError: If the token is cancelled
        """
        contexts = self.build_contexts(job_id, pages)
        results: list[StageResult] = []

        async def finish(result: StageResult, output: Any) -> None:
            results.append(result)
            logger.info(
                f"Stage {result.stage}: {result.status.value} "
                f"({len(result.records)} records, {result.sheets_failed}/{result.sheets_attempted} sheets failed)"
            )
            if on_stage_complete is not None and output:
                await on_stage_complete(result.stage, output)

        async def progress(value: int) -> None:
            if on_progress is not None:
                await on_progress(value)

        # Classification refines sheet categories for every later filter
        token.raise_if_cancelled()
        classification = await self.run_stage(stage_specs.CLASSIFICATION, contexts, token)
        self.apply_classifications(contexts, classification)
        await finish(classification, {
            str(ctx.sheet.index): ctx.sheet.classification.model_dump(mode="json")
            for ctx in contexts
            if ctx.sheet.classification is not None
        })

        token.raise_if_cancelled()
        scale = await self.run_stage(stage_specs.SCALE, contexts, token)
        self.apply_scale_annotations(contexts, scale.records)
        await finish(scale, _dump(scale.records))

        fusion_input = FusionInput()
        for spec, attr in (
            (stage_specs.SPACES, "spaces"),
            (stage_specs.FINISHES, "space_finishes"),
            (stage_specs.ROOM_SCHEDULES, "room_schedules"),
        ):
            token.raise_if_cancelled()
            result = await self.run_stage(spec, contexts, token)
            setattr(fusion_input, attr, result.records)
            await finish(result, _dump(result.records))

        token.raise_if_cancelled()
        if fusion_input.room_schedules:
            context = {
                "rooms": [
                    {"room_number": r.room_number, "room_name": r.room_name}
                    for r in fusion_input.room_schedules
                ]
            }
            mapping = await self.run_stage(stage_specs.ROOM_MAPPING, contexts, token, context)
        else:
            mapping = StageResult(stage_specs.ROOM_MAPPING.name, StageStatus.SKIPPED, message="No room schedules")
        fusion_input.room_spatial_mappings = mapping.records
        await finish(mapping, _dump(mapping.records))
        await progress(50)

        token.raise_if_cancelled()
        partitions = await self.run_stage(stage_specs.PARTITION_TYPES, contexts, token)
        fusion_input.partition_types = partitions.records
        await finish(partitions, _dump(partitions.records))

        token.raise_if_cancelled()
        walls = await self.run_stage(
            stage_specs.WALL_RUNS,
            contexts,
            token,
            {"partition_types": sorted({p.partition_type_id for p in partitions.records})},
        )
        fusion_input.wall_runs = walls.records
        await finish(walls, _dump(walls.records))

        token.raise_if_cancelled()
        heights = await self.run_stage(
            stage_specs.CEILING_HEIGHTS,
            contexts,
            token,
            {"rooms": _dump(mapping.records) or _dump(fusion_input.room_schedules)},
        )
        fusion_input.ceiling_heights = heights.records
        await finish(heights, _dump(heights.records))

        fusion_input.scale_annotations = scale.records
        token.raise_if_cancelled()
        fusion_result, fused = self.run_fusion([ctx.sheet for ctx in contexts], fusion_input)
        await finish(fusion_result, fused.model_dump(mode="json") if fused else None)
        await progress(60)

        token.raise_if_cancelled()
        analysis, sheets, features = await self.run_feature_analysis(contexts, token)
        kept = self.validation.filter_valid(features, strict_mode=self.strict_mode)
        await finish(analysis, summarize_features(kept))
        await progress(75)

        takeoff = self.build_takeoff(kept, fused)
        await finish(StageResult("takeoff", StageStatus.SUCCESS, message="Aggregated"), takeoff)

        return ExtractionResult(
            sheets=sheets,
            features=kept,
            fused=fused,
            takeoff=takeoff,
            stages=results,
            dropped_features=len(features) - len(kept),
        )

    # --- pages ---------------------------------------------------------------

    def build_contexts(self, job_id: str, pages: Sequence[RenderedPage]) -> list[PageContext]:
        """One sheet per page; pages that failed to render keep their sheet but no raster."""
        contexts = []
        for page in sorted(pages, key=lambda p: p.index):
            if page.error:
                logger.warning(f"Page {page.index + 1} failed to render: {page.error}")
            text = page.text[: self.config.text_limit] if page.text else None
            sheet = Sheet(
                job_id=job_id,
                index=page.index,
                width_px=page.width_px,
                height_px=page.height_px,
                render_dpi=self.config.render_dpi,
            )
            contexts.append(PageContext(sheet=sheet, image=None if page.error else page.image, text=text))
        return contexts

    # --- provider calls ------------------------------------------------------

    def build_request(self, spec: StageSpec, page: PageContext, context: dict[str, Any] | None) -> ExtractionRequest:
        request_context = {"sheet_index": page.sheet.index, "sheet_name": page.sheet.label}
        if page.sheet.category:
            request_context["sheet_category"] = page.sheet.category
        if context:
            request_context.update(context)
        return ExtractionRequest(
            stage=spec.name,
            schema_name=spec.schema_name,
            schema=spec.response_schema(),
            instructions=spec.instructions,
            model=self.config.model_for(spec.name),
            image=page.image,
            text=page.text,
            context=request_context,
        )

    async def extract(self, spec: StageSpec, page: PageContext, context: dict[str, Any] | None = None) -> list[Any]:
        """Call the provider for one sheet, retrying failed or malformed responses.

        Raises:
            StageError: After the last attempt fails (timeouts included)
        """
        request = self.build_request(spec, page, context)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type(StageError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying {spec.name} for sheet {page.sheet.index} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                payload = await with_timeout(
                    self.provider.extract(request),
                    self.config.call_timeout_seconds,
                    spec.name,
                    what=f"sheet {page.sheet.index}",
                )
                return spec.parse(payload, page)
        return []  # pragma: no cover - AsyncRetrying always runs at least once

    # --- stages --------------------------------------------------------------

    async def run_stage(
        self,
        spec: StageSpec,
        contexts: Sequence[PageContext],
        token: CancellationToken,
        context: dict[str, Any] | None = None,
    ) -> StageResult:
        """Fan one stage out over the sheets it selects.

        Per-sheet failures are logged and omitted. Only cancellation
        propagates.
        """
        started = time.monotonic()
        if self.provider is None:
            return StageResult(spec.name, StageStatus.SKIPPED, message="No extraction provider configured")

        selected = [ctx for ctx in contexts if spec.selects(ctx)]
        if not selected:
            return StageResult(spec.name, StageStatus.SKIPPED, message="No matching sheets")

        try:
            outcomes = await run_bounded(
                selected,
                lambda ctx: self.extract(spec, ctx, context),
                self.config.concurrency,
                token,
            )
        except JobCancelledError:
            raise
        except Exception as e:
            logger.error(f"Stage {spec.name} failed: {e}", exc_info=True)
            return StageResult(
                spec.name,
                StageStatus.FAILED,
                sheets_attempted=len(selected),
                sheets_failed=len(selected),
                message=str(e),
                duration_seconds=time.monotonic() - started,
            )

        records: list[Any] = []
        by_sheet: dict[int, list[Any]] = {}
        failed = 0
        for outcome in outcomes:
            if outcome.ok:
                records.extend(outcome.value or [])
                by_sheet[selected[outcome.index].sheet.index] = list(outcome.value or [])
            else:
                failed += 1
                logger.warning(
                    f"Stage {spec.name} failed for sheet {selected[outcome.index].sheet.index}: {outcome.error}"
                )

        if failed == 0:
            status = StageStatus.SUCCESS
        elif failed < len(outcomes):
            status = StageStatus.PARTIAL_SUCCESS
        else:
            status = StageStatus.FAILED
        return StageResult(
            spec.name,
            status,
            records=records,
            by_sheet=by_sheet,
            sheets_attempted=len(outcomes),
            sheets_failed=failed,
            message=f"{len(records)} records from {len(outcomes) - failed} sheets",
            duration_seconds=time.monotonic() - started,
        )

    def apply_classifications(self, contexts: Sequence[PageContext], result: StageResult) -> None:
        """Attach each sheet's classification; unclassified sheets fall back to "other"."""
        for ctx in contexts:
            records = result.by_sheet.get(ctx.sheet.index)
            classification: SheetClassification | None = records[0] if records else None
            if classification is None:
                classification = SheetClassification(category=SheetCategory.OTHER, notes="fallback")
            ctx.sheet.classification = classification
            if classification.title and not ctx.sheet.name:
                ctx.sheet.name = classification.title
            if classification.discipline and not ctx.sheet.discipline:
                ctx.sheet.discipline = ", ".join(classification.discipline)

    def apply_scale_annotations(self, contexts: Sequence[PageContext], annotations: Sequence[Any]) -> None:
        """Fill each sheet's scale note and ratio from its preferred annotation."""
        by_sheet: dict[int, list[Any]] = {}
        for annotation in annotations:
            by_sheet.setdefault(annotation.sheet_index, []).append(annotation)
        for ctx in contexts:
            preferred = self.fusion.select_scale_annotation(by_sheet.get(ctx.sheet.index, []), ctx.sheet)
            if preferred is None:
                continue
            ctx.sheet.scale = ctx.sheet.scale or preferred.scale_note
            ctx.sheet.scale_ratio = ctx.sheet.scale_ratio or preferred.scale_ratio

    def run_fusion(
        self, sheets: Sequence[Sheet], data: FusionInput
    ) -> tuple[StageResult, FusedDataSummary | None]:
        started = time.monotonic()
        try:
            fused = self.fusion.fuse(sheets, data)
        except Exception as e:
            logger.error(f"Fusion failed: {e}", exc_info=True)
            return StageResult("fusion", StageStatus.FAILED, message=str(e)), None
        return (
            StageResult(
                "fusion",
                StageStatus.SUCCESS,
                message=f"{len(fused.rooms)} rooms, {len(fused.walls)} walls",
                duration_seconds=time.monotonic() - started,
            ),
            fused,
        )

    async def run_feature_analysis(
        self, contexts: Sequence[PageContext], token: CancellationToken
    ) -> tuple[StageResult, list[Sheet], list[Feature]]:
        """Primary per-page analysis. Any failure here fails the job.

        Raises:
            MandatoryStageError: If no provider is configured, no page has a
                raster, or any page's analysis fails
        """
        spec = stage_specs.FEATURE_ANALYSIS
        if self.provider is None:
            raise MandatoryStageError(
                f"[{spec.name}] No extraction provider configured (set OPENAI_API_KEY)"
            )
        if not any(spec.selects(ctx) for ctx in contexts):
            raise MandatoryStageError(f"[{spec.name}] No rasterized pages to analyse")

        result = await self.run_stage(spec, contexts, token)
        if result.status != StageStatus.SUCCESS:
            raise MandatoryStageError(f"[{spec.name}] {result.sheets_failed} sheet(s) failed: {result.message}")

        model = self.config.model_for(spec.name)

        sheets: list[Sheet] = []
        features: list[Feature] = []
        for ctx in contexts:
            records = result.by_sheet.get(ctx.sheet.index)
            if not records:
                sheets.append(ctx.sheet)
                continue
            page_set: PageFeatureSet = records[0]
            page_set.page_index = ctx.sheet.index
            sheet = build_sheet(page_set, base=ctx.sheet)
            sheets.append(sheet)
            features.extend(page_features(page_set, sheet, Provenance(method="vision", source=model)))
        return result, sheets, features

    def build_takeoff(self, features: Sequence[Feature], fused: FusedDataSummary | None) -> dict[str, Any]:
        """Aggregate counts for the job's takeoff summary."""
        takeoff: dict[str, Any] = {
            "feature_count": len(features),
            "features_by_type": summarize_features(list(features)),
        }
        if fused is not None:
            takeoff["fused_rooms"] = len(fused.rooms)
            takeoff["fused_walls"] = len(fused.walls)
            takeoff["total_wall_length_ft"] = fused.total_wall_length_ft
        return takeoff


def _dump(records: Sequence[Any]) -> list[dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]

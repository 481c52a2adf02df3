"""Per-sheet extraction stages and the provider/rasterizer contracts."""

from takeoffcalc.extraction.coordinator import (
    ExtractionCoordinator,
    ExtractionResult,
    StageResult,
    StageStatus,
)
from takeoffcalc.extraction.provider import (
    ExtractionProvider,
    ExtractionRequest,
    OpenAIExtractionProvider,
    Rasterizer,
    RenderedPage,
)

__all__ = [
    "ExtractionCoordinator",
    "ExtractionProvider",
    "ExtractionRequest",
    "ExtractionResult",
    "OpenAIExtractionProvider",
    "Rasterizer",
    "RenderedPage",
    "StageResult",
    "StageStatus",
]

from takeoffcalc.fusion.engine import DataFusionEngine
from takeoffcalc.fusion.records import (
    FusedDataSummary,
    FusedRoom,
    FusedWall,
    FusionInput,
)

__all__ = ["DataFusionEngine", "FusedDataSummary", "FusedRoom", "FusedWall", "FusionInput"]

"""Job state machine and the single-consumer job orchestrator."""

from takeoffcalc.pipeline.jobs import JobService
from takeoffcalc.pipeline.orchestrator import JobOrchestrator

__all__ = ["JobOrchestrator", "JobService"]

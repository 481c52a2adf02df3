from takeoffcalc.consistency.checker import (
    ConsistencyChecker,
    ConsistencyIssue,
    ConsistencyReport,
    ConsistencySummary,
)

__all__ = ["ConsistencyChecker", "ConsistencyIssue", "ConsistencyReport", "ConsistencySummary"]

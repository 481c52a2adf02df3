"""Exception types raised across the takeoff pipeline."""

from __future__ import annotations


class TakeoffError(Exception):
    """Base class for all takeoff pipeline errors."""


class RuleSetValidationError(TakeoffError, ValueError):
    """Raised when a rule set payload is malformed."""


class QuantityExpressionError(TakeoffError, ValueError):
    """Raised when a quantity expression cannot be evaluated to a finite number."""

    def __init__(self, message: str, expression: str | None = None):
        super().__init__(message)
        self.expression = expression


class StageError(TakeoffError):
    """Raised when an extraction stage item fails (bad or empty provider response)."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class StageTimeoutError(StageError):
    """Raised when a provider or rasterizer call exceeds its time budget."""


class MandatoryStageError(TakeoffError):
    """Raised when a stage the job cannot complete without has failed."""


class JobCancelledError(TakeoffError):
    """Raised when cooperative cancellation is observed."""


class InvalidTransitionError(TakeoffError):
    """Raised on a job status change the state machine does not allow."""


class JobNotFoundError(TakeoffError, KeyError):
    """Raised when a job id does not exist."""


class RuleSetNotFoundError(TakeoffError, KeyError):
    """Raised when a rule set id does not exist."""

from takeoffcalc.validation.service import DEFAULT_LIMITS, DimensionLimits, ValidationService

__all__ = ["DEFAULT_LIMITS", "DimensionLimits", "ValidationService"]

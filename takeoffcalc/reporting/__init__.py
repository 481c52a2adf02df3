"""Bill of materials reporting."""

from takeoffcalc.reporting.materials import materials_to_csv, summarize_materials

__all__ = ["materials_to_csv", "summarize_materials"]

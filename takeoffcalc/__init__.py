"""TakeoffCalc - drawing-set takeoff fusion and materials rule pipeline."""

__version__ = "0.1.0"

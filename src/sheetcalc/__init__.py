"""Character attribute dependency-recalculation engine."""

__version__ = "0.1.0"

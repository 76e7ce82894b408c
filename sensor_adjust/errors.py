"""
Exception types used throughout sensor_adjust.

Categories:
    - ConfigurationError: bad user input (rig files, intrinsics grammar,
      count mismatches). Fatal to the run.
    - InvariantError: internal book-keeping violated (index out of range,
      camera variant mismatch). Indicates a defect, never user-recoverable.
    - ProjectionError: a camera model could not project a point. Contained
      by the cost functions, which substitute a penalty residual.
"""


class SensorAdjustError(Exception):
    """Base class for all sensor_adjust errors."""


class ConfigurationError(SensorAdjustError, ValueError):
    """Malformed or inconsistent configuration or argument."""


class AdjustmentFileError(ConfigurationError):
    """An adjustment file could not be parsed."""

    def __init__(self, path, reason: str):
        self.path = str(path)
        super().__init__(f"Could not parse adjustment file {self.path}: {reason}")


class InvariantError(SensorAdjustError, RuntimeError):
    """Internal invariant violation."""


class ProjectionError(SensorAdjustError, ArithmeticError):
    """Projection through a camera model failed or diverged."""

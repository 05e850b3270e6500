"""crowding.exceptions

Domain-specific errors for the crowding pipeline.

Geometry and configuration errors abort a run. Per-stem data issues
(a stem missing from one census, a focal stem with no competitors) are
absorbed into the tables and never raise.
"""

from __future__ import annotations

from typing import Any


class CrowdingError(Exception):
    """Base exception for all crowding errors."""
    pass


class ConfigurationError(CrowdingError):
    """Raised when a pipeline configuration is missing or malformed."""
    pass


class ParameterError(CrowdingError):
    """Raised when parameters are invalid or out of bounds."""
    pass


class InvalidParameterError(ParameterError):
    """Raised when a parameter value is invalid."""
    def __init__(self, param_name: str, value: Any, reason: str = ""):
        self.param_name = param_name
        self.value = value
        self.reason = reason
        message = f"Invalid value for parameter '{param_name}': {value}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class GeometryError(CrowdingError):
    """Raised when study-region geometry cannot be used."""
    pass


class InvalidGeometryError(GeometryError):
    """Raised when a region is empty or self-intersecting.

    Carries the buffering parameters that produced the geometry so the
    diagnostic can be reproduced.
    """
    def __init__(self, reason: str, margin: float = 0.0, direction: str = "in"):
        self.reason = reason
        self.margin = margin
        self.direction = direction
        super().__init__(
            f"Invalid study region ({reason}); margin={margin}, direction={direction!r}"
        )


class DataError(CrowdingError):
    """Raised when census or feature tables violate their invariants."""
    pass


class FoldCountWarning(UserWarning):
    """Emitted when there are more folds than occupied spatial blocks."""
    pass

"""Error types raised by the analysis stages."""

from __future__ import annotations

__all__ = [
    "IrsIipError",
    "UnknownReferenceSystem",
    "UnitMismatchError",
    "EmptyPointSetError",
    "DegenerateWindowError",
    "MissingDatasetError",
]


class IrsIipError(ValueError):
    """Base class. ``stage`` names the analysis step that rejected its input."""

    stage = "analysis"

    def __init__(self, message: str, *, stage: str | None = None):
        if stage is not None:
            self.stage = stage
        super().__init__(f"[{self.stage}] {message}")


class UnknownReferenceSystem(IrsIipError):
    stage = "crs"


class UnitMismatchError(IrsIipError):
    stage = "crs"


class EmptyPointSetError(IrsIipError):
    stage = "crossk"


class DegenerateWindowError(IrsIipError):
    stage = "crossk"


class MissingDatasetError(IrsIipError):
    stage = "load"

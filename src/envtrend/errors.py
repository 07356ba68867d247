"""envtrend.errors

Error taxonomy shared by every stage.

Two kinds of problems exist:
- Fatal, unit-scoped errors are exceptions (SchemaMismatchError, InvalidGeometryError).
  They abort one (region, year) unit; the batch records a UnitFailure and moves on.
- Recoverable conditions (no frames, band missing from an aggregation, empty region,
  too few trend points) are never raised. They travel as tags on the returned artifact:
  Presence/FallbackReason on composites, None on regional scalars, TrendStatus on trends.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Iterable


class EnvtrendError(Exception):
    """Base class for fatal pipeline errors."""


class SchemaMismatchError(EnvtrendError):
    """The dataset schema does not contain the requested band at all."""

    def __init__(self, band: str, available: Iterable[str]):
        self.band = band
        self.available = sorted(available)
        super().__init__(f"Band {band!r} not in dataset schema (available: {self.available})")


class InvalidGeometryError(EnvtrendError):
    """A region polygon is empty, degenerate, or not polygonal."""

    def __init__(self, region_id: str, reason: str):
        self.region_id = region_id
        self.reason = reason
        super().__init__(f"Region {region_id!r}: invalid geometry ({reason})")


@dataclass(frozen=True)
class UnitFailure:
    """A fatal error confined to one unit of work."""

    key: Hashable
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, key: Hashable, exc: BaseException) -> "UnitFailure":
        return cls(key=key, error_type=type(exc).__name__, message=str(exc))

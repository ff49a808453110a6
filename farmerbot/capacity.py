"""Resource capacity values for farm nodes.

A node reports four independent resource dimensions: compute units (cru),
memory (mru), fast storage (sru) and bulk storage (hru). Each node carries a
total capacity and a used capacity; used is reported externally and may be
stale, so nothing here enforces used <= total.
"""
from __future__ import annotations

from dataclasses import dataclass, field

DIMENSIONS: tuple[str, ...] = ("cru", "mru", "sru", "hru")


@dataclass
class Capacity:
    """Quantity of resources across the four dimensions."""
    cru: int = 0
    mru: int = 0
    sru: int = 0
    hru: int = 0

    def is_empty(self) -> bool:
        return self.cru == 0 and self.mru == 0 and self.sru == 0 and self.hru == 0

    def add(self, other: Capacity) -> None:
        self.cru += other.cru
        self.mru += other.mru
        self.sru += other.sru
        self.hru += other.hru

    def subtract(self, other: Capacity) -> None:
        """Subtract in place, flooring each dimension at zero."""
        self.cru = max(0, self.cru - other.cru)
        self.mru = max(0, self.mru - other.mru)
        self.sru = max(0, self.sru - other.sru)
        self.hru = max(0, self.hru - other.hru)

    def copy(self) -> Capacity:
        return Capacity(cru=self.cru, mru=self.mru, sru=self.sru, hru=self.hru)

    def as_dict(self) -> dict[str, int]:
        return {dim: getattr(self, dim) for dim in DIMENSIONS}


def usage_percentages(used: Capacity, total: Capacity) -> dict[str, float]:
    """Return used/total as a percentage per dimension.

    Dimensions with zero total capacity are left out: a ratio over nothing
    carries no demand signal.
    """
    percentages: dict[str, float] = {}
    for dim in DIMENSIONS:
        dim_total = getattr(total, dim)
        if dim_total == 0:
            continue
        percentages[dim] = 100.0 * getattr(used, dim) / dim_total
    return percentages


@dataclass
class Resources:
    """Total and used capacity of one node."""
    total: Capacity = field(default_factory=Capacity)
    used: Capacity = field(default_factory=Capacity)

    def copy(self) -> Resources:
        return Resources(total=self.total.copy(), used=self.used.copy())

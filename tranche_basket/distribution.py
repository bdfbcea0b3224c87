"""Loss distribution surface.

Values are indexed by (group, date, loss level):

- group 0 is the base scenario, group i > 0 the scenario with the curve of
  name i - 1 substituted (filled only for sensitivity runs)
- dates start at the calculation start date
- loss levels are fractions of the remaining net principal, sorted, with 0 first

A value is either the cumulative probability P(L ≤ K) or the expected base
loss E[min(L, K)] in principal units, for K = level × net principal.
"""

from datetime import date
from typing import Sequence

import numpy as np
import pandas as pd

from .timegrid import year_fraction


class DistributionSurface:
    """Time × loss-level × group table with bilinear interpolation."""

    def __init__(self, dates: Sequence[date], levels: Sequence[float], num_groups: int = 1):
        dates = list(dates)
        levels = np.asarray(levels, dtype=float)
        if not dates:
            raise ValueError("A distribution surface needs at least one date")
        if any(b <= a for a, b in zip(dates, dates[1:])):
            raise ValueError("Surface dates must be strictly increasing")
        if levels.ndim != 1 or len(levels) == 0 or np.any(np.diff(levels) <= 0):
            raise ValueError("Surface levels must be non-empty and strictly increasing")
        if num_groups < 1:
            raise ValueError(f"Number of groups must be positive, got {num_groups}")
        self.dates = dates
        self.levels = levels
        self.times = np.array([year_fraction(dates[0], d) for d in dates])
        self.values = np.zeros((num_groups, len(dates), len(levels)))

    @property
    def start(self) -> date:
        return self.dates[0]

    @property
    def num_groups(self) -> int:
        return self.values.shape[0]

    @property
    def num_dates(self) -> int:
        return self.values.shape[1]

    @property
    def num_levels(self) -> int:
        return self.values.shape[2]

    def _interpolate_levels(self, row: np.ndarray, level: float) -> float:
        return float(np.interp(level, self.levels, row))

    def interpolate(self, when: date, level: float, group: int = 0) -> float:
        """Bilinear interpolation, linear in year fraction and in level, flat outside the grid."""
        table = self.values[group]
        t = year_fraction(self.dates[0], when)
        if t <= self.times[0]:
            return self._interpolate_levels(table[0], level)
        if t >= self.times[-1]:
            return self._interpolate_levels(table[-1], level)
        hi = int(np.searchsorted(self.times, t, side="left"))
        lo = hi - 1
        v_lo = self._interpolate_levels(table[lo], level)
        v_hi = self._interpolate_levels(table[hi], level)
        w = (t - self.times[lo]) / (self.times[hi] - self.times[lo])
        return v_lo + w * (v_hi - v_lo)

    def interpolate_tranche(self, when: date, begin: float, end: float, group: int = 0) -> float:
        """Value of the tranche [begin, end]: value(end) - value(begin)."""
        if end <= begin:
            return 0.0
        return self.interpolate(when, end, group) - self.interpolate(when, begin, group)

    def is_monotone(self, tolerance: float = 1e-10) -> bool:
        """True when values are non-decreasing in loss level for every group and date."""
        return bool(np.all(np.diff(self.values, axis=2) >= -tolerance))

    def copy(self) -> "DistributionSurface":
        surface = DistributionSurface(self.dates, self.levels, self.num_groups)
        surface.values = self.values.copy()
        return surface

    def to_frame(self, group: int = 0) -> pd.DataFrame:
        """Dates × levels table of one group."""
        return pd.DataFrame(self.values[group], index=pd.Index(self.dates, name="date"),
                            columns=pd.Index(self.levels, name="level"))

    def __repr__(self) -> str:
        return (f"DistributionSurface(dates={self.num_dates}, levels={self.num_levels}, "
                f"groups={self.num_groups})")

"""Survival and discount curves.

Survival curves use a piecewise-constant hazard rate between tenor dates:

    S(t) = exp(-Σ_k h_k × Δt_k)

A curve also carries the default status of its name and, optionally, the
recovery curve that goes with it.
"""

from datetime import date
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from .recovery import RecoveryCurve
from .timegrid import year_fraction


class DefaultStatus(Enum):
    """Default state of a credit name."""
    NOT_DEFAULTED = "not_defaulted"
    HAS_DEFAULTED = "has_defaulted"
    WILL_DEFAULT = "will_default"


class SurvivalCurve:
    """Piecewise-constant hazard survival curve.

    The hazard ``hazard_rates[k]`` applies up to ``tenor_dates[k]``; the last
    hazard extends beyond the last tenor.
    """

    def __init__(self, as_of: date, tenor_dates: Sequence[date], hazard_rates: Sequence[float],
                 name: Optional[str] = None, recovery_curve: Optional[RecoveryCurve] = None,
                 defaulted: DefaultStatus = DefaultStatus.NOT_DEFAULTED,
                 default_date: Optional[date] = None):
        tenor_dates = list(tenor_dates)
        hazards = np.asarray(hazard_rates, dtype=float)
        if len(tenor_dates) == 0 or len(tenor_dates) != len(hazards):
            raise ValueError(
                f"Need one hazard rate per tenor date, got {len(tenor_dates)} dates "
                f"and {len(hazards)} rates")
        if np.any(hazards < 0):
            raise ValueError("Hazard rates must be non-negative")
        if tenor_dates[0] <= as_of or any(b <= a for a, b in zip(tenor_dates, tenor_dates[1:])):
            raise ValueError("Tenor dates must be increasing and after the as-of date")
        if defaulted is DefaultStatus.HAS_DEFAULTED and default_date is None:
            raise ValueError("A defaulted curve needs a default date")

        self.as_of = as_of
        self.tenor_dates = tenor_dates
        self.hazard_rates = hazards
        self.name = name
        self.recovery_curve = recovery_curve
        self.defaulted = defaulted
        self.default_date = default_date

        self._times = np.array([year_fraction(as_of, d) for d in tenor_dates])
        widths = np.diff(np.concatenate(([0.0], self._times)))
        self._cum_hazard = np.cumsum(hazards * widths)

    @classmethod
    def flat(cls, as_of: date, hazard_rate: float, name: Optional[str] = None,
             recovery_curve: Optional[RecoveryCurve] = None, horizon_years: int = 30) -> "SurvivalCurve":
        """Create a flat hazard curve."""
        tenor = date(as_of.year + horizon_years, as_of.month, min(as_of.day, 28))
        return cls(as_of, [tenor], [hazard_rate], name=name, recovery_curve=recovery_curve)

    def cumulative_hazard(self, t: float) -> float:
        if t <= 0:
            return 0.0
        idx = int(np.searchsorted(self._times, t, side="left"))
        if idx >= len(self._times):
            return float(self._cum_hazard[-1] + self.hazard_rates[-1] * (t - self._times[-1]))
        prev_time = self._times[idx - 1] if idx > 0 else 0.0
        prev_cum = self._cum_hazard[idx - 1] if idx > 0 else 0.0
        return float(prev_cum + self.hazard_rates[idx] * (t - prev_time))

    def survival_probability(self, when: date) -> float:
        """Probability of surviving from the as-of date to ``when``.

        A defaulted name (or one marked to default) has zero survival on and
        after its default date.
        """
        if self.defaulted is not DefaultStatus.NOT_DEFAULTED and self.default_date is not None \
                and when >= self.default_date:
            return 0.0
        return float(np.exp(-self.cumulative_hazard(year_fraction(self.as_of, when))))

    def default_probability(self, start: date, end: date) -> float:
        """Probability of default in ``(start, end]`` conditional on survival to ``start``."""
        s_start = self.survival_probability(start)
        if s_start <= 1e-8:
            return 1.0
        return float(np.clip(1.0 - self.survival_probability(end) / s_start, 0.0, 1.0))

    def has_unsettled_recovery(self) -> bool:
        return (self.defaulted is DefaultStatus.HAS_DEFAULTED and self.recovery_curve is not None
                and self.recovery_curve.will_recover)

    def _copy(self, **changes) -> "SurvivalCurve":
        values = dict(as_of=self.as_of, tenor_dates=self.tenor_dates, hazard_rates=self.hazard_rates,
                      name=self.name, recovery_curve=self.recovery_curve,
                      defaulted=self.defaulted, default_date=self.default_date)
        values.update(changes)
        return SurvivalCurve(**values)

    def bumped(self, shift: float, relative: bool = False) -> "SurvivalCurve":
        """Return a copy with the hazard rates shifted (floored at zero)."""
        hazards = self.hazard_rates * (1.0 + shift) if relative else self.hazard_rates + shift
        return self._copy(hazard_rates=np.maximum(hazards, 0.0))

    def with_recovery(self, recovery_curve: Optional[RecoveryCurve]) -> "SurvivalCurve":
        return self._copy(recovery_curve=recovery_curve)

    def with_default(self, default_date: Optional[date] = None,
                     status: DefaultStatus = DefaultStatus.WILL_DEFAULT) -> "SurvivalCurve":
        """Return a copy marked as defaulted (jump-to-default scenario)."""
        return self._copy(defaulted=status, default_date=default_date)

    def __repr__(self) -> str:
        return (f"SurvivalCurve(name={self.name!r}, hazard={self.hazard_rates.tolist()}, "
                f"defaulted={self.defaulted.value})")


class DiscountCurve:
    """Flat continuously compounded discount curve."""

    def __init__(self, as_of: date, rate: float):
        self.as_of = as_of
        self.rate = float(rate)

    def discount_factor(self, when: date) -> float:
        return float(np.exp(-self.rate * year_fraction(self.as_of, when)))

    def __repr__(self) -> str:
        return f"DiscountCurve(as_of={self.as_of}, rate={self.rate:.4%})"

"""Date arithmetic for calculation grids and payment schedules."""

from datetime import date
from enum import Enum
from typing import Iterable, List, Optional

import pandas as pd


class StepUnit(Enum):
    """Unit of a grid step."""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


def add_period(start: date, size: int, unit: StepUnit) -> date:
    """Shift a date by ``size`` units using calendar arithmetic."""
    shifted = pd.Timestamp(start) + pd.DateOffset(**{unit.value: size})
    return shifted.date()


def year_fraction(start: date, end: date) -> float:
    """Actual/365 fixed year fraction between two dates (negative if reversed)."""
    return (end - start).days / 365.0


def generate_grid_dates(start: date, stop: date, step_size: int, step_unit: StepUnit,
                        additional: Optional[Iterable[date]] = None) -> List[date]:
    """Generate calculation grid dates.

    Dates step from ``start`` while strictly before ``stop``; ``stop`` is always
    the last date. Additional dates inside ``[start, stop]`` are merged in.

    Args:
        start: First grid date
        stop: Last grid date
        step_size: Number of units per step (positive)
        step_unit: Unit of a step
        additional: Extra dates to include

    Returns:
        Sorted list of unique dates
    """
    if step_size <= 0:
        raise ValueError(f"Step size must be positive, got {step_size}")
    dates = []
    current = start
    count = 0
    while current < stop:
        dates.append(current)
        count += 1
        current = add_period(start, count * step_size, step_unit)
    dates.append(stop)
    if additional:
        dates.extend(d for d in additional if start <= d <= stop)
    return sorted(set(dates))

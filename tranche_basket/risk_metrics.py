"""Per-name sensitivity tables built on ``bumped_pvs``."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .curves import SurvivalCurve
from .engine import BasketEngine

logger = logging.getLogger(__name__)


@dataclass
class NameSensitivity:
    """Sensitivity of one price measure to one name.

    Attributes:
        name: Credit name
        measure: Label of the price measure
        base_value: Unbumped value
        bumped_value: Value with the name's curve substituted
        delta: bumped_value - base_value
    """
    name: str
    measure: str
    base_value: float
    bumped_value: float
    delta: float


def _row_labels(engine: BasketEngine, count: int) -> List[str]:
    labels = engine.names
    if count > len(labels):
        pool = engine.original_pool
        labels = labels + [pool[i].name for i in pool.unsettled_indices()]
    return ["base"] + labels[:count]


def bumped_pvs_frame(engine: BasketEngine, evaluators, alt_survival_curves: Sequence[SurvivalCurve],
                     include_recovery_sensitivity: bool = False) -> pd.DataFrame:
    """``engine.bumped_pvs`` as a DataFrame indexed by 'base' and the bumped names."""
    evaluators = list(evaluators)
    table = engine.bumped_pvs(evaluators, alt_survival_curves, include_recovery_sensitivity)
    return pd.DataFrame(table, index=pd.Index(_row_labels(engine, table.shape[0] - 1), name="scenario"),
                        columns=[e.label for e in evaluators])


def _deltas(frame: pd.DataFrame) -> pd.DataFrame:
    deltas = frame.iloc[1:] - frame.iloc[0]
    deltas.index.name = "name"
    return deltas


def spread_sensitivities(engine: BasketEngine, evaluators, bump: float = 0.0001,
                         relative: bool = False) -> pd.DataFrame:
    """Change of every measure when one name's hazard rates are bumped.

    Args:
        engine: Basket engine the evaluators are bound to
        evaluators: Price measures
        bump: Hazard rate shift (absolute, or relative when ``relative``)
        relative: Bump relative to the current hazard rates

    Returns:
        DataFrame of deltas indexed by name
    """
    alt = [sc.bumped(bump, relative) for sc in engine.survival_curves]
    logger.debug("Spread sensitivities with bump %g for %d names", bump, len(alt))
    return _deltas(bumped_pvs_frame(engine, evaluators, alt))


def recovery_sensitivities(engine: BasketEngine, evaluators, bump: float = 0.01) -> pd.DataFrame:
    """Change of every measure when one name's recovery rate is bumped.

    Only baskets whose recoveries come from the survival curves react; a basket
    built with explicit recovery curves keeps them fixed.
    """
    alt = [sc.with_recovery(rc.bumped(bump)) for sc, rc in zip(engine.survival_curves, engine.recovery_curves)]
    return _deltas(bumped_pvs_frame(engine, evaluators, alt, include_recovery_sensitivity=True))


def jump_to_default(engine: BasketEngine, evaluators, default_date=None) -> pd.DataFrame:
    """Change of every measure when one name defaults immediately."""
    when = default_date or engine.settle
    alt = [sc.with_default(when) for sc in engine.survival_curves]
    return _deltas(bumped_pvs_frame(engine, evaluators, alt))


def collect_sensitivities(frame: pd.DataFrame) -> List[NameSensitivity]:
    """Flatten a ``bumped_pvs_frame`` into per-name, per-measure records."""
    base = frame.iloc[0]
    results = []
    for name, row in frame.iloc[1:].iterrows():
        for measure, value in row.items():
            results.append(NameSensitivity(str(name), str(measure), float(base[measure]),
                                           float(value), float(value - base[measure])))
    return results


def create_sensitivity_report(sensitivities: List[NameSensitivity],
                              engine: Optional[BasketEngine] = None) -> pd.DataFrame:
    """Create a DataFrame report of name sensitivities, largest first.

    Args:
        sensitivities: List of NameSensitivity
        engine: Optional engine adding principal and recovery columns

    Returns:
        DataFrame with one row per name and measure
    """
    details = {}
    if engine is not None:
        for name in engine.original_pool:
            details[name.name] = (name.principal, name.recovery_curve.recovery_rate(engine.maturity))

    data = []
    for s in sensitivities:
        principal, recovery = details.get(s.name, (np.nan, np.nan))
        data.append({
            'Name': s.name,
            'Measure': s.measure,
            'Principal': principal,
            'Recovery': recovery,
            'Base': s.base_value,
            'Bumped': s.bumped_value,
            'Delta': s.delta,
            'Abs_Delta': abs(s.delta),
        })

    df = pd.DataFrame(data, columns=['Name', 'Measure', 'Principal', 'Recovery', 'Base',
                                     'Bumped', 'Delta', 'Abs_Delta'])
    df = df.sort_values('Abs_Delta', ascending=False, kind="mergesort").reset_index(drop=True)
    return df

"""Distribution kernels.

A kernel fills a ``DistributionSurface`` from per-name survival curves,
principals, recoveries and a resolved correlation term structure. Kernels are
deterministic: identical inputs produce identical values.

``SemiAnalyticKernel`` implements the one-factor Gaussian copula: conditional
on the common factor Z, names default independently with

    p_i(t | Z) = Φ((Φ⁻¹(p_i(t)) - a_i Z) / √(1 - a_i²))

and the conditional loss distribution is built by recursive convolution on a
uniform loss grid. Integration over Z uses Gauss-Hermite quadrature.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import norm

from .correlation import Copula, CorrelationTermStruct
from .curves import SurvivalCurve
from .distribution import DistributionSurface
from .exceptions import UnsupportedOperationError, ValidationError
from .recovery import create_recovery_distribution

logger = logging.getLogger(__name__)


def default_probabilities(survival_curves: Sequence[SurvivalCurve], start: date, when: date,
                          early_maturities: Optional[Sequence[Optional[date]]] = None) -> np.ndarray:
    """Probability of default in (start, when] per name, conditional on survival to start.

    Protection on a name with an early maturity stops at that date.
    """
    probs = np.empty(len(survival_curves))
    for i, sc in enumerate(survival_curves):
        horizon = when
        if early_maturities is not None and early_maturities[i] is not None:
            horizon = min(when, early_maturities[i])
        if horizon <= start:
            probs[i] = 0.0
            continue
        probs[i] = sc.default_probability(start, horizon)
    return probs


def correlation_lookup_date(when: date, start: date, correlation_base: Optional[date]) -> date:
    """Date at which correlation tenors are read for grid date ``when``."""
    if correlation_base is None or correlation_base == start:
        return when
    return correlation_base + timedelta(days=(when - start).days)


def _expected_base_loss(distribution: np.ndarray, grid: np.ndarray, thresholds: np.ndarray,
                        want_probability: bool, tolerance: float) -> np.ndarray:
    """E[min(L, K)] (or P(L ≤ K)) for each threshold K of a discrete distribution."""
    if want_probability:
        below = grid[np.newaxis, :] <= thresholds[:, np.newaxis] + tolerance
        return below.astype(float) @ distribution
    return np.minimum(grid[np.newaxis, :], thresholds[:, np.newaxis]) @ distribution


class DistributionKernel(ABC):
    """Fills loss and amortization distribution surfaces."""

    def compute(self, want_probability: bool, start_index: int, stop_index: int,
                copula: Copula, correlation: CorrelationTermStruct,
                survival_curves: Sequence[SurvivalCurve], principals: np.ndarray,
                recovery_rates: np.ndarray, recovery_dispersions: np.ndarray,
                loss_levels: np.ndarray, grid_size: float, surface: DistributionSurface, *,
                amortization_surface: Optional[DistributionSurface] = None,
                correlation_base: Optional[date] = None,
                early_maturities: Optional[Sequence[Optional[date]]] = None,
                refinance_curves: Optional[Sequence[Optional[SurvivalCurve]]] = None,
                refinance_correlations: Optional[Sequence[float]] = None,
                bumped_curves: Optional[Sequence[Optional[SurvivalCurve]]] = None) -> None:
        """Fill ``surface`` (and ``amortization_surface``) for dates[start_index:stop_index].

        Group 0 holds the base scenario. When ``bumped_curves`` is given, group
        i + 1 holds the scenario with ``bumped_curves[i]`` in place of the curve
        of name i; a ``None`` entry or an unchanged curve copies group 0.

        Args:
            want_probability: Fill P(L ≤ K) instead of E[min(L, K)]
            start_index: First date index to fill
            stop_index: One past the last date index to fill
            copula: Copula specification
            correlation: Resolved factor loadings per tenor
            survival_curves: Survival curve per active name
            principals: Principal per active name
            recovery_rates: Expected recovery per active name
            recovery_dispersions: Recovery standard deviation per active name
            loss_levels: Loss levels as fractions of the net principal
            grid_size: Loss grid step as a fraction of the net principal, 0 for automatic
            surface: Loss surface to fill
            amortization_surface: Optional amortization surface to fill
            correlation_base: Date correlation tenors are measured from
            early_maturities: Optional early maturity per name
            refinance_curves: Optional refinance curve per name
            refinance_correlations: Optional default/refinance correlation per name
            bumped_curves: Optional alternative curve per name for sensitivity groups
        """
        n = len(survival_curves)
        principals = np.asarray(principals, dtype=float)
        recovery_rates = np.asarray(recovery_rates, dtype=float)
        recovery_dispersions = np.asarray(recovery_dispersions, dtype=float)
        for label, values in (("principals", principals), ("recovery rates", recovery_rates),
                              ("recovery dispersions", recovery_dispersions)):
            if len(values) != n:
                raise ValidationError(f"Got {len(values)} {label} for {n} survival curves")
        if not 0 <= start_index <= stop_index <= surface.num_dates:
            raise ValidationError(
                f"Invalid date range [{start_index}, {stop_index}) for {surface.num_dates} dates")
        if bumped_curves is not None and surface.num_groups < n + 1:
            raise ValidationError(f"Surface has {surface.num_groups} groups, need {n + 1}")

        options = dict(early_maturities=early_maturities, refinance_curves=refinance_curves,
                       refinance_correlations=refinance_correlations)
        dates = surface.dates[start_index:stop_index]
        levels = np.asarray(loss_levels, dtype=float)
        want_amortization = amortization_surface is not None

        def fill(group: int, curves: Sequence[SurvivalCurve]) -> None:
            loss, amor = self._compute_dates(
                want_probability, dates, surface.start, copula, correlation, correlation_base,
                curves, principals, recovery_rates, recovery_dispersions, levels, grid_size,
                want_amortization, **options)
            surface.values[group, start_index:stop_index] = loss
            if want_amortization:
                amortization_surface.values[group, start_index:stop_index] = amor

        fill(0, survival_curves)
        if bumped_curves is None:
            return
        for i, curve in enumerate(bumped_curves):
            if curve is None or curve is survival_curves[i]:
                surface.values[i + 1, start_index:stop_index] = surface.values[0, start_index:stop_index]
                if want_amortization:
                    amortization_surface.values[i + 1, start_index:stop_index] = \
                        amortization_surface.values[0, start_index:stop_index]
                continue
            curves = list(survival_curves)
            curves[i] = curve
            fill(i + 1, curves)

    @abstractmethod
    def _compute_dates(self, want_probability: bool, dates: List[date], start: date,
                       copula: Copula, correlation: CorrelationTermStruct,
                       correlation_base: Optional[date], survival_curves: Sequence[SurvivalCurve],
                       principals: np.ndarray, recovery_rates: np.ndarray,
                       recovery_dispersions: np.ndarray, levels: np.ndarray, grid_size: float,
                       want_amortization: bool, early_maturities=None, refinance_curves=None,
                       refinance_correlations=None) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Return (loss values, amortization values), each of shape (len(dates), len(levels))."""
        pass


def default_integration_points(basket_size: int) -> int:
    if basket_size < 40:
        return 25
    return min(120, 25 + (basket_size - 40) // 10)


def _add_shifted(out: np.ndarray, src: np.ndarray, k: int, weight: float) -> None:
    n = src.shape[-1]
    if abs(k) >= n or weight == 0.0:
        return
    if k >= 0:
        out[..., k:] += weight * src[..., :n - k]
    else:
        out[..., :n + k] += weight * src[..., -k:]


def _shift(dist: np.ndarray, amount: float) -> np.ndarray:
    """Move mass by ``amount`` grid units, splitting between the two nearest buckets."""
    k = int(np.floor(amount))
    frac = amount - k
    out = np.zeros_like(dist)
    _add_shifted(out, dist, k, 1.0 - frac)
    if frac > 0:
        _add_shifted(out, dist, k + 1, frac)
    return out


class SemiAnalyticKernel(DistributionKernel):
    """One-factor Gaussian copula with recursive convolution.

    Stochastic recoveries are integrated over ``recovery_nodes`` quantile
    nodes of their Beta distribution.
    """

    def __init__(self, integration_points: Optional[int] = None, recovery_nodes: int = 5):
        if integration_points is not None and integration_points <= 0:
            raise ValidationError(f"Integration points must be positive, got {integration_points}")
        if recovery_nodes <= 0:
            raise ValidationError(f"Recovery nodes must be positive, got {recovery_nodes}")
        self.integration_points = integration_points
        self.recovery_nodes = recovery_nodes

    def _quadrature(self, basket_size: int) -> Tuple[np.ndarray, np.ndarray]:
        points = self.integration_points or default_integration_points(basket_size)
        z, w = np.polynomial.hermite_e.hermegauss(points)
        return z, w / w.sum()

    @staticmethod
    def _grid_unit(amounts: List[np.ndarray], net_principal: float, grid_size: float) -> float:
        if grid_size > 0:
            return grid_size * net_principal
        nonzero = np.concatenate([np.abs(a[np.abs(a) > 1e-12]) for a in amounts] or [np.empty(0)])
        unit = 0.01 * net_principal
        if len(nonzero):
            unit = min(unit, nonzero.min() / 4.0)
        return max(unit, 1e-4 * net_principal)

    def _compute_dates(self, want_probability, dates, start, copula, correlation, correlation_base,
                       survival_curves, principals, recovery_rates, recovery_dispersions, levels,
                       grid_size, want_amortization, early_maturities=None, refinance_curves=None,
                       refinance_correlations=None):
        if not copula.is_gaussian:
            raise UnsupportedOperationError("The semi-analytic kernel supports the Gaussian copula only")
        if refinance_curves is not None and any(c is not None for c in refinance_curves):
            raise UnsupportedOperationError("The semi-analytic kernel does not support refinance curves")

        n = len(survival_curves)
        loss_values = np.zeros((len(dates), len(levels)))
        amor_values = np.zeros((len(dates), len(levels))) if want_amortization else None
        net_principal = float(principals.sum())
        if n == 0 or net_principal <= 0:
            return loss_values, amor_values

        # per name: (weights, loss amounts, amortization amounts) over recovery nodes
        recovery_weights, loss_amounts, amor_amounts = [], [], []
        for i in range(n):
            dist = create_recovery_distribution(recovery_rates[i], recovery_dispersions[i])
            w, r = dist.nodes(self.recovery_nodes)
            recovery_weights.append(w)
            loss_amounts.append(principals[i] * (1.0 - r))
            amor_amounts.append(principals[i] * r)
        unit = self._grid_unit(loss_amounts + amor_amounts, net_principal, grid_size)
        thresholds = levels * net_principal
        z, zw = self._quadrature(n)

        targets = [(loss_amounts, loss_values)]
        if want_amortization:
            targets.append((amor_amounts, amor_values))

        for d_idx, when in enumerate(dates):
            pd_t = default_probabilities(survival_curves, start, when, early_maturities)
            factors = correlation.factors_at(correlation_lookup_date(when, start, correlation_base))
            if factors.shape[0] > 1 and np.any(factors[1:] != 0):
                raise UnsupportedOperationError("The semi-analytic kernel supports one factor only")
            if factors.shape[1] not in (1, n):
                raise ValidationError(f"Correlation covers {factors.shape[1]} names, basket has {n}")
            a = np.broadcast_to(factors[0], (n,))
            cond = self._conditional_probabilities(pd_t, a, z)

            for amounts, values in targets:
                values[d_idx] = self._base_losses(cond, zw, recovery_weights, amounts, unit,
                                                  thresholds, want_probability)
        return loss_values, amor_values

    @staticmethod
    def _conditional_probabilities(pd_t: np.ndarray, a: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Conditional default probabilities of shape (n_nodes, n_names)."""
        with np.errstate(divide="ignore"):
            threshold = norm.ppf(np.clip(pd_t, 0.0, 1.0))
        denom = np.sqrt(np.maximum(1.0 - a ** 2, 1e-14))
        cond = norm.cdf((threshold[np.newaxis, :] - a[np.newaxis, :] * z[:, np.newaxis]) / denom)
        cond[:, pd_t <= 0] = 0.0
        cond[:, pd_t >= 1] = 1.0
        return cond

    @staticmethod
    def _base_losses(cond: np.ndarray, zw: np.ndarray, recovery_weights, amounts, unit: float,
                     thresholds: np.ndarray, want_probability: bool) -> np.ndarray:
        units = [a / unit for a in amounts]
        negative = sum(float(np.abs(np.minimum(u, 0.0)).max()) for u in units)
        positive = sum(float(np.maximum(u, 0.0).max()) for u in units)
        offset = int(np.ceil(negative)) + 1
        size = offset + int(np.ceil(positive)) + 2

        dist = np.zeros((len(zw), size))
        dist[:, offset] = 1.0
        for i, (w, u) in enumerate(zip(recovery_weights, units)):
            p = cond[:, i][:, np.newaxis]
            if not np.any(p):
                continue
            moved = np.zeros_like(dist)
            for wk, uk in zip(w, u):
                moved += wk * _shift(dist, uk)
            dist = (1.0 - p) * dist + p * moved

        unconditional = zw @ dist
        grid = (np.arange(size) - offset) * unit
        return _expected_base_loss(unconditional, grid, thresholds, want_probability, 1e-9 * unit)

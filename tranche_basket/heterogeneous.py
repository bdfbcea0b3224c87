"""Basket engines backed by a distribution kernel.

The loss and amortization surfaces are computed lazily on the first tranche
query and kept until ``reset()``. For sensitivities the engine can fill a
grouped surface holding the base scenario plus one scenario per name
(``compute_and_save_sensitivities``) and then answer queries for any group
(``select_scenario``).
"""

import logging
import time
from datetime import date
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .correlation import Copula, CorrelationModel
from .curves import SurvivalCurve
from .distribution import DistributionSurface
from .engine import BasketEngine
from .exceptions import StateError, ValidationError
from .kernels import DistributionKernel, SemiAnalyticKernel
from .portfolio import CreditPool
from .simulation import MonteCarloKernel
from .timegrid import StepUnit

logger = logging.getLogger(__name__)


class KernelBasketEngine(BasketEngine):
    """Basket engine whose loss distribution comes from a ``DistributionKernel``."""

    def __init__(self, as_of: date, settle: date, maturity: date, pool: CreditPool,
                 copula: Copula, correlation: CorrelationModel, step_size: int = 3,
                 step_unit: StepUnit = StepUnit.MONTHS, loss_levels: Sequence[float] = (), *,
                 kernel: Optional[DistributionKernel] = None, **kwargs):
        self.kernel = kernel or SemiAnalyticKernel()
        self._loss_surface: Optional[DistributionSurface] = None
        self._amor_surface: Optional[DistributionSurface] = None
        self._sensitivity_mode = False
        self._scenario = 0
        super().__init__(as_of, settle, maturity, pool, copula, correlation, step_size,
                         step_unit, loss_levels, **kwargs)

    def _invalidate_distribution(self) -> None:
        self._loss_surface = None
        self._amor_surface = None

    @property
    def distribution_computed(self) -> bool:
        return self._loss_surface is not None

    @property
    def loss_surface(self) -> DistributionSurface:
        return self._ensure_distribution()[0]

    @property
    def amortization_surface(self) -> DistributionSurface:
        return self._ensure_distribution()[1]

    def _run_kernel(self, want_probability: bool, surfaces: Tuple[DistributionSurface, ...],
                    bumped_curves: Optional[Sequence[SurvivalCurve]] = None) -> None:
        """Fill ``surfaces`` (loss and optionally amortization), averaging over mixture components."""
        components = self._correlation_components()
        if len(components) == 1:
            targets = [surfaces]
        else:
            targets = [tuple(s.copy() for s in surfaces) for _ in components]
        for (weight, term_struct), target in zip(components, targets):
            self.kernel.compute(
                want_probability, 0, target[0].num_dates, self.copula, term_struct,
                self._survival_curves, self._principals, self.recovery_rates,
                self.recovery_dispersions, target[0].levels, self.grid_size, target[0],
                amortization_surface=target[1] if len(target) > 1 else None,
                correlation_base=self._correlation_base(),
                early_maturities=self._early_maturities,
                refinance_curves=self._refinance_curves,
                refinance_correlations=self._refinance_correlations,
                bumped_curves=bumped_curves)
        if len(components) > 1:
            for surface in surfaces:
                surface.values[:] = 0.0
            for (weight, _), target in zip(components, targets):
                for surface, part in zip(surfaces, target):
                    surface.values += weight * part.values

    def _build_surfaces(self, bumped_curves: Optional[Sequence[SurvivalCurve]] = None):
        started = time.perf_counter()
        groups = 1 if bumped_curves is None else self.basket_size + 1
        dates = self.time_grid
        levels = self.cooked_loss_levels
        loss = DistributionSurface(dates, levels, groups)
        amortization = DistributionSurface(dates, levels, groups)
        self._run_kernel(False, (loss, amortization), bumped_curves)
        logger.debug("Computed %d-group distribution over %d dates and %d levels in %.3fs",
                     groups, len(dates), len(levels), time.perf_counter() - started)
        return loss, amortization

    def _ensure_distribution(self) -> Tuple[DistributionSurface, DistributionSurface]:
        if self._loss_surface is None:
            if self._sensitivity_mode:
                raise StateError("Sensitivity surfaces were discarded; call compute_and_save_sensitivities again")
            self._loss_surface, self._amor_surface = self._build_surfaces()
        return self._loss_surface, self._amor_surface

    def accumulated_loss(self, when: date, begin: float, end: float) -> float:
        if not self._sensitivity_mode and not self.loss_levels_contain(begin, end):
            self.add_loss_levels(begin, end)
        begin, end, loss = self._adjust_tranche_levels(False, begin, end)
        if end <= begin:
            return loss
        surface = self._ensure_distribution()[0]
        return loss + surface.interpolate_tranche(when, begin, end, self._scenario) / self.total_principal

    def amortized_amount(self, when: date, begin: float, end: float) -> float:
        if not self._sensitivity_mode and not self.loss_levels_contain(begin, end):
            self.add_loss_levels(begin, end)
        t_begin, t_end, amortized = self._adjust_tranche_levels(True, 1.0 - end, 1.0 - begin)
        if t_end <= t_begin:
            return amortized
        surface = self._ensure_distribution()[1]
        return amortized + surface.interpolate_tranche(when, t_begin, t_end, self._scenario) / self.total_principal

    def calc_loss_distribution(self, want_probability: bool, when: date,
                               levels: Sequence[float]) -> np.ndarray:
        """Loss distribution at ``when`` for the given tranche levels.

        Returns:
            Array of shape (N, 2): level (fraction of total principal, clamped
            to 1) and either P(L ≤ level) or E[min(L, level)], previous loss included
        """
        if not self.start <= when <= self.maturity:
            raise ValidationError(f"Date {when} outside [{self.start}, {self.maturity}]")
        levels = np.minimum(np.round(np.asarray(levels, dtype=float), self.effective_digits), 1.0)
        cooked = self._cook_levels(levels, add_complement=False)
        dates = [self.start] if when == self.start else [self.start, when]
        surface = DistributionSurface(dates, cooked)
        self._run_kernel(want_probability, (surface,))
        values = surface.values[0, -1]

        rows = []
        for level in levels:
            if level < self.previous_loss:
                # already exceeded by previous defaults
                rows.append((level, 0.0 if want_probability else level))
                continue
            value = float(np.interp(self._adjust_tranche_level(False, level), cooked, values))
            if not want_probability:
                value = value / self.total_principal + self.previous_loss
            rows.append((level, value))
        return np.array(rows, dtype=float).reshape(len(rows), 2)

    # Grouped-surface sensitivities

    def compute_and_save_sensitivities(self, alt_survival_curves: Sequence[SurvivalCurve]) -> None:
        """Fill surfaces holding the base and one bumped scenario per active name."""
        alt_survival_curves = list(alt_survival_curves)
        if len(alt_survival_curves) != self.basket_size:
            raise ValidationError(
                f"Expected {self.basket_size} alternative curves, got {len(alt_survival_curves)}")
        self._sensitivity_mode = False
        self._scenario = 0
        self._loss_surface, self._amor_surface = self._build_surfaces(alt_survival_curves)
        self._sensitivity_mode = True

    def select_scenario(self, index: int) -> None:
        """Answer subsequent queries from group ``index`` (0 = base)."""
        if not self._sensitivity_mode:
            if index == 0:
                return
            raise StateError("Call compute_and_save_sensitivities before selecting a scenario")
        if self._loss_surface is None:
            raise StateError("Sensitivity surfaces were discarded by a reset")
        if not 0 <= index < self._loss_surface.num_groups:
            raise IndexError(f"Scenario {index} out of range for {self._loss_surface.num_groups} groups")
        self._scenario = index

    def end_sensitivities(self) -> None:
        """Discard the grouped surfaces and return to the base scenario."""
        self._sensitivity_mode = False
        self._scenario = 0
        self._invalidate_distribution()

    def duplicate(self) -> "KernelBasketEngine":
        other = super().duplicate()
        other._sensitivity_mode = False
        other._scenario = 0
        return other

    def bumped_pvs(self, evaluators, alt_survival_curves: Sequence[SurvivalCurve],
                   include_recovery_sensitivity: bool = False) -> np.ndarray:
        evaluators = list(evaluators)
        alt_survival_curves = list(alt_survival_curves)
        if (include_recovery_sensitivity or len(alt_survival_curves) != self.basket_size
                or self._need_exact_jump_to_default(evaluators)):
            return super().bumped_pvs(evaluators, alt_survival_curves, include_recovery_sensitivity)

        self._check_evaluators(evaluators)
        for evaluator in evaluators:
            self.add_loss_levels(evaluator.pricer.attachment, evaluator.pricer.detachment)
        self.compute_and_save_sensitivities(alt_survival_curves)
        try:
            table = np.zeros((self.basket_size + 1, len(evaluators)))
            for i in range(self.basket_size + 1):
                self.select_scenario(i)
                table[i] = self._evaluate_all(evaluators)
        finally:
            self.end_sensitivities()
        return table


class SemiAnalyticBasketEngine(KernelBasketEngine):
    """One-factor Gaussian engine with recursive-convolution loss distributions."""

    def __init__(self, as_of: date, settle: date, maturity: date, pool: CreditPool,
                 copula: Copula, correlation: CorrelationModel, step_size: int = 3,
                 step_unit: StepUnit = StepUnit.MONTHS, loss_levels: Sequence[float] = (), *,
                 integration_points: Optional[int] = None, recovery_nodes: int = 5, **kwargs):
        kernel = SemiAnalyticKernel(integration_points, recovery_nodes)
        super().__init__(as_of, settle, maturity, pool, copula, correlation, step_size,
                         step_unit, loss_levels, kernel=kernel, **kwargs)


class MonteCarloBasketEngine(KernelBasketEngine):
    """Simulation engine supporting multi-factor, Student-t and refinancing baskets."""

    def __init__(self, as_of: date, settle: date, maturity: date, pool: CreditPool,
                 copula: Copula, correlation: CorrelationModel, step_size: int = 3,
                 step_unit: StepUnit = StepUnit.MONTHS, loss_levels: Sequence[float] = (), *,
                 sample_size: int = 10000, seed: int = 12345, **kwargs):
        kernel = MonteCarloKernel(sample_size, seed)
        super().__init__(as_of, settle, maturity, pool, copula, correlation, step_size,
                         step_unit, loss_levels, kernel=kernel, **kwargs)

    @property
    def sample_size(self) -> int:
        return self.kernel.sample_size

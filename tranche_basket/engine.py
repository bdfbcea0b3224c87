"""Abstract basket engine.

The engine owns the effective portfolio of a basket: names that already
defaulted are removed and their losses kept aside as ``previous_loss`` and
``previous_amortized``; principals are scaled; short positions are tracked
as a ratio to the long principal. Tranche levels expressed in fractions of
the original total principal are rescaled to the remaining basket before
the loss distribution is queried.

The generic sensitivity loop (``bumped_pvs``) re-prices a batch of tranche
evaluators with one name's curves substituted at a time. Each row is computed
on a duplicate engine, so rows never mutate shared state and can run on a
thread pool.
"""

import copy
import logging
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_CONFIG, BasketConfig
from .correlation import Copula, CorrelationModel, CorrelationTermStruct
from .curves import DefaultStatus, DiscountCurve, SurvivalCurve
from .defaults import BasketDefaultInfo, tranche_survival
from .exceptions import UnsupportedOperationError, ValidationError
from .portfolio import CreditPool
from .recovery import RecoveryCurve
from .timegrid import StepUnit, generate_grid_dates

logger = logging.getLogger(__name__)

# Attributes describing the effective portfolio, copied between engines sharing a basket.
_PORTFOLIO_STATE = (
    "_original_pool", "_picks", "_active_indices", "_survival_curves", "_recovery_curves",
    "_principals", "_early_maturities", "_refinance_curves", "_refinance_correlations",
    "_total_principal", "_previous_loss", "_previous_amortized", "_shorted", "_default_info",
)


class BasketEngine(ABC):
    """Loss distribution engine of a credit basket.

    Subclasses implement the tranche queries on top of a loss distribution;
    this class owns the portfolio, loss levels, time grid, correlation cache
    and the sensitivity loop.
    """

    def __init__(self, as_of: date, settle: date, maturity: date, pool: CreditPool,
                 copula: Copula, correlation: CorrelationModel, step_size: int = 3,
                 step_unit: StepUnit = StepUnit.MONTHS, loss_levels: Sequence[float] = (), *,
                 config: Optional[BasketConfig] = None, grid_size: float = 0.0,
                 portfolio_start: Optional[date] = None, effective_digits: int = 15):
        """Initialize the engine.

        Args:
            as_of: Pricing date
            settle: Settlement date
            maturity: Basket maturity
            pool: Credit names of the basket
            copula: Copula specification
            correlation: Correlation model covering the pool's names
            step_size: Number of step units between grid dates
            step_unit: Unit of a grid step
            loss_levels: Tranche levels (fractions of total principal) to precompute
            config: Policy switches, defaults to ``DEFAULT_CONFIG``
            grid_size: Loss grid step as a fraction of net principal, 0 for automatic
            portfolio_start: Start of the loss period if not the settlement date
            effective_digits: Decimal digits loss levels are rounded to

        Raises:
            ValidationError: On invalid dates, options or portfolio
        """
        for label, value in (("as_of", as_of), ("settle", settle), ("maturity", maturity)):
            if not isinstance(value, date):
                raise ValidationError(f"{label} must be a date, got {value!r}")
        if not as_of <= settle <= maturity:
            raise ValidationError(
                f"Dates must satisfy as_of <= settle <= maturity, got {as_of}, {settle}, {maturity}")
        if portfolio_start is not None and not (isinstance(portfolio_start, date)
                                                and as_of <= portfolio_start <= maturity):
            raise ValidationError(f"Portfolio start {portfolio_start!r} must lie within [as_of, maturity]")
        if pool is None:
            raise ValidationError("Credit pool is required")
        if copula is None:
            raise ValidationError("Copula is required")
        if correlation is None:
            raise ValidationError("Correlation is required")
        if step_size <= 0:
            raise ValidationError(f"Step size must be positive, got {step_size}")
        if not 0.0 <= grid_size <= 0.5:
            raise ValidationError(f"Grid size must be in [0, 0.5], got {grid_size}")
        if effective_digits < 0:
            raise ValidationError(f"Effective digits must be non-negative, got {effective_digits}")

        self.as_of = as_of
        self.settle = settle
        self.maturity = maturity
        self.portfolio_start = portfolio_start
        self.copula = copula
        self.step_size = step_size
        self.step_unit = step_unit
        self.grid_size = grid_size
        self.effective_digits = effective_digits
        self.config = config or DEFAULT_CONFIG

        self._raw_loss_levels: List[float] = []
        self._extra_grid_dates: List[date] = []
        self._cooked_levels: Optional[np.ndarray] = None
        self._original_correlation = correlation
        self._correlation = correlation
        self._components_cache = None
        self._portfolio_version = 0
        self._apply_pool(pool)
        self.add_loss_levels(*loss_levels)
        logger.debug("Created %s for %d names (%d active), maturity %s",
                     type(self).__name__, len(pool), self.basket_size, maturity)

    @classmethod
    def from_curves(cls, as_of: date, settle: date, maturity: date,
                    survival_curves: Sequence[SurvivalCurve],
                    recovery_curves: Optional[Sequence[RecoveryCurve]],
                    principals: Sequence[float], copula: Copula, correlation: CorrelationModel,
                    step_size: int = 3, step_unit: StepUnit = StepUnit.MONTHS,
                    loss_levels: Sequence[float] = (), **kwargs) -> "BasketEngine":
        """Construct from parallel arrays of curves and principals."""
        pool = CreditPool.from_curves(principals, survival_curves, recovery_curves,
                                      early_maturities=kwargs.pop("early_maturities", None),
                                      refinance_curves=kwargs.pop("refinance_curves", None),
                                      refinance_correlations=kwargs.pop("refinance_correlations", None))
        return cls(as_of, settle, maturity, pool, copula, correlation, step_size, step_unit,
                   loss_levels, **kwargs)

    # Portfolio

    def _apply_pool(self, pool: CreditPool) -> None:
        """Derive the effective portfolio from ``pool``."""
        if pool.long_principal <= 0:
            raise ValidationError("The basket has no long principal")
        exact = self.config.exact_jump_to_default
        picks = pool.picks(exact)

        average = pool.long_principal / len(pool)
        principals = np.array(pool.principals, dtype=float)
        if average < 1.0:
            principals = principals / average

        info = BasketDefaultInfo()
        defaulted_principal = previous_loss = previous_amortized = 0.0
        for i, name in enumerate(pool):
            if picks[i] > 0:
                continue
            p = principals[i]
            rr = name.recovery_curve.recovery_rate(self.maturity)
            previous_loss += p * (1.0 - rr)
            previous_amortized += p * rr
            defaulted_principal += p
            info.add_default(name.default_date or self.settle, p * (1.0 - rr), p * rr)
            if name.status is DefaultStatus.WILL_DEFAULT:
                info.add_settlement(max(name.default_date or self.settle, self.settle),
                                    p * (1.0 - rr), p * rr, name.default_date, include_settle=True)
            elif name.recovery_curve.jump_date is not None:
                info.add_settlement(name.recovery_curve.jump_date, p * (1.0 - rr), p * rr,
                                    name.default_date)

        active = np.flatnonzero(picks > 0)
        active_principals = principals[active]
        long_principal = float(active_principals[active_principals > 0].sum())
        short_principal = float(active_principals[active_principals < 0].sum())
        if self.config.subtract_shorted_from_principal:
            total = defaulted_principal + long_principal + short_principal
            shorted = 0.0
        else:
            total = defaulted_principal + long_principal
            if long_principal > 0:
                shorted = short_principal / long_principal
            else:
                shorted = -1.0 if short_principal < 0 else 0.0
        if total <= 0:
            raise ValidationError(f"Total principal must be positive, got {total}")
        if 1.0 + shorted < 1e-15:
            raise ValidationError("Too many short names")

        self._original_pool = pool
        self._picks = picks
        self._active_indices = active
        self._survival_curves = [pool[i].survival_curve for i in active]
        self._recovery_curves = [pool[i].recovery_curve for i in active]
        self._principals = active_principals
        self._early_maturities = [pool[i].early_maturity for i in active]
        self._refinance_curves = [pool[i].refinance_curve for i in active]
        self._refinance_correlations = np.array([pool[i].refinance_correlation for i in active])
        self._total_principal = total
        self._previous_loss = previous_loss / total
        self._previous_amortized = previous_amortized / total
        self._shorted = shorted
        self._default_info = info.normalize(total)

        if len(active) < len(pool) and self._original_correlation.basket_size == len(pool):
            self._correlation = self._original_correlation.create(picks)
        else:
            self._correlation = self._original_correlation
        self._portfolio_changed()

    def _portfolio_changed(self) -> None:
        self._portfolio_version += 1
        self._cooked_levels = None
        self.reset()

    def _substitute_active(self, index: int, survival_curve: SurvivalCurve,
                           recovery_curve: RecoveryCurve) -> None:
        """Replace the curves of active name ``index`` (private copies are taken first)."""
        self._survival_curves = list(self._survival_curves)
        self._recovery_curves = list(self._recovery_curves)
        self._survival_curves[index] = survival_curve
        self._recovery_curves[index] = recovery_curve
        self._portfolio_changed()

    def _copy_portfolio_to(self, other: "BasketEngine") -> None:
        """Give ``other`` this engine's effective portfolio, keeping its correlation."""
        for attr in _PORTFOLIO_STATE:
            setattr(other, attr, getattr(self, attr))
        other._portfolio_changed()

    @property
    def original_pool(self) -> CreditPool:
        return self._original_pool

    @property
    def basket_size(self) -> int:
        return len(self._survival_curves)

    @property
    def names(self) -> List[str]:
        return [self._original_pool[i].name for i in self._active_indices]

    @property
    def survival_curves(self) -> List[SurvivalCurve]:
        return list(self._survival_curves)

    @property
    def recovery_curves(self) -> List[RecoveryCurve]:
        return list(self._recovery_curves)

    @property
    def principals(self) -> np.ndarray:
        return self._principals.copy()

    @property
    def recovery_rates(self) -> np.ndarray:
        return np.array([rc.recovery_rate(self.maturity) for rc in self._recovery_curves])

    @property
    def recovery_dispersions(self) -> np.ndarray:
        return np.array([rc.dispersion for rc in self._recovery_curves])

    @property
    def has_fixed_recovery(self) -> bool:
        return self._original_pool.has_fixed_recovery

    @property
    def total_principal(self) -> float:
        return self._total_principal

    @property
    def previous_loss(self) -> float:
        return self._previous_loss

    @property
    def previous_amortized(self) -> float:
        return self._previous_amortized

    @property
    def shorted(self) -> float:
        return self._shorted

    @property
    def initial_balance(self) -> float:
        """Remaining net principal as a fraction of total principal."""
        return (1.0 - self._previous_amortized - self._previous_loss) * (1.0 + self._shorted)

    @property
    def default_info(self) -> BasketDefaultInfo:
        return self._default_info

    @property
    def start(self) -> date:
        return self.portfolio_start or self.settle

    # Correlation

    @property
    def correlation(self) -> CorrelationModel:
        return self._correlation

    @correlation.setter
    def correlation(self, value: CorrelationModel) -> None:
        if value is None:
            raise ValidationError("Correlation is required")
        self._original_correlation = value
        picks = self._picks
        if np.any(picks <= 0) and value.basket_size == len(picks):
            self._correlation = value.create(picks)
        else:
            self._correlation = value
        self.reset()

    def _correlation_components(self) -> List[Tuple[float, CorrelationTermStruct]]:
        """Resolved term structures, rebuilt only when the correlation changed."""
        corr = self._correlation
        cache = self._components_cache
        if cache is None or cache[0] is not corr or cache[1] != corr.version:
            cache = (corr, corr.version, corr.components())
            self._components_cache = cache
        return cache[2]

    def _correlation_base(self) -> date:
        return self.start if self.config.use_natural_settlement else self.as_of

    def set_factor(self, factor: float) -> None:
        """Switch to a uniform one-factor correlation with loading ``factor``."""
        corr = self._original_correlation.copy()
        corr.set_factor(self.maturity, factor)
        self.correlation = corr

    # Loss levels and time grid

    @property
    def raw_loss_levels(self) -> List[float]:
        return list(self._raw_loss_levels)

    @raw_loss_levels.setter
    def raw_loss_levels(self, levels: Sequence[float]) -> None:
        self._raw_loss_levels = []
        self._cooked_levels = None
        self.add_loss_levels(*levels)
        self.reset()

    def add_loss_levels(self, *levels: float) -> None:
        added = False
        for level in levels:
            level = float(level)
            if not np.isfinite(level) or level < 0:
                raise ValidationError(f"Loss levels must be finite and non-negative, got {level}")
            if not self.loss_levels_contain(level):
                self._raw_loss_levels.append(level)
                added = True
        if added:
            self._cooked_levels = None
            self.reset()

    def loss_levels_contain(self, *levels: float) -> bool:
        return all(any(abs(level - raw) <= 1e-12 for raw in self._raw_loss_levels) for level in levels)

    def _cook_levels(self, levels: Sequence[float], add_complement: bool) -> np.ndarray:
        """Convert tranche levels into levels of the remaining net principal."""
        cooked = [0.0]
        remaining = self.initial_balance
        if remaining >= 1e-15:
            for x in np.round(np.asarray(levels, dtype=float), self.effective_digits):
                candidates = [(x - self._previous_loss) / remaining]
                if add_complement:
                    candidates.append((1.0 - x - self._previous_amortized) / remaining)
                cooked.extend(min(c, 1.0) for c in candidates if c >= 0)
        return np.unique(np.minimum(np.round(cooked, self.effective_digits), 1.0))

    @property
    def cooked_loss_levels(self) -> np.ndarray:
        if self._cooked_levels is None:
            self._cooked_levels = self._cook_levels(self._raw_loss_levels, add_complement=True)
        return self._cooked_levels

    def add_grid_dates(self, *dates: date) -> None:
        self._extra_grid_dates.extend(dates)
        self.reset()

    @property
    def time_grid(self) -> List[date]:
        return generate_grid_dates(self.start, self.maturity, self.step_size, self.step_unit,
                                   self._extra_grid_dates)

    # Tranche level adjustments

    def _adjust_tranche_levels(self, for_amortize: bool, begin: float,
                               end: float) -> Tuple[float, float, float]:
        """Rescale a tranche to the remaining basket.

        Returns:
            (begin, end, already_lost) where begin/end are fractions of the
            remaining net principal and already_lost is the part of the tranche
            consumed by previous defaults (fraction of total principal)
        """
        prev = self._previous_amortized if for_amortize else self._previous_loss
        lost = 0.0
        if begin >= prev:
            begin -= prev
            end -= prev
        elif end >= prev:
            lost = prev - begin
            end -= prev
            begin = 0.0
        else:
            return 0.0, 0.0, end - begin

        remaining = 1.0 - self._previous_amortized - self._previous_loss
        if remaining < 1e-15:
            return 0.0, 0.0, lost
        scale = remaining * (1.0 + self._shorted)
        return min(begin / scale, 1.0), min(end / scale, 1.0), lost

    def _adjust_tranche_level(self, for_amortize: bool, level: float) -> float:
        prev = self._previous_amortized if for_amortize else self._previous_loss
        remaining = (1.0 - self._previous_amortized - self._previous_loss) * (1.0 + self._shorted)
        if remaining < 1e-15:
            return 0.0
        return min(max(level - prev, 0.0) / remaining, 1.0)

    def _restore_tranche_level(self, for_amortize: bool, level: float) -> float:
        prev = self._previous_amortized if for_amortize else self._previous_loss
        return level * self.initial_balance + prev

    @staticmethod
    def tranche_survival(previous_loss: float, previous_amortized: float,
                         attachment: float, detachment: float) -> float:
        return tranche_survival(previous_loss, previous_amortized, attachment, detachment)

    # Queries

    @abstractmethod
    def accumulated_loss(self, when: date, begin: float, end: float) -> float:
        """Expected loss of the tranche [begin, end] up to ``when`` (fraction of total principal)."""
        pass

    @abstractmethod
    def amortized_amount(self, when: date, begin: float, end: float) -> float:
        """Expected amortization of the tranche [begin, end] up to ``when``."""
        pass

    @abstractmethod
    def calc_loss_distribution(self, want_probability: bool, when: date,
                               levels: Sequence[float]) -> np.ndarray:
        """Two-column table (level, probability or expected base loss)."""
        pass

    def reset(self) -> None:
        """Invalidate the cached distribution."""
        self._invalidate_distribution()
        cache = self._components_cache
        if cache is not None and (cache[0] is not self._correlation
                                  or cache[1] != self._correlation.version):
            self._components_cache = None

    @abstractmethod
    def _invalidate_distribution(self) -> None:
        pass

    def accumulated_loss_derivatives(self, when: date, begin: float, end: float):
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not provide semi-analytic loss derivatives")

    def amortized_amount_derivatives(self, when: date, begin: float, end: float):
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not provide semi-analytic amortization derivatives")

    def basket_loss(self, start: date, end: date) -> float:
        """Expected loss of the active names over (start, end], fraction of total principal."""
        return self._basket_expectation(start, end, amortize=False)

    def basket_amortize(self, start: date, end: date) -> float:
        """Expected recovery amortization of the active names over (start, end]."""
        return self._basket_expectation(start, end, amortize=True)

    def _basket_expectation(self, start: date, end: date, amortize: bool) -> float:
        total = 0.0
        for sc, rc, p, em in zip(self._survival_curves, self._recovery_curves,
                                 self._principals, self._early_maturities):
            horizon = min(end, em) if em is not None else end
            if horizon <= start:
                continue
            rr = rc.recovery_rate(self.maturity)
            total += sc.default_probability(start, horizon) * p * (rr if amortize else 1.0 - rr)
        return total / self._total_principal

    def basket_loss_pv(self, start: date, end: date, discount_curve: DiscountCurve) -> float:
        """Discounted expected basket loss over (start, end] along the time grid."""
        dates = [d for d in self.time_grid if start < d < end] + [end]
        pv = 0.0
        previous = start
        for d in dates:
            pv += discount_curve.discount_factor(d) * self.basket_loss(previous, d)
            previous = d
        return pv

    def maximum_loss_level(self) -> float:
        """Largest attainable cumulative loss (fraction of total principal)."""
        loss = 0.0
        for rc, p in zip(self._recovery_curves, self._principals):
            loss += p if rc.dispersion > 0 else p * (1.0 - rc.recovery_rate(self.maturity))
        return self._previous_loss + loss / self._total_principal

    def maximum_amortization_level(self) -> float:
        amortized = 0.0
        for rc, p in zip(self._recovery_curves, self._principals):
            amortized += p if rc.dispersion > 0 else p * rc.recovery_rate(self.maturity)
        return self._previous_amortized + amortized / self._total_principal

    def accrual_fraction(self, start: date, end: date, attachment: float, detachment: float) -> float:
        return self._default_info.accrual_fraction(start, end, attachment, detachment)

    def default_settlement_pv(self, discount_curve: DiscountCurve, attachment: float,
                              detachment: float, include_loss: bool = True,
                              include_recovery: bool = False) -> float:
        return self._default_info.default_settlement_pv(
            self.as_of, self.settle, self.maturity, discount_curve, attachment, detachment,
            include_loss, include_recovery)

    def duplicate(self) -> "BasketEngine":
        """Copy with private curve arrays and no cached distribution.

        Curves and the resolved correlation term structure are shared.
        """
        other = copy.copy(self)
        other._survival_curves = list(self._survival_curves)
        other._recovery_curves = list(self._recovery_curves)
        other._raw_loss_levels = list(self._raw_loss_levels)
        other._extra_grid_dates = list(self._extra_grid_dates)
        other._invalidate_distribution()
        return other

    def with_recovery_curves(self, recovery_curves: Sequence[RecoveryCurve]) -> "BasketEngine":
        """Duplicate pricing the active names with other recovery curves."""
        recovery_curves = list(recovery_curves)
        if len(recovery_curves) != self.basket_size:
            raise ValidationError(
                f"Expected {self.basket_size} recovery curves, got {len(recovery_curves)}")
        other = self.duplicate()
        other._recovery_curves = recovery_curves
        other._portfolio_changed()
        return other

    # Sensitivities

    def _check_evaluators(self, evaluators) -> None:
        for j, evaluator in enumerate(evaluators):
            if evaluator.engine is not self:
                raise ValidationError(f"Pricer #{j} is not using this basket")

    def _need_exact_jump_to_default(self, evaluators) -> bool:
        return self.config.exact_jump_to_default and any(e.default_changed for e in evaluators)

    def _check_bump_count(self, bump_count: int) -> int:
        """Validate the number of alternative curves and return the number of unsettled rows."""
        unsettled = len(self._original_pool.unsettled_indices())
        if bump_count == self.basket_size:
            return 0
        if unsettled and bump_count == self.basket_size + unsettled:
            return unsettled
        raise ValidationError(
            f"Number of alternative curves ({bump_count}) must equal the basket size "
            f"({self.basket_size}) or the basket size plus unsettled defaults ({unsettled})")

    def _alternative_recovery_curves(self, alt_curves: Sequence[SurvivalCurve],
                                     include_recovery_sensitivity: bool) -> List[RecoveryCurve]:
        if not include_recovery_sensitivity or self.has_fixed_recovery:
            return list(self._recovery_curves)
        return [sc.recovery_curve if sc.recovery_curve is not None else rc
                for sc, rc in zip(alt_curves, self._recovery_curves)]

    @staticmethod
    def _evaluate_all(evaluators) -> np.ndarray:
        return np.array([e.evaluate() for e in evaluators], dtype=float)

    @staticmethod
    def _rebind(evaluators, engine: "BasketEngine") -> list:
        return [e.substitute(e.pricer.substitute(engine=engine)) for e in evaluators]

    def bumped_pvs(self, evaluators, alt_survival_curves: Sequence[SurvivalCurve],
                   include_recovery_sensitivity: bool = False) -> np.ndarray:
        """Re-price evaluators with each name's curve replaced in turn.

        Args:
            evaluators: Tranche evaluators bound to this engine
            alt_survival_curves: One alternative curve per active name, optionally
                followed by one per defaulted name with unsettled recovery
            include_recovery_sensitivity: Substitute the recovery curves carried by
                the alternative survival curves as well

        Returns:
            Array of shape (len(alt_survival_curves) + 1, len(evaluators)); row 0
            holds the base prices, row i + 1 the prices with curve i substituted

        Raises:
            ValidationError: If the number of curves does not fit the basket or an
                evaluator is bound to another engine
        """
        evaluators = list(evaluators)
        alt_curves = list(alt_survival_curves)
        self._check_evaluators(evaluators)
        if self._need_exact_jump_to_default(evaluators):
            return self._generic_default_pvs(evaluators, alt_curves, include_recovery_sensitivity)

        unsettled = self._check_bump_count(len(alt_curves))
        n = self.basket_size
        table = np.zeros((len(alt_curves) + 1, len(evaluators)))
        table[0] = self._evaluate_all(evaluators)
        if unsettled:
            self._calculate_default_pv_table(evaluators, alt_curves[n:], table, n + 1)

        alt_curves = alt_curves[:n]
        alt_recoveries = self._alternative_recovery_curves(alt_curves, include_recovery_sensitivity)
        logger.debug("Computing %d bumped rows for %d evaluators", n, len(evaluators))
        context = (self, evaluators, alt_curves, alt_recoveries, table[0])
        table[1:n + 1] = self._map_rows(_bumped_row, n, context)
        return table

    def _map_rows(self, row: Callable, count: int, context: tuple) -> np.ndarray:
        """Evaluate ``row(i, context)`` for every name, on a thread pool for large baskets.

        Results are identical to the sequential evaluation; the first failure in
        row order propagates.
        """
        if count == 0:
            return np.zeros((0, len(context[1])))
        config = self.config
        if not config.parallel_sensitivity or count <= config.parallel_threshold:
            return np.array([row(i, context) for i in range(count)])

        workers = config.max_workers or min(32, (os.cpu_count() or 1) + 4)
        chunks = [c for c in np.array_split(np.arange(count), min(workers, count)) if len(c)]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = []
            for chunk in chunks:
                chunk_context = copy.deepcopy(context) if config.deep_cloning_in_parallel_sensitivity \
                    else context
                futures.append(executor.submit(_run_chunk, row, chunk, chunk_context))
            rows = [f.result() for f in futures]
        return np.concatenate(rows)

    @contextmanager
    def _substituted_pool(self, pool: CreditPool, evaluators):
        """Temporarily price on ``pool``; the original pool is restored on exit."""
        saved = self._original_pool
        self._apply_pool(pool)
        _refresh_notionals(evaluators)
        try:
            yield
        finally:
            self._apply_pool(saved)
            _refresh_notionals(evaluators)

    def _calculate_default_pv_table(self, evaluators, alt_curves: Sequence[SurvivalCurve],
                                    table: np.ndarray, first_row: int) -> None:
        """Rows for defaulted names whose recovery has not settled yet."""
        indices = self._original_pool.unsettled_indices()
        if len(indices) != len(alt_curves):
            raise ValidationError(
                f"Expected {len(indices)} curves for unsettled defaults, got {len(alt_curves)}")
        for k, index in enumerate(indices):
            name = self._original_pool[index]
            sc = alt_curves[k]
            rc = sc.recovery_curve if sc.recovery_curve is not None else name.recovery_curve
            if sc is name.survival_curve and rc is name.recovery_curve:
                table[first_row + k] = table[0]
                continue
            with self._substituted_pool(self._original_pool.replace(index, sc, rc), evaluators):
                table[first_row + k] = self._evaluate_all(evaluators)

    def _generic_default_pvs(self, evaluators, alt_curves: List[SurvivalCurve],
                             include_recovery_sensitivity: bool) -> np.ndarray:
        """Exact jump-to-default rows: substitute in the original pool and fully re-price."""
        unsettled = self._check_bump_count(len(alt_curves))
        n = self.basket_size
        table = np.zeros((len(alt_curves) + 1, len(evaluators)))
        table[0] = self._evaluate_all(evaluators)
        if unsettled:
            self._calculate_default_pv_table(evaluators, alt_curves[n:], table, n + 1)
        alt_curves = alt_curves[:n]
        alt_recoveries = self._alternative_recovery_curves(alt_curves, include_recovery_sensitivity)
        logger.debug("Computing %d exact jump-to-default rows", n)
        context = (self, evaluators, alt_curves, alt_recoveries, table[0])
        table[1:n + 1] = self._map_rows(_default_row, n, context)
        return table


def _refresh_notionals(evaluators) -> None:
    for evaluator in evaluators:
        evaluator.pricer.update_effective_notional()


def _run_chunk(row: Callable, indices: np.ndarray, context: tuple) -> np.ndarray:
    return np.array([row(int(i), context) for i in indices])


def _bumped_row(i: int, context: tuple) -> np.ndarray:
    engine, evaluators, alt_curves, alt_recoveries, base = context
    sc, rc = alt_curves[i], alt_recoveries[i]
    if engine._survival_curves[i] is sc and engine._recovery_curves[i] is rc:
        return np.array(base, copy=True)
    bumped = engine.duplicate()
    bumped._substitute_active(i, sc, rc)
    return bumped._evaluate_all(BasketEngine._rebind(evaluators, bumped))


def _default_row(i: int, context: tuple) -> np.ndarray:
    engine, evaluators, alt_curves, alt_recoveries, base = context
    slot = int(engine._active_indices[i])
    name = engine._original_pool[slot]
    sc, rc = alt_curves[i], alt_recoveries[i]
    if name.survival_curve is sc and name.recovery_curve is rc:
        return np.array(base, copy=True)
    if sc.defaulted is DefaultStatus.WILL_DEFAULT and sc.default_date is None:
        sc = sc.with_default(engine.settle)
    bumped = engine.duplicate()
    bumped._apply_pool(engine._original_pool.replace(slot, sc, rc))
    rebound = BasketEngine._rebind(evaluators, bumped)
    _refresh_notionals(rebound)
    return bumped._evaluate_all(rebound)

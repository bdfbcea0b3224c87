"""Base correlation.

A base correlation curve maps the detachment strike of an equity tranche
[0, K] to the flat correlation that reprices it. A tranche [a, d] is then
priced as the difference of two equity tranches on separate sub-baskets:

    EL[a, d] = EL_ρ(d)[0, d] - EL_ρ(a)[0, a]

``BaseCorrelationBasketEngine`` composes a calculator engine this way,
resolving the attachment and detachment correlations lazily, once per reset
cycle.
"""

import logging
from contextlib import contextmanager
from datetime import date
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import interp1d

from .correlation import SingleFactorCorrelation
from .curves import DiscountCurve
from .engine import BasketEngine
from .exceptions import UnsupportedOperationError, ValidationError
from .pricing import TranchePricer

logger = logging.getLogger(__name__)


class StrikeMethod(Enum):
    """How a tranche detachment is turned into a base correlation strike."""
    UNSCALED = "unscaled"
    EXPECTED_LOSS = "expected_loss"
    EXPECTED_LOSS_PV = "expected_loss_pv"


class BaseCorrelationCurve:
    """Strike → correlation curve with linear interpolation and flat extrapolation."""

    def __init__(self, strikes: Sequence[float], correlations: Sequence[float],
                 strike_method: StrikeMethod = StrikeMethod.UNSCALED,
                 strike_evaluator: Optional[Callable[[TranchePricer], float]] = None):
        """Initialize the curve.

        Args:
            strikes: Strictly increasing strikes
            correlations: Base correlation per strike, in [0, 1]
            strike_method: Default strike method
            strike_evaluator: Optional callable computing the strike of a pricer,
                used instead of the strike method
        """
        strikes = np.asarray(strikes, dtype=float)
        correlations = np.asarray(correlations, dtype=float)
        if len(strikes) == 0 or len(strikes) != len(correlations):
            raise ValidationError(
                f"Need one correlation per strike, got {len(strikes)} strikes and "
                f"{len(correlations)} correlations")
        if np.any(np.diff(strikes) <= 0):
            raise ValidationError("Strikes must be strictly increasing")
        if np.any(correlations < 0) or np.any(correlations > 1):
            raise ValidationError("Base correlations must be between 0 and 1")
        self.strikes = strikes
        self.correlations = correlations
        self.strike_method = strike_method
        self.strike_evaluator = strike_evaluator
        self._version = 0
        self._build()

    def _build(self) -> None:
        if len(self.strikes) == 1:
            value = float(self.correlations[0])
            self._interpolator = lambda x: value
        else:
            self._interpolator = interp1d(self.strikes, self.correlations, kind="linear",
                                          bounds_error=False,
                                          fill_value=(self.correlations[0], self.correlations[-1]))

    @property
    def version(self) -> int:
        return self._version

    def correlation(self, strike: float) -> float:
        return float(np.clip(self._interpolator(strike), 0.0, 1.0))

    def bump(self, size: float, relative: bool = False) -> None:
        bumped = self.correlations * (1.0 + size) if relative else self.correlations + size
        self.correlations = np.clip(bumped, 0.0, 1.0)
        self._build()
        self._version += 1

    def strike(self, pricers: Sequence[TranchePricer], strike_method: Optional[StrikeMethod] = None,
               strike_evaluator: Optional[Callable[[TranchePricer], float]] = None) -> np.ndarray:
        """Strikes of the detachments of ``pricers``."""
        method = strike_method or self.strike_method
        evaluator = strike_evaluator or self.strike_evaluator
        strikes = []
        for pricer in pricers:
            if evaluator is not None:
                strikes.append(float(evaluator(pricer)))
                continue
            if method is StrikeMethod.UNSCALED:
                strikes.append(pricer.detachment)
                continue
            engine = pricer.engine
            if method is StrikeMethod.EXPECTED_LOSS:
                scale = engine.previous_loss + engine.basket_loss(engine.start, engine.maturity)
            elif method is StrikeMethod.EXPECTED_LOSS_PV:
                if pricer.discount_curve is None:
                    raise ValidationError("Expected-loss PV strikes need a discount curve")
                scale = engine.previous_loss + engine.basket_loss_pv(
                    engine.start, engine.maturity, pricer.discount_curve)
            else:
                raise UnsupportedOperationError(f"Unknown strike method {method}")
            strikes.append(pricer.detachment / scale if scale > 1e-15 else pricer.detachment)
        return np.array(strikes)

    def get_correlations(self, detachment: float, names: Sequence[str], recovery_override,
                         basket: BasketEngine,
                         discount_curve: Optional[DiscountCurve]) -> SingleFactorCorrelation:
        """Flat correlation of the equity tranche [0, detachment] of ``basket``."""
        engine = basket if recovery_override is None else basket.with_recovery_curves(recovery_override)
        pricer = TranchePricer(engine.duplicate(), 0.0, detachment, discount_curve)
        strike = float(self.strike([pricer])[0])
        correlation = self.correlation(strike)
        logger.debug("Strike %.6f for detachment %.4f resolves to correlation %.6f",
                     strike, detachment, correlation)
        return SingleFactorCorrelation(names, np.sqrt(correlation))

    def __repr__(self) -> str:
        return f"BaseCorrelationCurve(strikes={self.strikes.tolist()}, method={self.strike_method.value})"


class BaseCorrelationBasketEngine(BasketEngine):
    """Prices [attachment, detachment] as the difference of two equity tranches.

    The detachment sub-basket prices [0, detachment] at the detachment
    correlation, the attachment sub-basket [0, attachment] at the attachment
    correlation. When the attachment is zero or both correlations agree the
    two sub-baskets are one and the same engine.
    """

    def __init__(self, calculator: BasketEngine, base_correlation: Optional[BaseCorrelationCurve],
                 attachment: float, detachment: float,
                 discount_curve: Optional[DiscountCurve] = None, rescale_strike: bool = False,
                 ap_correlation: Optional[float] = None, dp_correlation: Optional[float] = None):
        """Initialize the composer.

        Args:
            calculator: Engine the sub-baskets are duplicated from
            base_correlation: Base correlation curve, or None with precomputed correlations
            attachment: Tranche attachment
            detachment: Tranche detachment
            discount_curve: Discount curve used by strike resolution
            rescale_strike: Re-resolve strikes on every reset and every bumped scenario
            ap_correlation: Precomputed attachment correlation
            dp_correlation: Precomputed detachment correlation
        """
        if not 0.0 <= attachment < detachment <= 1.0:
            raise ValidationError(
                f"Tranche must satisfy 0 <= attachment < detachment <= 1, got [{attachment}, {detachment}]")
        if base_correlation is None and (ap_correlation is None or dp_correlation is None):
            raise ValidationError("Without a base correlation both precomputed correlations are required")
        for value in (ap_correlation, dp_correlation):
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValidationError(f"Correlations must be between 0 and 1, got {value}")
        self._calculator = calculator.duplicate()
        self._base_correlation = base_correlation
        self._attachment = attachment
        self._detachment = detachment
        self.discount_curve = discount_curve
        self.rescale_strike = rescale_strike
        self._precomputed = (ap_correlation, dp_correlation)
        self._ap_basket: Optional[BasketEngine] = None
        self._dp_basket: Optional[BasketEngine] = None
        self._correlation_ready = False
        self._ready_key = None
        self._sub_version = None
        self._locked = False
        self._distribution_computed = False
        super().__init__(calculator.as_of, calculator.settle, calculator.maturity,
                         calculator.original_pool, calculator.copula,
                         SingleFactorCorrelation(calculator.original_pool.names, 0.0),
                         calculator.step_size, calculator.step_unit, (attachment, detachment),
                         config=calculator.config, grid_size=calculator.grid_size,
                         portfolio_start=calculator.portfolio_start,
                         effective_digits=calculator.effective_digits)

    @property
    def base_correlation(self) -> Optional[BaseCorrelationCurve]:
        return self._base_correlation

    @base_correlation.setter
    def base_correlation(self, value: Optional[BaseCorrelationCurve]) -> None:
        if value is None and None in self._precomputed:
            raise ValidationError("Without a base correlation both precomputed correlations are required")
        self._base_correlation = value
        if not self._locked:
            self._correlation_ready = False
        self.reset()

    @property
    def attachment(self) -> float:
        return self._attachment

    @attachment.setter
    def attachment(self, value: float) -> None:
        if not 0.0 <= value < self._detachment:
            raise ValidationError(f"Attachment must be in [0, {self._detachment}), got {value}")
        self._attachment = value
        self.add_loss_levels(value)
        self.reset()

    @property
    def detachment(self) -> float:
        return self._detachment

    @detachment.setter
    def detachment(self, value: float) -> None:
        if not self._attachment < value <= 1.0:
            raise ValidationError(f"Detachment must be in ({self._attachment}, 1], got {value}")
        self._detachment = value
        self.add_loss_levels(value)
        self.reset()

    @property
    def calculator(self) -> BasketEngine:
        return self._calculator

    @property
    def correlation(self):
        return self._correlation

    @correlation.setter
    def correlation(self, value) -> None:
        raise UnsupportedOperationError(
            "Correlations of a base correlation basket come from its base correlation curve")

    def set_factor(self, factor: float) -> None:
        raise UnsupportedOperationError(
            "Correlations of a base correlation basket come from its base correlation curve")

    @property
    def attachment_basket(self) -> BasketEngine:
        self._ensure_resolved()
        return self._ap_basket

    @property
    def detachment_basket(self) -> BasketEngine:
        self._ensure_resolved()
        return self._dp_basket

    @property
    def correlation_ready(self) -> bool:
        return self._correlation_ready

    # Correlation resolution

    def _correlation_key(self):
        base = self._base_correlation
        return (id(base), base.version if base is not None else None,
                self._attachment, self._detachment)

    def _make_sub_basket(self, levels: Sequence[float]) -> BasketEngine:
        basket = self._calculator.duplicate()
        self._copy_portfolio_to(basket)
        basket.raw_loss_levels = levels
        return basket

    def _resolve_correlation(self, basket: BasketEngine, level: float) -> SingleFactorCorrelation:
        recovery_override = None
        if self.config.use_curve_recovery_for_base_correlation and basket.has_fixed_recovery:
            curve_recoveries = [sc.recovery_curve for sc in basket.survival_curves]
            if all(rc is not None for rc in curve_recoveries):
                recovery_override = curve_recoveries
        return self._base_correlation.get_correlations(level, basket.names, recovery_override,
                                                       basket, self.discount_curve)

    def _precomputed_correlation(self, names: Sequence[str], value: float) -> SingleFactorCorrelation:
        return SingleFactorCorrelation(names, np.sqrt(value))

    def update_correlations(self) -> None:
        """Resolve the attachment and detachment sub-baskets.

        A no-op while the correlations are ready and neither the base
        correlation, the tranche nor the strike policy asks for resolution;
        the sub-baskets only pick up portfolio changes then.
        """
        if self._correlation_ready and (self._locked or (not self.rescale_strike
                                                         and self._correlation_key() == self._ready_key)):
            if self._sub_version != self._portfolio_version:
                self._refresh_sub_baskets()
            return

        ap_value, dp_value = self._precomputed
        dp_basket = self._make_sub_basket([0.0, self._detachment])
        if self._base_correlation is None:
            dp_basket.correlation = self._precomputed_correlation(dp_basket.names, dp_value)
        else:
            dp_basket.correlation = self._resolve_correlation(dp_basket, self._detachment)
            if self._detachment > 0.99999999:
                dp_basket.set_factor(0.0)

        ap_basket = dp_basket
        if self._attachment > 1e-7:
            candidate = self._make_sub_basket([0.0, self._attachment])
            if self._base_correlation is None:
                ap_corr = self._precomputed_correlation(candidate.names, ap_value)
            else:
                ap_corr = self._resolve_correlation(candidate, self._attachment)
            if not np.isclose(ap_corr.average_correlation(), dp_basket.correlation.average_correlation(),
                              rtol=0.0, atol=1e-14):
                candidate.correlation = ap_corr
                ap_basket = candidate
        if ap_basket is dp_basket:
            dp_basket.add_loss_levels(self._attachment, self._detachment)

        self._dp_basket = dp_basket
        self._ap_basket = ap_basket
        self._correlation_ready = True
        self._ready_key = self._correlation_key()
        self._sub_version = self._portfolio_version
        logger.debug("Resolved base correlations: attachment %.6f, detachment %.6f%s",
                     ap_basket.correlation.average_correlation(),
                     dp_basket.correlation.average_correlation(),
                     " (aliased)" if ap_basket is dp_basket else "")

    def _refresh_sub_baskets(self) -> None:
        """Give the sub-baskets this engine's current portfolio, keeping their correlations."""
        dp_basket = self._dp_basket.duplicate()
        self._copy_portfolio_to(dp_basket)
        if self._ap_basket is self._dp_basket:
            ap_basket = dp_basket
        else:
            ap_basket = self._ap_basket.duplicate()
            self._copy_portfolio_to(ap_basket)
        self._dp_basket, self._ap_basket = dp_basket, ap_basket
        self._sub_version = self._portfolio_version

    def _ensure_resolved(self) -> None:
        if not self._distribution_computed:
            self.update_correlations()
            self._distribution_computed = True

    @contextmanager
    def lock_correlations(self):
        """Freeze the resolved correlations for the duration of the block.

        The base correlation object is restored and the correlations are
        resolved afresh after the block, even if it raises.
        """
        if self.rescale_strike or self._locked:
            yield
            return
        saved = self._base_correlation
        self.update_correlations()
        self._locked = True
        try:
            yield
        finally:
            self._locked = False
            self._base_correlation = saved
            self._correlation_ready = False
            self.reset()

    # Engine interface

    def _invalidate_distribution(self) -> None:
        self._distribution_computed = False

    def reset(self) -> None:
        super().reset()
        for basket in {id(b): b for b in (self._dp_basket, self._ap_basket) if b is not None}.values():
            basket.reset()
        if self.rescale_strike and not self._locked:
            self._correlation_ready = False

    def duplicate(self) -> "BaseCorrelationBasketEngine":
        other = super().duplicate()
        if self._dp_basket is not None:
            other._dp_basket = self._dp_basket.duplicate()
            other._ap_basket = (other._dp_basket if self._ap_basket is self._dp_basket
                                else self._ap_basket.duplicate())
        return other

    def accumulated_loss(self, when: date, begin: float, end: float) -> float:
        self._ensure_resolved()
        loss = self._dp_basket.accumulated_loss(when, 0.0, end)
        if begin > 0:
            loss -= self._ap_basket.accumulated_loss(when, 0.0, begin)
        return loss

    def amortized_amount(self, when: date, begin: float, end: float) -> float:
        self._ensure_resolved()
        amortized = self._dp_basket.amortized_amount(when, 0.0, end)
        if begin > 0:
            amortized -= self._ap_basket.amortized_amount(when, 0.0, begin)
        return amortized

    def calc_loss_distribution(self, want_probability: bool, when: date,
                               levels: Sequence[float]) -> np.ndarray:
        """Loss distribution with the correlation resolved separately at every level."""
        rows = []
        for level in levels:
            level = min(float(level), 1.0)
            basket = self._make_sub_basket([0.0, level])
            if self._base_correlation is None:
                basket.correlation = self._precomputed_correlation(basket.names, self._precomputed[1])
            elif level > 0:
                basket.correlation = self._resolve_correlation(basket, level)
            rows.append(basket.calc_loss_distribution(want_probability, when, [level])[-1])
        return np.array(rows).reshape(len(rows), 2)

    # Strikes and correlations

    def calculate_strike(self, attachment_side: bool) -> float:
        """Strike of the attachment (or detachment) equity tranche."""
        if self._base_correlation is None:
            raise UnsupportedOperationError(
                "Base correlation object is null and strike calculation is not applicable")
        level = self._attachment if attachment_side else self._detachment
        if level <= 1e-7:
            return 0.0
        self._ensure_resolved()
        basket = self._ap_basket if attachment_side else self._dp_basket
        pricer = TranchePricer(basket.duplicate(), 0.0, level, self.discount_curve)
        return float(self._base_correlation.strike([pricer])[0])

    @property
    def ap_strike(self) -> float:
        return self.calculate_strike(True)

    @property
    def dp_strike(self) -> float:
        return self.calculate_strike(False)

    @property
    def ap_correlation(self) -> float:
        self._ensure_resolved()
        return self._ap_basket.correlation.average_correlation(self.maturity)

    @property
    def dp_correlation(self) -> float:
        self._ensure_resolved()
        return self._dp_basket.correlation.average_correlation(self.maturity)

    # Sensitivities

    def bumped_pvs(self, evaluators, alt_survival_curves, include_recovery_sensitivity: bool = False) -> np.ndarray:
        """Bumped prices; equity-tranche decomposition when every measure is additive."""
        evaluators = list(evaluators)
        alt_survival_curves = list(alt_survival_curves)
        self._check_evaluators(evaluators)
        if self.rescale_strike and self._base_correlation is not None:
            return super().bumped_pvs(evaluators, alt_survival_curves, include_recovery_sensitivity)
        if self._need_exact_jump_to_default(evaluators):
            with self.lock_correlations():
                return super().bumped_pvs(evaluators, alt_survival_curves, include_recovery_sensitivity)
        if not all(e.is_additive for e in evaluators):
            return super().bumped_pvs(evaluators, alt_survival_curves, include_recovery_sensitivity)
        return self._regular_pv_table(evaluators, alt_survival_curves, include_recovery_sensitivity)

    def _regular_pv_table(self, evaluators, alt_curves: List, include_recovery_sensitivity: bool) -> np.ndarray:
        unsettled = self._check_bump_count(len(alt_curves))
        n = self.basket_size
        self._ensure_resolved()
        table = np.zeros((len(alt_curves) + 1, len(evaluators)))
        for j, evaluator in enumerate(evaluators):
            pricer = evaluator.pricer
            per_width = pricer.notional / pricer.width
            dp_basket = self._sensitivity_basket(self._dp_basket, pricer.detachment)
            if self._ap_basket is self._dp_basket:
                tranche = evaluator.substitute(pricer.substitute(engine=dp_basket))
                column = dp_basket.bumped_pvs([tranche], alt_curves[:n], include_recovery_sensitivity)[:, 0]
            else:
                upper = evaluator.substitute(pricer.substitute(
                    engine=dp_basket, attachment=0.0, detachment=pricer.detachment,
                    notional=per_width * pricer.detachment))
                column = dp_basket.bumped_pvs([upper], alt_curves[:n], include_recovery_sensitivity)[:, 0]
                if pricer.attachment > 0:
                    ap_basket = self._sensitivity_basket(self._ap_basket, pricer.attachment)
                    lower = evaluator.substitute(pricer.substitute(
                        engine=ap_basket, attachment=0.0, detachment=pricer.attachment,
                        notional=per_width * pricer.attachment))
                    column = column - ap_basket.bumped_pvs(
                        [lower], alt_curves[:n], include_recovery_sensitivity)[:, 0]
            table[:n + 1, j] = column
        if unsettled:
            self._calculate_default_pv_table(evaluators, alt_curves[n:], table, n + 1)
        return table

    def _sensitivity_basket(self, basket: BasketEngine, level: float) -> BasketEngine:
        """Sub-basket the per-name rows are computed on."""
        if self.config.consistent_sensitivity:
            return basket.duplicate()
        fresh = self._make_sub_basket([0.0, level])
        fresh.correlation = basket.correlation
        return fresh

    @staticmethod
    def _bumped_sub_basket(basket: BasketEngine, bump: float, relative: bool) -> Tuple[BasketEngine, float]:
        bumped = basket.duplicate()
        bumped.correlation = bumped.correlation.copy()
        change = bumped.correlation.bump_correlations(bump, relative)
        bumped.reset()
        return bumped, change

    def base_correlation_delta(self, evaluator, ap_bump: float = 0.01, dp_bump: float = 0.01,
                               relative: bool = False, scaled: bool = True) -> float:
        """Change of ``evaluator`` when the resolved correlations are bumped.

        Args:
            evaluator: Evaluator bound to this engine
            ap_bump: Bump of the attachment correlation
            dp_bump: Bump of the detachment correlation
            relative: Bump relative to the current correlations
            scaled: Divide by the realized change of the detachment correlation
                (of the attachment correlation when ``dp_bump`` is zero)

        Returns:
            The price change, per unit correlation when ``scaled``
        """
        self._check_evaluators([evaluator])
        base_value = evaluator.evaluate()
        self._ensure_resolved()
        saved = (self._dp_basket, self._ap_basket)
        try:
            dp_basket, dp_change = self._bumped_sub_basket(saved[0], dp_bump, relative)
            ap_basket, ap_change = dp_basket, dp_change
            if saved[1] is not saved[0] or (self._attachment > 0 and ap_bump != dp_bump):
                ap_basket, ap_change = self._bumped_sub_basket(saved[1], ap_bump, relative)
            self._dp_basket, self._ap_basket = dp_basket, ap_basket
            bumped_value = evaluator.evaluate()
        finally:
            self._dp_basket, self._ap_basket = saved
            self._invalidate_distribution()
        delta = bumped_value - base_value
        change = dp_change if dp_bump != 0 else ap_change
        if scaled and abs(change) > 1e-15:
            return delta / change
        return delta

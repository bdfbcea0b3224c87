"""Tranche pricer and price-measure evaluators.

``TranchePricer`` values a synthetic CDO tranche from a basket engine's
expected tranche loss and amortization along a quarterly payment schedule:

    protection = N / w × Σ_k DF(t_k) × (EL(t_k) - EL(t_k-1)) + N × S
    fee        = s × N / w × Σ_k τ_k × DF(t_k) × (w × (1 + A_k - F) - ½(O(t_k-1) + O(t_k)))

where w = detachment - attachment, EL is the accumulated tranche loss and
O = EL + amortization is the part of the tranche no longer outstanding. S is
the PV of pending default settlements, A_k the accrual fraction of period k
and F the effective notional over the notional. Both
legs are linear in the engine's tranche values, so prices of [a, d] equal
prices of [0, d] minus prices of [0, a] at the same notional per unit width.
"""

import logging
from datetime import date
from typing import Callable, List, Optional, Union

from .curves import DiscountCurve
from .defaults import tranche_survival
from .exceptions import ValidationError
from .timegrid import StepUnit, generate_grid_dates, year_fraction

logger = logging.getLogger(__name__)

ADDITIVE_MEASURES = frozenset({"pv", "protection_pv", "fee_pv", "upfront_pv"})


class TranchePricer:
    """Prices the tranche [attachment, detachment] of a basket engine."""

    def __init__(self, engine, attachment: float, detachment: float,
                 discount_curve: Optional[DiscountCurve], premium: float = 0.0,
                 notional: Optional[float] = None, upfront_fee: float = 0.0,
                 payment_step: int = 3, payment_unit: StepUnit = StepUnit.MONTHS):
        """Initialize the pricer.

        Args:
            engine: Basket engine providing tranche loss and amortization
            attachment: Tranche attachment (fraction of total principal)
            detachment: Tranche detachment (fraction of total principal)
            discount_curve: Discount curve, required for PV measures
            premium: Running premium per annum
            notional: Tranche notional, defaults to the tranche share of the pool's principal
            upfront_fee: Upfront fee as a fraction of notional
            payment_step: Number of units between premium payments
            payment_unit: Unit of the payment step
        """
        if not 0.0 <= attachment < detachment <= 1.0:
            raise ValidationError(
                f"Tranche must satisfy 0 <= attachment < detachment <= 1, got [{attachment}, {detachment}]")
        self.engine = engine
        self.attachment = attachment
        self.detachment = detachment
        self.discount_curve = discount_curve
        self.premium = premium
        self.upfront_fee = upfront_fee
        self.payment_step = payment_step
        self.payment_unit = payment_unit
        if notional is None:
            policy = engine.config.subtract_shorted_from_principal
            notional = engine.original_pool.total_principal(policy) * (detachment - attachment)
        self.notional = notional
        engine.add_loss_levels(attachment, detachment)
        self.update_effective_notional()

    @property
    def width(self) -> float:
        return self.detachment - self.attachment

    @property
    def payment_dates(self) -> List[date]:
        return generate_grid_dates(self.engine.settle, self.engine.maturity,
                                   self.payment_step, self.payment_unit)

    def update_effective_notional(self) -> None:
        """Notional net of the tranche share already lost or amortized."""
        self.effective_notional = self.notional * tranche_survival(
            self.engine.previous_loss, self.engine.previous_amortized,
            self.attachment, self.detachment)

    def _require_discount_curve(self) -> DiscountCurve:
        if self.discount_curve is None:
            raise ValidationError("A discount curve is required for present values")
        return self.discount_curve

    def expected_loss(self, when: Optional[date] = None) -> float:
        """Expected tranche loss up to ``when`` as a fraction of the tranche width."""
        when = when or self.engine.maturity
        return self.engine.accumulated_loss(when, self.attachment, self.detachment) / self.width

    def protection_pv(self) -> float:
        discount = self._require_discount_curve()
        dates = self.payment_dates
        previous = self.engine.accumulated_loss(dates[0], self.attachment, self.detachment)
        total = 0.0
        for d in dates[1:]:
            loss = self.engine.accumulated_loss(d, self.attachment, self.detachment)
            total += discount.discount_factor(d) * (loss - previous)
            previous = loss
        settlements = self.engine.default_settlement_pv(discount, self.attachment, self.detachment)
        return self.notional * (total / self.width + settlements)

    def risky_annuity(self) -> float:
        """Fee leg PV per unit of premium and notional.

        Names removed from the distribution count as lost from the start;
        the accrual fraction restores the premium earned on them until their
        default date.
        """
        discount = self._require_discount_curve()
        dates = self.payment_dates

        def used(d: date) -> float:
            return (self.engine.accumulated_loss(d, self.attachment, self.detachment)
                    + self.engine.amortized_amount(d, self.attachment, self.detachment))

        survival = self.effective_notional / self.notional if self.notional else 0.0
        previous = used(dates[0])
        total = 0.0
        for start, end in zip(dates[:-1], dates[1:]):
            current = used(end)
            accrued = self.engine.accrual_fraction(start, end, self.attachment, self.detachment) - survival
            outstanding = self.width * (1.0 + accrued) - 0.5 * (previous + current)
            total += year_fraction(start, end) * discount.discount_factor(end) * outstanding
            previous = current
        return total / self.width

    def fee_pv(self) -> float:
        return self.premium * self.notional * self.risky_annuity()

    def upfront_pv(self) -> float:
        return self.upfront_fee * self.notional

    def pv(self) -> float:
        """Protection buyer's PV."""
        return self.protection_pv() - self.fee_pv() - self.upfront_pv()

    def break_even_premium(self) -> float:
        annuity = self.risky_annuity()
        if annuity <= 0:
            return 0.0
        return (self.protection_pv() / self.notional - self.upfront_fee) / annuity

    def substitute(self, engine=None, attachment: Optional[float] = None,
                   detachment: Optional[float] = None,
                   notional: Optional[float] = None) -> "TranchePricer":
        """Copy bound to another engine or tranche.

        The notional per unit of tranche width is kept unless ``notional`` is given.
        """
        attachment = self.attachment if attachment is None else attachment
        detachment = self.detachment if detachment is None else detachment
        if notional is None:
            notional = self.notional / self.width * (detachment - attachment)
        return TranchePricer(engine or self.engine, attachment, detachment, self.discount_curve,
                             self.premium, notional, self.upfront_fee, self.payment_step,
                             self.payment_unit)

    def reset(self) -> None:
        self.engine.reset()

    def __repr__(self) -> str:
        return (f"TranchePricer([{self.attachment:.2%}, {self.detachment:.2%}], "
                f"notional={self.notional:,.2f}, premium={self.premium:.4%})")


class PricerEvaluator:
    """A price measure of a tranche pricer.

    Attributes:
        pricer: The tranche pricer
        measure: Name of a pricer method, or a callable taking the pricer
        is_additive: Whether the measure of [a, d] equals [0, d] minus [0, a]
        default_changed: Whether scenarios change the default status of names
        label: Column label in reports
    """

    def __init__(self, pricer: TranchePricer, measure: Union[str, Callable] = "pv",
                 is_additive: Optional[bool] = None, default_changed: bool = False,
                 label: Optional[str] = None):
        if isinstance(measure, str):
            if not callable(getattr(pricer, measure, None)):
                raise ValidationError(f"Unknown price measure {measure!r}")
            if is_additive is None:
                is_additive = measure in ADDITIVE_MEASURES
        elif not callable(measure):
            raise ValidationError(f"Price measure must be a method name or callable, got {measure!r}")
        self.pricer = pricer
        self.measure = measure
        self.is_additive = bool(is_additive)
        self.default_changed = default_changed
        self.label = label or (measure if isinstance(measure, str) else getattr(measure, "__name__", "measure"))

    @property
    def engine(self):
        return self.pricer.engine

    def evaluate(self) -> float:
        if isinstance(self.measure, str):
            return float(getattr(self.pricer, self.measure)())
        return float(self.measure(self.pricer))

    def substitute(self, pricer: TranchePricer) -> "PricerEvaluator":
        return PricerEvaluator(pricer, self.measure, self.is_additive, self.default_changed, self.label)

    def reset(self) -> None:
        self.pricer.reset()

    def __repr__(self) -> str:
        return f"PricerEvaluator({self.label!r}, additive={self.is_additive})"

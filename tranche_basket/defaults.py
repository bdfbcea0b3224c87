"""Bookkeeping for names that defaulted before or during the pricing period.

Amounts are stored as fractions of the basket's total principal: a default
contributes ``principal × (1 - recovery)`` of loss and ``principal × recovery``
of amortization. Settlement records carry the date the default is paid.
"""

from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from .curves import DiscountCurve


@dataclass(frozen=True)
class DefaultRecord:
    """A default (or its settlement) and the amounts it contributes.

    Settlement records also carry the date of the default they pay and
    whether a payment falling on the trade settlement date still counts.
    """
    date: date
    loss: float
    amortization: float
    default_date: Optional[date] = None
    include_settle: bool = False

    def pending_after(self, cutoff: date) -> bool:
        """Whether the settlement is still to be paid as of ``cutoff``."""
        if self.date != cutoff:
            return self.date > cutoff
        return self.include_settle or (self.default_date is not None and self.default_date < cutoff)


def tranche_loss(cumulative_loss: float, attachment: float, detachment: float) -> float:
    """Loss absorbed by the tranche [attachment, detachment] given a basket loss."""
    return min(max(cumulative_loss - attachment, 0.0), max(detachment - attachment, 0.0))


def tranche_survival(previous_loss: float, previous_amortized: float,
                     attachment: float, detachment: float) -> float:
    """Fraction of the tranche notional left after previous losses and amortization.

    Losses eat the tranche from the bottom, amortization from the top.
    """
    width = detachment - attachment
    if width <= 0:
        return 0.0
    lost = tranche_loss(previous_loss, attachment, detachment)
    amortized = tranche_loss(previous_amortized, 1.0 - detachment, 1.0 - attachment)
    return max(width - lost - amortized, 0.0) / width


class BasketDefaultInfo:
    """Defaults and settlements of removed names, built while the engine scans its pool."""

    def __init__(self):
        self.defaults: List[DefaultRecord] = []
        self.settlements: List[DefaultRecord] = []

    def add_default(self, default_date: date, loss: float, amortization: float) -> None:
        self.defaults.append(DefaultRecord(default_date, loss, amortization))

    def add_settlement(self, settle_date: date, loss: float, amortization: float,
                       default_date: Optional[date] = None, include_settle: bool = False) -> None:
        self.settlements.append(DefaultRecord(settle_date, loss, amortization, default_date, include_settle))

    def normalize(self, total_principal: float) -> "BasketDefaultInfo":
        """Return a copy with amounts divided by the total principal."""
        info = BasketDefaultInfo()
        for record in self.defaults:
            info.add_default(record.date, record.loss / total_principal,
                             record.amortization / total_principal)
        for record in self.settlements:
            info.add_settlement(record.date, record.loss / total_principal,
                                record.amortization / total_principal,
                                record.default_date, record.include_settle)
        return info

    def cumulative_loss(self, as_of: Optional[date] = None) -> float:
        return sum(r.loss for r in self.defaults if as_of is None or r.date <= as_of)

    def cumulative_amortization(self, as_of: Optional[date] = None) -> float:
        return sum(r.amortization for r in self.defaults if as_of is None or r.date <= as_of)

    def accrual_fraction(self, start: date, end: date, attachment: float, detachment: float) -> float:
        """Time-weighted fraction of the tranche outstanding over (start, end].

        Defaults inside the period reduce the tranche notional from their
        default date onward.
        """
        days = (end - start).days
        if days <= 0:
            return 0.0
        survival = tranche_survival(self.cumulative_loss(start), self.cumulative_amortization(start),
                                    attachment, detachment)
        in_period = sorted((r for r in self.defaults if start < r.date <= end), key=lambda r: r.date)
        if not in_period:
            return survival

        accrued = 0.0
        last = start
        loss = self.cumulative_loss(start)
        amortization = self.cumulative_amortization(start)
        for record in in_period:
            accrued += survival * (record.date - last).days
            loss += record.loss
            amortization += record.amortization
            survival = tranche_survival(loss, amortization, attachment, detachment)
            last = record.date
        accrued += survival * (end - last).days
        return accrued / days

    def default_settlement_pv(self, as_of: date, settle: date, maturity: date,
                              discount_curve: DiscountCurve, attachment: float, detachment: float,
                              include_loss: bool = True, include_recovery: bool = False) -> float:
        """PV of pending settlements falling in (settle, maturity], per unit tranche notional.

        A settlement paid on the settle date itself counts when it was flagged
        to include that date or pays a default that happened before it.

        Args:
            as_of: Pricing date (settlements on or before it are ignored)
            settle: Settlement date of the trade
            maturity: Maturity of the tranche
            discount_curve: Discount curve
            attachment: Tranche attachment
            detachment: Tranche detachment
            include_loss: Include the loss leg of the settlements
            include_recovery: Include the recovery (amortization) leg
        """
        width = detachment - attachment
        if width <= 0:
            return 0.0
        cutoff = max(as_of, settle)
        if cutoff >= maturity:
            return 0.0
        pending = [r for r in self.settlements if r.pending_after(cutoff)]
        loss = self.cumulative_loss() - sum(r.loss for r in pending)
        amortization = self.cumulative_amortization() - sum(r.amortization for r in pending)
        pv = 0.0
        for record in sorted(pending, key=lambda r: r.date):
            if record.date > maturity:
                continue
            df = discount_curve.discount_factor(record.date)
            if include_loss:
                pv += df * (tranche_loss(loss + record.loss, attachment, detachment)
                            - tranche_loss(loss, attachment, detachment))
            if include_recovery:
                pv += df * (tranche_loss(amortization + record.amortization, 1.0 - detachment, 1.0 - attachment)
                            - tranche_loss(amortization, 1.0 - detachment, 1.0 - attachment))
            loss += record.loss
            amortization += record.amortization
        return pv / width

    def __len__(self) -> int:
        return len(self.defaults)

"""Credit names and the immutable credit pool of a basket."""

from dataclasses import dataclass, replace
from datetime import date
from typing import Iterator, List, Optional, Sequence

import numpy as np

from .curves import DefaultStatus, SurvivalCurve
from .exceptions import ValidationError
from .recovery import RecoveryCurve


@dataclass(frozen=True)
class CreditName:
    """A single name in the basket.

    Attributes:
        name: Identifier of the name
        survival_curve: Survival curve, also holding the default status
        recovery_curve: Recovery curve (positive dispersion means stochastic recovery)
        principal: Signed notional; negative for a short position
        early_maturity: Date the protection on this name ends, if before the basket maturity
        refinance_curve: Survival curve of the refinancing (prepayment) event
        refinance_correlation: Correlation between default and refinancing
    """
    name: str
    survival_curve: SurvivalCurve
    recovery_curve: RecoveryCurve
    principal: float
    early_maturity: Optional[date] = None
    refinance_curve: Optional[SurvivalCurve] = None
    refinance_correlation: float = 0.0

    def __post_init__(self):
        if self.survival_curve is None:
            raise ValidationError(f"Name '{self.name}' has no survival curve")
        if self.recovery_curve is None:
            raise ValidationError(f"Name '{self.name}' has no recovery curve")
        if not np.isfinite(self.principal):
            raise ValidationError(f"Principal of '{self.name}' must be finite, got {self.principal}")
        if not -1 <= self.refinance_correlation <= 1:
            raise ValidationError(
                f"Refinance correlation must be between -1 and 1, got {self.refinance_correlation}")

    @property
    def status(self) -> DefaultStatus:
        return self.survival_curve.defaulted

    @property
    def is_short(self) -> bool:
        return self.principal < 0

    @property
    def default_date(self) -> Optional[date]:
        return self.survival_curve.default_date

    @property
    def has_unsettled_recovery(self) -> bool:
        """True for a defaulted name whose recovery is still pending."""
        return self.status is DefaultStatus.HAS_DEFAULTED and self.recovery_curve.will_recover

    def is_removed(self, exact_jump_to_default: bool) -> bool:
        """Whether the name is excluded from the loss distribution."""
        if self.status is DefaultStatus.HAS_DEFAULTED:
            return True
        return exact_jump_to_default and self.status is DefaultStatus.WILL_DEFAULT


class CreditPool:
    """Ordered, immutable collection of credit names.

    Curve substitutions never modify a pool; ``replace`` returns a new one.
    """

    def __init__(self, names: Sequence[CreditName], has_fixed_recovery: bool = True):
        names = tuple(names)
        if not names:
            raise ValidationError("A credit pool needs at least one name")
        self._names = names
        self.has_fixed_recovery = has_fixed_recovery
        principals = np.array([n.principal for n in names], dtype=float)
        principals.setflags(write=False)
        self._principals = principals

    @classmethod
    def from_curves(cls, principals: Sequence[float], survival_curves: Sequence[SurvivalCurve],
                    recovery_curves: Optional[Sequence[RecoveryCurve]] = None,
                    early_maturities: Optional[Sequence[Optional[date]]] = None,
                    refinance_curves: Optional[Sequence[Optional[SurvivalCurve]]] = None,
                    refinance_correlations: Optional[Sequence[float]] = None) -> "CreditPool":
        """Build a pool from parallel arrays.

        Args:
            principals: Signed principal per name
            survival_curves: Survival curve per name
            recovery_curves: Recovery curve per name; when omitted each survival
                curve must carry its own
            early_maturities: Optional early maturity per name
            refinance_curves: Optional refinance curve per name
            refinance_correlations: Optional refinance correlation per name

        Returns:
            A new CreditPool

        Raises:
            ValidationError: If array lengths differ or a recovery curve is missing
        """
        n = len(survival_curves)
        for label, values in (("principals", principals), ("recovery curves", recovery_curves),
                              ("early maturities", early_maturities),
                              ("refinance curves", refinance_curves),
                              ("refinance correlations", refinance_correlations)):
            if values is not None and len(values) != n:
                raise ValidationError(
                    f"Number of {label} ({len(values)}) does not match the number "
                    f"of survival curves ({n})")

        has_fixed_recovery = recovery_curves is not None
        if recovery_curves is None:
            missing = [i for i, sc in enumerate(survival_curves) if sc.recovery_curve is None]
            if missing:
                raise ValidationError(f"Survival curves at positions {missing} carry no recovery curve")
            recovery_curves = [sc.recovery_curve for sc in survival_curves]

        names = []
        for i, sc in enumerate(survival_curves):
            names.append(CreditName(
                name=sc.name or f"name_{i}",
                survival_curve=sc,
                recovery_curve=recovery_curves[i],
                principal=float(principals[i]),
                early_maturity=early_maturities[i] if early_maturities is not None else None,
                refinance_curve=refinance_curves[i] if refinance_curves is not None else None,
                refinance_correlation=(refinance_correlations[i]
                                       if refinance_correlations is not None else 0.0),
            ))
        return cls(names, has_fixed_recovery=has_fixed_recovery)

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[CreditName]:
        return iter(self._names)

    def __getitem__(self, index: int) -> CreditName:
        return self._names[index]

    @property
    def names(self) -> List[str]:
        return [n.name for n in self._names]

    @property
    def survival_curves(self) -> List[SurvivalCurve]:
        return [n.survival_curve for n in self._names]

    @property
    def recovery_curves(self) -> List[RecoveryCurve]:
        return [n.recovery_curve for n in self._names]

    @property
    def principals(self) -> np.ndarray:
        return self._principals

    @property
    def long_principal(self) -> float:
        return float(self._principals[self._principals > 0].sum())

    @property
    def short_principal(self) -> float:
        return float(self._principals[self._principals < 0].sum())

    def total_principal(self, subtract_shorted: bool = False) -> float:
        """Sum of long principals, net of shorts under the subtract-shorted policy."""
        total = self.long_principal
        if subtract_shorted:
            total += self.short_principal
        return total

    def picks(self, exact_jump_to_default: bool = False) -> np.ndarray:
        """1.0 for names in the loss distribution, 0.0 for removed names."""
        return np.array([0.0 if n.is_removed(exact_jump_to_default) else 1.0 for n in self._names])

    def unsettled_indices(self) -> List[int]:
        return [i for i, n in enumerate(self._names) if n.has_unsettled_recovery]

    def replace(self, index: int, survival_curve: Optional[SurvivalCurve] = None,
                recovery_curve: Optional[RecoveryCurve] = None) -> "CreditPool":
        """Return a new pool with the curves of one name substituted."""
        if not 0 <= index < len(self._names):
            raise IndexError(f"Name index {index} out of range for pool of {len(self._names)}")
        changes = {}
        if survival_curve is not None:
            changes["survival_curve"] = survival_curve
        if recovery_curve is not None:
            changes["recovery_curve"] = recovery_curve
        names = list(self._names)
        names[index] = replace(names[index], **changes)
        return CreditPool(names, has_fixed_recovery=self.has_fixed_recovery)

    def with_recovery_curves(self, recovery_curves: Sequence[RecoveryCurve]) -> "CreditPool":
        if len(recovery_curves) != len(self._names):
            raise ValidationError(
                f"Expected {len(self._names)} recovery curves, got {len(recovery_curves)}")
        names = [replace(n, recovery_curve=rc) for n, rc in zip(self._names, recovery_curves)]
        return CreditPool(names, has_fixed_recovery=self.has_fixed_recovery)

    def __repr__(self) -> str:
        return f"CreditPool(names={len(self)}, long={self.long_principal:,.2f}, short={self.short_principal:,.2f})"

"""Recovery rate curves and recovery distributions.

A recovery curve carries the expected recovery rate of a name (optionally as a
term structure), its dispersion (standard deviation of the realized recovery,
``0`` for deterministic recovery) and settlement information for names that
already defaulted.

Recovery distributions are used two ways:
- Constant: Fixed recovery value (deterministic)
- Beta: Parametric Beta distribution fitted by the method of moments

The semi-analytic kernel integrates over ``nodes()``; the Monte Carlo kernel
draws from ``sample()``.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats


class RecoveryDistribution(ABC):
    """Abstract base class for recovery distributions."""

    @abstractmethod
    def sample(self, n_samples: int, random_state=None) -> np.ndarray:
        """Sample recovery values.

        Args:
            n_samples: Number of samples to draw
            random_state: Seed or ``numpy.random.Generator``

        Returns:
            Array of recovery values of shape (n_samples,)
        """
        pass

    @abstractmethod
    def nodes(self, n_nodes: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return quadrature nodes ``(weights, values)`` whose weights sum to one."""
        pass

    @abstractmethod
    def mean(self) -> float:
        pass

    @abstractmethod
    def std(self) -> float:
        pass


class ConstantRecovery(RecoveryDistribution):
    """Deterministic recovery."""

    def __init__(self, value: float):
        if not 0 <= value <= 1:
            raise ValueError(f"Recovery must be between 0 and 1, got {value}")
        self._value = value

    def sample(self, n_samples: int, random_state=None) -> np.ndarray:
        return np.full(n_samples, self._value)

    def nodes(self, n_nodes: int) -> Tuple[np.ndarray, np.ndarray]:
        return np.ones(1), np.array([self._value])

    def mean(self) -> float:
        return self._value

    def std(self) -> float:
        return 0.0

    def __repr__(self) -> str:
        return f"ConstantRecovery(value={self._value:.4f})"


class BetaRecovery(RecoveryDistribution):
    """Beta-distributed recovery.

    The Beta parameters are fitted to the mean and standard deviation by the
    method of moments; the standard deviation is capped just below the maximum
    a Beta distribution with that mean allows.
    """

    def __init__(self, mean: float, std: float):
        """Initialize Beta recovery distribution.

        Args:
            mean: Mean recovery rate (between 0 and 1)
            std: Standard deviation of the recovery rate
        """
        if not 0 <= mean <= 1:
            raise ValueError(f"Mean recovery must be between 0 and 1, got {mean}")
        if std < 0:
            raise ValueError(f"Std must be non-negative, got {std}")

        self._mean = mean
        self._std = std

        if std > 0 and 0 < mean < 1:
            max_std = np.sqrt(mean * (1 - mean))
            capped_std = min(std, max_std * 0.99)
            common = mean * (1 - mean) / capped_std ** 2 - 1
            self._alpha = max(0.1, mean * common)
            self._beta = max(0.1, (1 - mean) * common)
        else:
            self._alpha = None
            self._beta = None

    @property
    def is_degenerate(self) -> bool:
        return self._alpha is None

    def sample(self, n_samples: int, random_state=None) -> np.ndarray:
        rng = np.random.default_rng(random_state)
        if self.is_degenerate:
            return np.full(n_samples, self._mean)
        return rng.beta(self._alpha, self._beta, size=n_samples)

    def nodes(self, n_nodes: int) -> Tuple[np.ndarray, np.ndarray]:
        """Equal-weight quantile nodes, recentred so that their mean is exact."""
        if self.is_degenerate or n_nodes <= 1:
            return np.ones(1), np.array([self._mean])
        probs = (np.arange(n_nodes) + 0.5) / n_nodes
        values = stats.beta.ppf(probs, self._alpha, self._beta)
        values = np.clip(values + (self._mean - values.mean()), 0.0, 1.0)
        return np.full(n_nodes, 1.0 / n_nodes), values

    def mean(self) -> float:
        return self._mean

    def std(self) -> float:
        return self._std

    def __repr__(self) -> str:
        return f"BetaRecovery(mean={self._mean:.4f}, std={self._std:.4f})"


def create_recovery_distribution(mean: float, dispersion: float = 0.0) -> RecoveryDistribution:
    """Factory returning a constant or Beta recovery distribution."""
    if dispersion <= 0:
        return ConstantRecovery(mean)
    return BetaRecovery(mean, dispersion)


class RecoveryCurve:
    """Recovery rate of a single name.

    The rate is either flat or a step function of date (the rate of the first
    tenor on or after the query date, the last rate beyond the last tenor).

    Attributes:
        dispersion: Standard deviation of the realized recovery
        jump_date: Date the recovery of a defaulted name is fixed, if any
        will_recover: True while the recovery of a defaulted name is unsettled
    """

    def __init__(self, recovery_rate, dates: Optional[Sequence[date]] = None,
                 dispersion: float = 0.0, jump_date: Optional[date] = None,
                 will_recover: bool = False):
        rates = np.atleast_1d(np.asarray(recovery_rate, dtype=float))
        if np.any(rates < 0) or np.any(rates > 1):
            raise ValueError(f"Recovery rates must be between 0 and 1, got {rates.tolist()}")
        if dispersion < 0:
            raise ValueError(f"Recovery dispersion must be non-negative, got {dispersion}")
        if dates is not None:
            dates = list(dates)
            if len(dates) != len(rates):
                raise ValueError(
                    f"Recovery curve has {len(dates)} dates but {len(rates)} rates")
            if any(b <= a for a, b in zip(dates, dates[1:])):
                raise ValueError("Recovery curve dates must be strictly increasing")
        elif len(rates) != 1:
            raise ValueError("A recovery term structure requires dates")
        self._dates: List[date] = dates or []
        self._rates = rates
        self.dispersion = float(dispersion)
        self.jump_date = jump_date
        self.will_recover = will_recover

    def recovery_rate(self, when: Optional[date] = None) -> float:
        if not self._dates or when is None:
            return float(self._rates[-1]) if self._dates else float(self._rates[0])
        for d, rate in zip(self._dates, self._rates):
            if when <= d:
                return float(rate)
        return float(self._rates[-1])

    def distribution(self, when: Optional[date] = None) -> RecoveryDistribution:
        return create_recovery_distribution(self.recovery_rate(when), self.dispersion)

    def bumped(self, shift: float, relative: bool = False) -> "RecoveryCurve":
        """Return a copy with every rate shifted (and clipped to [0, 1])."""
        rates = self._rates * (1.0 + shift) if relative else self._rates + shift
        return RecoveryCurve(np.clip(rates, 0.0, 1.0), self._dates or None,
                             self.dispersion, self.jump_date, self.will_recover)

    def settled(self) -> "RecoveryCurve":
        """Return a copy whose recovery is no longer pending."""
        return RecoveryCurve(self._rates, self._dates or None, self.dispersion,
                             self.jump_date, will_recover=False)

    def __repr__(self) -> str:
        return (f"RecoveryCurve(rate={self.recovery_rate():.4f}, "
                f"dispersion={self.dispersion:.4f}, will_recover={self.will_recover})")

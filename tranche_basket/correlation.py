"""Copula and factor correlation models.

Latent variable of name i at horizon t:

    X_i = Σ_k a_ik(t) × Z_k + √(1 - Σ_k a_ik(t)²) × ε_i

Where:
    - Z_k: Independent systematic factors (standard normal, or Student-t
      scale mixtures under the t copula)
    - a_ik(t): Factor loading of name i on factor k, possibly per tenor
    - ε_i: Idiosyncratic shock

Name i defaults before t when X_i < Φ⁻¹(PD_i(t)). The pairwise correlation of
names i and j is Σ_k a_ik a_jk.

Every model carries a ``version`` counter incremented on mutation; engines
compare versions to decide whether a cached term structure is stale.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import UnsupportedOperationError, ValidationError


class CopulaType(Enum):
    GAUSS = "gauss"
    STUDENT_T = "student_t"


@dataclass(frozen=True)
class Copula:
    """Copula specification.

    Attributes:
        copula_type: Gaussian or Student-t
        df_common: Degrees of freedom of the systematic factor (t copula)
        df_idiosyncratic: Degrees of freedom of the idiosyncratic shock (t copula)
    """
    copula_type: CopulaType = CopulaType.GAUSS
    df_common: int = 0
    df_idiosyncratic: int = 0

    def __post_init__(self):
        if self.copula_type is CopulaType.STUDENT_T and (self.df_common <= 2 or self.df_idiosyncratic <= 2):
            raise ValidationError(
                f"Student-t copula needs degrees of freedom above 2, got "
                f"({self.df_common}, {self.df_idiosyncratic})")

    @property
    def is_gaussian(self) -> bool:
        return self.copula_type is CopulaType.GAUSS


def _check_picks(picks: Sequence[float], size: int) -> np.ndarray:
    picks = np.asarray(picks, dtype=float)
    if len(picks) != size:
        raise ValidationError(f"Picks has {len(picks)} entries but the correlation covers {size} names")
    return picks > 0


def _bump_loadings(loadings: np.ndarray, size: float, relative: bool) -> Tuple[np.ndarray, float]:
    """Bump the total correlation Σ_k a_k² of every name (last axis).

    Returns the bumped loadings and the average realized change in correlation.
    """
    loadings = np.array(loadings, dtype=float)
    old = np.sum(loadings ** 2, axis=-2)
    new = old * (1.0 + size) if relative else old + size
    new = np.clip(new, 0.0, 1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = np.where(old > 0, np.sqrt(new / np.where(old > 0, old, 1.0)), 0.0)
    bumped = loadings * scale[..., np.newaxis, :]
    zero = old <= 0
    if np.any(zero):
        first = bumped[..., 0, :]
        first[zero] = np.sqrt(new[zero])
    return bumped, float(np.mean(new - old))


class CorrelationModel(ABC):
    """Common interface of all correlation models."""

    def __init__(self, names: Sequence[str]):
        self.names = list(names)
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def _touch(self) -> None:
        self._version += 1

    @property
    def basket_size(self) -> int:
        return len(self.names)

    @abstractmethod
    def to_term_struct(self) -> "CorrelationTermStruct":
        """Resolve to loadings per tenor date."""
        pass

    def components(self) -> List[Tuple[float, "CorrelationTermStruct"]]:
        """Weighted term structures the loss distribution is averaged over."""
        return [(1.0, self.to_term_struct())]

    def factors_at(self, when: Optional[date] = None) -> np.ndarray:
        return self.to_term_struct().factors_at(when)

    @abstractmethod
    def set_factor(self, maturity: Optional[date], value: float) -> None:
        """Set a uniform single-factor loading (pairwise correlation value²)."""
        pass

    @abstractmethod
    def bump_correlations(self, size: float, relative: bool = False) -> float:
        """Bump correlations in place and return the average realized change."""
        pass

    @abstractmethod
    def create(self, picks: Sequence[float]) -> "CorrelationModel":
        """Restrict the model to the names with a positive pick."""
        pass

    def copy(self) -> "CorrelationModel":
        return copy.deepcopy(self)

    def average_correlation(self, maturity: Optional[date] = None) -> float:
        """Average pairwise correlation at ``maturity``."""
        factors = self.factors_at(maturity)
        n = factors.shape[1]
        gram = factors.T @ factors
        if n == 1:
            return float(gram[0, 0])
        return float((gram.sum() - np.trace(gram)) / (n * (n - 1)))


class CorrelationTermStruct(CorrelationModel):
    """Factor loadings per tenor date.

    ``factors`` has shape (n_dates, n_factors, n_names), where n_names may be 1
    for loadings shared by every name. The loadings of tenor k apply to dates
    up to and including ``dates[k]``; the last tenor applies beyond.
    """

    def __init__(self, names: Sequence[str], dates: Optional[Sequence[date]], factors):
        super().__init__(names)
        factors = np.asarray(factors, dtype=float)
        if factors.ndim == 2:
            factors = factors[np.newaxis, :, :]
        if factors.ndim != 3:
            raise ValidationError(f"Factors must have shape (dates, factors, names), got {factors.shape}")
        dates = list(dates) if dates else []
        if (dates and len(dates) != factors.shape[0]) or (not dates and factors.shape[0] != 1):
            raise ValidationError(
                f"Correlation term structure has {len(dates)} dates but {factors.shape[0]} slices")
        if any(b <= a for a, b in zip(dates, dates[1:])):
            raise ValidationError("Correlation dates must be strictly increasing")
        if factors.shape[2] not in (1, len(self.names)):
            raise ValidationError(
                f"Loadings cover {factors.shape[2]} names but the model has {len(self.names)}")
        if np.any(np.sum(factors ** 2, axis=1) > 1 + 1e-12):
            raise ValidationError("Sum of squared factor loadings must be <= 1")
        self.dates = dates
        self.factors = factors

    def to_term_struct(self) -> "CorrelationTermStruct":
        return self

    def factors_at(self, when: Optional[date] = None) -> np.ndarray:
        if when is None or not self.dates:
            return self.factors[-1]
        for k, d in enumerate(self.dates):
            if when <= d:
                return self.factors[k]
        return self.factors[-1]

    def set_factor(self, maturity: Optional[date], value: float) -> None:
        if not -1 <= value <= 1:
            raise ValidationError(f"Factor must be between -1 and 1, got {value}")
        factors = np.zeros((self.factors.shape[0], 1, 1))
        factors[:, 0, 0] = value
        self.factors = factors
        self._touch()

    def bump_correlations(self, size: float, relative: bool = False) -> float:
        self.factors, change = _bump_loadings(self.factors, size, relative)
        self._touch()
        return change

    def create(self, picks: Sequence[float]) -> "CorrelationTermStruct":
        mask = _check_picks(picks, len(self.names))
        names = [n for n, keep in zip(self.names, mask) if keep]
        factors = self.factors if self.factors.shape[2] == 1 else self.factors[:, :, mask]
        return CorrelationTermStruct(names, self.dates, factors.copy())


class SingleFactorCorrelation(CorrelationModel):
    """Every name loads ``factor`` on one common factor (pairwise correlation factor²)."""

    def __init__(self, names: Sequence[str], factor: float):
        super().__init__(names)
        if not -1 <= factor <= 1:
            raise ValidationError(f"Factor must be between -1 and 1, got {factor}")
        self.factor = float(factor)

    @property
    def correlation(self) -> float:
        return self.factor ** 2

    def to_term_struct(self) -> CorrelationTermStruct:
        return CorrelationTermStruct(self.names, None, np.full((1, 1, 1), self.factor))

    def factors_at(self, when: Optional[date] = None) -> np.ndarray:
        return np.full((1, 1), self.factor)

    def set_factor(self, maturity: Optional[date], value: float) -> None:
        if not -1 <= value <= 1:
            raise ValidationError(f"Factor must be between -1 and 1, got {value}")
        self.factor = float(value)
        self._touch()

    def bump_correlations(self, size: float, relative: bool = False) -> float:
        old = self.correlation
        new = float(np.clip(old * (1.0 + size) if relative else old + size, 0.0, 1.0))
        self.factor = float(np.sqrt(new))
        self._touch()
        return new - old

    def create(self, picks: Sequence[float]) -> "SingleFactorCorrelation":
        mask = _check_picks(picks, len(self.names))
        return SingleFactorCorrelation([n for n, keep in zip(self.names, mask) if keep], self.factor)

    def average_correlation(self, maturity: Optional[date] = None) -> float:
        return self.correlation

    def __repr__(self) -> str:
        return f"SingleFactorCorrelation(names={len(self.names)}, correlation={self.correlation:.4f})"


class FactorCorrelation(CorrelationModel):
    """Per-name loadings on one or more factors.

    When a factor correlation matrix is supplied the loadings are rotated onto
    independent factors through its Cholesky decomposition.
    """

    def __init__(self, names: Sequence[str], loadings, factor_correlation: Optional[np.ndarray] = None):
        """Initialize the factor correlation.

        Args:
            names: Names covered by the model
            loadings: Array of shape (n_factors, n_names), or (n_names,) for one factor
            factor_correlation: Optional symmetric positive semi-definite matrix
                of shape (n_factors, n_factors)
        """
        super().__init__(names)
        loadings = np.atleast_2d(np.asarray(loadings, dtype=float))
        if loadings.shape[1] != len(self.names):
            raise ValidationError(
                f"Loadings cover {loadings.shape[1]} names but the model has {len(self.names)}")
        if factor_correlation is not None:
            loadings = self._rotate(loadings, np.asarray(factor_correlation, dtype=float))
        if np.any(np.sum(loadings ** 2, axis=0) > 1 + 1e-12):
            raise ValidationError("Sum of squared factor loadings must be <= 1")
        self.loadings = loadings

    @staticmethod
    def _rotate(loadings: np.ndarray, corr: np.ndarray) -> np.ndarray:
        n = loadings.shape[0]
        if corr.shape != (n, n):
            raise ValidationError(f"Factor correlation must be {n}x{n}, got {corr.shape}")
        if not np.allclose(corr, corr.T):
            raise ValidationError("Factor correlation matrix must be symmetric")
        if not np.allclose(np.diag(corr), 1.0):
            raise ValidationError("Diagonal elements must be 1")
        if np.any(np.linalg.eigvalsh(corr) < -1e-10):
            raise ValidationError("Factor correlation matrix must be positive semi-definite")
        chol = np.linalg.cholesky(corr + np.eye(n) * 1e-10)
        return chol.T @ loadings

    @property
    def num_factors(self) -> int:
        return self.loadings.shape[0]

    def to_term_struct(self) -> CorrelationTermStruct:
        return CorrelationTermStruct(self.names, None, self.loadings[np.newaxis, :, :].copy())

    def factors_at(self, when: Optional[date] = None) -> np.ndarray:
        return self.loadings

    def set_factor(self, maturity: Optional[date], value: float) -> None:
        if not -1 <= value <= 1:
            raise ValidationError(f"Factor must be between -1 and 1, got {value}")
        loadings = np.zeros_like(self.loadings)
        loadings[0, :] = value
        self.loadings = loadings
        self._touch()

    def bump_correlations(self, size: float, relative: bool = False) -> float:
        self.loadings, change = _bump_loadings(self.loadings, size, relative)
        self._touch()
        return change

    def create(self, picks: Sequence[float]) -> "FactorCorrelation":
        mask = _check_picks(picks, len(self.names))
        return FactorCorrelation([n for n, keep in zip(self.names, mask) if keep],
                                 self.loadings[:, mask].copy())


class CorrelationMixed(CorrelationModel):
    """Weighted mixture of correlation models.

    Loss distributions under a mixture are the weighted average of the
    distributions under each component.
    """

    def __init__(self, correlations: Sequence[CorrelationModel], weights: Sequence[float]):
        correlations = list(correlations)
        weights = np.asarray(weights, dtype=float)
        if not correlations or len(correlations) != len(weights):
            raise ValidationError(
                f"Need one weight per correlation, got {len(correlations)} correlations "
                f"and {len(weights)} weights")
        if np.any(weights < 0) or not np.isclose(weights.sum(), 1.0):
            raise ValidationError(f"Mixture weights must be non-negative and sum to 1, got {weights.tolist()}")
        super().__init__(correlations[0].names)
        self.correlations = correlations
        self.weights = weights

    @property
    def version(self) -> int:
        return self._version + sum(c.version for c in self.correlations)

    def to_term_struct(self) -> CorrelationTermStruct:
        raise UnsupportedOperationError("A mixed correlation has no single term structure")

    def components(self) -> List[Tuple[float, CorrelationTermStruct]]:
        out = []
        for w, corr in zip(self.weights, self.correlations):
            out.extend((w * cw, ts) for cw, ts in corr.components())
        return out

    def factors_at(self, when: Optional[date] = None) -> np.ndarray:
        raise UnsupportedOperationError("A mixed correlation has no single set of factor loadings")

    def set_factor(self, maturity: Optional[date], value: float) -> None:
        for corr in self.correlations:
            corr.set_factor(maturity, value)
        self._touch()

    def bump_correlations(self, size: float, relative: bool = False) -> float:
        changes = [corr.bump_correlations(size, relative) for corr in self.correlations]
        self._touch()
        return float(np.dot(self.weights, changes))

    def create(self, picks: Sequence[float]) -> "CorrelationMixed":
        return CorrelationMixed([c.create(picks) for c in self.correlations], self.weights)

    def average_correlation(self, maturity: Optional[date] = None) -> float:
        return float(np.dot(self.weights, [c.average_correlation(maturity) for c in self.correlations]))

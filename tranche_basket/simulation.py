"""Monte Carlo distribution kernel.

Supports multi-factor loadings, the Student-t copula, stochastic recovery
and refinancing (prepayment at par). Every call draws its scenarios from a
fresh generator seeded with ``seed``, so results are reproducible and
sensitivity groups share common random numbers.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import norm, rankdata

from .correlation import Copula
from .exceptions import ValidationError
from .kernels import (DistributionKernel, _expected_base_loss, correlation_lookup_date,
                      default_probabilities)
from .recovery import create_recovery_distribution

logger = logging.getLogger(__name__)


@dataclass
class ScenarioDraws:
    """Random draws shared by every date of one kernel call.

    Attributes:
        factors: Systematic factors of shape (num_scenarios, num_factors)
        idiosyncratic: Idiosyncratic shocks of shape (num_scenarios, num_names)
        common_scale: Scale applied to the systematic part (1 for Gaussian)
        idiosyncratic_scale: Scale applied to the idiosyncratic part
        refinance_shocks: Independent shocks for the refinance latent variables
        recoveries: Sampled recovery rates of shape (num_scenarios, num_names)
    """
    factors: np.ndarray
    idiosyncratic: np.ndarray
    common_scale: np.ndarray
    idiosyncratic_scale: np.ndarray
    refinance_shocks: np.ndarray
    recoveries: np.ndarray

    @property
    def num_scenarios(self) -> int:
        return self.factors.shape[0]


class MonteCarloKernel(DistributionKernel):
    """Simulation kernel for the factor copula.

    Latent variables are simulated once per call and compared to per-date
    default thresholds, so default indicators are cumulative through time.
    Under the Student-t copula the systematic and idiosyncratic parts are
    scale mixtures with their own degrees of freedom and thresholds are the
    empirical quantiles of the simulated latent variables.
    """

    def __init__(self, sample_size: int = 10000, seed: int = 12345):
        """Initialize the kernel.

        Args:
            sample_size: Number of scenarios per call
            seed: Random seed for reproducibility
        """
        if sample_size <= 0:
            raise ValidationError(f"Sample size must be positive, got {sample_size}")
        self.sample_size = sample_size
        self.seed = seed

    def _draw(self, copula: Copula, num_factors: int, num_names: int,
              recovery_rates: np.ndarray, recovery_dispersions: np.ndarray) -> ScenarioDraws:
        rng = np.random.default_rng(self.seed)
        m = self.sample_size
        factors = rng.standard_normal((m, num_factors))
        idiosyncratic = rng.standard_normal((m, num_names))
        refinance_shocks = rng.standard_normal((m, num_names))
        if copula.is_gaussian:
            common_scale = np.ones(m)
            idio_scale = np.ones(m)
        else:
            common_scale = np.sqrt(copula.df_common / rng.chisquare(copula.df_common, m))
            idio_scale = np.sqrt(copula.df_idiosyncratic / rng.chisquare(copula.df_idiosyncratic, m))
        recoveries = np.empty((m, num_names))
        for i in range(num_names):
            dist = create_recovery_distribution(recovery_rates[i], recovery_dispersions[i])
            recoveries[:, i] = dist.sample(m, rng)
        return ScenarioDraws(factors, idiosyncratic, common_scale, idio_scale,
                             refinance_shocks, recoveries)

    @staticmethod
    def _latent(draws: ScenarioDraws, loadings: np.ndarray) -> np.ndarray:
        """Latent variables of shape (num_scenarios, num_names)."""
        systematic = draws.factors[:, :loadings.shape[0]] @ loadings
        idio_weight = np.sqrt(np.maximum(1.0 - np.sum(loadings ** 2, axis=0), 0.0))
        return (systematic * draws.common_scale[:, np.newaxis]
                + draws.idiosyncratic * idio_weight * draws.idiosyncratic_scale[:, np.newaxis])

    @staticmethod
    def _thresholds(copula: Copula, latent: np.ndarray, probabilities: np.ndarray) -> np.ndarray:
        if copula.is_gaussian:
            with np.errstate(divide="ignore"):
                return norm.ppf(np.clip(probabilities, 0.0, 1.0))
        out = np.empty(len(probabilities))
        for i, p in enumerate(probabilities):
            if p <= 0:
                out[i] = -np.inf
            elif p >= 1:
                out[i] = np.inf
            else:
                out[i] = np.quantile(latent[:, i], p)
        return out

    @staticmethod
    def _uniforms(copula: Copula, latent: np.ndarray) -> np.ndarray:
        """Marginal probability levels of the latent variables."""
        if copula.is_gaussian:
            return norm.cdf(latent)
        return rankdata(latent, axis=0) / latent.shape[0]

    @staticmethod
    def _step_fraction(u: np.ndarray, p_prev: np.ndarray, p_next: np.ndarray) -> np.ndarray:
        """Position of each event inside a grid step, measured in cumulative hazard.

        An event at probability level ``u`` with ``p_prev < u <= p_next``
        maps to a value in [0, 1]; for a flat hazard rate this is the
        fraction of the step elapsed before the event.
        """
        hazard = -np.log1p(-np.clip(u, 0.0, 1.0 - 1e-15))
        lower = -np.log1p(-np.clip(p_prev, 0.0, 1.0 - 1e-15))
        upper = -np.log1p(-np.clip(p_next, 0.0, 1.0 - 1e-15))
        width = upper - lower
        with np.errstate(divide="ignore", invalid="ignore"):
            fraction = np.where(width > 0, (hazard - lower) / width, 0.0)
        return np.clip(fraction, 0.0, 1.0)

    def _compute_dates(self, want_probability, dates, start, copula, correlation, correlation_base,
                       survival_curves, principals, recovery_rates, recovery_dispersions, levels,
                       grid_size, want_amortization, early_maturities=None, refinance_curves=None,
                       refinance_correlations=None):
        n = len(survival_curves)
        loss_values = np.zeros((len(dates), len(levels)))
        amor_values = np.zeros((len(dates), len(levels))) if want_amortization else None
        net_principal = float(principals.sum())
        if n == 0 or net_principal <= 0:
            return loss_values, amor_values

        num_factors = correlation.factors.shape[1]
        draws = self._draw(copula, num_factors, n, recovery_rates, recovery_dispersions)
        rho = np.zeros(n) if refinance_correlations is None else np.asarray(refinance_correlations, float)
        has_refinance = refinance_curves is not None and any(c is not None for c in refinance_curves)

        defaulted = np.zeros((draws.num_scenarios, n), dtype=bool)
        prepaid = np.zeros((draws.num_scenarios, n), dtype=bool)
        loss_per_name = principals * (1.0 - draws.recoveries)
        amor_per_name = principals * draws.recoveries
        thresholds = levels * net_principal
        pd_prev = np.zeros(n)
        q_prev = np.zeros(n)

        for d_idx, when in enumerate(dates):
            loadings = correlation.factors_at(correlation_lookup_date(when, start, correlation_base))
            if loadings.shape[1] not in (1, n):
                raise ValidationError(f"Correlation covers {loadings.shape[1]} names, basket has {n}")
            loadings = np.broadcast_to(loadings, (loadings.shape[0], n))
            latent = self._latent(draws, loadings)
            pd_t = default_probabilities(survival_curves, start, when, early_maturities)
            alive = ~(defaulted | prepaid)
            new_default = alive & (latent < self._thresholds(copula, latent, pd_t))

            if has_refinance:
                q_t = np.array([0.0 if c is None else c.default_probability(start, when)
                                for c in refinance_curves])
                refinance_latent = rho * latent + np.sqrt(1.0 - rho ** 2) * draws.refinance_shocks
                with np.errstate(divide="ignore"):
                    refinance_threshold = norm.ppf(q_t)
                new_prepaid = alive & (refinance_latent < refinance_threshold)
                both = new_default & new_prepaid
                if both.any():
                    default_time = self._step_fraction(
                        self._uniforms(copula, latent), pd_prev, pd_t)
                    refinance_time = self._step_fraction(norm.cdf(refinance_latent), q_prev, q_t)
                    refinanced_first = both & (refinance_time < default_time)
                    new_default &= ~refinanced_first
                    new_prepaid &= ~(both & ~refinanced_first)
                prepaid |= new_prepaid
                q_prev = q_t
            defaulted |= new_default
            pd_prev = pd_t

            losses = np.sum(np.where(defaulted, loss_per_name, 0.0), axis=1)
            loss_values[d_idx] = self._base_losses(losses, thresholds, want_probability)
            if want_amortization:
                amortized = (np.sum(np.where(defaulted, amor_per_name, 0.0), axis=1)
                             + np.sum(np.where(prepaid, principals, 0.0), axis=1))
                amor_values[d_idx] = self._base_losses(amortized, thresholds, want_probability)
        logger.debug("Simulated %d scenarios over %d dates for %d names",
                     draws.num_scenarios, len(dates), n)
        return loss_values, amor_values

    @staticmethod
    def _base_losses(losses: np.ndarray, thresholds: np.ndarray, want_probability: bool) -> np.ndarray:
        values, counts = np.unique(losses, return_counts=True)
        return _expected_base_loss(counts / len(losses), values, thresholds, want_probability, 1e-12)

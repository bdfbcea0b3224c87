"""Synthetic CDO tranche pricing on correlated credit baskets.

This package builds time × loss-level distribution surfaces for a basket of
credit names under a factor copula, extracts tranche losses from them and
re-prices tranches under per-name curve scenarios.

Main components:
- portfolio: CreditName and CreditPool
- correlation: Copula and factor correlation models
- kernels / simulation: Semi-analytic and Monte Carlo distribution kernels
- engine / heterogeneous: Basket engines and the sensitivity loop
- base_correlation: Base correlation curve and the tranche composer
- pricing: Tranche pricer and price-measure evaluators
- risk_metrics: Sensitivity tables and reports
"""

from .exceptions import BasketError, ValidationError, UnsupportedOperationError, StateError
from .config import BasketConfig, DEFAULT_CONFIG
from .timegrid import StepUnit, add_period, year_fraction, generate_grid_dates
from .recovery import (
    RecoveryCurve,
    RecoveryDistribution,
    ConstantRecovery,
    BetaRecovery,
    create_recovery_distribution,
)
from .curves import DefaultStatus, SurvivalCurve, DiscountCurve
from .portfolio import CreditName, CreditPool
from .correlation import (
    Copula,
    CopulaType,
    CorrelationModel,
    SingleFactorCorrelation,
    FactorCorrelation,
    CorrelationTermStruct,
    CorrelationMixed,
)
from .distribution import DistributionSurface
from .kernels import DistributionKernel, SemiAnalyticKernel
from .simulation import MonteCarloKernel
from .defaults import BasketDefaultInfo, tranche_loss, tranche_survival
from .engine import BasketEngine
from .heterogeneous import KernelBasketEngine, SemiAnalyticBasketEngine, MonteCarloBasketEngine
from .base_correlation import StrikeMethod, BaseCorrelationCurve, BaseCorrelationBasketEngine
from .pricing import TranchePricer, PricerEvaluator
from .risk_metrics import (
    NameSensitivity,
    bumped_pvs_frame,
    spread_sensitivities,
    recovery_sensitivities,
    jump_to_default,
    collect_sensitivities,
    create_sensitivity_report,
)

__version__ = "1.0.0"

__all__ = [
    # Errors and configuration
    "BasketError",
    "ValidationError",
    "UnsupportedOperationError",
    "StateError",
    "BasketConfig",
    "DEFAULT_CONFIG",
    # Dates
    "StepUnit",
    "add_period",
    "year_fraction",
    "generate_grid_dates",
    # Curves
    "RecoveryCurve",
    "RecoveryDistribution",
    "ConstantRecovery",
    "BetaRecovery",
    "create_recovery_distribution",
    "DefaultStatus",
    "SurvivalCurve",
    "DiscountCurve",
    # Portfolio
    "CreditName",
    "CreditPool",
    # Correlation
    "Copula",
    "CopulaType",
    "CorrelationModel",
    "SingleFactorCorrelation",
    "FactorCorrelation",
    "CorrelationTermStruct",
    "CorrelationMixed",
    # Distribution
    "DistributionSurface",
    "DistributionKernel",
    "SemiAnalyticKernel",
    "MonteCarloKernel",
    "BasketDefaultInfo",
    "tranche_loss",
    "tranche_survival",
    # Engines
    "BasketEngine",
    "KernelBasketEngine",
    "SemiAnalyticBasketEngine",
    "MonteCarloBasketEngine",
    "StrikeMethod",
    "BaseCorrelationCurve",
    "BaseCorrelationBasketEngine",
    # Pricing and reports
    "TranchePricer",
    "PricerEvaluator",
    "NameSensitivity",
    "bumped_pvs_frame",
    "spread_sensitivities",
    "recovery_sensitivities",
    "jump_to_default",
    "collect_sensitivities",
    "create_sensitivity_report",
]

"""Pytest fixtures for tranche basket tests."""

import pytest
import numpy as np
import sys
import os
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tranche_basket import (
    Copula,
    CreditPool,
    DefaultStatus,
    DiscountCurve,
    RecoveryCurve,
    SemiAnalyticBasketEngine,
    SingleFactorCorrelation,
    SurvivalCurve,
)

AS_OF = date(2024, 3, 20)
MATURITY = date(2029, 3, 20)
HAZARDS = [0.01, 0.015, 0.02, 0.025, 0.03]


def build_curves(hazards=HAZARDS, recovery=0.4, dispersion=0.0):
    """Flat hazard curves carrying their own recovery curves."""
    return [
        SurvivalCurve.flat(AS_OF, h, name=f"Name_{i}",
                           recovery_curve=RecoveryCurve(recovery, dispersion=dispersion))
        for i, h in enumerate(hazards)
    ]


def build_pool(hazards=HAZARDS, principal=100.0, recovery=0.4, curve_recovery=False):
    """Pool of flat-curve names; recoveries come from the curves when ``curve_recovery``."""
    curves = build_curves(hazards, recovery)
    principals = [principal] * len(curves)
    if curve_recovery:
        return CreditPool.from_curves(principals, curves)
    return CreditPool.from_curves(principals, curves, [sc.recovery_curve for sc in curves])


def defaulted_pool(will_recover=False):
    """Five-name pool whose first name defaulted before the as-of date."""
    curves = build_curves()
    recovery = RecoveryCurve(0.4, will_recover=will_recover)
    curves[0] = curves[0].with_recovery(recovery).with_default(date(2024, 1, 15),
                                                               DefaultStatus.HAS_DEFAULTED)
    return CreditPool.from_curves([100.0] * 5, curves, [sc.recovery_curve for sc in curves])


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def maturity():
    return MATURITY


@pytest.fixture
def sample_pool():
    """Five names, principal 100, recovery 40%."""
    return build_pool()


@pytest.fixture
def gaussian_copula():
    return Copula()


@pytest.fixture
def flat_correlation(sample_pool):
    """30% pairwise correlation."""
    return SingleFactorCorrelation(sample_pool.names, np.sqrt(0.3))


@pytest.fixture
def discount_curve():
    return DiscountCurve(AS_OF, 0.03)


@pytest.fixture
def make_engine(gaussian_copula):
    """Factory for semi-analytic engines on a given pool."""

    def _make(pool=None, correlation=None, **kwargs):
        pool = pool or build_pool()
        correlation = correlation or SingleFactorCorrelation(pool.names, np.sqrt(0.3))
        return SemiAnalyticBasketEngine(AS_OF, AS_OF, MATURITY, pool, gaussian_copula,
                                        correlation, **kwargs)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()

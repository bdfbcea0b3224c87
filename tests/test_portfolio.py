"""Tests for portfolio.py - CreditName and CreditPool."""

import pytest
import numpy as np
from datetime import date

from tranche_basket import CreditName, CreditPool, DefaultStatus, RecoveryCurve, SurvivalCurve, ValidationError

from conftest import AS_OF, build_curves, build_pool, defaulted_pool


class TestCreditName:
    """Tests for CreditName."""

    def test_create_name(self):
        """Test creating a credit name."""
        sc = SurvivalCurve.flat(AS_OF, 0.02)
        name = CreditName("ABC", sc, RecoveryCurve(0.4), 1_000_000)
        assert name.status is DefaultStatus.NOT_DEFAULTED
        assert not name.is_short
        assert name.default_date is None
        assert not name.is_removed(False)

    def test_short_name(self):
        name = CreditName("ABC", SurvivalCurve.flat(AS_OF, 0.02), RecoveryCurve(0.4), -50.0)
        assert name.is_short

    def test_missing_recovery(self):
        """Test a name without recovery curve is rejected."""
        with pytest.raises(ValidationError, match="no recovery curve"):
            CreditName("ABC", SurvivalCurve.flat(AS_OF, 0.02), None, 100.0)

    def test_invalid_refinance_correlation(self):
        with pytest.raises(ValidationError, match="Refinance correlation"):
            CreditName("ABC", SurvivalCurve.flat(AS_OF, 0.02), RecoveryCurve(0.4), 100.0,
                       refinance_correlation=1.5)

    def test_is_removed(self):
        """Test which default states remove a name from the distribution."""
        sc = SurvivalCurve.flat(AS_OF, 0.02)
        will = CreditName("A", sc.with_default(date(2024, 6, 1)), RecoveryCurve(0.4), 100.0)
        has = CreditName("B", sc.with_default(date(2024, 1, 1), DefaultStatus.HAS_DEFAULTED),
                         RecoveryCurve(0.4), 100.0)
        assert not will.is_removed(False)
        assert will.is_removed(True)
        assert has.is_removed(False)
        assert has.is_removed(True)

    def test_frozen(self):
        name = CreditName("ABC", SurvivalCurve.flat(AS_OF, 0.02), RecoveryCurve(0.4), 100.0)
        with pytest.raises(AttributeError):
            name.principal = 200.0


class TestCreditPool:
    """Tests for CreditPool."""

    def test_from_curves(self):
        """Test building a pool from parallel arrays."""
        pool = build_pool()
        assert len(pool) == 5
        assert pool.names == [f"Name_{i}" for i in range(5)]
        assert pool.total_principal() == 500.0
        assert pool.has_fixed_recovery

    def test_recovery_from_curves(self):
        """Test that recoveries carried by the curves mark the pool as not fixed."""
        pool = build_pool(curve_recovery=True)
        assert not pool.has_fixed_recovery
        assert pool[0].recovery_curve is pool[0].survival_curve.recovery_curve

    def test_length_mismatch(self):
        curves = build_curves()
        with pytest.raises(ValidationError, match="principals"):
            CreditPool.from_curves([100.0] * 4, curves)

    def test_missing_curve_recovery(self):
        curves = [SurvivalCurve.flat(AS_OF, 0.02), SurvivalCurve.flat(AS_OF, 0.03)]
        with pytest.raises(ValidationError, match="carry no recovery"):
            CreditPool.from_curves([100.0, 100.0], curves)

    def test_empty_pool(self):
        with pytest.raises(ValidationError, match="at least one name"):
            CreditPool([])

    def test_principals_read_only(self):
        """Test pool principals cannot be written in place."""
        pool = build_pool()
        with pytest.raises(ValueError):
            pool.principals[0] = 0.0

    def test_short_principal(self):
        """Test long, short and net totals."""
        curves = build_curves()
        pool = CreditPool.from_curves([100.0, 100.0, 100.0, 100.0, -50.0], curves,
                                      [sc.recovery_curve for sc in curves])
        assert pool.long_principal == 400.0
        assert pool.short_principal == -50.0
        assert pool.total_principal() == 400.0
        assert pool.total_principal(subtract_shorted=True) == 350.0

    def test_picks_and_unsettled(self):
        """Test picks exclude defaulted names and unsettled recoveries are found."""
        pool = defaulted_pool(will_recover=True)
        assert pool.picks().tolist() == [0.0, 1.0, 1.0, 1.0, 1.0]
        assert pool.unsettled_indices() == [0]
        assert defaulted_pool().unsettled_indices() == []

    def test_replace_returns_new_pool(self):
        """Test substitution leaves the original pool untouched."""
        pool = build_pool()
        bumped = pool[2].survival_curve.bumped(0.01)
        new_pool = pool.replace(2, bumped)
        assert new_pool is not pool
        assert new_pool[2].survival_curve is bumped
        assert pool[2].survival_curve is not bumped
        assert new_pool[2].recovery_curve is pool[2].recovery_curve
        assert new_pool[0] is pool[0]

    def test_replace_out_of_range(self):
        with pytest.raises(IndexError):
            build_pool().replace(7, None)

    def test_with_recovery_curves(self):
        pool = build_pool()
        new_pool = pool.with_recovery_curves([RecoveryCurve(0.2)] * 5)
        assert np.allclose([n.recovery_curve.recovery_rate() for n in new_pool], 0.2)
        with pytest.raises(ValidationError):
            pool.with_recovery_curves([RecoveryCurve(0.2)])

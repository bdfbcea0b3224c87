"""Tests for curves.py, recovery.py and timegrid.py."""

import pytest
import numpy as np
from datetime import date

from tranche_basket import (
    BetaRecovery,
    ConstantRecovery,
    DefaultStatus,
    DiscountCurve,
    RecoveryCurve,
    StepUnit,
    SurvivalCurve,
    add_period,
    create_recovery_distribution,
    generate_grid_dates,
    year_fraction,
)

AS_OF = date(2024, 3, 20)


class TestTimeGrid:
    """Tests for grid date generation."""

    def test_quarterly_grid(self):
        """Test quarterly steps end exactly at the stop date."""
        dates = generate_grid_dates(AS_OF, date(2025, 3, 20), 3, StepUnit.MONTHS)
        assert dates == [date(2024, 3, 20), date(2024, 6, 20), date(2024, 9, 20),
                         date(2024, 12, 20), date(2025, 3, 20)]

    def test_irregular_stop_appended(self):
        """Test that a stop date off the step schedule is still the last date."""
        dates = generate_grid_dates(AS_OF, date(2024, 11, 1), 3, StepUnit.MONTHS)
        assert dates[-1] == date(2024, 11, 1)
        assert dates[-2] == date(2024, 9, 20)

    def test_additional_dates_merged(self):
        """Test extra dates inside the range are merged and outside ones dropped."""
        dates = generate_grid_dates(AS_OF, date(2025, 3, 20), 6, StepUnit.MONTHS,
                                    [date(2024, 7, 1), date(2026, 1, 1), date(2024, 9, 20)])
        assert date(2024, 7, 1) in dates
        assert date(2026, 1, 1) not in dates
        assert dates == sorted(set(dates))

    def test_invalid_step(self):
        """Test that a non-positive step raises."""
        with pytest.raises(ValueError, match="positive"):
            generate_grid_dates(AS_OF, date(2025, 3, 20), 0, StepUnit.MONTHS)

    def test_add_period_end_of_month(self):
        """Test calendar arithmetic clips to month end."""
        assert add_period(date(2024, 1, 31), 1, StepUnit.MONTHS) == date(2024, 2, 29)
        assert add_period(date(2024, 1, 1), 2, StepUnit.WEEKS) == date(2024, 1, 15)

    def test_year_fraction(self):
        """Test ACT/365 year fractions."""
        assert year_fraction(date(2024, 1, 1), date(2025, 1, 1)) == pytest.approx(366 / 365)
        assert year_fraction(date(2025, 1, 1), date(2024, 1, 1)) < 0


class TestSurvivalCurve:
    """Tests for SurvivalCurve."""

    def test_flat_survival(self):
        """Test S(t) = exp(-h t) for a flat curve."""
        curve = SurvivalCurve.flat(AS_OF, 0.02)
        assert curve.survival_probability(AS_OF) == pytest.approx(1.0)
        assert curve.survival_probability(date(2025, 3, 20)) == pytest.approx(np.exp(-0.02))

    def test_piecewise_hazard(self):
        """Test cumulative hazard across tenor boundaries."""
        curve = SurvivalCurve(AS_OF, [date(2025, 3, 20), date(2029, 3, 20)], [0.01, 0.03])
        assert curve.survival_probability(date(2027, 3, 20)) == pytest.approx(np.exp(-0.07))
        # beyond the last tenor the last hazard extends
        assert curve.cumulative_hazard(6.0) > curve.cumulative_hazard(5.0)

    def test_default_probability_conditional(self):
        """Test conditional default probability between two dates."""
        curve = SurvivalCurve.flat(AS_OF, 0.02)
        start, end = date(2025, 3, 20), date(2026, 3, 20)
        expected = 1.0 - curve.survival_probability(end) / curve.survival_probability(start)
        assert curve.default_probability(start, end) == pytest.approx(expected)
        assert 0.0 <= curve.default_probability(start, end) <= 1.0

    def test_jump_to_default(self):
        """Test that a curve marked to default has zero survival after its default date."""
        curve = SurvivalCurve.flat(AS_OF, 0.02).with_default(date(2025, 1, 1))
        assert curve.defaulted is DefaultStatus.WILL_DEFAULT
        assert curve.survival_probability(date(2024, 12, 1)) > 0
        assert curve.survival_probability(date(2025, 1, 1)) == 0.0
        assert curve.default_probability(AS_OF, date(2026, 1, 1)) == pytest.approx(1.0)
        assert curve.default_probability(date(2025, 6, 1), date(2026, 1, 1)) == 1.0

    def test_defaulted_needs_date(self):
        """Test HAS_DEFAULTED without a default date raises."""
        with pytest.raises(ValueError, match="default date"):
            SurvivalCurve(AS_OF, [date(2029, 3, 20)], [0.02], defaulted=DefaultStatus.HAS_DEFAULTED)

    def test_invalid_tenors(self):
        """Test tenors must follow the as-of date."""
        with pytest.raises(ValueError, match="Tenor dates"):
            SurvivalCurve(AS_OF, [date(2024, 1, 1)], [0.02])
        with pytest.raises(ValueError, match="non-negative"):
            SurvivalCurve(AS_OF, [date(2029, 3, 20)], [-0.01])

    def test_bumped_is_new_curve(self):
        """Test bumping returns a new curve and floors hazards at zero."""
        curve = SurvivalCurve.flat(AS_OF, 0.02, name="A")
        bumped = curve.bumped(0.01)
        assert bumped is not curve
        assert bumped.name == "A"
        assert bumped.hazard_rates[0] == pytest.approx(0.03)
        assert curve.hazard_rates[0] == pytest.approx(0.02)
        assert curve.bumped(-0.05).hazard_rates[0] == 0.0
        assert curve.bumped(0.5, relative=True).hazard_rates[0] == pytest.approx(0.03)

    def test_unsettled_recovery(self):
        """Test detection of defaulted names with pending recovery."""
        curve = SurvivalCurve.flat(AS_OF, 0.02, recovery_curve=RecoveryCurve(0.4, will_recover=True))
        assert not curve.has_unsettled_recovery()
        defaulted = curve.with_default(date(2024, 1, 1), DefaultStatus.HAS_DEFAULTED)
        assert defaulted.has_unsettled_recovery()


class TestDiscountCurve:
    """Tests for DiscountCurve."""

    def test_discount_factor(self):
        curve = DiscountCurve(AS_OF, 0.05)
        assert curve.discount_factor(AS_OF) == pytest.approx(1.0)
        assert curve.discount_factor(date(2025, 3, 20)) == pytest.approx(np.exp(-0.05))


class TestRecovery:
    """Tests for recovery distributions and curves."""

    def test_constant_recovery(self):
        dist = ConstantRecovery(0.4)
        assert dist.mean() == 0.4
        assert dist.std() == 0.0
        assert np.all(dist.sample(10) == 0.4)
        weights, values = dist.nodes(5)
        assert weights.tolist() == [1.0]
        assert values.tolist() == [0.4]

    def test_constant_recovery_invalid(self):
        with pytest.raises(ValueError, match="between 0 and 1"):
            ConstantRecovery(1.2)

    def test_beta_recovery_nodes(self):
        """Test quantile nodes preserve the mean and stay within [0, 1]."""
        dist = BetaRecovery(0.4, 0.2)
        weights, values = dist.nodes(7)
        assert weights.sum() == pytest.approx(1.0)
        assert np.dot(weights, values) == pytest.approx(0.4, abs=1e-10)
        assert np.all((values >= 0) & (values <= 1))
        assert np.all(np.diff(values) > 0)

    def test_beta_recovery_sampling(self):
        """Test sample moments match the fitted distribution."""
        dist = BetaRecovery(0.4, 0.2)
        samples = dist.sample(100000, random_state=42)
        assert samples.mean() == pytest.approx(0.4, abs=0.005)
        assert samples.std() == pytest.approx(0.2, abs=0.005)

    def test_beta_recovery_degenerate(self):
        """Test zero dispersion collapses to the mean."""
        dist = BetaRecovery(0.4, 0.0)
        assert dist.is_degenerate
        assert np.all(dist.sample(5, random_state=1) == 0.4)

    def test_beta_recovery_capped_std(self):
        """Test an excessive std is capped instead of rejected."""
        dist = BetaRecovery(0.5, 0.9)
        assert not dist.is_degenerate
        assert np.all((dist.sample(1000, random_state=3) >= 0))

    def test_factory(self):
        assert isinstance(create_recovery_distribution(0.4), ConstantRecovery)
        assert isinstance(create_recovery_distribution(0.4, 0.1), BetaRecovery)

    def test_recovery_term_structure(self):
        """Test step-function lookup of recovery rates."""
        curve = RecoveryCurve([0.3, 0.5], dates=[date(2025, 3, 20), date(2027, 3, 20)])
        assert curve.recovery_rate(date(2024, 6, 1)) == 0.3
        assert curve.recovery_rate(date(2026, 1, 1)) == 0.5
        assert curve.recovery_rate(date(2030, 1, 1)) == 0.5
        assert curve.recovery_rate() == 0.5

    def test_recovery_curve_validation(self):
        with pytest.raises(ValueError, match="between 0 and 1"):
            RecoveryCurve(1.5)
        with pytest.raises(ValueError, match="requires dates"):
            RecoveryCurve([0.3, 0.4])
        with pytest.raises(ValueError, match="non-negative"):
            RecoveryCurve(0.4, dispersion=-0.1)

    def test_recovery_bump_and_settle(self):
        """Test bumped copies are clipped and settled copies stop recovering."""
        curve = RecoveryCurve(0.95, will_recover=True)
        assert curve.bumped(0.1).recovery_rate() == 1.0
        assert curve.bumped(0.1).will_recover
        assert not curve.settled().will_recover
        assert curve.settled().recovery_rate() == 0.95

    def test_recovery_distribution_from_curve(self):
        assert isinstance(RecoveryCurve(0.4, dispersion=0.1).distribution(), BetaRecovery)
        assert isinstance(RecoveryCurve(0.4).distribution(), ConstantRecovery)

"""Tests for distribution.py and defaults.py."""

import pytest
import numpy as np
from datetime import date

from tranche_basket import BasketDefaultInfo, DiscountCurve, DistributionSurface, tranche_loss, tranche_survival

DATES = [date(2024, 3, 20), date(2025, 3, 20), date(2026, 3, 20)]


@pytest.fixture
def surface():
    """Two-group surface with values linear in time and level."""
    surface = DistributionSurface(DATES, [0.0, 0.5, 1.0], num_groups=2)
    surface.values[0] = np.array([[0.0, 0.0, 0.0],
                                  [0.0, 0.2, 0.3],
                                  [0.0, 0.4, 0.6]])
    surface.values[1] = 2 * surface.values[0]
    return surface


class TestDistributionSurface:
    """Tests for DistributionSurface."""

    def test_shape(self, surface):
        assert surface.num_groups == 2
        assert surface.num_dates == 3
        assert surface.num_levels == 3
        assert surface.start == DATES[0]

    def test_interpolate_on_nodes(self, surface):
        assert surface.interpolate(DATES[1], 0.5) == pytest.approx(0.2)
        assert surface.interpolate(DATES[2], 1.0, group=1) == pytest.approx(1.2)

    def test_interpolate_between_nodes(self, surface):
        """Test linear interpolation in level and in time."""
        assert surface.interpolate(DATES[1], 0.25) == pytest.approx(0.1)
        mid = date(2025, 9, 18)
        expected = 0.2 + (mid - DATES[1]).days / (DATES[2] - DATES[1]).days * 0.2
        assert surface.interpolate(mid, 0.5) == pytest.approx(expected)

    def test_flat_extrapolation(self, surface):
        """Test values are flat outside the date and level grid."""
        assert surface.interpolate(date(2030, 1, 1), 0.5) == pytest.approx(0.4)
        assert surface.interpolate(date(2020, 1, 1), 0.5) == pytest.approx(0.0)
        assert surface.interpolate(DATES[2], 2.0) == pytest.approx(0.6)

    def test_interpolate_tranche(self, surface):
        assert surface.interpolate_tranche(DATES[2], 0.5, 1.0) == pytest.approx(0.2)
        assert surface.interpolate_tranche(DATES[2], 0.5, 0.5) == 0.0
        assert surface.interpolate_tranche(DATES[2], 0.8, 0.2) == 0.0

    def test_is_monotone(self, surface):
        assert surface.is_monotone()
        surface.values[0, 2, 2] = 0.1
        assert not surface.is_monotone()

    def test_copy_is_independent(self, surface):
        clone = surface.copy()
        clone.values[:] = 0.0
        assert surface.interpolate(DATES[2], 1.0) == pytest.approx(0.6)

    def test_to_frame(self, surface):
        frame = surface.to_frame(group=1)
        assert list(frame.index) == DATES
        assert list(frame.columns) == [0.0, 0.5, 1.0]
        assert frame.loc[DATES[2], 1.0] == pytest.approx(1.2)

    def test_invalid_levels(self):
        with pytest.raises(ValueError, match="levels"):
            DistributionSurface(DATES, [0.0, 0.5, 0.5])
        with pytest.raises(ValueError, match="dates"):
            DistributionSurface([DATES[1], DATES[0]], [0.0, 1.0])


class TestTrancheHelpers:
    """Tests for tranche loss and survival helpers."""

    def test_tranche_loss(self):
        assert tranche_loss(0.05, 0.03, 0.07) == pytest.approx(0.02)
        assert tranche_loss(0.01, 0.03, 0.07) == 0.0
        assert tranche_loss(0.5, 0.03, 0.07) == pytest.approx(0.04)

    def test_tranche_survival(self):
        """Test losses erode from the bottom and amortization from the top."""
        assert tranche_survival(0.0, 0.0, 0.0, 0.1) == 1.0
        assert tranche_survival(0.12, 0.08, 0.0, 0.1) == 0.0
        assert tranche_survival(0.05, 0.0, 0.0, 0.1) == pytest.approx(0.5)
        assert tranche_survival(0.0, 0.95, 0.0, 0.1) == pytest.approx(0.5)
        assert tranche_survival(0.0, 0.0, 0.1, 0.1) == 0.0


class TestBasketDefaultInfo:
    """Tests for BasketDefaultInfo."""

    def test_normalize_and_cumulative(self):
        info = BasketDefaultInfo()
        info.add_default(date(2024, 1, 15), 60.0, 40.0)
        info.add_default(date(2024, 6, 15), 30.0, 20.0)
        normalized = info.normalize(500.0)
        assert len(normalized) == 2
        assert normalized.cumulative_loss() == pytest.approx(0.18)
        assert normalized.cumulative_loss(date(2024, 3, 1)) == pytest.approx(0.12)
        assert normalized.cumulative_amortization() == pytest.approx(0.12)
        assert info.cumulative_loss() == 90.0

    def test_accrual_fraction(self):
        """Test a default inside the period reduces accrual from its date on."""
        info = BasketDefaultInfo()
        info.add_default(date(2024, 7, 1), 0.05, 0.0)
        start, end = date(2024, 6, 1), date(2024, 7, 31)
        fraction = info.accrual_fraction(start, end, 0.0, 0.1)
        expected = (30 * 1.0 + 30 * 0.5) / 60
        assert fraction == pytest.approx(expected)
        assert info.accrual_fraction(date(2024, 8, 1), date(2024, 9, 1), 0.0, 0.1) == pytest.approx(0.5)
        assert info.accrual_fraction(end, start, 0.0, 0.1) == 0.0

    def test_default_settlement_pv(self):
        """Test pending settlements are discounted to their payment dates."""
        as_of = date(2024, 3, 20)
        info = BasketDefaultInfo()
        info.add_default(date(2024, 3, 1), 0.05, 0.03)
        info.add_settlement(date(2024, 4, 19), 0.05, 0.03)
        curve = DiscountCurve(as_of, 0.0)
        pv = info.default_settlement_pv(as_of, as_of, date(2029, 3, 20), curve, 0.0, 0.1)
        assert pv == pytest.approx(0.5)
        with_recovery = info.default_settlement_pv(as_of, as_of, date(2029, 3, 20), curve, 0.0, 0.1,
                                                   include_loss=False, include_recovery=True)
        assert with_recovery == 0.0
        settled = info.default_settlement_pv(as_of, date(2024, 5, 1), date(2029, 3, 20), curve, 0.0, 0.1)
        assert settled == 0.0

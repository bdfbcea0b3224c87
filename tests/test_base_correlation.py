"""Tests for base_correlation.py - base correlation curve and tranche composer."""

import pytest
import numpy as np

from tranche_basket import (
    BaseCorrelationBasketEngine,
    BaseCorrelationCurve,
    BasketConfig,
    PricerEvaluator,
    SingleFactorCorrelation,
    StrikeMethod,
    TranchePricer,
    UnsupportedOperationError,
    ValidationError,
)

from conftest import MATURITY, build_pool


class CountingCurve(BaseCorrelationCurve):
    """Base correlation curve recording how often correlations are resolved."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def get_correlations(self, *args, **kwargs):
        self.calls += 1
        return super().get_correlations(*args, **kwargs)


@pytest.fixture
def skew():
    return BaseCorrelationCurve([0.03, 0.07, 0.1, 0.15, 0.3], [0.15, 0.25, 0.32, 0.4, 0.55])


@pytest.fixture
def composer(engine, skew, discount_curve):
    return BaseCorrelationBasketEngine(engine, skew, 0.03, 0.07, discount_curve)


class TestBaseCorrelationCurve:
    """Tests for BaseCorrelationCurve."""

    def test_interpolation(self, skew):
        assert skew.correlation(0.07) == pytest.approx(0.25)
        assert skew.correlation(0.05) == pytest.approx(0.20)

    def test_flat_extrapolation(self, skew):
        assert skew.correlation(0.01) == pytest.approx(0.15)
        assert skew.correlation(0.9) == pytest.approx(0.55)

    def test_single_strike(self):
        curve = BaseCorrelationCurve([0.1], [0.3])
        assert curve.correlation(0.02) == pytest.approx(0.3)
        assert curve.correlation(0.5) == pytest.approx(0.3)

    def test_validation(self):
        with pytest.raises(ValidationError):
            BaseCorrelationCurve([0.03, 0.07], [0.2])
        with pytest.raises(ValidationError, match="increasing"):
            BaseCorrelationCurve([0.07, 0.03], [0.2, 0.3])
        with pytest.raises(ValidationError):
            BaseCorrelationCurve([0.03, 0.07], [0.2, 1.3])

    def test_bump_changes_version(self, skew):
        """Test bumping shifts correlations, clamps to [0, 1] and bumps the version."""
        version = skew.version
        skew.bump(0.5)
        assert skew.version == version + 1
        assert skew.correlation(0.3) == pytest.approx(1.0)
        assert skew.correlation(0.03) == pytest.approx(0.65)

    def test_unscaled_strike(self, engine, skew, discount_curve):
        pricer = TranchePricer(engine, 0.0, 0.07, discount_curve)
        assert skew.strike([pricer])[0] == pytest.approx(0.07)

    def test_expected_loss_strike(self, engine, skew, discount_curve):
        pricer = TranchePricer(engine, 0.0, 0.07, discount_curve)
        el = engine.basket_loss(engine.start, engine.maturity)
        strike = skew.strike([pricer], StrikeMethod.EXPECTED_LOSS)[0]
        assert strike == pytest.approx(0.07 / el)
        pv_strike = skew.strike([pricer], StrikeMethod.EXPECTED_LOSS_PV)[0]
        assert pv_strike > strike

    def test_expected_loss_pv_needs_discount(self, engine, skew):
        pricer = TranchePricer(engine, 0.0, 0.07, None)
        with pytest.raises(ValidationError, match="discount curve"):
            skew.strike([pricer], StrikeMethod.EXPECTED_LOSS_PV)

    def test_strike_evaluator(self, engine, discount_curve):
        curve = BaseCorrelationCurve([0.1], [0.3], strike_evaluator=lambda p: 2 * p.detachment)
        pricer = TranchePricer(engine, 0.0, 0.07, discount_curve)
        assert curve.strike([pricer])[0] == pytest.approx(0.14)


class TestComposer:
    """Tests for BaseCorrelationBasketEngine pricing."""

    def test_validation(self, engine, skew):
        with pytest.raises(ValidationError):
            BaseCorrelationBasketEngine(engine, skew, 0.07, 0.03)
        with pytest.raises(ValidationError, match="precomputed"):
            BaseCorrelationBasketEngine(engine, None, 0.03, 0.07, dp_correlation=0.3)
        with pytest.raises(ValidationError):
            BaseCorrelationBasketEngine(engine, None, 0.03, 0.07, ap_correlation=0.2, dp_correlation=1.2)

    def test_equity_matches_flat_engine(self, engine, make_engine, skew, discount_curve):
        """Test an equity tranche prices at the detachment's base correlation."""
        composer = BaseCorrelationBasketEngine(engine, skew, 0.0, 0.07, discount_curve)
        pool = build_pool()
        flat = make_engine(pool, SingleFactorCorrelation(pool.names, np.sqrt(skew.correlation(0.07))))
        expected = TranchePricer(flat, 0.0, 0.07, discount_curve).expected_loss()
        assert TranchePricer(composer, 0.0, 0.07, discount_curve).expected_loss() == pytest.approx(expected)

    def test_difference_of_equity_tranches(self, composer, skew, make_engine, discount_curve):
        pool = build_pool()

        def equity_loss(level):
            corr = SingleFactorCorrelation(pool.names, np.sqrt(skew.correlation(level)))
            flat = make_engine(pool, corr, loss_levels=(0.0, level))
            return flat.accumulated_loss(MATURITY, 0.0, level)

        expected = equity_loss(0.07) - equity_loss(0.03)
        assert composer.accumulated_loss(MATURITY, 0.03, 0.07) == pytest.approx(expected)

    def test_resolved_correlations(self, composer, skew):
        assert composer.ap_correlation == pytest.approx(skew.correlation(0.03))
        assert composer.dp_correlation == pytest.approx(skew.correlation(0.07))
        assert composer.correlation_ready
        assert composer.ap_strike == pytest.approx(0.03)
        assert composer.dp_strike == pytest.approx(0.07)

    def test_equity_strike_is_zero(self, engine, skew, discount_curve):
        composer = BaseCorrelationBasketEngine(engine, skew, 0.0, 0.07, discount_curve)
        assert composer.ap_strike == 0.0

    def test_calc_loss_distribution(self, composer):
        table = composer.calc_loss_distribution(False, MATURITY, [0.03, 0.07, 0.1])
        assert table.shape == (3, 2)
        np.testing.assert_allclose(table[:, 0], [0.03, 0.07, 0.1])
        assert np.all(np.diff(table[:, 1]) > 0)

    def test_precomputed_correlations(self, engine, discount_curve):
        composer = BaseCorrelationBasketEngine(engine, None, 0.03, 0.07, discount_curve,
                                               ap_correlation=0.2, dp_correlation=0.3)
        assert composer.ap_correlation == pytest.approx(0.2)
        assert composer.dp_correlation == pytest.approx(0.3)
        with pytest.raises(UnsupportedOperationError):
            composer.calculate_strike(False)

    def test_own_correlation_is_read_only(self, composer, discount_curve):
        """Test the composer rejects direct correlation changes and keeps its prices."""
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
        before = pricer.protection_pv()
        with pytest.raises(UnsupportedOperationError, match="base correlation curve"):
            composer.set_factor(0.5)
        with pytest.raises(UnsupportedOperationError, match="base correlation curve"):
            composer.correlation = composer.calculator.correlation
        assert composer.correlation is not None
        assert pricer.protection_pv() == pytest.approx(before, rel=1e-12)


class TestSubBasketAliasing:
    """Tests for sharing one sub-basket between attachment and detachment."""

    def test_equity_tranche_aliased(self, engine, skew, discount_curve):
        composer = BaseCorrelationBasketEngine(engine, skew, 0.0, 0.07, discount_curve)
        assert composer.attachment_basket is composer.detachment_basket

    def test_flat_curve_aliased(self, engine, discount_curve):
        composer = BaseCorrelationBasketEngine(engine, BaseCorrelationCurve([0.1], [0.3]),
                                               0.03, 0.07, discount_curve)
        assert composer.attachment_basket is composer.detachment_basket
        assert composer.detachment_basket.loss_levels_contain(0.03, 0.07)

    def test_skewed_curve_not_aliased(self, composer):
        assert composer.attachment_basket is not composer.detachment_basket

    def test_duplicate_keeps_aliasing(self, engine, discount_curve):
        composer = BaseCorrelationBasketEngine(engine, BaseCorrelationCurve([0.1], [0.3]),
                                               0.03, 0.07, discount_curve)
        composer.update_correlations()
        other = composer.duplicate()
        assert other.attachment_basket is other.detachment_basket
        assert other.detachment_basket is not composer.detachment_basket


class TestCorrelationCaching:
    """Tests for resolving correlations once per reset cycle."""

    def _composer(self, engine, discount_curve, rescale_strike=False):
        curve = CountingCurve([0.03, 0.07], [0.2, 0.3])
        composer = BaseCorrelationBasketEngine(engine, curve, 0.03, 0.07, discount_curve,
                                               rescale_strike=rescale_strike)
        return curve, composer, TranchePricer(composer, 0.03, 0.07, discount_curve)

    def test_resolved_once(self, engine, discount_curve):
        curve, composer, pricer = self._composer(engine, discount_curve)
        pricer.protection_pv()
        pricer.risky_annuity()
        assert curve.calls == 2
        composer.reset()
        pricer.protection_pv()
        assert curve.calls == 2

    def test_rescale_strike_resolves_after_reset(self, engine, discount_curve):
        curve, composer, pricer = self._composer(engine, discount_curve, rescale_strike=True)
        pricer.protection_pv()
        assert curve.calls == 2
        composer.reset()
        pricer.protection_pv()
        assert curve.calls == 4

    def test_bumped_curve_resolves(self, engine, discount_curve):
        """Test a curve bump is picked up at the next reset cycle."""
        curve, composer, pricer = self._composer(engine, discount_curve)
        before = pricer.expected_loss()
        curve.bump(0.1)
        composer.reset()
        after = pricer.expected_loss()
        assert curve.calls == 4
        assert composer.dp_correlation == pytest.approx(0.4)
        assert after != pytest.approx(before)


class TestLockCorrelations:
    """Tests for lock_correlations."""

    def test_locked_ignores_new_curve(self, composer, discount_curve, skew):
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
        before = pricer.expected_loss()
        with composer.lock_correlations():
            composer.base_correlation = BaseCorrelationCurve([0.1], [0.8])
            assert pricer.expected_loss() == pytest.approx(before)
        assert composer.base_correlation is skew
        assert not composer.correlation_ready
        assert pricer.expected_loss() == pytest.approx(before)

    def test_restored_on_error(self, composer, skew):
        with pytest.raises(RuntimeError):
            with composer.lock_correlations():
                composer.base_correlation = BaseCorrelationCurve([0.1], [0.8])
                raise RuntimeError("boom")
        assert composer.base_correlation is skew
        assert composer.dp_correlation == pytest.approx(skew.correlation(0.07))

    def test_new_curve_used_without_lock(self, composer, discount_curve):
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
        composer.base_correlation = BaseCorrelationCurve([0.1], [0.8])
        assert composer.dp_correlation == pytest.approx(0.8)
        assert np.isfinite(pricer.expected_loss())


class TestComposerSensitivities:
    """Tests for bumped prices and correlation deltas of the composer."""

    def _curves(self, composer):
        return [sc.bumped(0.002) for sc in composer.survival_curves]

    def test_additive_path_matches_generic(self, composer, discount_curve):
        """Test the equity-tranche decomposition agrees with re-pricing every row."""
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve, premium=0.05)
        curves = self._curves(composer)
        fast = composer.bumped_pvs([PricerEvaluator(pricer, "pv")], curves)
        generic = composer.bumped_pvs([PricerEvaluator(pricer, "pv", is_additive=False)], curves)
        assert fast.shape == (6, 1)
        np.testing.assert_allclose(fast, generic, rtol=1e-8, atol=1e-10)

    def test_rebuilt_sensitivity_baskets(self, make_engine, skew, discount_curve):
        """Test rebuilding the sub-baskets from the calculator gives the same rows."""
        tables = []
        for consistent in (True, False):
            calculator = make_engine(config=BasketConfig(consistent_sensitivity=consistent))
            composer = BaseCorrelationBasketEngine(calculator, skew, 0.03, 0.07, discount_curve)
            pricer = TranchePricer(composer, 0.03, 0.07, discount_curve, premium=0.05)
            tables.append(composer.bumped_pvs([PricerEvaluator(pricer, "pv")], self._curves(composer)))
        np.testing.assert_allclose(tables[0], tables[1], rtol=1e-12)

    def test_rescaled_strikes_with_unscaled_method(self, engine, skew, discount_curve):
        """Test re-resolved unscaled strikes give the fixed-correlation prices."""
        fixed = BaseCorrelationBasketEngine(engine, skew, 0.03, 0.07, discount_curve)
        rescaled = BaseCorrelationBasketEngine(engine, skew, 0.03, 0.07, discount_curve, rescale_strike=True)
        curves = self._curves(fixed)
        tables = []
        for composer in (fixed, rescaled):
            pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
            tables.append(composer.bumped_pvs([PricerEvaluator(pricer, "protection_pv")], curves))
        np.testing.assert_allclose(tables[0], tables[1], rtol=1e-8)

    def test_base_correlation_delta(self, composer, discount_curve):
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
        evaluator = PricerEvaluator(pricer, "protection_pv")
        base = evaluator.evaluate()
        delta = composer.base_correlation_delta(evaluator)
        assert delta != 0.0
        assert np.isfinite(delta)
        assert evaluator.evaluate() == pytest.approx(base)
        assert composer.dp_correlation == pytest.approx(0.25)

    def test_unscaled_delta(self, composer, discount_curve):
        pricer = TranchePricer(composer, 0.03, 0.07, discount_curve)
        evaluator = PricerEvaluator(pricer, "protection_pv")
        scaled = composer.base_correlation_delta(evaluator, scaled=True)
        raw = composer.base_correlation_delta(evaluator, scaled=False)
        assert raw == pytest.approx(0.01 * scaled)

    def test_delta_rejects_foreign_evaluator(self, composer, engine, discount_curve):
        evaluator = PricerEvaluator(TranchePricer(engine, 0.03, 0.07, discount_curve))
        with pytest.raises(ValidationError):
            composer.base_correlation_delta(evaluator)

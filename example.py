#!/usr/bin/env python3
"""Example usage of the tranche basket engines.

This script demonstrates:
1. Building a credit pool from flat hazard curves
2. Pricing tranches with the semi-analytic engine
3. Comparing with the Monte Carlo engine
4. Pricing a mezzanine tranche with base correlation
5. Per-name spread and jump-to-default sensitivities
"""

import logging
from datetime import date

from tranche_basket import (
    BaseCorrelationBasketEngine,
    BaseCorrelationCurve,
    Copula,
    CreditPool,
    DiscountCurve,
    MonteCarloBasketEngine,
    PricerEvaluator,
    RecoveryCurve,
    SemiAnalyticBasketEngine,
    SingleFactorCorrelation,
    SurvivalCurve,
    TranchePricer,
    bumped_pvs_frame,
    collect_sensitivities,
    create_sensitivity_report,
    jump_to_default,
    spread_sensitivities,
)

AS_OF = date(2024, 3, 20)
MATURITY = date(2029, 3, 20)


def create_sample_pool() -> CreditPool:
    """Create a sample basket of 20 names with spread dispersion."""
    curves = []
    for i in range(20):
        hazard = 0.005 + 0.0015 * i
        curves.append(SurvivalCurve.flat(AS_OF, hazard, name=f"Name_{i:02d}",
                                         recovery_curve=RecoveryCurve(0.4)))
    return CreditPool.from_curves([10_000_000] * 20, curves)


def main():
    """Run the example."""
    logging.basicConfig(level=logging.INFO)
    print("=" * 70)
    print("TRANCHE BASKET - EXAMPLE")
    print("=" * 70)

    pool = create_sample_pool()
    discount = DiscountCurve(AS_OF, 0.03)
    correlation = SingleFactorCorrelation(pool.names, 0.3 ** 0.5)
    tranches = [(0.0, 0.03), (0.03, 0.07), (0.07, 0.10), (0.10, 0.15), (0.15, 0.30)]

    print("\n1. Credit pool...")
    print(f"   Names: {len(pool)}")
    print(f"   Total principal: ${pool.total_principal():,.0f}")

    print("\n2. Semi-analytic engine (correlation 30%)...")
    engine = SemiAnalyticBasketEngine(AS_OF, AS_OF, MATURITY, pool, Copula(), correlation)
    for ap, dp in tranches:
        pricer = TranchePricer(engine, ap, dp, discount, premium=0.01)
        print(f"   [{ap:.0%}, {dp:.0%}]  EL {pricer.expected_loss():.4f}  "
              f"break-even {pricer.break_even_premium() * 1e4:,.0f} bp")
    print(f"   Basket EL: {engine.basket_loss(engine.start, MATURITY):.4%}")

    print("\n3. Monte Carlo engine (50,000 scenarios)...")
    mc_engine = MonteCarloBasketEngine(AS_OF, AS_OF, MATURITY, pool, Copula(), correlation,
                                       sample_size=50000, seed=42)
    for ap, dp in tranches:
        pricer = TranchePricer(mc_engine, ap, dp, discount)
        print(f"   [{ap:.0%}, {dp:.0%}]  EL {pricer.expected_loss():.4f}")

    print("\n4. Base correlation mezzanine [3%, 7%]...")
    base_corr = BaseCorrelationCurve([0.03, 0.07, 0.10, 0.15, 0.30],
                                     [0.20, 0.28, 0.34, 0.42, 0.60])
    composer = BaseCorrelationBasketEngine(engine, base_corr, 0.03, 0.07, discount)
    mezz = TranchePricer(composer, 0.03, 0.07, discount, premium=0.02)
    print(f"   Attachment correlation: {composer.ap_correlation:.4f}")
    print(f"   Detachment correlation: {composer.dp_correlation:.4f}")
    print(f"   Expected loss: {mezz.expected_loss():.4f}")
    print(f"   PV: ${mezz.pv():,.0f}")

    print("\n5. Sensitivities of the mezzanine tranche...")
    evaluators = [PricerEvaluator(mezz, "pv"), PricerEvaluator(mezz, "protection_pv")]
    deltas = spread_sensitivities(composer, evaluators, bump=0.001)
    print(deltas.head(5).to_string())

    jtd = jump_to_default(composer, evaluators)
    print("\n   Jump to default:")
    print(jtd.head(5).to_string())

    bumped = [sc.bumped(0.001) for sc in composer.survival_curves]
    frame = bumped_pvs_frame(composer, evaluators[:1], bumped)
    report = create_sensitivity_report(collect_sensitivities(frame), composer)
    print("\n   Largest spread deltas:")
    print(report.head(5).to_string(index=False))

    print("\n" + "=" * 70)
    print("EXAMPLE COMPLETE")
    print("=" * 70)


if __name__ == "__main__":
    main()

"""Unit tests for the five-factor scoring model."""

import numpy as np
import pytest

from equity_optimizer.config import STRATEGIES, Strategy, get_strategy
from equity_optimizer.constants import FACTOR_NAMES
from equity_optimizer.errors import ConfigurationError, DataUnavailable
from equity_optimizer.models.factor_engine import FactorEngine, MetricRule
from equity_optimizer.models.fundamentals import NUMERIC_FIELDS, RawFundamentals, clean_number


@pytest.fixture
def full_raw():
    return RawFundamentals(
        ticker="AAA",
        price=100.0,
        pe_ratio=15.0,
        pb_ratio=3.0,
        dividend_yield=2.0,
        profit_margin=20.0,
        return_on_equity=18.0,
        debt_to_equity=0.5,
        beta=1.1,
        volatility=25.0,
        fifty_two_week_high=120.0,
        revenue_growth=10.0,
        earnings_growth=12.0,
        fifty_two_week_change=15.0,
        analyst_rating=2.0,
        price_target=115.0,
        sector="Technology",
    )


class TestMetricRule:

    def test_linear_mapping_lower_is_better(self):
        rule = MetricRule("pe_ratio", best=8.0, worst=40.0, positive_only=True)
        assert rule.score(24.0) == pytest.approx(50.0)
        assert rule.score(8.0) == pytest.approx(100.0)

    def test_clamped(self):
        rule = MetricRule("revenue_growth", best=25.0, worst=-10.0)
        assert rule.score(80.0) == 100.0
        assert rule.score(-50.0) == 0.0

    def test_non_positive_multiple_scores_zero(self):
        rule = MetricRule("pe_ratio", best=8.0, worst=40.0, positive_only=True)
        assert rule.score(-5.0) == 0.0


class TestFactorEngine:
    """Test suite for FactorEngine."""

    def test_full_data_scores_every_factor(self, full_raw):
        score = FactorEngine("value").score(full_raw)

        assert all(score.sub_scores()[f] is not None for f in FACTOR_NAMES)
        assert 0.0 <= score.composite <= 100.0
        assert sum(score.applied_weights.values()) == pytest.approx(1.0, abs=1e-9)
        assert score.applied_weights == pytest.approx(STRATEGIES["value"].weights)
        assert score.sector == "Technology"

    def test_composite_is_weighted_sum(self, full_raw):
        score = FactorEngine("balanced").score(full_raw)
        expected = sum(score.applied_weights[f] * score.sub_scores()[f] for f in FACTOR_NAMES)
        assert score.composite == pytest.approx(expected)

    def test_absent_is_not_zero(self):
        engine = FactorEngine()
        missing_pe = engine.score(RawFundamentals(ticker="A", pb_ratio=1.0))
        zero_pe = engine.score(RawFundamentals(ticker="B", pe_ratio=0.0, pb_ratio=1.0))

        assert missing_pe.value == pytest.approx(100.0)
        assert zero_pe.value == pytest.approx(50.0)

    def test_absent_factor_renormalizes_weights(self):
        score = FactorEngine("value").score(RawFundamentals(ticker="GRO", revenue_growth=25.0))

        assert score.value is None
        assert score.growth == pytest.approx(100.0)
        assert score.applied_weights == {"growth": pytest.approx(1.0)}
        assert score.composite == pytest.approx(100.0)

    def test_partial_factors_weights_sum_to_one(self):
        raw = RawFundamentals(ticker="P", pe_ratio=20.0, beta=0.8, revenue_growth=5.0)
        score = FactorEngine("value").score(raw)

        assert set(score.applied_weights) == {"value", "risk", "growth"}
        assert sum(score.applied_weights.values()) == pytest.approx(1.0, abs=1e-9)
        assert score.applied_weights["value"] == pytest.approx(0.40 / 0.65)

    def test_no_data_raises(self):
        with pytest.raises(DataUnavailable):
            FactorEngine().score(RawFundamentals(ticker="EMPTY", sector="Energy"))

    def test_random_inputs_stay_in_range(self):
        rng = np.random.default_rng(42)
        engine = FactorEngine("growth")
        for i in range(200):
            values = {}
            for name in NUMERIC_FIELDS:
                if rng.random() < 0.5:
                    values[name] = float(rng.normal(0, 50))
            raw = RawFundamentals(ticker=f"R{i}", **values)
            try:
                score = engine.score(raw)
            except DataUnavailable:
                continue
            assert 0.0 <= score.composite <= 100.0
            assert sum(score.applied_weights.values()) == pytest.approx(1.0, abs=1e-9)
            for sub in score.sub_scores().values():
                assert sub is None or 0.0 <= sub <= 100.0

    def test_strategy_override_per_call(self, full_raw):
        engine = FactorEngine("value")
        assert engine.score(full_raw, Strategy.GROWTH).strategy == "growth"

    def test_dcf_upside_enters_value_factor(self, full_raw):
        raw = RawFundamentals(
            ticker="DCF",
            price=30.0,
            free_cash_flow=10e9,
            shares_outstanding=5e9,
            total_debt=20e9,
            total_cash=30e9,
            revenue_growth=8.0,
            market_cap=250e9,
        )
        score = FactorEngine(use_dcf=True).score(raw)

        assert score.dcf_upside == pytest.approx((41.9051 / 30.0 - 1) * 100, abs=0.1)
        assert "dcf_upside" in score.metric_scores

    def test_invalid_dcf_leaves_field_absent(self):
        raw = RawFundamentals(ticker="NEG", price=30.0, free_cash_flow=-1e9, shares_outstanding=1e9, pe_ratio=12.0)
        score = FactorEngine(use_dcf=True).score(raw)
        assert score.dcf_upside is None
        assert "dcf_upside" not in score.metric_scores

    def test_score_many_skips_unscorable(self, full_raw):
        scores = FactorEngine().score_many([full_raw, RawFundamentals(ticker="EMPTY")])
        assert [s.ticker for s in scores] == ["AAA"]

    def test_rank_frame_and_audit(self, full_raw):
        engine = FactorEngine()
        weak = RawFundamentals(ticker="WEAK", pe_ratio=45.0, revenue_growth=-15.0, beta=2.2)
        strong = RawFundamentals(ticker="STRONG", pe_ratio=8.0, revenue_growth=30.0, beta=0.5)
        scores = engine.score_many([weak, full_raw, strong])

        ranked = engine.rank_frame(scores)
        assert ranked["Ticker"].tolist()[0] == "STRONG"
        assert ranked["Ticker"].tolist()[-1] == "WEAK"

        report = engine.audit_report(scores, "strong")
        assert report["rank"] == 1
        assert report["rank_percentile"] == pytest.approx(1.0)
        assert "Value" in report["strengths"]

        with pytest.raises(ValueError):
            engine.audit_report(scores, "MISSING")


class TestStrategies:

    @pytest.mark.parametrize("name", list(STRATEGIES))
    def test_weights_sum_to_one(self, name):
        assert sum(get_strategy(name).weights.values()) == pytest.approx(1.0, abs=1e-9)

    def test_value_weights(self):
        assert get_strategy("value").weights == {
            "value": 0.40, "quality": 0.30, "risk": 0.15, "growth": 0.10, "momentum": 0.05,
        }

    def test_unknown_strategy_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_strategy("momentum")
        with pytest.raises(ConfigurationError):
            FactorEngine("turbo")


class TestRawFundamentals:

    @pytest.mark.parametrize("value", [None, float("nan"), float("inf"), "n/a", True])
    def test_clean_number_rejects_non_numbers(self, value):
        assert clean_number(value) is None

    def test_from_mapping_keeps_zero(self):
        raw = RawFundamentals.from_mapping("aapl", {"pe_ratio": 0, "pb_ratio": None, "sector": " Technology "})
        assert raw.ticker == "AAPL"
        assert raw.pe_ratio == 0.0
        assert raw.pb_ratio is None
        assert raw.sector == "Technology"
        assert raw.present_fields() == ["pe_ratio"]

    def test_derived_metrics(self):
        raw = RawFundamentals(ticker="X", price=80.0, fifty_two_week_high=100.0, price_target=100.0)
        assert raw.drawdown_from_high == pytest.approx(-20.0)
        assert raw.target_upside == pytest.approx(25.0)

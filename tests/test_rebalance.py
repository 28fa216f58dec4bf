"""
Tests for the monthly rebalance engine.

The store is real (in-memory SQLite); market data, scoring and the benchmark
are faked so each scenario controls exactly which holdings get flagged.
"""

from datetime import date, datetime, timedelta

import pytest

from conftest import FakeBenchmark, FakeEngine, FakeProvider, make_score
from equity_optimizer.config import Config, PortfolioConstraints
from equity_optimizer.errors import FetchTimeout, PersistenceConflict
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.models.portfolio import Holding, Portfolio, RebalanceState, TradeAction, TradeOrder
from equity_optimizer.pipeline.rebalance import (
    REASON_BENCHMARK,
    REASON_DETERIORATION,
    REASON_REPLACEMENT,
    REASON_SCORE_DROP,
    RebalanceEngine,
    build_trade_plan,
    evaluate_sell_flags,
    find_buy_candidates,
)
from equity_optimizer.pipeline.screening import ScreeningPipeline
from equity_optimizer.storage.locks import PortfolioLockRegistry

HELD = [f"H{i}" for i in range(8)]
CANDIDATES = [f"C{i}" for i in range(7)]
AS_OF = date.today() + timedelta(days=31)
THROTTLED = {"min_delay": 1.0, "batch_size": 4, "inter_batch_delay": 0.0, "max_retries": 0}


@pytest.fixture
def constraints():
    return PortfolioConstraints(
        target_holdings=10,
        min_position_pct=0.02,
        max_position_pct=0.15,
        max_sector_pct=0.5,
        max_monthly_turnover=10,
    )


@pytest.fixture
def market():
    """Held names at $100 across four sectors; candidates at $50, each in its own sector."""
    data = {}
    for i, ticker in enumerate(HELD):
        data[ticker] = {"price": 100.0, "beta": 1.0, "sector": f"Held{i // 2}",
                        "debt_to_equity": 0.5, "profit_margin": 20.0}
    for i, ticker in enumerate(CANDIDATES):
        data[ticker] = {"price": 50.0, "beta": 1.0, "sector": f"New{i}",
                        "debt_to_equity": 0.5, "profit_margin": 20.0}
    return data


@pytest.fixture
def portfolio_id(store, constraints):
    """$100k portfolio: eight $10k holdings bought at score 70, $20k cash."""
    portfolio = store.create_portfolio("Review", 100_000.0, constraints=constraints, portfolio_id="review")
    orders = [
        TradeOrder(t, TradeAction.BUY, 100, 100.0, "Initial construction", score=70.0, sector=f"Held{i // 2}")
        for i, t in enumerate(HELD)
    ]
    store.apply_trade_batch(portfolio.id, orders, portfolio.version)
    return portfolio.id


@pytest.fixture
def make_engine(store, make_scheduler, market):
    def factory(composites, benchmark=None, config=None, locks=None, data=None, fetch=None):
        scheduler = make_scheduler(**(fetch or {"min_delay": 0.0, "max_retries": 0}))
        pipeline = ScreeningPipeline(FakeProvider(data or market), scheduler, FakeEngine(composites))
        return RebalanceEngine(
            store,
            pipeline,
            benchmark=benchmark if benchmark is not None else FakeBenchmark(0.0),
            config=config or Config(buy_percentile=0),
            locks=locks,
        )
    return factory


def composites(dropped=(), held=70.0, dropped_to=50.0, candidates=None):
    scores = {t: (dropped_to if t in dropped else held) for t in HELD}
    if candidates is None:
        candidates = {t: 80.0 + i for i, t in enumerate(CANDIDATES)}
    scores.update(candidates)
    return scores


class TestRebalanceEngine:
    """End-to-end review cycles against the in-memory store."""

    def test_replaces_dropped_holdings(self, make_engine, store, portfolio_id):
        engine = make_engine(composites(dropped=("H0", "H1", "H2")))

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)

        assert result.state == RebalanceState.APPLIED
        assert [f.ticker for f in result.sell_flags] == ["H0", "H1", "H2"]
        assert all(REASON_SCORE_DROP in f.reasons for f in result.sell_flags)
        assert [o.ticker for o in result.plan.sells] == ["H0", "H1", "H2"]
        assert [o.ticker for o in result.plan.buys] == ["C6", "C5", "C4"]
        assert [o.shares for o in result.plan.buys] == [300, 300, 300]
        assert result.plan.buys[0].reason == "Replaces H0"

        after = store.load_portfolio(portfolio_id)
        assert set(after.holdings) == set(HELD[3:]) | {"C4", "C5", "C6"}
        assert after.cash == pytest.approx(5_000.0)
        assert after.holdings["C6"].entry_score == 86.0
        assert len(store.transactions(portfolio_id)) == 14

        snapshot = store.latest_snapshot(portfolio_id)
        assert snapshot.snapshot_date == AS_OF
        assert snapshot.total_value == pytest.approx(100_000.0)
        assert snapshot.holdings_count == 8

        constraints = after.constraints
        assert all(w <= constraints.max_sector_pct + 1e-9 for w in after.sector_weights().values())
        assert all(w <= constraints.max_position_pct + 1e-9 for w in after.weights().values())
        assert len(result.plan.orders) <= constraints.max_monthly_turnover

    def test_second_run_is_empty(self, make_engine, store, portfolio_id):
        engine = make_engine(composites(dropped=("H0", "H1", "H2")))
        engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)
        holdings = set(store.load_portfolio(portfolio_id).holdings)

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)

        assert result.plan.is_empty
        assert result.state == RebalanceState.APPLIED
        assert set(store.load_portfolio(portfolio_id).holdings) == holdings
        assert len(store.transactions(portfolio_id)) == 14

    def test_no_flags_means_no_trades(self, make_engine, store, portfolio_id):
        engine = make_engine(composites(candidates={t: 80.0 for t in CANDIDATES}))

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)

        assert result.plan.is_empty
        assert result.buy_candidates == []
        assert len(store.transactions(portfolio_id)) == 8

    def test_small_drop_not_flagged(self, make_engine, portfolio_id):
        engine = make_engine(composites(dropped=("H0",), dropped_to=60.0, candidates={}))
        result = engine.run(portfolio_id, [], as_of=AS_OF)
        assert result.sell_flags == []

    def test_dry_run_writes_nothing(self, make_engine, store, portfolio_id):
        before = store.load_portfolio(portfolio_id)
        engine = make_engine(composites(dropped=("H0",)))

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF, dry_run=True)

        assert result.state == RebalanceState.VALIDATED
        assert len(result.plan.orders) == 2
        assert store.load_portfolio(portfolio_id).version == before.version
        assert store.latest_snapshot(portfolio_id) is None

    def test_rejected_plan_leaves_store_untouched(self, make_engine, market, store, portfolio_id):
        data = dict(market)
        data["H7"] = dict(market["H7"], price=200.0)
        before = store.load_portfolio(portfolio_id)
        engine = make_engine(composites(dropped=("H0", "H1")), data=data)

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)

        assert result.plan.rejected
        assert result.plan.rejection.invariant == "position_max"
        assert result.plan.rejection.tickers == ("H7",)
        assert result.state == RebalanceState.REJECTED
        after = store.load_portfolio(portfolio_id)
        assert after.version == before.version
        assert set(after.holdings) == set(HELD)
        assert len(store.transactions(portfolio_id)) == 8
        assert store.latest_snapshot(portfolio_id) is None

    def test_expired_deadline_aborts_without_writes(self, make_engine, store, portfolio_id):
        before = store.load_portfolio(portfolio_id)
        engine = make_engine(composites(dropped=("H0",)), fetch=THROTTLED)

        # All 15 tickers are fetched by t=15; the deadline then blocks validation
        with pytest.raises(FetchTimeout):
            engine.run(portfolio_id, CANDIDATES, as_of=AS_OF, deadline=15.0)

        assert store.load_portfolio(portfolio_id).version == before.version
        assert len(store.transactions(portfolio_id)) == 8

    def test_deadline_during_universe_fetch_uses_partial_data(self, make_engine, store, portfolio_id):
        engine = make_engine(composites(dropped=("H0",)), fetch=THROTTLED)

        # Holdings finish at t=8, the first universe batch at t=12
        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF, deadline=12.0)

        assert result.state == RebalanceState.APPLIED
        assert result.partial
        assert all(isinstance(result.errors[t], FetchTimeout) for t in ("C4", "C5", "C6"))
        assert [o.ticker for o in result.plan.sells] == ["H0"]
        assert [o.ticker for o in result.plan.buys] == ["C3"]
        after = store.load_portfolio(portfolio_id)
        assert "C3" in after.holdings
        assert "H0" not in after.holdings

    def test_benchmark_outage_still_completes(self, make_engine, store, portfolio_id):
        engine = make_engine(composites(dropped=("H0",)), benchmark=FakeBenchmark(error=RuntimeError("down")))

        result = engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)

        assert result.state == RebalanceState.APPLIED
        assert not result.benchmark_available
        assert store.latest_snapshot(portfolio_id).alpha_pct is None

    def test_missing_ticker_dropped_not_fatal(self, make_engine, market, portfolio_id):
        data = {t: v for t, v in market.items() if t != "H7"}
        engine = make_engine(composites(dropped=("H0",)), data=data)

        result = engine.run(portfolio_id, CANDIDATES + ["NOPE"], as_of=AS_OF)

        assert result.state == RebalanceState.APPLIED
        assert "H7" not in result.rescored
        assert {"H7", "NOPE"} <= set(result.errors)

    def test_deteriorated_fundamentals_flagged(self, make_engine, market, store, constraints):
        baseline = RawFundamentals(ticker="H0", debt_to_equity=0.5, profit_margin=20.0)
        store.record_scores([make_score("H0", 70.0, fundamentals=baseline)], score_date=date(2020, 1, 1))
        portfolio = store.create_portfolio("Solo", 100_000.0, constraints=constraints, portfolio_id="solo")
        store.apply_trade_batch(
            portfolio.id,
            [TradeOrder("H0", TradeAction.BUY, 100, 100.0, "Initial construction", score=70.0, sector="Held0")],
            portfolio.version,
        )
        data = dict(market)
        data["H0"] = dict(market["H0"], debt_to_equity=1.2, profit_margin=12.0)
        engine = make_engine(composites(candidates={}), data=data)

        result = engine.run("solo", [], as_of=AS_OF, dry_run=True)

        assert [f.ticker for f in result.sell_flags] == ["H0"]
        assert result.sell_flags[0].reasons == [REASON_DETERIORATION]

    def test_locked_portfolio_conflicts(self, make_engine, portfolio_id):
        locks = PortfolioLockRegistry(blocking_timeout=0.01)
        engine = make_engine(composites(), locks=locks)

        with locks.hold(portfolio_id):
            with pytest.raises(PersistenceConflict):
                engine.run(portfolio_id, CANDIDATES, as_of=AS_OF)


class TestSellCriteria:

    @pytest.fixture
    def portfolio(self, constraints):
        holdings = {
            "AAA": Holding("AAA", 100, 100.0, sector="Tech", entry_score=70.0, current_price=100.0),
            "BBB": Holding("BBB", 100, 100.0, sector="Energy", entry_score=70.0, current_price=100.0),
        }
        return Portfolio("p", "P", 30_000.0, cash=10_000.0, constraints=constraints, holdings=holdings)

    def test_score_drop_boundary(self, portfolio):
        rescored = {"AAA": make_score("AAA", 50.0), "BBB": make_score("BBB", 60.0)}
        flags = evaluate_sell_flags(portfolio, rescored, [], {}, Config())
        assert [f.ticker for f in flags] == ["AAA"]

    def test_benchmark_underperformance(self, portfolio):
        portfolio.holdings["AAA"].current_price = 95.0
        rescored = {"AAA": make_score("AAA", 70.0), "BBB": make_score("BBB", 70.0)}

        flags = evaluate_sell_flags(portfolio, rescored, [], {"AAA": 8.0, "BBB": 8.0}, Config())

        assert [f.ticker for f in flags] == ["AAA"]
        assert flags[0].reasons == [REASON_BENCHMARK]

    def test_no_benchmark_skips_test(self, portfolio):
        portfolio.holdings["AAA"].current_price = 50.0
        rescored = {"AAA": make_score("AAA", 70.0)}
        assert evaluate_sell_flags(portfolio, rescored, [], {"AAA": None}, Config()) == []

    def test_better_candidate(self, portfolio):
        rescored = {"AAA": make_score("AAA", 70.0), "BBB": make_score("BBB", 65.0)}
        flags = evaluate_sell_flags(portfolio, rescored, [make_score("NEW", 88.0)], {}, Config())
        assert [(f.ticker, f.reasons) for f in flags] == [("BBB", [REASON_REPLACEMENT])]

    def test_flags_capped_at_turnover_weakest_first(self, portfolio):
        tight = Portfolio("p", "P", 30_000.0, 10_000.0,
                          constraints=PortfolioConstraints(max_monthly_turnover=1), holdings=portfolio.holdings)
        rescored = {"AAA": make_score("AAA", 40.0), "BBB": make_score("BBB", 30.0)}
        flags = evaluate_sell_flags(tight, rescored, [], {}, Config())
        assert [f.ticker for f in flags] == ["BBB"]


class TestBuyCandidates:

    def test_no_sells_no_buys(self, constraints):
        portfolio = Portfolio("p", "P", 10_000.0, 10_000.0, constraints=constraints)
        assert find_buy_candidates(portfolio, [make_score("A", 90.0)], 0, Config(buy_percentile=0)) == []

    def test_top_decile_only(self, constraints):
        portfolio = Portfolio("p", "P", 10_000.0, 10_000.0, constraints=constraints)
        candidates = [make_score(f"S{i}", float(i), sector=f"Sec{i}") for i in range(1, 11)]

        chosen = find_buy_candidates(portfolio, candidates, 3, Config())

        assert [c.ticker for c in chosen] == ["S10"]

    def test_sector_without_headroom_skipped(self, constraints):
        holdings = {"AAA": Holding("AAA", 100, 100.0, sector="Tech", current_price=100.0)}
        portfolio = Portfolio("p", "P", 20_000.0, 10_000.0, constraints=constraints, holdings=holdings)
        candidates = [make_score("T1", 90.0, sector="Tech"), make_score("E1", 80.0, sector="Energy")]

        chosen = find_buy_candidates(portfolio, candidates, 1, Config(buy_percentile=0))

        assert [c.ticker for c in chosen] == ["E1"]


class TestTradePlan:

    def test_sell_keeps_rank_pairing_when_a_buy_is_dropped(self, constraints):
        holdings = {
            "S1": Holding("S1", 100, 100.0, sector="Old1", current_price=100.0),
            "S2": Holding("S2", 100, 100.0, sector="Old2", current_price=100.0),
        }
        portfolio = Portfolio("p", "P", 100_000.0, cash=80_000.0, constraints=constraints, holdings=holdings)
        sells = [TradeOrder(t, TradeAction.SELL, 100, 100.0, "score_drop") for t in ("S1", "S2")]
        buys = [make_score("OK", 80.0, sector="B", price=50.0), make_score("BIG", 90.0, sector="A", price=1e6)]

        plan = build_trade_plan(portfolio, sells, buys)

        assert [o.ticker for o in plan.buys] == ["OK"]
        assert plan.buys[0].shares == 300
        assert plan.buys[0].reason == "Replaces S2"
        assert plan.unpaired_sells == 1


def test_entry_date_is_recorded_at_apply(make_engine, store, portfolio_id):
    make_engine(composites(dropped=("H0",))).run(portfolio_id, CANDIDATES, as_of=AS_OF)
    entry = store.load_portfolio(portfolio_id).holdings["C6"].entry_date
    assert isinstance(entry, datetime)

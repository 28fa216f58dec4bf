"""Tests for the universe, market data merge, screening and initial construction."""

import json
from datetime import date

import pytest

import main as cli
from conftest import FakeBenchmark, FakeProvider, make_score
from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.errors import DataUnavailable, PersistenceConflict
from equity_optimizer.models.factor_engine import FactorEngine
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.pipeline.construction import construct_portfolio, plan_initial_orders
from equity_optimizer.pipeline.market_data import annualized_volatility, fetch_raw_fundamentals
from equity_optimizer.pipeline.screening import (
    ScreenFilters,
    ScreeningPipeline,
    apply_filters,
    compare_companies,
    format_market_cap,
)
from equity_optimizer.pipeline.snapshot import SnapshotExporter, build_snapshot
from equity_optimizer.pipeline.universe import SECTORS, get_universe, sector_for


class TestUniverse:

    def test_full_universe_is_unique(self):
        tickers = get_universe()
        assert len(tickers) == len(set(tickers))
        assert "AAPL" in tickers

    def test_sector_subset(self):
        assert set(get_universe(["Energy"])) == set(get_universe(["Energy", "Energy"]))
        assert sector_for("xom") == "Energy"
        assert sector_for("ZZZZ") is None

    def test_unknown_sector(self):
        with pytest.raises(ValueError):
            get_universe(["Crypto"])

    def test_sector_list(self):
        assert "Technology" in SECTORS


class TestMarketData:

    def test_merge_and_sector_fallback(self):
        provider = FakeProvider({"XOM": {"price": 110.0, "pe_ratio": 12.0, "dividend_yield": None}})

        raw = fetch_raw_fundamentals(provider, "xom")

        assert raw.ticker == "XOM"
        assert raw.price == 110.0
        assert raw.pe_ratio == 12.0
        assert raw.dividend_yield is None
        assert raw.sector == "Energy"

    def test_unknown_ticker(self):
        with pytest.raises(DataUnavailable) as exc:
            fetch_raw_fundamentals(FakeProvider(), "NOPE")
        assert exc.value.ticker == "NOPE"

    def test_no_usable_metrics(self):
        with pytest.raises(DataUnavailable):
            fetch_raw_fundamentals(FakeProvider({"EMPTY": {"sector": "Energy"}}), "EMPTY")

    def test_volatility(self):
        assert annualized_volatility([100.0, 100.0, 100.0, 100.0]) == 0.0
        assert annualized_volatility([100.0, 101.0]) is None
        assert annualized_volatility([100.0, 110.0, 99.0, 105.0]) > 0


class TestScreening:

    @pytest.fixture
    def raws(self):
        return [
            RawFundamentals("BIG", market_cap=500e9, pe_ratio=30.0, beta=1.2, sector="Technology"),
            RawFundamentals("MID", market_cap=50e9, pe_ratio=15.0, beta=0.8, dividend_yield=3.0, sector="Utilities"),
            RawFundamentals("NOPE", pe_ratio=10.0, sector="Utilities"),
        ]

    def test_market_cap_filter_excludes_missing(self, raws):
        kept = apply_filters(raws, ScreenFilters(min_market_cap=10))
        assert [r.ticker for r in kept] == ["BIG", "MID"]

    def test_combined_filters(self, raws):
        kept = apply_filters(raws, ScreenFilters(sector="utilities", max_pe=20, min_dividend_yield=2.0))
        assert [r.ticker for r in kept] == ["MID"]

    def test_limit(self, raws):
        assert len(apply_filters(raws, ScreenFilters(limit=1))) == 1

    def test_default_limit_keeps_ten_largest(self):
        raws = [RawFundamentals(f"S{i}", market_cap=(i + 1) * 1e9) for i in range(12)]
        kept = apply_filters(raws, ScreenFilters())
        assert ScreenFilters().limit == 10
        assert [r.ticker for r in kept] == [f"S{i}" for i in range(11, 1, -1)]

    def test_pipeline_collects_errors(self, make_scheduler):
        provider = FakeProvider({
            "AAA": {"price": 50.0, "pe_ratio": 12.0, "beta": 0.9, "sector": "Energy"},
            "BBB": {"price": 70.0, "revenue_growth": 20.0, "sector": "Technology"},
        })
        pipeline = ScreeningPipeline(provider, make_scheduler(min_delay=0.0, max_retries=0), FactorEngine())

        result = pipeline.run(["AAA", "BBB", "MISSING"])

        assert set(result.by_ticker()) == {"AAA", "BBB"}
        assert set(result.errors) == {"MISSING"}
        assert not result.timed_out

    def test_pipeline_applies_filters(self, make_scheduler):
        provider = FakeProvider({
            "AAA": {"price": 50.0, "pe_ratio": 12.0, "sector": "Energy"},
            "BBB": {"price": 70.0, "pe_ratio": 40.0, "sector": "Energy"},
        })
        pipeline = ScreeningPipeline(provider, make_scheduler(min_delay=0.0), FactorEngine())

        result = pipeline.run(["AAA", "BBB"], filters=ScreenFilters(max_pe=20))

        assert [s.ticker for s in result.scores] == ["AAA"]


class TestComparison:

    @pytest.fixture
    def raws(self):
        return [
            RawFundamentals("AAA", price=190.123, market_cap=3e12, pe_ratio=25.0, revenue_growth=10.0,
                            beta=1.2, fifty_two_week_change=30.0, sector="Technology", name="Alpha Inc"),
            RawFundamentals("BBB", price=40.0, market_cap=50e9, pe_ratio=-5.0, revenue_growth=40.0,
                            beta=0.7, dividend_yield=2.5, fifty_two_week_change=-4.0, sector="Healthcare"),
            RawFundamentals("CCC", price=12.0, pe_ratio=12.0, dividend_yield=3.1, fifty_two_week_change=12.0),
        ]

    def test_market_cap_format(self):
        assert format_market_cap(2.5e12) == "$2.50T"
        assert format_market_cap(45.6e9) == "$45.60B"
        assert format_market_cap(7.891e6) == "$7.89M"
        assert format_market_cap(950_000) == "$950000"
        assert format_market_cap(None) == "-"

    def test_rows_keep_input_order(self, raws):
        comparison = compare_companies(raws)

        assert [r["ticker"] for r in comparison.rows] == ["AAA", "BBB", "CCC"]
        first, _, last = comparison.rows
        assert first["name"] == "Alpha Inc"
        assert first["price"] == 190.12
        assert first["market_cap"] == "$3.00T"
        assert last["name"] == "CCC"
        assert last["sector"] == "Unknown"
        assert last["beta"] is None
        assert list(comparison.to_frame()["ticker"]) == ["AAA", "BBB", "CCC"]

    def test_category_leaders(self, raws):
        assert compare_companies(raws).summary == {
            "cheapest_by_pe": "CCC",
            "highest_growth": "BBB",
            "lowest_beta": "BBB",
            "highest_dividend": "CCC",
            "best_performer": "AAA",
            "largest_company": "AAA",
        }

    def test_missing_metrics_give_no_leader(self):
        summary = compare_companies([RawFundamentals("AAA", price=10.0), RawFundamentals("BBB", price=20.0)]).summary
        assert set(summary.values()) == {None}

    def test_pipeline_drops_unavailable(self, make_scheduler):
        provider = FakeProvider({
            "AAA": {"price": 50.0, "pe_ratio": 12.0, "sector": "Energy"},
            "BBB": {"price": 70.0, "pe_ratio": 18.0, "sector": "Energy"},
        })
        pipeline = ScreeningPipeline(provider, make_scheduler(min_delay=0.0, max_retries=0), FactorEngine())

        comparison = pipeline.compare(["aaa", "BBB", "MISSING"])

        assert [r["ticker"] for r in comparison.rows] == ["AAA", "BBB"]
        assert set(comparison.errors) == {"MISSING"}
        assert comparison.summary["cheapest_by_pe"] == "AAA"

    def test_ticker_count_bounds(self, make_scheduler):
        pipeline = ScreeningPipeline(FakeProvider(), make_scheduler(min_delay=0.0), FactorEngine())
        with pytest.raises(ValueError):
            pipeline.compare(["AAA", "aaa"])
        with pytest.raises(ValueError):
            pipeline.compare([f"T{i}" for i in range(11)])

    def test_compare_command(self, make_scheduler, monkeypatch, capsys):
        provider = FakeProvider({
            "AAA": {"price": 50.0, "pe_ratio": 12.0, "sector": "Energy"},
            "BBB": {"price": 70.0, "pe_ratio": 18.0, "sector": "Energy"},
        })
        pipeline = ScreeningPipeline(provider, make_scheduler(min_delay=0.0, max_retries=0), FactorEngine())
        monkeypatch.setattr(cli, "build_pipeline", lambda config, show_progress, use_dcf=False: pipeline)

        cli.main(["compare", "AAA", "BBB"])

        out = capsys.readouterr().out
        assert "Cheapest by P/E: AAA" in out
        assert "Largest company: -" in out

    def test_compare_command_rejects_single_ticker(self, make_scheduler, monkeypatch):
        pipeline = ScreeningPipeline(FakeProvider(), make_scheduler(min_delay=0.0), FactorEngine())
        monkeypatch.setattr(cli, "build_pipeline", lambda config, show_progress, use_dcf=False: pipeline)

        with pytest.raises(SystemExit) as exc:
            cli.main(["compare", "AAA"])
        assert exc.value.code == 1


class TestConstruction:

    @pytest.fixture
    def constraints(self):
        return PortfolioConstraints(target_holdings=4, min_position_pct=0.05, max_position_pct=0.30, max_sector_pct=0.5)

    @pytest.fixture
    def scores(self):
        return [
            make_score("T1", 90.0, sector="Technology", price=100.0),
            make_score("T2", 85.0, sector="Technology", price=100.0),
            make_score("T3", 84.0, sector="Technology", price=100.0),
            make_score("E1", 70.0, sector="Energy", price=50.0),
            make_score("H1", 60.0, sector="Healthcare", price=25.0),
            make_score("NP", 99.0, sector="Utilities", price=None),
        ]

    def test_plan_respects_caps(self, scores, constraints):
        selection, orders = plan_initial_orders(scores, 100_000.0, constraints)

        assert selection.tickers == ["T1", "T2", "E1", "H1"]
        assert all(o.value <= 30_000.0 for o in orders)
        tech = sum(o.value for o in orders if o.sector == "Technology")
        assert tech <= 50_000.0
        assert sum(o.value for o in orders) <= 100_000.0

    def test_construct_persists_portfolio_and_snapshot(self, store, scores, constraints):
        result = construct_portfolio(
            store, scores, "Starter", 100_000.0, constraints=constraints,
            portfolio_id="starter", benchmark=FakeBenchmark(2.0), as_of=date(2024, 1, 2),
        )

        loaded = store.load_portfolio("starter")
        assert set(loaded.holdings) == {"T1", "T2", "E1", "H1"}
        assert loaded.total_value == pytest.approx(100_000.0)
        assert loaded.holdings["T1"].entry_score == 90.0
        assert store.latest_snapshot("starter").holdings_count == 4
        assert result.snapshot.cumulative_return_pct == pytest.approx(0.0)
        assert len(store.score_history("T1")) == 1

    def test_construct_is_all_or_nothing(self, store, scores, constraints):
        store.create_portfolio("Existing", 1_000.0, portfolio_id="starter")

        with pytest.raises(PersistenceConflict):
            construct_portfolio(store, scores, "Starter", 100_000.0, constraints=constraints,
                                portfolio_id="starter", as_of=date(2024, 1, 2))

        existing = store.load_portfolio("starter")
        assert existing.name == "Existing"
        assert existing.holdings == {}
        assert store.transactions("starter") == []
        assert store.score_history("T1") == []
        assert store.latest_snapshot("starter") is None


class TestSnapshotExporter:

    def test_exports(self, tmp_path, store):
        portfolio = store.create_portfolio("Export", 10_000.0, portfolio_id="exp")
        snapshot = build_snapshot(portfolio, as_of=date(2024, 1, 2))
        exporter = SnapshotExporter(str(tmp_path))

        json_path = exporter.save_json(snapshot)
        csv_path = exporter.export_positions_csv(snapshot)

        data = json.loads(json_path.read_text())
        assert data["snapshot_date"] == "2024-01-02"
        assert data["total_value"] == 10_000.0
        assert csv_path.read_text().startswith("ticker,shares,price,value,weight,sector,gain_pct")

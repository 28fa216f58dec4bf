"""Unit tests for the constrained selector."""

import pytest

from conftest import make_score
from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.models.selector import select, selection_order


@pytest.fixture
def constraints():
    # 10 holdings at 25% per sector -> at most 2 names per sector
    return PortfolioConstraints(target_holdings=10, max_sector_pct=0.25)


class TestSelectionOrder:

    def test_composite_descending(self):
        scores = [make_score("A", 50), make_score("B", 80), make_score("C", 65)]
        assert [s.ticker for s in selection_order(scores)] == ["B", "C", "A"]

    def test_ties_prefer_lower_beta_then_ticker(self):
        scores = [
            make_score("ZZZ", 70, beta=0.8),
            make_score("AAA", 70, beta=1.2),
            make_score("MMM", 70, beta=0.8),
            make_score("NOB", 70, beta=None),
        ]
        assert [s.ticker for s in selection_order(scores)] == ["MMM", "ZZZ", "AAA", "NOB"]


class TestSelect:
    """Test suite for the greedy sector-capped selection."""

    def test_sector_cap_by_count(self, constraints):
        assert constraints.max_per_sector == 2
        scores = [make_score(f"T{i}", 90 - i, sector="Technology") for i in range(4)]
        scores += [make_score("H1", 60, sector="Healthcare"), make_score("E1", 55, sector="Energy")]

        result = select(scores, 4, constraints)

        assert result.tickers == ["T0", "T1", "H1", "E1"]
        assert [s.ticker for s in result.rejected_for_sector] == ["T2", "T3"]
        assert result.shortfall == 0

    def test_under_fills_rather_than_violating_cap(self, constraints):
        scores = [make_score(f"T{i}", 90 - i, sector="Technology") for i in range(5)]

        result = select(scores, 4, constraints)

        assert result.tickers == ["T0", "T1"]
        assert result.shortfall == 2
        error = result.as_error()
        assert error.requested == 4
        assert error.chosen == 2

    def test_existing_holdings_count_toward_cap(self, constraints):
        scores = [make_score("T0", 90, sector="Technology"), make_score("H0", 50, sector="Healthcare")]

        result = select(scores, 2, constraints, existing_sector_counts={"Technology": 2})

        assert result.tickers == ["H0"]

    def test_stops_at_k(self, constraints):
        scores = [make_score(f"S{i}", 90 - i, sector=f"Sector{i}") for i in range(8)]
        assert select(scores, 3, constraints).tickers == ["S0", "S1", "S2"]

    def test_missing_sector_grouped_as_unknown(self, constraints):
        scores = [make_score(f"U{i}", 80 - i, sector=None) for i in range(3)]
        assert len(select(scores, 3, constraints).chosen) == 2

    def test_zero_slots(self, constraints):
        result = select([make_score("A", 50)], 0, constraints)
        assert result.chosen == []
        assert result.as_error() is None

    def test_small_portfolio_allows_one_per_sector(self):
        tight = PortfolioConstraints(target_holdings=3, max_sector_pct=0.25)
        assert tight.max_per_sector == 1

"""
Portfolio persistence.

`PortfolioStore` is the interface the pipeline depends on; `SqlPortfolioStore`
implements it with SQLAlchemy over the five-table schema in `orm.py`.

Optimistic concurrency: `portfolios.updated_at` is the row version. A trade
batch names the version it was planned against and fails with
PersistenceConflict if anything else wrote the portfolio in between.

Usage:
    store = SqlPortfolioStore("sqlite:///data/portfolio.db")
    portfolio = store.load_portfolio("growth-2024")
    store.apply_trade_batch(portfolio.id, plan.orders, portfolio.version)
"""

from __future__ import annotations

import json
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.constants import DEFAULT_DATABASE_URL, DEFAULT_STRATEGY
from equity_optimizer.errors import InvariantViolation, PersistenceConflict
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorScore
from equity_optimizer.models.portfolio import (
    Holding,
    Portfolio,
    Snapshot,
    TradeAction,
    TradeOrder,
    decode_holdings,
)
from equity_optimizer.storage.orm import (
    Base,
    HoldingRow,
    PortfolioRow,
    SnapshotRow,
    StockScoreRow,
    TransactionRow,
)

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
SHARE_EPSILON = 1e-9


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def next_version(previous: Optional[str]) -> str:
    """A version string strictly greater than `previous`."""
    now = utc_now()
    prior = parse_timestamp(previous)
    if prior is not None and now <= prior:
        now = prior + timedelta(microseconds=1)
    return format_timestamp(now)


class PortfolioStore(Protocol):
    def create_portfolio(self, name: str, initial_capital: float, strategy: str = DEFAULT_STRATEGY,
                         constraints: Optional[PortfolioConstraints] = None,
                         portfolio_id: Optional[str] = None,
                         orders: Iterable[TradeOrder] = (),
                         scores: Iterable[FactorScore] = (),
                         snapshot: Optional[Snapshot] = None,
                         score_date: Optional[date] = None) -> Portfolio: ...

    def load_portfolio(self, portfolio_id: str) -> Portfolio: ...

    def apply_trade_batch(self, portfolio_id: str, orders: Iterable[TradeOrder],
                          expected_version: Optional[str],
                          prices: Optional[Mapping[str, float]] = None,
                          scores: Iterable[FactorScore] = (),
                          snapshot: Optional[Snapshot] = None,
                          score_date: Optional[date] = None) -> str: ...

    def record_scores(self, scores: Iterable[FactorScore], score_date: Optional[date] = None) -> int: ...

    def save_snapshot(self, snapshot: Snapshot) -> None: ...

    def latest_snapshot(self, portfolio_id: str) -> Optional[Snapshot]: ...


class SqlPortfolioStore:
    """SQLAlchemy-backed PortfolioStore (SQLite by default)."""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, engine: Optional[Engine] = None, echo: bool = False):
        """
        Initialize the store and create missing tables.

        Args:
            database_url: SQLAlchemy URL; "sqlite://" gives a shared in-memory database
            engine: Pre-built engine (overrides database_url)
            echo: Log SQL statements
        """
        self.engine = engine or self._build_engine(database_url, echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _build_engine(database_url: str, echo: bool) -> Engine:
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite":
            if url.database in (None, "", ":memory:"):
                return create_engine(
                    database_url,
                    echo=echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, echo=echo)

    # =========================================================================
    # Portfolios
    # =========================================================================

    def create_portfolio(self, name: str, initial_capital: float, strategy: str = DEFAULT_STRATEGY,
                         constraints: Optional[PortfolioConstraints] = None,
                         portfolio_id: Optional[str] = None,
                         orders: Iterable[TradeOrder] = (),
                         scores: Iterable[FactorScore] = (),
                         snapshot: Optional[Snapshot] = None,
                         score_date: Optional[date] = None) -> Portfolio:
        """
        Insert a new portfolio and return it with its version.

        Without orders the portfolio is all cash. Initial orders, scores and
        a first snapshot are written in the same transaction, so a failure
        anywhere leaves no trace of the portfolio.

        Raises:
            PersistenceConflict: A portfolio with this id already exists
            InvariantViolation: The initial orders overspend the capital
        """
        constraints = constraints or PortfolioConstraints()
        portfolio_id = portfolio_id or uuid.uuid4().hex
        stamp = format_timestamp(utc_now())
        orders = list(orders)

        with self._sessions.begin() as session:
            if session.get(PortfolioRow, portfolio_id) is not None:
                raise PersistenceConflict(portfolio_id, "portfolio already exists")
            row = PortfolioRow(
                id=portfolio_id,
                name=name,
                strategy=strategy,
                initial_capital=initial_capital,
                current_cash=initial_capital,
                target_holdings=constraints.target_holdings,
                max_position_pct=constraints.max_position_pct,
                min_position_pct=constraints.min_position_pct,
                max_sector_pct=constraints.max_sector_pct,
                max_monthly_turnover=constraints.max_monthly_turnover,
                created_at=stamp,
                updated_at=stamp,
            )
            session.add(row)
            session.flush()

            cash = self._apply_orders(session, portfolio_id, orders, initial_capital, stamp)
            if cash < -SHARE_EPSILON:
                raise InvariantViolation("non_negative_cash", f"cash would be {cash:,.2f}")
            row.current_cash = cash

            scores = list(scores)
            if scores:
                self._add_scores(session, scores, score_date or utc_now().date())
            if snapshot is not None:
                self._add_snapshot(session, snapshot)

        logger.info(
            "Created portfolio %s (%s) with $%.2f and %d orders", portfolio_id, name, initial_capital, len(orders)
        )
        return self.load_portfolio(portfolio_id)

    def list_portfolios(self) -> List[Dict[str, object]]:
        with self._sessions() as session:
            rows = session.scalars(select(PortfolioRow).order_by(PortfolioRow.created_at)).all()
            return [
                {"id": r.id, "name": r.name, "strategy": r.strategy, "cash": r.current_cash, "updated_at": r.updated_at}
                for r in rows
            ]

    def load_portfolio(self, portfolio_id: str) -> Portfolio:
        """
        Load a portfolio with holdings, entry scores and entry baselines.

        Raises:
            KeyError: If the portfolio does not exist
        """
        with self._sessions() as session:
            row = session.get(PortfolioRow, portfolio_id)
            if row is None:
                raise KeyError(f"Portfolio {portfolio_id} not found")

            constraints = PortfolioConstraints(
                target_holdings=row.target_holdings,
                min_position_pct=row.min_position_pct,
                max_position_pct=row.max_position_pct,
                max_sector_pct=row.max_sector_pct,
                max_monthly_turnover=row.max_monthly_turnover,
            )

            holdings: Dict[str, Holding] = {}
            holding_rows = session.scalars(
                select(HoldingRow).where(HoldingRow.portfolio_id == portfolio_id).order_by(HoldingRow.ticker)
            ).all()
            for h in holding_rows:
                debt_to_equity, profit_margin = self._entry_baseline(session, h.ticker, h.acquired_at)
                holdings[h.ticker] = Holding(
                    ticker=h.ticker,
                    shares=h.shares,
                    avg_cost=h.avg_cost,
                    sector=h.sector,
                    entry_score=self._entry_score(session, portfolio_id, h.ticker),
                    entry_date=parse_timestamp(h.acquired_at),
                    current_price=h.current_price,
                    entry_debt_to_equity=debt_to_equity,
                    entry_profit_margin=profit_margin,
                )

            return Portfolio(
                id=row.id,
                name=row.name,
                initial_capital=row.initial_capital,
                cash=row.current_cash,
                strategy=row.strategy,
                constraints=constraints,
                holdings=holdings,
                created_at=parse_timestamp(row.created_at),
                version=row.updated_at,
            )

    @staticmethod
    def _entry_score(session: Session, portfolio_id: str, ticker: str) -> Optional[float]:
        return session.scalars(
            select(TransactionRow.score_at_trade)
            .where(
                TransactionRow.portfolio_id == portfolio_id,
                TransactionRow.ticker == ticker,
                TransactionRow.action == TradeAction.BUY.value,
            )
            .order_by(TransactionRow.executed_at.desc(), TransactionRow.id.desc())
            .limit(1)
        ).first()

    @staticmethod
    def _entry_baseline(session: Session, ticker: str, acquired_at: Optional[str]):
        """(debt_to_equity, profit_margin) from the latest score on or before acquisition."""
        query = select(StockScoreRow).where(StockScoreRow.ticker == ticker)
        if acquired_at:
            query = query.where(StockScoreRow.score_date <= acquired_at[:10])
        score = session.scalars(
            query.order_by(StockScoreRow.score_date.desc(), StockScoreRow.id.desc()).limit(1)
        ).first()
        if score is None:
            return None, None

        debt_to_equity = None
        if score.raw_data:
            try:
                debt_to_equity = json.loads(score.raw_data).get("debt_to_equity")
            except (ValueError, AttributeError):
                logger.warning("Unreadable raw_data for %s score on %s", ticker, score.score_date)
        return debt_to_equity, score.profit_margin

    # =========================================================================
    # Trades
    # =========================================================================

    def apply_trade_batch(self, portfolio_id: str, orders: Iterable[TradeOrder],
                          expected_version: Optional[str],
                          prices: Optional[Mapping[str, float]] = None,
                          scores: Iterable[FactorScore] = (),
                          snapshot: Optional[Snapshot] = None,
                          score_date: Optional[date] = None) -> str:
        """
        Apply a batch of orders atomically.

        Sells run before buys. Cash, holdings and the transaction log change
        together or not at all.

        Args:
            portfolio_id: Portfolio to trade
            orders: Orders to apply
            expected_version: Version read at load time (None skips the check)
            prices: Latest prices used to refresh remaining holdings
            scores: Scores to append to stock_scores in the same transaction
            snapshot: Post-trade snapshot saved in the same transaction
            score_date: Date recorded on the score rows (default: today)

        Returns:
            The new portfolio version

        Raises:
            PersistenceConflict: Portfolio missing or modified since load
            InvariantViolation: A sell exceeds the held shares or cash goes negative
        """
        orders = list(orders)
        now = format_timestamp(utc_now())

        with self._sessions.begin() as session:
            row = session.get(PortfolioRow, portfolio_id)
            if row is None:
                raise PersistenceConflict(portfolio_id, "portfolio not found")

            new_version = next_version(row.updated_at)
            claim = update(PortfolioRow).where(PortfolioRow.id == portfolio_id)
            if expected_version is not None:
                claim = claim.where(PortfolioRow.updated_at == expected_version)
            result = session.execute(
                claim.values(updated_at=new_version).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PersistenceConflict(portfolio_id, "portfolio changed since it was loaded")

            cash = self._apply_orders(session, portfolio_id, orders, row.current_cash, now)
            if cash < -SHARE_EPSILON:
                raise InvariantViolation("non_negative_cash", f"cash would be {cash:,.2f}")

            if prices:
                for holding in session.scalars(select(HoldingRow).where(HoldingRow.portfolio_id == portfolio_id)):
                    if holding.ticker in prices:
                        holding.current_price = prices[holding.ticker]
                        holding.updated_at = now

            session.execute(
                update(PortfolioRow)
                .where(PortfolioRow.id == portfolio_id)
                .values(current_cash=cash)
                .execution_options(synchronize_session=False)
            )

            scores = list(scores)
            if scores:
                self._add_scores(session, scores, score_date or utc_now().date())
            if snapshot is not None:
                self._add_snapshot(session, snapshot)

        logger.info("Applied %d orders to portfolio %s", len(orders), portfolio_id)
        return new_version

    @staticmethod
    def _apply_orders(session: Session, portfolio_id: str, orders: Iterable[TradeOrder], cash: float, now: str) -> float:
        """Write holding and transaction rows for `orders`, sells first, and return the resulting cash."""
        for order in sorted(orders, key=lambda o: 0 if o.action == TradeAction.SELL else 1):
            holding = session.scalars(
                select(HoldingRow).where(
                    HoldingRow.portfolio_id == portfolio_id,
                    HoldingRow.ticker == order.ticker,
                )
            ).first()

            if order.action == TradeAction.SELL:
                if holding is None or order.shares > holding.shares + SHARE_EPSILON:
                    raise InvariantViolation(
                        "sell_within_holding",
                        f"cannot sell {order.shares} {order.ticker}",
                        [order.ticker],
                    )
                remaining = holding.shares - order.shares
                if remaining <= SHARE_EPSILON:
                    session.delete(holding)
                else:
                    holding.shares = remaining
                    holding.current_price = order.price
                    holding.updated_at = now
                cash += order.value
            else:
                if holding is None:
                    session.add(HoldingRow(
                        portfolio_id=portfolio_id,
                        ticker=order.ticker,
                        shares=order.shares,
                        avg_cost=order.price,
                        current_price=order.price,
                        sector=order.sector,
                        acquired_at=now,
                        updated_at=now,
                    ))
                else:
                    total_shares = holding.shares + order.shares
                    holding.avg_cost = (holding.shares * holding.avg_cost + order.value) / total_shares
                    holding.shares = total_shares
                    holding.current_price = order.price
                    holding.updated_at = now
                cash -= order.value

            session.add(TransactionRow(
                portfolio_id=portfolio_id,
                ticker=order.ticker,
                action=order.action.value,
                shares=order.shares,
                price=order.price,
                total_value=order.value,
                reason=order.reason,
                score_at_trade=order.score,
                executed_at=now,
            ))
            session.flush()
        return cash

    def transactions(self, portfolio_id: str) -> List[Dict[str, object]]:
        with self._sessions() as session:
            rows = session.scalars(
                select(TransactionRow)
                .where(TransactionRow.portfolio_id == portfolio_id)
                .order_by(TransactionRow.id)
            ).all()
            return [
                {
                    "ticker": r.ticker,
                    "action": r.action,
                    "shares": r.shares,
                    "price": r.price,
                    "total_value": r.total_value,
                    "reason": r.reason,
                    "score_at_trade": r.score_at_trade,
                    "executed_at": r.executed_at,
                }
                for r in rows
            ]

    # =========================================================================
    # Scores & Snapshots
    # =========================================================================

    @staticmethod
    def _add_scores(session: Session, scores: Iterable[FactorScore], score_date: date) -> int:
        stamp = format_timestamp(utc_now())
        count = 0
        for s in scores:
            raw = s.fundamentals
            session.add(StockScoreRow(
                ticker=s.ticker,
                score_date=score_date.isoformat(),
                total_score=s.composite,
                value_score=s.value,
                quality_score=s.quality,
                growth_score=s.growth,
                momentum_score=s.momentum,
                risk_score=s.risk,
                pe_ratio=raw.pe_ratio if raw else None,
                pb_ratio=raw.pb_ratio if raw else None,
                dividend_yield=raw.dividend_yield if raw else None,
                revenue_growth=raw.revenue_growth if raw else None,
                profit_margin=raw.profit_margin if raw else None,
                beta=s.beta,
                market_cap=raw.market_cap if raw else None,
                sector=s.sector,
                raw_data=json.dumps(raw.to_dict()) if raw else None,
                created_at=stamp,
            ))
            count += 1
        return count

    @staticmethod
    def _add_snapshot(session: Session, snapshot: Snapshot) -> None:
        session.add(SnapshotRow(
            portfolio_id=snapshot.portfolio_id,
            snapshot_date=snapshot.snapshot_date.isoformat(),
            total_value=snapshot.total_value,
            cash_value=snapshot.cash_value,
            holdings_value=snapshot.holdings_value,
            holdings_count=snapshot.holdings_count,
            period_return_pct=snapshot.period_return_pct,
            cumulative_return_pct=snapshot.cumulative_return_pct,
            spy_period_return_pct=snapshot.spy_period_return_pct,
            spy_cumulative_return_pct=snapshot.spy_cumulative_return_pct,
            alpha_pct=snapshot.alpha_pct,
            holdings_data=snapshot.holdings_json(),
            created_at=format_timestamp(utc_now()),
        ))

    def record_scores(self, scores: Iterable[FactorScore], score_date: Optional[date] = None) -> int:
        """Append one stock_scores row per score. Returns the number written."""
        score_date = score_date or utc_now().date()
        with self._sessions.begin() as session:
            count = self._add_scores(session, scores, score_date)
        logger.debug("Recorded %d scores for %s", count, score_date)
        return count

    def score_history(self, ticker: str) -> List[Dict[str, object]]:
        with self._sessions() as session:
            rows = session.scalars(
                select(StockScoreRow)
                .where(StockScoreRow.ticker == ticker.upper())
                .order_by(StockScoreRow.score_date, StockScoreRow.id)
            ).all()
            return [
                {"score_date": r.score_date, "total_score": r.total_score, "sector": r.sector}
                for r in rows
            ]

    def save_snapshot(self, snapshot: Snapshot) -> None:
        with self._sessions.begin() as session:
            self._add_snapshot(session, snapshot)

    def latest_snapshot(self, portfolio_id: str) -> Optional[Snapshot]:
        with self._sessions() as session:
            row = session.scalars(
                select(SnapshotRow)
                .where(SnapshotRow.portfolio_id == portfolio_id)
                .order_by(SnapshotRow.snapshot_date.desc(), SnapshotRow.id.desc())
                .limit(1)
            ).first()
            if row is None:
                return None
            return Snapshot(
                portfolio_id=row.portfolio_id,
                snapshot_date=date.fromisoformat(row.snapshot_date[:10]),
                total_value=row.total_value,
                cash_value=row.cash_value,
                holdings_value=row.holdings_value,
                holdings_count=row.holdings_count,
                holdings=decode_holdings(row.holdings_data),
                period_return_pct=row.period_return_pct,
                cumulative_return_pct=row.cumulative_return_pct,
                spy_period_return_pct=row.spy_period_return_pct,
                spy_cumulative_return_pct=row.spy_cumulative_return_pct,
                alpha_pct=row.alpha_pct,
            )

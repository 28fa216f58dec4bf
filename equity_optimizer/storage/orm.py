"""SQLAlchemy ORM models for the portfolio database.

Five tables: portfolios, holdings, transactions, snapshots and stock_scores.
Timestamps are stored as TEXT ("YYYY-MM-DD HH:MM:SS[.ffffff]") so existing
SQLite files created with datetime('now') defaults stay readable.

Usage:
    from equity_optimizer.storage.orm import Base, PortfolioRow

    engine = create_engine("sqlite:///data/portfolio.db")
    Base.metadata.create_all(engine)
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from equity_optimizer.constants import (
    DEFAULT_MAX_MONTHLY_TURNOVER,
    DEFAULT_MAX_POSITION_PCT,
    DEFAULT_MAX_SECTOR_PCT,
    DEFAULT_MIN_POSITION_PCT,
    DEFAULT_STRATEGY,
    DEFAULT_TARGET_HOLDINGS,
)

# Naming convention for constraints and indexes
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

SQLITE_NOW = text("(datetime('now'))")


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class PortfolioRow(Base):
    """Portfolio configuration and cash balance. updated_at doubles as the row version."""
    __tablename__ = "portfolios"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    strategy: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_STRATEGY)
    initial_capital: Mapped[float] = mapped_column(Float, nullable=False)
    current_cash: Mapped[float] = mapped_column(Float, nullable=False)
    target_holdings: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_TARGET_HOLDINGS)
    max_position_pct: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_MAX_POSITION_PCT)
    min_position_pct: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_MIN_POSITION_PCT)
    max_sector_pct: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_MAX_SECTOR_PCT)
    max_monthly_turnover: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_MONTHLY_TURNOVER)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)

    holdings: Mapped[List["HoldingRow"]] = relationship(back_populates="portfolio")


class HoldingRow(Base):
    """Current position; one row per (portfolio, ticker)."""
    __tablename__ = "holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[str] = mapped_column(Text, ForeignKey("portfolios.id"), nullable=False)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    avg_cost: Mapped[float] = mapped_column(Float, nullable=False)
    current_price: Mapped[Optional[float]] = mapped_column(Float)
    sector: Mapped[Optional[str]] = mapped_column(Text)
    acquired_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)

    portfolio: Mapped[PortfolioRow] = relationship(back_populates="holdings")

    __table_args__ = (
        UniqueConstraint("portfolio_id", "ticker", name="uq_holdings_portfolio_ticker"),
        Index("idx_holdings_portfolio", "portfolio_id"),
        Index("idx_holdings_ticker", "ticker"),
    )


class TransactionRow(Base):
    """Append-only trade history."""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[str] = mapped_column(Text, ForeignKey("portfolios.id"), nullable=False)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    score_at_trade: Mapped[Optional[float]] = mapped_column(Float)
    executed_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)

    __table_args__ = (
        CheckConstraint("action IN ('BUY', 'SELL')", name="action_valid"),
        Index("idx_transactions_portfolio", "portfolio_id"),
        Index("idx_transactions_date", "executed_at"),
    )


class SnapshotRow(Base):
    """Point-in-time portfolio valuation with serialized holdings."""
    __tablename__ = "snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[str] = mapped_column(Text, ForeignKey("portfolios.id"), nullable=False)
    snapshot_date: Mapped[str] = mapped_column(Text, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    cash_value: Mapped[float] = mapped_column(Float, nullable=False)
    holdings_value: Mapped[float] = mapped_column(Float, nullable=False)
    holdings_count: Mapped[int] = mapped_column(Integer, nullable=False)
    period_return_pct: Mapped[Optional[float]] = mapped_column(Float)
    cumulative_return_pct: Mapped[Optional[float]] = mapped_column(Float)
    spy_period_return_pct: Mapped[Optional[float]] = mapped_column(Float)
    spy_cumulative_return_pct: Mapped[Optional[float]] = mapped_column(Float)
    alpha_pct: Mapped[Optional[float]] = mapped_column(Float)
    holdings_data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)

    __table_args__ = (
        Index("idx_snapshots_portfolio", "portfolio_id"),
        Index("idx_snapshots_date", "snapshot_date"),
    )


class StockScoreRow(Base):
    """Append-only scoring history; raw_data holds the full fundamentals as JSON."""
    __tablename__ = "stock_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(Text, nullable=False)
    score_date: Mapped[str] = mapped_column(Text, nullable=False)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    value_score: Mapped[Optional[float]] = mapped_column(Float)
    quality_score: Mapped[Optional[float]] = mapped_column(Float)
    growth_score: Mapped[Optional[float]] = mapped_column(Float)
    momentum_score: Mapped[Optional[float]] = mapped_column(Float)
    risk_score: Mapped[Optional[float]] = mapped_column(Float)
    pe_ratio: Mapped[Optional[float]] = mapped_column(Float)
    pb_ratio: Mapped[Optional[float]] = mapped_column(Float)
    dividend_yield: Mapped[Optional[float]] = mapped_column(Float)
    revenue_growth: Mapped[Optional[float]] = mapped_column(Float)
    profit_margin: Mapped[Optional[float]] = mapped_column(Float)
    beta: Mapped[Optional[float]] = mapped_column(Float)
    market_cap: Mapped[Optional[float]] = mapped_column(Float)
    sector: Mapped[Optional[str]] = mapped_column(Text)
    raw_data: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[str] = mapped_column(Text, nullable=False, server_default=SQLITE_NOW)

    __table_args__ = (
        Index("idx_scores_ticker", "ticker"),
        Index("idx_scores_date", "score_date"),
    )

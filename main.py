#!/usr/bin/env python3
"""Equity Optimizer - CLI

Screen a stock universe, build a factor-scored portfolio and run monthly reviews.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from datetime import date

import pandas as pd
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from equity_optimizer.env_loader import load_environment_variables

# Load EQO_* overrides before building the config
load_environment_variables()

from equity_optimizer.config import STRATEGIES, Config, FetchConfig
from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.core.scheduler import BatchFetchScheduler
from equity_optimizer.errors import EquityOptimizerError
from equity_optimizer.logging_config import get_logger, setup_logging
from equity_optimizer.models.factor_engine import FactorEngine
from equity_optimizer.pipeline.construction import construct_portfolio
from equity_optimizer.pipeline.market_data import (
    YahooBenchmarkSource,
    YahooMarketDataProvider,
    fetch_raw_fundamentals,
)
from equity_optimizer.pipeline.rebalance import RebalanceEngine
from equity_optimizer.pipeline.screening import DEFAULT_SCREEN_LIMIT, ScreenFilters, ScreeningPipeline
from equity_optimizer.pipeline.snapshot import SnapshotExporter
from equity_optimizer.pipeline.universe import SECTORS, get_universe
from equity_optimizer.storage.store import SqlPortfolioStore
from equity_optimizer.valuation.dcf import DCFEngine, dcf_inputs_from_fundamentals

logger = get_logger(__name__)

console = Console()


def print_msg(msg: str, style: str = "info"):
    """Print a message with a status symbol."""
    symbols = {"success": ("✓", "green"), "error": ("✗", "red"), "info": ("ℹ", "blue"), "warn": ("!", "yellow")}
    sym, color = symbols.get(style, ("ℹ", "blue"))
    console.print(f"[{color}]{sym}[/{color}] {msg}")


def print_header(title: str):
    console.print(Panel(title, box=box.DOUBLE, style="bold cyan"))


def fmt(value, pattern: str = "{:.1f}") -> str:
    return pattern.format(value) if value is not None else "-"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="eqo",
        description="Factor-scored equity portfolio builder and monthly rebalancer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  eqo screen --sector Technology --top 15        Score and rank one sector
  eqo score NVDA                                  Factor audit for one stock
  eqo compare AAPL MSFT GOOGL                     Side-by-side fundamentals
  eqo dcf AAPL --wacc 9.5                          DCF with bear/base/bull cases
  eqo build --name core --capital 100000          Construct and store a portfolio
  eqo review core --dry-run                       Monthly review without trading
        """
    )
    parser.add_argument("--strategy", choices=list(STRATEGIES), default=None,
                        help="Factor weighting strategy (default: EQO_STRATEGY or value)")
    parser.add_argument("--conservative", action="store_true",
                        help="Slower fetch settings for a throttling provider")
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    parser.add_argument("--progress", action="store_true", help="Show fetch progress bars")

    sub = parser.add_subparsers(dest="command", title="commands", metavar="COMMAND")

    screen = sub.add_parser("screen", help="Fetch, filter and rank a universe")
    screen.add_argument("--sector", choices=SECTORS, default=None, help="Restrict to one sector")
    screen.add_argument("--tickers", nargs="+", metavar="TICKER", help="Custom universe")
    screen.add_argument("--min-cap", type=float, default=None, metavar="BILLIONS")
    screen.add_argument("--max-pe", type=float, default=None)
    screen.add_argument("--min-yield", type=float, default=None, metavar="PCT")
    screen.add_argument("--max-beta", type=float, default=None)
    screen.add_argument("--limit", type=int, default=DEFAULT_SCREEN_LIMIT,
                        help=f"Largest matches kept by market cap (default: {DEFAULT_SCREEN_LIMIT})")
    screen.add_argument("--top", type=int, default=20, help="Rows to display (default: 20)")
    screen.add_argument("--dcf", action="store_true", help="Include DCF upside in the value factor")

    compare = sub.add_parser("compare", help="Compare 2-10 companies side by side")
    compare.add_argument("tickers", nargs="+", metavar="TICKER")

    score = sub.add_parser("score", help="Factor audit of one stock within a universe")
    score.add_argument("ticker")
    score.add_argument("--universe", nargs="+", metavar="TICKER", help="Comparison universe")

    dcf = sub.add_parser("dcf", help="Discounted cash flow valuation")
    dcf.add_argument("ticker")
    dcf.add_argument("--wacc", type=float, default=None, help="Discount rate override (percent)")
    dcf.add_argument("--growth", type=float, default=None, help="FCF growth override (percent)")
    dcf.add_argument("--terminal", type=float, default=None, help="Terminal growth (percent)")
    dcf.add_argument("--years", type=int, default=None, help="Projection horizon")

    build = sub.add_parser("build", help="Construct and store a new portfolio")
    build.add_argument("--name", required=True)
    build.add_argument("--id", dest="portfolio_id", default=None)
    build.add_argument("--capital", type=float, default=None)
    build.add_argument("--holdings", type=int, default=None, help="Target number of holdings")
    build.add_argument("--sectors", nargs="+", choices=SECTORS, default=None, help="Universe sectors")

    review = sub.add_parser("review", help="Monthly review and rebalance of a stored portfolio")
    review.add_argument("portfolio_id")
    review.add_argument("--dry-run", action="store_true", help="Plan and validate without trading")
    review.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                        help="Stop fetching after this many seconds")
    review.add_argument("--export", action="store_true", help="Export the snapshot to JSON and CSV")

    return parser.parse_args(argv)


def build_config(args) -> Config:
    overrides = {}
    if args.strategy:
        overrides["strategy"] = args.strategy
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    config = Config.from_env(**overrides)
    if args.conservative:
        config = replace(config, fetch=FetchConfig.conservative())
    return config


def build_pipeline(config: Config, show_progress: bool, use_dcf: bool = False) -> ScreeningPipeline:
    """One limiter and scheduler per invocation, shared by every fetch."""
    limiter = RateLimiter(min_delay=config.fetch.min_delay)
    scheduler = BatchFetchScheduler(config.fetch, limiter, show_progress=show_progress)
    engine = FactorEngine(config.strategy, use_dcf=use_dcf or config.use_dcf_factor)
    return ScreeningPipeline(YahooMarketDataProvider(), scheduler, engine)


def render_rankings(scores, top: int, highlight: str = None):
    ranked = FactorEngine.rank_frame(scores).head(top)
    table = Table(title="Factor Rankings", box=box.ROUNDED)
    table.add_column("Rank", justify="center", style="cyan")
    table.add_column("Ticker", style="bold")
    table.add_column("Sector", style="dim")
    for column in ("Value", "Quality", "Risk", "Growth", "Momentum", "Composite"):
        table.add_column(column, justify="right")

    for idx in range(len(ranked)):
        row = ranked.iloc[idx]
        ticker = f"[bold green]{row['Ticker']}[/bold green]" if row["Ticker"] == highlight else row["Ticker"]
        values = [row[c] for c in ("Value", "Quality", "Risk", "Growth", "Momentum", "Composite")]
        table.add_row(
            str(idx + 1),
            ticker,
            row["Sector"] or "-",
            *[fmt(v) if pd.notna(v) else "-" for v in values],
        )
    console.print(table)


def cmd_screen(args, config: Config):
    print_header("Universe Screen")
    pipeline = build_pipeline(config, args.progress, use_dcf=args.dcf)
    tickers = args.tickers or get_universe([args.sector] if args.sector else None)
    estimate = pipeline.scheduler.estimate_time(len(tickers))
    print_msg(f"Screening {len(tickers)} tickers (~{estimate['estimated_minutes']} min)", "info")

    filters = ScreenFilters(
        sector=args.sector,
        min_market_cap=args.min_cap,
        max_pe=args.max_pe,
        min_dividend_yield=args.min_yield,
        max_beta=args.max_beta,
        limit=args.limit,
    )
    result = pipeline.run(tickers, filters=filters)
    render_rankings(result.scores, args.top)
    if result.errors:
        print_msg(f"{len(result.errors)} tickers unavailable: {', '.join(sorted(result.errors))}", "warn")


COMPARE_LEADERS = (
    ("cheapest_by_pe", "Cheapest by P/E"),
    ("highest_growth", "Highest revenue growth"),
    ("lowest_beta", "Lowest beta"),
    ("highest_dividend", "Highest dividend"),
    ("best_performer", "Best 52-week performer"),
    ("largest_company", "Largest company"),
)

COMPARE_COLUMNS = (
    ("P/E", "pe_ratio"),
    ("P/B", "pb_ratio"),
    ("P/S", "ps_ratio"),
    ("Yield %", "dividend_yield"),
    ("Rev Gr %", "revenue_growth"),
    ("Margin %", "profit_margin"),
    ("Beta", "beta"),
    ("52w %", "fifty_two_week_change"),
)


def cmd_compare(args, config: Config):
    print_header("Company Comparison")
    pipeline = build_pipeline(config, args.progress)
    try:
        comparison = pipeline.compare(args.tickers)
    except ValueError as e:
        print_msg(str(e), "error")
        sys.exit(1)

    if not comparison.rows:
        print_msg("None of the tickers could be fetched", "error")
        sys.exit(1)

    table = Table(title="Fundamentals", box=box.ROUNDED)
    table.add_column("Ticker", style="bold")
    table.add_column("Sector", style="dim")
    table.add_column("Price", justify="right")
    table.add_column("Mkt Cap", justify="right")
    for label, _ in COMPARE_COLUMNS:
        table.add_column(label, justify="right")
    for row in comparison.rows:
        table.add_row(
            row["ticker"],
            row["sector"],
            fmt(row["price"], "${:,.2f}"),
            row["market_cap"],
            *[fmt(row[key], "{:.2f}") for _, key in COMPARE_COLUMNS],
        )
    console.print(table)

    leaders = "\n".join(
        f"[cyan]{label}:[/cyan] {comparison.summary[key] or '-'}" for key, label in COMPARE_LEADERS
    )
    console.print(Panel(leaders, title="Leaders", box=box.DOUBLE))
    if comparison.errors:
        print_msg(f"Unavailable: {', '.join(sorted(comparison.errors))}", "warn")


def cmd_score(args, config: Config):
    print_header("Factor Audit")
    ticker = args.ticker.upper().strip()
    universe = [t.upper().strip() for t in args.universe] if args.universe else get_universe()
    if ticker not in universe:
        universe.append(ticker)

    pipeline = build_pipeline(config, args.progress)
    result = pipeline.run(universe)
    render_rankings(result.scores, 10, highlight=ticker)

    report = pipeline.engine.audit_report(result.scores, ticker)
    lines = [
        f"[bold]Rank:[/bold] {report['rank']} of {report['total_stocks']} "
        f"(top {(1 - report['rank_percentile']) * 100:.0f}%)",
        f"[bold]Composite:[/bold] {report['composite']:.1f} ({report['strategy']})",
        "",
    ]
    for name, factor in report["factors"].items():
        lines.append(
            f"  {name.capitalize():<9} score {fmt(factor['score']):>6}  "
            f"weight {factor['weight']:.2f}  contribution {fmt(factor['contribution']):>6}"
        )
    lines += ["", report["summary"]]
    console.print(Panel("\n".join(lines), title=ticker, box=box.DOUBLE))


def cmd_dcf(args, config: Config):
    print_header("DCF Valuation")
    ticker = args.ticker.upper().strip()
    raw = fetch_raw_fundamentals(YahooMarketDataProvider(), ticker)

    overrides = {}
    if args.wacc is not None:
        overrides["discount_rate"] = args.wacc
    if args.growth is not None:
        overrides["fcf_growth"] = args.growth
    if args.terminal is not None:
        overrides["terminal_growth"] = args.terminal
    if args.years is not None:
        overrides["years"] = args.years

    engine = DCFEngine()
    inputs = dcf_inputs_from_fundamentals(raw, **overrides)
    result = engine.compute(inputs)
    if not result.ok:
        print_msg(f"Cannot value {ticker}: {result.error}", "error")
        sys.exit(1)

    a = result.assumptions
    table = Table(title=f"{ticker} Cash Flow Projection", box=box.ROUNDED)
    table.add_column("Year", justify="center")
    table.add_column("FCF ($B)", justify="right")
    table.add_column("Discount", justify="right")
    table.add_column("PV ($B)", justify="right", style="green")
    for p in result.projections:
        table.add_row(str(p.year), f"{p.fcf / 1e9:.2f}", f"{p.discount_factor:.4f}", f"{p.present_value / 1e9:.2f}")
    console.print(table)

    scenarios = "\n".join(
        f"  {s.name.capitalize():<5} {fmt(s.value_per_share, '${:.2f}') if s.valid else 'invalid'}"
        f"  (WACC {s.discount_rate:.1f}%, g {s.fcf_growth:.1f}%, tg {s.terminal_growth:.1f}%)"
        for s in result.scenarios.values()
    )
    summary = (
        f"[cyan]WACC:[/cyan] {a.discount_rate:.2f}%  [cyan]FCF growth:[/cyan] {a.fcf_growth:.2f}%  "
        f"[cyan]Terminal:[/cyan] {a.terminal_growth:.2f}%\n"
        f"[green]Intrinsic value:[/green] ${result.intrinsic_value:,.2f}\n"
        f"[dim]Price:[/dim] {fmt(result.current_price, '${:,.2f}')}  "
        f"[dim]Upside:[/dim] {fmt(result.upside_pct, '{:+.1f}%')}  "
        f"[bold]{result.recommendation or ''}[/bold]\n\n{scenarios}"
    )
    if not result.net_debt_complete:
        summary += "\n\n[yellow]Debt or cash unavailable; net debt is partial[/yellow]"
    console.print(Panel(summary, title="Valuation", box=box.DOUBLE))


def cmd_build(args, config: Config):
    print_header("Portfolio Construction")
    constraints = config.constraints
    if args.holdings is not None:
        constraints = replace(constraints, target_holdings=args.holdings)
    capital = args.capital or config.initial_capital

    pipeline = build_pipeline(config, args.progress)
    result = pipeline.run(get_universe(args.sectors))
    store = SqlPortfolioStore(config.database_url)
    built = construct_portfolio(
        store,
        result.scores,
        name=args.name,
        capital=capital,
        strategy=config.strategy,
        constraints=constraints,
        portfolio_id=args.portfolio_id,
    )
    render_orders(built.orders, "Initial Purchases")
    if built.selection.shortfall:
        print_msg(f"Sector caps left {built.selection.shortfall} slots unfilled", "warn")
    print_msg(
        f"Portfolio {built.portfolio.id}: {len(built.portfolio.holdings)} positions, "
        f"${built.portfolio.cash:,.2f} cash",
        "success",
    )


def render_orders(orders, title: str):
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Action", justify="center")
    table.add_column("Ticker", style="bold")
    table.add_column("Shares", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right", style="green")
    table.add_column("Score", justify="right")
    table.add_column("Reason", style="dim")
    for o in orders:
        color = "red" if o.action.value == "SELL" else "green"
        table.add_row(
            f"[{color}]{o.action.value}[/{color}]",
            o.ticker,
            f"{o.shares:,.0f}",
            f"${o.price:,.2f}",
            f"${o.value:,.2f}",
            fmt(o.score),
            o.reason,
        )
    console.print(table)


def cmd_review(args, config: Config):
    print_header("Monthly Review")
    pipeline = build_pipeline(config, args.progress)
    store = SqlPortfolioStore(config.database_url)
    engine = RebalanceEngine(store, pipeline, benchmark=YahooBenchmarkSource(config.benchmark_ticker), config=config)

    deadline = None
    if args.timeout is not None:
        deadline = pipeline.scheduler.clock() + args.timeout

    result = engine.run(args.portfolio_id, get_universe(), as_of=date.today(), deadline=deadline, dry_run=args.dry_run)
    plan = result.plan

    if result.sell_flags:
        for flag in result.sell_flags:
            print_msg(f"{flag.ticker}: score {flag.current_score:.1f} ({flag.describe()})", "warn")
    if not result.benchmark_available:
        print_msg("Benchmark unavailable; benchmark sell test skipped", "warn")

    if plan.rejected:
        print_msg(f"Plan rejected: {plan.rejection}", "error")
        sys.exit(2)
    if plan.is_empty:
        print_msg("No holdings met sell criteria; no trades", "success")
    else:
        render_orders(plan.orders, "Trade Plan")

    if result.snapshot is not None:
        s = result.snapshot
        console.print(Panel(
            f"[green]Total value:[/green] ${s.total_value:,.2f}\n"
            f"[dim]Cash:[/dim] ${s.cash_value:,.2f}  [dim]Holdings:[/dim] {s.holdings_count}\n"
            f"[cyan]Cumulative:[/cyan] {fmt(s.cumulative_return_pct, '{:+.2f}%')}  "
            f"[cyan]Benchmark:[/cyan] {fmt(s.spy_cumulative_return_pct, '{:+.2f}%')}  "
            f"[cyan]Alpha:[/cyan] {fmt(s.alpha_pct, '{:+.2f}%')}",
            title="Snapshot",
            box=box.DOUBLE,
        ))
        if args.export:
            exporter = SnapshotExporter(config.export_dir)
            exporter.save_json(s)
            exporter.export_positions_csv(s)
    elif args.dry_run:
        print_msg("Dry run: plan validated, nothing written", "info")


COMMANDS = {
    "screen": cmd_screen,
    "compare": cmd_compare,
    "score": cmd_score,
    "dcf": cmd_dcf,
    "build": cmd_build,
    "review": cmd_review,
}


def main(argv=None):
    args = parse_args(argv)

    if args.command is None:
        print("\nEquity Optimizer")
        print("================")
        print("\nCommands:")
        print("  eqo screen      - Score and rank a universe")
        print("  eqo compare T1 T2 ... - Side-by-side fundamentals")
        print("  eqo score TICK  - Factor audit for one stock")
        print("  eqo dcf TICK    - DCF valuation with sensitivity")
        print("  eqo build       - Construct a portfolio")
        print("  eqo review ID   - Monthly review and rebalance")
        print("\nUse 'eqo COMMAND -h' for detailed help\n")
        return

    try:
        config = build_config(args)
        setup_logging(level=config.log_level)
        COMMANDS[args.command](args, config)
    except EquityOptimizerError as e:
        print_msg(f"Error: {e}", "error")
        logger.debug("Command failed", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

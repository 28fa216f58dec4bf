"""
Constrained selector: greedy top-k picks under a per-sector count cap.

The cap here is count based (floor(max_sector_pct * target_holdings), at
least one). Weight-based sector limits are checked when a trade plan is
validated.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.errors import ConstraintUnsatisfiable
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorScore

logger = get_logger(__name__)

UNKNOWN_SECTOR = "Unknown"


@dataclass
class SelectionResult:
    chosen: List[FactorScore] = field(default_factory=list)
    rejected_for_sector: List[FactorScore] = field(default_factory=list)
    shortfall: int = 0

    @property
    def tickers(self) -> List[str]:
        return [s.ticker for s in self.chosen]

    def as_error(self) -> Optional[ConstraintUnsatisfiable]:
        """ConstraintUnsatisfiable describing the shortfall, or None when filled."""
        if self.shortfall <= 0:
            return None
        return ConstraintUnsatisfiable(len(self.chosen) + self.shortfall, len(self.chosen))


def sector_of(score: FactorScore) -> str:
    return score.sector or UNKNOWN_SECTOR


def selection_order(scores: Iterable[FactorScore]) -> List[FactorScore]:
    """Composite descending, then beta ascending (absent beta last), then ticker."""
    return sorted(
        scores,
        key=lambda s: (
            -s.composite,
            s.beta is None,
            s.beta if s.beta is not None else 0.0,
            s.ticker,
        ),
    )


def select(
    scored: Iterable[FactorScore],
    k: int,
    constraints: PortfolioConstraints,
    existing_sector_counts: Optional[Mapping[str, int]] = None,
) -> SelectionResult:
    """
    Pick up to k stocks without exceeding the per-sector count cap.

    Args:
        scored: Candidate scores
        k: Number of slots to fill
        constraints: Portfolio constraints supplying the sector cap
        existing_sector_counts: Holdings already occupying each sector

    Returns:
        SelectionResult; shortfall > 0 when the pool could not fill k slots
    """
    result = SelectionResult()
    if k <= 0:
        return result

    cap = constraints.max_per_sector
    counts: Dict[str, int] = Counter(existing_sector_counts or {})

    for score in selection_order(scored):
        if len(result.chosen) >= k:
            break
        sector = sector_of(score)
        if counts[sector] >= cap:
            result.rejected_for_sector.append(score)
            continue
        result.chosen.append(score)
        counts[sector] += 1

    result.shortfall = k - len(result.chosen)
    if result.shortfall > 0:
        logger.warning(
            "Selector filled %d of %d slots (sector cap %d per sector, %d rejected)",
            len(result.chosen),
            k,
            cap,
            len(result.rejected_for_sector),
        )
    return result

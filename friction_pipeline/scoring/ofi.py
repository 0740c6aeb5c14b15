"""
Operational Friction Index (OFI) calculation.

The score combines three signals from an account's friction cards:

    weighted_score   = sum of severity weights (1, 2, 4, 8, 16 by default)
    base_score       = log10(weighted_score + 1) * 20
    density          = cards / max(case_volume, 1) * 100
    multiplier       = clamp(density / 5, 0.5, 2.0)
    boost            = min(high_severity_count * 2, 20)
    ofi              = clamp(round(base_score * multiplier + boost), 0, 100)

Only cards flagged as genuine friction take part.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional
import math
import logging

from friction_pipeline.config.settings import PipelineConfig
from friction_pipeline.models.schemas import (
    AccountSnapshot,
    FrictionCard,
    ScoreBreakdown,
    ThemeSummary,
    TrendDirection,
)

logger = logging.getLogger(__name__)

DEFAULT_SEVERITY_WEIGHTS = {1: 1, 2: 2, 3: 4, 4: 8, 5: 16}


@dataclass
class OfiResult:
    ofi_score: int
    card_count: int
    high_severity_count: int
    case_volume: int
    breakdown: ScoreBreakdown
    top_themes: List[ThemeSummary] = field(default_factory=list)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values, unlike Python's banker's rounding."""
    return math.floor(value + 0.5)


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def qualifying_cards(cards: Iterable[FrictionCard]) -> List[FrictionCard]:
    return [card for card in cards if card.is_friction]


def top_themes(cards: List[FrictionCard], limit: int = 5) -> List[ThemeSummary]:
    """Group cards by theme, most frequent first; ties keep first-seen order."""
    grouped: Dict[str, List[int]] = {}
    for card in cards:
        grouped.setdefault(card.theme_key, []).append(card.severity)

    summaries = [
        ThemeSummary(theme_key=key, count=len(severities), avg_severity=sum(severities) / len(severities))
        for key, severities in grouped.items()
    ]
    summaries.sort(key=lambda s: s.count, reverse=True)
    return summaries[:limit]


def compute_ofi(
    cards: Iterable[FrictionCard],
    case_volume: int,
    config: Optional[PipelineConfig] = None,
) -> OfiResult:
    """
    Score an account from its complete set of friction cards.

    Args:
        cards: All of the account's cards; non-friction cards are ignored
        case_volume: Number of cases in the scoring window (density denominator)
        config: Pipeline configuration holding the severity weights and limits

    Returns:
        OfiResult with the 0-100 score, breakdown and top themes
    """
    config = config or PipelineConfig()
    weights = config.severity_weights or DEFAULT_SEVERITY_WEIGHTS
    friction = qualifying_cards(cards)
    card_count = len(friction)

    if card_count == 0:
        return OfiResult(
            ofi_score=0,
            card_count=0,
            high_severity_count=0,
            case_volume=case_volume,
            breakdown=ScoreBreakdown(),
            top_themes=[],
        )

    weighted_score = sum(weights.get(card.severity, 1) for card in friction)
    base_score = math.log10(weighted_score + 1) * 20

    friction_density = (card_count / max(case_volume, 1)) * 100
    density_multiplier = clamp(friction_density / 5, 0.5, 2.0)

    high_severity_count = sum(1 for card in friction if card.severity >= config.high_severity_threshold)
    high_severity_boost = min(high_severity_count * 2, 20)

    raw_ofi = round_half_up(base_score * density_multiplier + high_severity_boost)
    ofi_score = int(clamp(raw_ofi, 0, 100))

    logger.debug(
        f"OFI: cards={card_count} weighted={weighted_score} base={base_score:.1f} "
        f"density={friction_density:.2f}% multiplier={density_multiplier:.2f} "
        f"boost={high_severity_boost} score={ofi_score}"
    )

    return OfiResult(
        ofi_score=ofi_score,
        card_count=card_count,
        high_severity_count=high_severity_count,
        case_volume=case_volume,
        breakdown=ScoreBreakdown(
            base_score=round(base_score, 1),
            friction_density=round(friction_density, 1),
            density_multiplier=round(density_multiplier, 2),
            high_severity_boost=high_severity_boost,
            severity_weighted=weighted_score,
            card_count=card_count,
        ),
        top_themes=top_themes(friction, config.top_themes_limit),
    )


def build_snapshot(
    account_id: str,
    snapshot_date: date,
    result: OfiResult,
    trend_delta: Optional[int],
    trend_direction: TrendDirection,
) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=account_id,
        snapshot_date=snapshot_date,
        ofi_score=result.ofi_score,
        friction_card_count=result.card_count,
        high_severity_count=result.high_severity_count,
        case_volume=result.case_volume,
        top_themes=result.top_themes,
        score_breakdown=result.breakdown,
        trend_vs_prior_period=trend_delta,
        trend_direction=trend_direction,
    )

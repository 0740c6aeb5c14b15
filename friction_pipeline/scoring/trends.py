"""Trend direction against the prior snapshot and threshold alert rules."""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging

from friction_pipeline.config.settings import PipelineConfig
from friction_pipeline.models.schemas import (
    Account,
    AccountSnapshot,
    Alert,
    AlertSeverity,
    AlertType,
    TrendDirection,
)

logger = logging.getLogger(__name__)


def compute_trend(
    new_score: int,
    prior_score: Optional[int],
    threshold: int = 5,
) -> Tuple[Optional[int], TrendDirection]:
    """
    Compare a new OFI score with the previous one.

    A rising score means more friction, so a delta above ``threshold`` is
    worsening and one below ``-threshold`` is improving.

    Returns:
        (delta or None when there is no prior score, direction)
    """
    if prior_score is None:
        return None, TrendDirection.STABLE

    delta = new_score - prior_score
    if delta > threshold:
        return delta, TrendDirection.WORSENING
    if delta < -threshold:
        return delta, TrendDirection.IMPROVING
    return delta, TrendDirection.STABLE


def evaluate_alerts(
    account: Account,
    snapshot: AccountSnapshot,
    now: datetime,
    config: Optional[PipelineConfig] = None,
) -> List[Alert]:
    """Apply each alert rule independently to a freshly computed snapshot."""
    config = config or PipelineConfig()
    expires_at = now + timedelta(days=config.alert_ttl_days)
    score = snapshot.ofi_score
    high_count = snapshot.high_severity_count
    alerts = []

    def make(alert_type: AlertType, severity: AlertSeverity, title: str, message: str, evidence: dict) -> Alert:
        return Alert(
            account_id=account.id,
            user_id=account.user_id,
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            evidence=evidence,
            created_at=now,
            expires_at=expires_at,
        )

    if score >= config.high_friction_threshold:
        alerts.append(make(
            AlertType.HIGH_FRICTION,
            AlertSeverity.HIGH,
            f"High Friction: {account.name}",
            f"OFI score is {score}, indicating significant customer friction. "
            f"{high_count} high-severity issues detected.",
            {
                "ofi_score": score,
                "high_severity_count": high_count,
                "friction_card_count": snapshot.friction_card_count,
                "case_volume": snapshot.case_volume,
            },
        ))

    if high_count >= config.critical_severity_count:
        alerts.append(make(
            AlertType.CRITICAL_SEVERITY,
            AlertSeverity.CRITICAL,
            f"Critical Issues: {account.name}",
            f"{high_count} critical severity issues detected in recent cases.",
            {"high_severity_count": high_count, "ofi_score": score},
        ))

    delta = snapshot.trend_vs_prior_period
    if (
        snapshot.trend_direction == TrendDirection.WORSENING.value
        and delta is not None
        and delta > config.trending_worse_delta
    ):
        alerts.append(make(
            AlertType.TRENDING_WORSE,
            AlertSeverity.MEDIUM,
            f"Trending Worse: {account.name}",
            f"OFI score rose {delta} points since the last snapshot (now {score}).",
            {"ofi_score": score, "trend_vs_prior_period": delta, "prior_score": score - delta},
        ))

    return alerts


def purge_expired_alerts(store, now: datetime) -> int:
    """Delete alerts past their expiry; run once per orchestrator pass."""
    deleted = store.delete_expired_alerts(now)
    if deleted:
        logger.info(f"Purged {deleted} expired alerts")
    return deleted

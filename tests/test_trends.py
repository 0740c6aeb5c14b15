"""Unit tests for trend computation and alert rules."""
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock
from friction_pipeline.models.schemas import Account, AccountSnapshot, TrendDirection
from friction_pipeline.scoring.trends import compute_trend, evaluate_alerts, purge_expired_alerts


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def account():
    return Account(id="acc-1", user_id="user-1", salesforce_id="001000000000001", name="Acme")


def make_snapshot(ofi_score, high_severity_count=0, delta=None, direction=TrendDirection.STABLE):
    return AccountSnapshot(
        account_id="acc-1",
        snapshot_date=date(2024, 5, 1),
        ofi_score=ofi_score,
        friction_card_count=10,
        high_severity_count=high_severity_count,
        case_volume=40,
        trend_vs_prior_period=delta,
        trend_direction=direction,
    )


class TestComputeTrend:
    """Test compute_trend."""

    def test_no_prior_snapshot(self):
        """Test first snapshot has no delta and is stable."""
        assert compute_trend(55, None) == (None, TrendDirection.STABLE)

    @pytest.mark.parametrize("new,prior,direction", [
        (56, 50, TrendDirection.WORSENING),
        (55, 50, TrendDirection.STABLE),
        (45, 50, TrendDirection.STABLE),
        (44, 50, TrendDirection.IMPROVING),
        (50, 50, TrendDirection.STABLE),
    ])
    def test_direction_boundaries(self, new, prior, direction):
        """Test the five-point dead band on either side."""
        delta, result = compute_trend(new, prior)
        assert delta == new - prior
        assert result == direction

    def test_drop_to_zero_is_improving(self):
        """Test a quiet account falling to zero improves against a high baseline."""
        assert compute_trend(0, 40) == (-40, TrendDirection.IMPROVING)


class TestEvaluateAlerts:
    """Test evaluate_alerts."""

    def test_high_friction_at_70(self, account):
        """Test a score of exactly 70 raises a high-friction alert."""
        alerts = evaluate_alerts(account, make_snapshot(70), NOW)

        assert [a.alert_type for a in alerts] == ["high_friction"]
        assert alerts[0].severity == "high"
        assert alerts[0].title == "High Friction: Acme"
        assert alerts[0].evidence["ofi_score"] == 70

    def test_no_high_friction_at_69(self, account):
        """Test a score of 69 raises nothing."""
        assert evaluate_alerts(account, make_snapshot(69), NOW) == []

    def test_critical_severity(self, account):
        """Test three high-severity cards raise a critical alert."""
        alerts = evaluate_alerts(account, make_snapshot(30, high_severity_count=3), NOW)

        assert [a.alert_type for a in alerts] == ["critical_severity"]
        assert alerts[0].severity == "critical"

    def test_critical_severity_below_threshold(self, account):
        assert evaluate_alerts(account, make_snapshot(30, high_severity_count=2), NOW) == []

    def test_trending_worse(self, account):
        """Test a worsening jump of more than ten points."""
        alerts = evaluate_alerts(
            account, make_snapshot(40, delta=11, direction=TrendDirection.WORSENING), NOW
        )

        assert [a.alert_type for a in alerts] == ["trending_worse"]
        assert alerts[0].severity == "medium"
        assert alerts[0].evidence["prior_score"] == 29

    def test_trending_worse_needs_more_than_ten(self, account):
        alerts = evaluate_alerts(
            account, make_snapshot(40, delta=10, direction=TrendDirection.WORSENING), NOW
        )
        assert alerts == []

    def test_all_rules_independent(self, account):
        """Test one snapshot can raise all three alerts."""
        snapshot = make_snapshot(85, high_severity_count=6, delta=20, direction=TrendDirection.WORSENING)
        alerts = evaluate_alerts(account, snapshot, NOW)

        assert {a.alert_type for a in alerts} == {"high_friction", "critical_severity", "trending_worse"}

    def test_alerts_expire_after_seven_days(self, account):
        """Test every alert carries a seven-day expiry."""
        alerts = evaluate_alerts(account, make_snapshot(90, high_severity_count=4), NOW)

        assert alerts
        for alert in alerts:
            assert alert.created_at == NOW
            assert alert.expires_at == NOW + timedelta(days=7)
            assert alert.account_id == "acc-1"
            assert alert.user_id == "user-1"


class TestPurgeExpiredAlerts:
    """Test purge_expired_alerts."""

    def test_deletes_through_store(self):
        """Test the purge passes the current time to the store."""
        store = Mock()
        store.delete_expired_alerts.return_value = 4

        assert purge_expired_alerts(store, NOW) == 4
        store.delete_expired_alerts.assert_called_once_with(NOW)

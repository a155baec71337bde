import datetime as dt
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from sqlalchemy import func, select, update

from server.promptpm.billing.errors import AccountNotFound, ValidationError
from server.promptpm.billing.governance import CostMonitor
from server.promptpm.billing.lifecycle import reset_monthly_costs
from server.promptpm.billing.test_ledger import create_user, ledger_settings
from server.promptpm.core.db import session_scope
from server.promptpm.core.migrations import upgrade_to_head
from server.promptpm.core.models import ApiCostEvent, CostAlert, CostLimit, Organization, OrganizationMember, User


class GovernanceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.settings = ledger_settings(Path(tmp.name), "governance.db")
        upgrade_to_head(self.settings)
        self.monitor = CostMonitor(self.settings)
        self.free_id = create_user(self.settings, "free@example.com")
        self.plus_id = create_user(self.settings, "plus@example.com", "active")
        self.org_id = create_user(self.settings, "org@example.com", "active")
        self._join_org(self.org_id, verified=True)

    def _join_org(self, user_id: str, *, verified: bool) -> None:
        with session_scope(self.settings) as db:
            org = Organization(name=f"org-{user_id}", is_verified=verified)
            db.add(org)
            db.flush()
            db.add(OrganizationMember(org_id=org.id, user_id=user_id))

    def _set_user(self, user_id: str, **fields) -> None:
        with session_scope(self.settings) as db:
            user = db.get(User, user_id)
            for key, value in fields.items():
                setattr(user, key, value)

    def _alert_types(self, user_id: str) -> list[str]:
        with session_scope(self.settings) as db:
            return sorted(db.scalars(select(CostAlert.alert_type).where(CostAlert.user_id == user_id)))


class TestCostStatus(GovernanceTestCase):
    def test_tier_resolution(self) -> None:
        free = self.monitor.get_user_cost_status(self.free_id)
        plus = self.monitor.get_user_cost_status(self.plus_id)
        org = self.monitor.get_user_cost_status(self.org_id)

        self.assertEqual((free.tier, free.cost_limit), ("free", Decimal("0.50")))
        self.assertEqual((plus.tier, plus.cost_limit), ("plus_individual", Decimal("5.00")))
        self.assertEqual((org.tier, org.cost_limit), ("plus_org", Decimal("2.50")))

    def test_unverified_org_counts_as_individual(self) -> None:
        self._join_org(self.plus_id, verified=False)
        self.assertEqual(self.monitor.get_user_cost_status(self.plus_id).tier, "plus_individual")

    def test_lapsed_subscription_is_free(self) -> None:
        self._set_user(self.org_id, subscription_status="canceled")
        self.assertEqual(self.monitor.get_user_cost_status(self.org_id).tier, "free")

    def test_missing_user(self) -> None:
        with self.assertRaises(AccountNotFound):
            self.monitor.get_user_cost_status("nobody")
        with self.assertRaises(AccountNotFound):
            self.monitor.record_cost("nobody", Decimal("0.01"))


class TestThrottling(GovernanceTestCase):
    def test_request_within_limit_is_allowed(self) -> None:
        decision = self.monitor.can_afford_request(self.free_id, Decimal("0.10"))
        self.assertTrue(decision.allowed)
        self.assertIsNone(decision.reason)
        self.assertFalse(self.monitor.get_user_cost_status(self.free_id).is_throttled)

    def test_projected_overage_throttles(self) -> None:
        self._set_user(self.free_id, current_month_api_cost=Decimal("0.45"))

        decision = self.monitor.can_afford_request(self.free_id, Decimal("0.10"))

        self.assertFalse(decision.allowed)
        self.assertIn("$0.50", decision.reason)
        self.assertTrue(decision.status.is_throttled)
        status = self.monitor.get_user_cost_status(self.free_id)
        self.assertTrue(status.is_throttled)
        self.assertEqual(status.throttled_reason, "Would exceed free monthly API cost limit ($0.50)")
        self.assertEqual(self._alert_types(self.free_id), ["throttled"])

        # Already throttled: the stored reason is returned, even for tiny requests.
        again = self.monitor.can_afford_request(self.free_id, Decimal("0"))
        self.assertFalse(again.allowed)
        self.assertEqual(again.reason, status.throttled_reason)

    def test_manual_throttle_and_unthrottle(self) -> None:
        self.monitor.throttle_user(self.plus_id, "Abuse review")
        decision = self.monitor.can_afford_request(self.plus_id, Decimal("0.01"))
        self.assertEqual((decision.allowed, decision.reason), (False, "Abuse review"))

        self.monitor.unthrottle_user(self.plus_id)
        self.assertTrue(self.monitor.can_afford_request(self.plus_id, Decimal("0.01")).allowed)

    def test_limit_row_controls_fallback_and_throttling(self) -> None:
        with session_scope(self.settings) as db:
            db.execute(update(CostLimit).where(CostLimit.tier_name == "plus_org").values(is_active=False))
            db.execute(update(CostLimit).where(CostLimit.tier_name == "free").values(throttle_on_exceed=False))

        self.assertEqual(self.monitor.get_user_cost_status(self.org_id).cost_limit, Decimal("0.50"))
        decision = self.monitor.can_afford_request(self.free_id, Decimal("0.75"))
        self.assertFalse(decision.allowed)
        self.assertFalse(self.monitor.get_user_cost_status(self.free_id).is_throttled)

    def test_invalid_inputs(self) -> None:
        with self.assertRaises(ValidationError):
            self.monitor.can_afford_request(self.free_id, Decimal("-0.01"))
        with self.assertRaises(ValidationError):
            self.monitor.record_cost(self.free_id, "abc")
        with self.assertRaises(ValidationError):
            self.monitor.throttle_user(self.free_id, "x", source="cron")


class TestRecordCost(GovernanceTestCase):
    def test_counters_events_and_alerts_once_per_month(self) -> None:
        self.monitor.record_cost(self.free_id, Decimal("0.30"), {"model": "sonnet", "input_tokens": 10, "output_tokens": 5})
        self.assertEqual(self._alert_types(self.free_id), ["warning_50"])

        self.monitor.record_cost(self.free_id, Decimal("0.10"))
        self.monitor.record_cost(self.free_id, Decimal("0.01"))

        status = self.monitor.get_user_cost_status(self.free_id)
        self.assertEqual(status.current_month_cost, Decimal("0.41"))
        self.assertEqual(status.percent_used, Decimal("82.00"))
        self.assertEqual(self._alert_types(self.free_id), ["warning_50", "warning_75"])
        with session_scope(self.settings) as db:
            user = db.get(User, self.free_id)
            self.assertEqual(user.lifetime_api_cost, Decimal("0.41"))
            events = db.scalar(select(func.count()).select_from(ApiCostEvent).where(ApiCostEvent.user_id == self.free_id))
            self.assertEqual(events, 3)

    def test_recording_does_not_throttle(self) -> None:
        self.monitor.record_cost(self.free_id, Decimal("0.60"))
        status = self.monitor.get_user_cost_status(self.free_id)
        self.assertFalse(status.is_throttled)
        self.assertEqual(self._alert_types(self.free_id), ["warning_50", "warning_75", "warning_90"])


class TestMonthlyCostReset(GovernanceTestCase):
    def test_reset_clears_limit_throttles_only(self) -> None:
        now = dt.datetime.now(dt.UTC)
        self._set_user(self.free_id, current_month_api_cost=Decimal("0.45"))
        self.monitor.can_afford_request(self.free_id, Decimal("0.10"))
        self.monitor.throttle_user(self.plus_id, "Chargeback")
        for user_id in (self.free_id, self.plus_id, self.org_id):
            self._set_user(user_id, current_month_cost_reset_at=now - dt.timedelta(hours=1))

        result = reset_monthly_costs(self.monitor, now=now)

        self.assertEqual((result.processed, result.failed), (3, 0))
        free = self.monitor.get_user_cost_status(self.free_id)
        self.assertEqual(free.current_month_cost, Decimal("0"))
        self.assertFalse(free.is_throttled)
        self.assertTrue(self.monitor.get_user_cost_status(self.plus_id).is_throttled)
        self.assertEqual(self.monitor.reset_monthly_costs(now), 0)

    def test_not_due_users_keep_their_costs(self) -> None:
        self.monitor.record_cost(self.plus_id, Decimal("1.25"))
        self.assertEqual(self.monitor.reset_monthly_costs(), 0)
        self.assertEqual(self.monitor.get_user_cost_status(self.plus_id).current_month_cost, Decimal("1.25"))


class TestAnalytics(GovernanceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.monitor.record_cost(self.free_id, Decimal("0.20"))
        self.monitor.record_cost(self.plus_id, Decimal("5.50"))
        self.monitor.record_cost(self.org_id, Decimal("1.20"))

    def test_per_user_rows(self) -> None:
        rows = self.monitor.get_cost_analytics()

        self.assertEqual([r.user_id for r in rows], [self.plus_id, self.org_id, self.free_id])
        self.assertEqual([r.risk_level for r in rows], ["high_risk", "low_risk", "safe"])
        plus = rows[0]
        self.assertEqual(plus.monthly_revenue, Decimal("6.00"))
        self.assertEqual(plus.margin_percent, Decimal("8.33"))
        self.assertEqual((plus.current_month_requests, plus.total_requests), (1, 1))
        self.assertIsNone(rows[2].margin_percent)

        high = self.monitor.get_cost_analytics(risk_level="high_risk")
        self.assertEqual([r.user_id for r in high], [self.plus_id])
        self.assertEqual(len(self.monitor.get_cost_analytics(limit=2)), 2)
        with self.assertRaises(ValidationError):
            self.monitor.get_cost_analytics(risk_level="extreme")

    def test_aggregate_metrics(self) -> None:
        metrics = self.monitor.get_aggregate_cost_metrics()

        self.assertEqual(metrics.total_monthly_revenue, Decimal("9.00"))
        self.assertEqual(metrics.total_monthly_cost, Decimal("6.90"))
        self.assertEqual(metrics.overall_margin, Decimal("23.33"))
        self.assertEqual(metrics.active_users, 3)
        self.assertEqual(metrics.high_risk_users, 1)
        self.assertEqual(metrics.throttled_users, 0)
        self.assertEqual(metrics.average_cost_per_user, Decimal("2.30"))


if __name__ == "__main__":
    unittest.main()

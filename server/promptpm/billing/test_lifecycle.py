import datetime as dt
import tempfile
import unittest
from pathlib import Path

from server.promptpm.billing.ledger import CreditLedger
from server.promptpm.billing.lifecycle import expire_rollover_credits, process_monthly_reset
from server.promptpm.billing.memory import InMemoryLedger
from server.promptpm.billing.test_ledger import create_user, ledger_settings, load_account, set_buckets
from server.promptpm.core.migrations import upgrade_to_head


class TestScheduledLedgerJobs(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.settings = ledger_settings(Path(tmp.name), "lifecycle.db")
        upgrade_to_head(self.settings)
        self.ledger = CreditLedger(self.settings)
        self.user_id = create_user(self.settings, "grace@example.com", "active")
        self.ledger.initialize_account(self.user_id)
        self.now = dt.datetime.now(dt.UTC)

    def test_monthly_reset_rolls_over_unused_credits_once(self) -> None:
        self.ledger.grant_monthly_credits(self.user_id)
        self.ledger.spend(self.user_id, 50, None, "run")
        set_buckets(self.settings, self.user_id, monthly_reset_at=self.now - dt.timedelta(minutes=1))

        first = process_monthly_reset(self.ledger, now=self.now)
        second = process_monthly_reset(self.ledger, now=self.now)

        self.assertEqual((first.processed, first.failed), (1, 0))
        self.assertEqual((second.processed, second.failed), (0, 0))
        balance = self.ledger.get_balance(self.user_id)
        # 5 purchased + 200 fresh monthly + 150 carried over
        self.assertEqual(balance.balance, 355)
        self.assertEqual((balance.monthly.allocated, balance.monthly.used), (200, 0))
        self.assertEqual(balance.rollover.amount, 150)

        reset = self.ledger.get_transaction_history(self.user_id, limit=1).transactions[0]
        self.assertEqual(reset.type, "monthly")
        self.assertEqual(reset.amount, 200)
        self.assertEqual(reset.metadata["unused_monthly"], 150)
        self.assertEqual(reset.metadata["expired_rollover"], 0)

    def test_accounts_without_allocation_are_not_reset(self) -> None:
        result = process_monthly_reset(self.ledger, now=self.now + dt.timedelta(days=400))
        self.assertEqual(result.processed, 0)
        self.assertEqual(self.ledger.get_balance(self.user_id).balance, 5)

    def test_rollover_expiration(self) -> None:
        set_buckets(
            self.settings,
            self.user_id,
            purchased_credits=70,
            rollover_credits=50,
            rollover_expires_at=self.now - dt.timedelta(seconds=1),
        )
        self.assertEqual(self.ledger.get_balance(self.user_id).balance, 120)

        result = expire_rollover_credits(self.ledger, now=self.now)

        self.assertEqual(result.processed, 1)
        balance = self.ledger.get_balance(self.user_id)
        self.assertEqual(balance.balance, 70)
        self.assertEqual(balance.rollover.amount, 0)
        self.assertIsNone(balance.rollover.expires_at)
        entry = self.ledger.get_transaction_history(self.user_id, type="expire").transactions[0]
        self.assertEqual((entry.amount, entry.balance_after), (-50, 70))

        self.assertEqual(expire_rollover_credits(self.ledger, now=self.now).processed, 0)

    def test_rollover_not_yet_due_is_kept(self) -> None:
        set_buckets(
            self.settings,
            self.user_id,
            rollover_credits=50,
            rollover_expires_at=self.now + dt.timedelta(days=3),
        )
        self.assertEqual(expire_rollover_credits(self.ledger, now=self.now).processed, 0)
        self.assertEqual(load_account(self.settings, self.user_id).rollover_credits, 50)


class _FlakyLedger(InMemoryLedger):
    def apply_monthly_reset(self, user_id: str, now: dt.datetime) -> bool:
        if user_id == "bad":
            raise RuntimeError("lock timeout")
        return super().apply_monthly_reset(user_id, now)


class TestBatchIsolation(unittest.TestCase):
    def test_failing_account_does_not_stop_batch(self) -> None:
        ledger = _FlakyLedger()
        for user_id in ("bad", "good"):
            ledger.initialize_account(user_id)
            ledger.grant_monthly_credits(user_id)

        with self.assertLogs("server.promptpm.billing.lifecycle", level="ERROR"):
            result = process_monthly_reset(ledger, now=dt.datetime.now(dt.UTC) + dt.timedelta(days=40))

        self.assertEqual((result.processed, result.failed), (1, 1))
        self.assertEqual(result.failed_users, ["bad"])
        self.assertFalse(result.ok)
        self.assertEqual(ledger.get_balance("good").rollover.amount, 200)


if __name__ == "__main__":
    unittest.main()

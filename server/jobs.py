from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from server.promptpm.billing.governance import CostMonitor
from server.promptpm.billing.ledger import CreditLedger
from server.promptpm.billing.lifecycle import expire_rollover_credits, process_monthly_reset, reset_monthly_costs
from server.promptpm.billing.types import BatchResult
from server.promptpm.core.cli import add_runtime_args, apply_runtime_overrides
from server.promptpm.core.config import Settings
from server.promptpm.core.migrations import SchemaOutOfDate, assert_db_current, upgrade_to_head

log = logging.getLogger("server.jobs")

JOBS = ("monthly-reset", "expire-rollover", "reset-costs")


def run_job(name: str, settings: Settings) -> BatchResult:
    if name == "monthly-reset":
        return process_monthly_reset(CreditLedger(settings))
    if name == "expire-rollover":
        return expire_rollover_credits(CreditLedger(settings))
    if name == "reset-costs":
        return reset_monthly_costs(CostMonitor(settings))
    raise ValueError(f"unknown job: {name}")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Credit ledger schema and maintenance jobs.")
    add_runtime_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="Bring the ledger schema to the shipped revision.")
    sub.add_parser("check", help="Exit 1 when the ledger schema needs `migrate`.")
    run = sub.add_parser("run", help="Run one maintenance job, or all of them in order.")
    run.add_argument("job", choices=[*JOBS, "all"])
    return parser


def _run(names: tuple[str, ...], settings: Settings) -> int:
    assert_db_current(settings)
    failed = False
    for name in names:
        result = run_job(name, settings)
        print(f"{name}: processed={result.processed} failed={result.failed}")
        if not result.ok:
            log.error("Job %s had failures for: %s", name, ", ".join(result.failed_users) or "batch")
            failed = True
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    load_dotenv()
    apply_runtime_overrides(args)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    if args.command == "migrate":
        print(f"ok: {upgrade_to_head(settings)}")
        return 0
    if args.command == "check":
        try:
            status = assert_db_current(settings)
        except SchemaOutOfDate as exc:
            print(f"pending: {exc}")
            return 1
        print(f"ok: {status}")
        return 0
    return _run(JOBS if args.job == "all" else (args.job,), settings)


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import os
from pathlib import Path

_DEFAULT_BLANK_DB_PATH = Path("./data/promptpm-blank.db").resolve()


def add_runtime_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--blank-db",
        action="store_true",
        help="Use a blank sqlite DB at ./data/promptpm-blank.db (overrides PROMPTPM_DB_URL).",
    )
    parser.add_argument(
        "--db-url",
        help="Database URL for this run (overrides PROMPTPM_DB_URL).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level (overrides PROMPTPM_LOG_LEVEL).",
    )


def apply_runtime_overrides(args: argparse.Namespace) -> None:
    if getattr(args, "log_level", None):
        os.environ["PROMPTPM_LOG_LEVEL"] = args.log_level
    if getattr(args, "db_url", None):
        os.environ["PROMPTPM_DB_URL"] = args.db_url
    if getattr(args, "blank_db", False):
        _DEFAULT_BLANK_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        if _DEFAULT_BLANK_DB_PATH.exists():
            _DEFAULT_BLANK_DB_PATH.unlink()
        os.environ["PROMPTPM_DB_URL"] = f"sqlite:///{_DEFAULT_BLANK_DB_PATH}"

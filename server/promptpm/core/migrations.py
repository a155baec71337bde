"""Ledger schema management on top of Alembic.

The ledger jobs refuse to run against a database whose applied revision is
not the one shipped with the code; ``upgrade_to_head`` brings it there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from server.promptpm.core.config import Settings
from server.promptpm.core.db import _ensure_db_parent_dir, get_engine

log = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[3]
ALEMBIC_INI = ROOT_DIR / "alembic.ini"


class SchemaOutOfDate(RuntimeError):
    pass


@dataclass(frozen=True)
class SchemaStatus:
    applied: tuple[str, ...]
    shipped: tuple[str, ...]

    @property
    def at_head(self) -> bool:
        return bool(self.shipped) and set(self.applied) == set(self.shipped)

    def __str__(self) -> str:
        return f"applied={','.join(self.applied) or 'none'} shipped={','.join(self.shipped) or 'none'}"


def _alembic_config(settings: Settings) -> Config:
    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(ROOT_DIR / "migrations"))
    # migrations/env.py prefers this over PROMPTPM_DB_URL
    cfg.attributes["db_url"] = settings.db_url
    return cfg


def schema_status(settings: Settings) -> SchemaStatus:
    shipped = ScriptDirectory.from_config(_alembic_config(settings)).get_heads()
    with get_engine(settings).connect() as connection:
        applied = MigrationContext.configure(connection).get_current_heads()
    return SchemaStatus(applied=tuple(applied), shipped=tuple(shipped))


def upgrade_to_head(settings: Settings) -> SchemaStatus:
    _ensure_db_parent_dir(settings.db_url)
    command.upgrade(_alembic_config(settings), "head")
    status = schema_status(settings)
    log.info("Ledger schema upgraded (%s)", status)
    return status


def assert_db_current(settings: Settings) -> SchemaStatus:
    status = schema_status(settings)
    if not status.at_head:
        raise SchemaOutOfDate(
            f"Ledger schema is not at head ({status}). Run `python -m server.jobs migrate` first."
        )
    return status

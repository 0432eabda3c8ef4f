"""Version store schema management, driving Alembic from code."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SCRIPT_LOCATION = PROJECT_ROOT / "alembic"

logger = logging.getLogger(__name__)


def _sqlite_url(database_path: Path) -> str:
    return f"sqlite:///{database_path}"


def _alembic_config(database_path: Path) -> Config:
    # No ini file: the only settings Alembic needs are the script location and URL.
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    cfg.set_main_option("sqlalchemy.url", _sqlite_url(database_path))
    return cfg


def head_revision() -> Optional[str]:
    return ScriptDirectory(str(SCRIPT_LOCATION)).get_current_head()


def current_revision(database_path: Path) -> Optional[str]:
    """Revision stamped in the database, or ``None`` for an empty file."""
    engine = create_engine(_sqlite_url(database_path), poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_database(database_path: Path, revision: str = "head") -> None:
    if revision == "head" and current_revision(database_path) == head_revision():
        return
    logger.info("Upgrading version store at %s to %s", database_path, revision)
    command.upgrade(_alembic_config(database_path), revision)


def downgrade_database(database_path: Path, revision: str) -> None:
    logger.warning("Downgrading version store at %s to %s", database_path, revision)
    command.downgrade(_alembic_config(database_path), revision)


def _resolve_database_path(explicit: Optional[str]) -> Path:
    if explicit:
        return Path(explicit).expanduser().resolve()
    from .config import get_settings

    return get_settings().database_path


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage the version store schema")
    parser.add_argument("command", choices=["upgrade", "downgrade", "current"])
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    parser.add_argument(
        "--database",
        default=None,
        help="Database file (defaults to the path resolved from settings)",
    )
    args = parser.parse_args()

    database_path = _resolve_database_path(args.database)
    database_path.parent.mkdir(parents=True, exist_ok=True)

    if args.command == "upgrade":
        upgrade_database(database_path, args.revision)
    elif args.command == "downgrade":
        downgrade_database(database_path, args.revision)
    else:
        print(current_revision(database_path) or "<empty>")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()

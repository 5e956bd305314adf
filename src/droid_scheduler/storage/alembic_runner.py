"""Programmatic access to the bundled Alembic migrations."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

ROOT_DIR = Path(__file__).resolve().parents[3]
ALEMBIC_INI = ROOT_DIR / "alembic.ini"
MIGRATIONS_DIR = ROOT_DIR / "alembic"


def alembic_config(db_path: Path) -> Config:
    """``alembic.ini`` with the script location pinned and the URL pointed at ``db_path``."""

    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head; a no-op for an up-to-date database."""

    command.upgrade(alembic_config(db_path), "head")


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()

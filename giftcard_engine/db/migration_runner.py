"""
Migration Runner - Applies pending Alembic migrations at startup.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from giftcard_engine.config import settings

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head schema revision."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        """Whether migrations remain to be applied."""
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """
    Convert the async application URL into one Alembic can use.

    Alembic's command API is synchronous, so asyncpg becomes psycopg2.
    """
    return (url or settings.database_url).replace("+asyncpg", "+psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def check_migrations_status() -> MigrationStatus:
    """Report current and head revisions without applying anything."""
    alembic_cfg = _alembic_config()
    engine = create_engine(sync_database_url())
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=ScriptDirectory.from_config(alembic_cfg).get_current_head(),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Upgrade the schema to head if it is behind.

    Raises:
        RuntimeError: If the upgrade fails
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        status = check_migrations_status()
        if not status.pending:
            logger.info("database_schema_current", revision=status.current_revision)
            return

        logger.info(
            "database_migrations_starting",
            from_revision=status.current_revision,
            to_revision=status.head_revision,
        )
        command.upgrade(_alembic_config(), "head")
        logger.info("database_migrations_complete", revision=status.head_revision)
    except Exception as e:
        logger.error("database_migration_failed", error=str(e), error_type=type(e).__name__)
        raise RuntimeError(f"Database migration failed: {e}") from e

from typing import Any

from loguru import logger
from sqla_wrapper import Session, SQLAlchemy
from sqlalchemy import pool

from alembic import command
from alembic.config import Config
from clubhub.db.base_model import Base, get_base_metadata
from clubhub.utils import alembic_dir

engine_options = {
    "pool_size": 25,
    "max_overflow": 25,
    "pool_pre_ping": True,
    "pool_recycle": 1800,
    "echo": False,
}

# Detached rows handed back by producers keep their loaded attributes.
session_options = {"expire_on_commit": False}


def _engine_options_for(url: str, echo: bool) -> dict[str, Any]:
    if url.startswith("sqlite"):
        options: dict[str, Any] = {
            "connect_args": {"check_same_thread": False},
            "echo": echo,
        }
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite://"):
            # one shared connection, otherwise every thread sees its own empty database
            options["poolclass"] = pool.StaticPool
        return options
    return {**engine_options, "echo": echo}


def create_database(url: str, echo: bool = False, create_tables: bool = False) -> SQLAlchemy:
    """Build the SQLAlchemy wrapper for ``url``; ``create_tables`` is for SQLite and tests."""
    db = SQLAlchemy(
        url,
        engine_options=_engine_options_for(url, echo),
        # sqla_wrapper writes its engine bind into this dict
        session_options=dict(session_options),
    )
    if create_tables:
        get_base_metadata().create_all(db.engine)
    logger.log("DATABASE", f"Database engine ready ({db.engine.dialect.name})")
    return db


def supports_row_locks(session: Session) -> bool:
    """``SELECT ... FOR UPDATE`` is a no-op worth skipping on SQLite."""
    return session.get_bind().dialect.name != "sqlite"


def alembic_config(database_url: str | None = None) -> Config:
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(alembic_dir))
    if database_url:
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    return alembic_cfg


def run_migrations(database_url: str):
    """Run any pending migrations up to head."""
    try:
        command.upgrade(alembic_config(database_url), "head")
        logger.success("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise


__all__ = ["Base", "create_database", "run_migrations", "supports_row_locks"]

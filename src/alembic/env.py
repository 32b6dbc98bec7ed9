import os

from loguru import logger
from sqlalchemy import engine_from_config, pool
from sqlalchemy.exc import OperationalError, ProgrammingError

from alembic import context
from clubhub.db.base_model import get_base_metadata

# Alembic configuration
config = context.config
if not config.get_main_option("sqlalchemy.url"):
    url = os.getenv("CLUBHUB_DATABASE_HOST")
    if not url:
        from clubhub.settings.manager import SettingsManager

        url = SettingsManager().settings.database.host
    config.set_main_option("sqlalchemy.url", url)

# Set MetaData object for autogenerate support
target_metadata = get_base_metadata()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,  # Compare column types
            compare_server_default=True,  # Compare default values
            render_as_batch=connection.dialect.name == "sqlite",
        )

        try:
            with context.begin_transaction():
                logger.log("DATABASE", "Starting migrations...")
                context.run_migrations()
                logger.log("DATABASE", "Migrations completed successfully")
        except (OperationalError, ProgrammingError) as e:
            logger.error(f"Database error during migration: {e}")
            raise


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

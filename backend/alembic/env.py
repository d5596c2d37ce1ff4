"""Migration runner for the on-device report queue (SQLite, batch mode)."""
from logging.config import fileConfig
import os
import sys

from sqlalchemy import engine_from_config, pool

from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aegis.models.base import Base  # noqa: E402
import aegis.models.report  # noqa: F401, E402

config = context.config

# Embedding callers (tests, the app) keep their own logging setup
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

# The device database path is deployment config, not part of alembic.ini
if os.environ.get("LOCAL_DATABASE_URL"):
    config.set_main_option("sqlalchemy.url", os.environ["LOCAL_DATABASE_URL"])

QUEUE_OPTIONS = {"target_metadata": Base.metadata, "render_as_batch": True}


def migrate_to_script() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **QUEUE_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def migrate_device_db() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **QUEUE_OPTIONS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    migrate_to_script()
else:
    migrate_device_db()

import logging
import sys
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import models  # noqa: E402,F401  registers tables on Base.metadata
from config import get_settings  # noqa: E402
from database import Base  # noqa: E402

logger = logging.getLogger("alembic.env")

config = context.config
target_metadata = Base.metadata


def _configure_and_run(**options) -> None:
    context.configure(target_metadata=target_metadata, **options)
    with context.begin_transaction():
        context.run_migrations()


def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or get_settings().database_url


def run_offline() -> None:
    _configure_and_run(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )


def run_online() -> None:
    # Database.open() passes its live connection so in-memory stores migrate in place
    shared = config.attributes.get("connection")
    if shared is not None:
        _configure_and_run(connection=shared, render_as_batch=True)
        return

    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        logger.info(f"migrating: url={engine.url.render_as_string(hide_password=True)}")
        _configure_and_run(connection=connection, render_as_batch=True)


if context.is_offline_mode():
    run_offline()
else:
    run_online()

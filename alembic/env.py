# alembic/env.py
# Миграции схемы заказов. URL берётся из orderflow.core.config, а не из alembic.ini.

import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool

# alembic/ лежит в корне проекта рядом с пакетом orderflow
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from orderflow.core.config import settings
from orderflow.db.base import Base

# Регистрируем таблицы в Base.metadata
import orderflow.models.user
import orderflow.models.product
import orderflow.models.order

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

DATABASE_URL = settings.DATABASE_URL
config.set_main_option("sqlalchemy.url", DATABASE_URL)
target_metadata = Base.metadata


def _context_options() -> dict:
    options = {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
    }
    # SQLite не умеет ALTER для CHECK/FK, batch-режим пересоздаёт таблицу
    if DATABASE_URL.startswith("sqlite"):
        options["render_as_batch"] = True
    return options


def run_migrations_offline() -> None:
    """Генерирует SQL без подключения к БД (alembic upgrade --sql)."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        with connectable.connect() as connection:
            context.configure(connection=connection, **_context_options())
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    logger.info(f"Running migrations offline for {DATABASE_URL.split('@')[-1]}")
    run_migrations_offline()
else:
    logger.info(f"Running migrations online for {DATABASE_URL.split('@')[-1]}")
    run_migrations_online()

# orderflow/db/base.py
# Общая declarative база для SQLAlchemy.
# Этот модуль должен быть максимально простым и не импортировать модели,
# чтобы избежать циклических импортов. Модели должны импортировать Base отсюда.

import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base

# Единственная точка определения Base для всех моделей
Base = declarative_base()


def new_id() -> str:
    """Непрозрачный идентификатор строки."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Текущее время в UTC без tzinfo, так его хранят и Postgres, и SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# orderflow/db/session.py
# Инициализация SQLAlchemy engine и фабрики сессий.
# Поддерживает как Postgres, так и SQLite (для тестов/локального использования).

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from orderflow.core.config import settings

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str):
    """Создаёт engine с параметрами под диалект."""
    if url.startswith("sqlite"):
        # Для sqlite требуется connect_args; in-memory база живёт в одном соединении
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    # pool_pre_ping полезен для долгоживущих соединений с Postgres
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)

# expire_on_commit=False: результаты переходов читаются уже после коммита
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

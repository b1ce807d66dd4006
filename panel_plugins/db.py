from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base для моделей (используется в models.py)
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """Создать engine; для SQLite разрешаем доступ из разных потоков."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, echo=False, future=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Создать фабрику сессий и таблицы реестра."""
    # Импорт регистрирует модели в Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(engine)
    return sessionmaker(
        engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Context manager для получения сессии БД.

    Использование:
        with session_scope(factory) as db:
            plugins = db.execute(select(Plugin)).scalars().all()

    Автоматически коммитит транзакцию при успехе или откатывает при ошибке.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error: {e}", exc_info=True)
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Unexpected error in database session: {e}", exc_info=True)
        raise
    finally:
        session.close()

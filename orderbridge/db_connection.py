# orderbridge/db_connection.py
import logging
from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from orderbridge.app_config import Settings

logger = logging.getLogger("orderbridge")


def with_default_driver(url: str) -> str:
    """Bare postgres URLs go through pg8000."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+pg8000://" + url[len(prefix):]
    return url


class DBConnection:
    def __init__(self, settings: Settings) -> None:
        self.DATABASE_URL = with_default_driver(settings.DATABASE_URL)
        self.IS_LOCAL = self.DATABASE_URL.startswith("sqlite")
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

    # -------- engine --------
    def get_engine(self) -> Engine:
        if self._engine is None:
            if self.IS_LOCAL:
                logger.info(f"[DB] Using local SQLite: {self.DATABASE_URL}")
                # the bridge reaches the store from worker threads (asyncio.to_thread)
                self._engine = create_engine(
                    self.DATABASE_URL,
                    future=True,
                    connect_args={"check_same_thread": False},
                )
            else:
                logger.info("[DB] Connecting to Postgres")
                self._engine = create_engine(self.DATABASE_URL, future=True, pool_pre_ping=True)
        return self._engine

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory

"""Local SQLite database backend for key-value storage.

Provides the SQLAlchemy model and LocalDBKeyValueStore for persisting
batches, status flags, locks and consumed tokens to a local SQLite database.
"""

import logging
import os
import time
from threading import Lock
from typing import Any, List, Optional, Tuple

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from .base import DEFAULT_PURGE_INTERVAL

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "batchwork.db"
MAX_KEY_LENGTH = 191


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


class OptionModel(Base):
    """SQLAlchemy model for the batchwork_options table.

    The autoincrement ``id`` is the insertion order used for FIFO scans.
    """

    __tablename__ = "batchwork_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(MAX_KEY_LENGTH), nullable=False, unique=True, index=True)
    value = Column(JSON, nullable=True)
    expires_at = Column(Float, nullable=True)


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _expires_at(ttl: Optional[float]) -> Optional[float]:
    return time.time() + ttl if ttl else None


def _live(now: float):
    return or_(OptionModel.expires_at.is_(None), OptionModel.expires_at > now)


class LocalDBKeyValueStore:
    """SQLite-backed key-value storage using SQLAlchemy.

    Provides persistent local storage. Data survives restarts.

    Args:
        db_path: Path to SQLite database file. Defaults to 'batchwork.db'.
        purge_interval: Minimum seconds between two expiry sweeps run by ``add``.
    """

    def __init__(self, db_path: Optional[str] = None, purge_interval: float = DEFAULT_PURGE_INTERVAL) -> None:
        self._db_path = db_path or os.getenv("LOCAL_DB_PATH", DEFAULT_DB_PATH)
        self._engine = create_engine(
            f"sqlite:///{self._db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(bind=self._engine)
        self._lock = Lock()
        self.purge_interval = purge_interval
        self._last_purge = time.time()
        logger.info("Initialized local SQLite database at %s", self._db_path)

    def _get_session(self) -> Session:
        return self._session_factory()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            session = self._get_session()
            try:
                row = session.query(OptionModel).filter(OptionModel.key == key).first()
                if row is None:
                    return default
                if row.expires_at is not None and row.expires_at <= time.time():
                    session.delete(row)
                    session.commit()
                    return default
                return row.value
            finally:
                session.close()

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = _expires_at(ttl)
        with self._lock:
            session = self._get_session()
            try:
                row = session.query(OptionModel).filter(OptionModel.key == key).first()
                if row is None:
                    session.add(OptionModel(key=key, value=value, expires_at=expires_at))
                    try:
                        session.commit()
                        return
                    except IntegrityError:
                        # Another writer inserted the key first; fall through to update it.
                        session.rollback()
                        row = session.query(OptionModel).filter(OptionModel.key == key).one()
                row.value = value
                row.expires_at = expires_at
                flag_modified(row, "value")
                session.commit()
            finally:
                session.close()

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        expires_at = _expires_at(ttl)
        now = time.time()
        with self._lock:
            session = self._get_session()
            try:
                if now - self._last_purge >= self.purge_interval:
                    self._purge(session, now)
                reclaimed = (
                    session.query(OptionModel)
                    .filter(OptionModel.key == key, OptionModel.expires_at.isnot(None), OptionModel.expires_at <= now)
                    .update({"value": value, "expires_at": expires_at}, synchronize_session=False)
                )
                if reclaimed:
                    session.commit()
                    return True
                if session.query(OptionModel.id).filter(OptionModel.key == key).first() is not None:
                    return False
                session.add(OptionModel(key=key, value=value, expires_at=expires_at))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
            finally:
                session.close()

    def delete(self, key: str) -> None:
        with self._lock:
            session = self._get_session()
            try:
                session.query(OptionModel).filter(OptionModel.key == key).delete()
                session.commit()
            finally:
                session.close()

    def list(self, prefix: str, limit: int = 0) -> List[Tuple[str, Any]]:
        with self._lock:
            session = self._get_session()
            try:
                q = (
                    session.query(OptionModel)
                    .filter(OptionModel.key.like(_escape_like(prefix) + "%", escape="\\"))
                    .filter(_live(time.time()))
                    .order_by(OptionModel.id.asc())
                )
                if limit > 0:
                    q = q.limit(limit)
                return [(row.key, row.value) for row in q.all()]
            finally:
                session.close()

    def _purge(self, session: Session, now: float) -> int:
        removed = (
            session.query(OptionModel)
            .filter(OptionModel.expires_at.isnot(None), OptionModel.expires_at <= now)
            .delete(synchronize_session=False)
        )
        session.commit()
        self._last_purge = now
        if removed:
            logger.debug("Purged %d expired entries", removed)
        return removed

    def purge_expired(self) -> int:
        with self._lock:
            session = self._get_session()
            try:
                return self._purge(session, time.time())
            finally:
                session.close()

    def close(self) -> None:
        self._engine.dispose()

"""
Persistence Gateway - durable snapshots of DCA state.

Each logical dataset (positions, volatility cache, performance stats,
DCA config) is stored as one JSON document in the ``dca_snapshots``
table. Methods are synchronous; the engine runs them in a worker thread
and serializes writes so the latest snapshot always wins.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from atr_dca.core.models import PositionState, PositionStatus, utcnow
from atr_dca.exceptions import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/dca_state.db"

POSITIONS_KEY = "positions"
CACHE_KEY = "volatility_cache"
STATS_KEY = "performance_stats"
CONFIG_KEY = "dca_config"

Base = declarative_base()


class DCASnapshot(Base):
    __tablename__ = "dca_snapshots"

    key = Column(String(64), primary_key=True)
    payload = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


def _engine_for(database_url: str):
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    # Calls arrive from worker threads
    connect_args = {"check_same_thread": False}
    if not url.database or url.database == ":memory:":
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)

    directory = os.path.dirname(url.database)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args)


class PersistenceGateway:
    """SQLAlchemy-backed snapshot store."""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL):
        self.database_url = database_url
        self.engine = _engine_for(database_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.last_save: Optional[datetime] = None
        logger.info(f"💾 DCA persistence ready ({self.engine.url.render_as_string(hide_password=True)})")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Writes (raise PersistenceError)
    # ------------------------------------------------------------------

    def _put(self, session: Session, key: str, data: Any) -> None:
        payload = json.dumps(data)
        row = session.get(DCASnapshot, key)
        if row is None:
            session.add(DCASnapshot(key=key, payload=payload, version=1, updated_at=utcnow()))
        else:
            row.payload = payload
            row.version += 1
            row.updated_at = utcnow()

    def _write(self, items: Dict[str, Any]) -> None:
        started = time.perf_counter()
        try:
            with self.session_scope() as session:
                for key, data in items.items():
                    self._put(session, key, data)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save {', '.join(items)}: {e}") from e
        self.last_save = utcnow()
        logger.debug(f"Saved {', '.join(items)} in {(time.perf_counter() - started) * 1000:.1f}ms")

    def save_positions(self, positions: Iterable[PositionState]) -> None:
        self._write({POSITIONS_KEY: [p.to_dict() for p in positions]})

    def save_cache(self, entries: Iterable[dict]) -> None:
        self._write({CACHE_KEY: list(entries)})

    def save_stats(self, stats: Dict[str, Any]) -> None:
        self._write({STATS_KEY: stats})

    def save_config(self, config: Dict[str, Any]) -> None:
        self._write({CONFIG_KEY: config})

    def save_state(
        self,
        positions: Iterable[PositionState],
        cache: Iterable[dict],
        stats: Dict[str, Any],
    ) -> None:
        """Write positions, cache and stats in one transaction."""
        self._write({
            POSITIONS_KEY: [p.to_dict() for p in positions],
            CACHE_KEY: list(cache),
            STATS_KEY: stats,
        })

    # ------------------------------------------------------------------
    # Reads (log and return empty on failure)
    # ------------------------------------------------------------------

    def _read(self, key: str) -> Optional[Any]:
        try:
            with self.session_scope() as session:
                row = session.get(DCASnapshot, key)
                return json.loads(row.payload) if row else None
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Failed to load {key}: {e}")
            return None

    def load_positions(self) -> List[PositionState]:
        data = self._read(POSITIONS_KEY) or []
        positions = []
        for item in data:
            try:
                positions.append(PositionState.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping unreadable position {item.get('position_id', '?')}: {e}")
        return positions

    def load_cache(self, ttl_seconds: float = 300, now: Optional[float] = None) -> List[dict]:
        """Cache entries younger than ``ttl_seconds``."""
        now = time.time() if now is None else now
        entries = self._read(CACHE_KEY) or []
        return [e for e in entries if now - float(e.get("timestamp", 0)) < ttl_seconds]

    def load_stats(self) -> Optional[Dict[str, Any]]:
        return self._read(STATS_KEY)

    def load_config(self) -> Optional[Dict[str, Any]]:
        return self._read(CONFIG_KEY)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_data_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"database_url": self.engine.url.render_as_string(hide_password=True)}
        try:
            with self.session_scope() as session:
                for row in session.query(DCASnapshot).all():
                    data = json.loads(row.payload)
                    stats[row.key] = {
                        "version": row.version,
                        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                        "size_bytes": len(row.payload),
                        "entries": len(data) if isinstance(data, (list, dict)) else 1,
                    }
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Failed to collect persistence stats: {e}")
        stats["last_save"] = self.last_save.isoformat() if self.last_save else None
        return stats

    def cleanup_old_data(self, max_age_days: float = 7.0, ttl_seconds: float = 300) -> int:
        """Drop stored completed positions older than ``max_age_days`` and stale cache entries."""
        cutoff = utcnow() - timedelta(days=max_age_days)
        positions = self.load_positions()
        kept = [
            p for p in positions
            if not (p.status is PositionStatus.COMPLETED and p.completed_at and p.completed_at < cutoff)
        ]
        cache = self._read(CACHE_KEY) or []
        fresh_cache = self.load_cache(ttl_seconds)

        removed = (len(positions) - len(kept)) + (len(cache) - len(fresh_cache))
        if removed:
            self._write({
                POSITIONS_KEY: [p.to_dict() for p in kept],
                CACHE_KEY: fresh_cache,
            })
            logger.info(f"🧹 Removed {removed} stale records from persistent storage")
        return removed

    def close(self) -> None:
        self.engine.dispose()

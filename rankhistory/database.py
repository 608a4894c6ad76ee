"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for tokens, daily snapshots and backfill jobs.
"""

import enum
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackfillStatus(str, enum.Enum):
    """Backfill job lifecycle status."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


RESUMABLE_STATUSES = (BackfillStatus.PAUSED, BackfillStatus.FAILED)


class Token(Base):
    """Tracked token, ordered for backfill by its CoinMarketCap id."""

    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cmc_id = Column(Integer, nullable=False, unique=True)
    symbol = Column(String, nullable=False)
    name = Column(String, nullable=True)
    slug = Column(String, nullable=True)
    is_tracked = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DailySnapshot(Base):
    """One token's market data for one UTC calendar day."""

    __tablename__ = "daily_snapshots"
    __table_args__ = (
        UniqueConstraint("token_id", "date", name="uq_snapshot_token_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    rank = Column(Integer, nullable=False, default=0)  # 0 = not yet ranked
    market_cap = Column(Float, nullable=False, default=0.0)
    price_usd = Column(Float, nullable=False, default=0.0)
    volume_24h = Column(Float, nullable=False, default=0.0)
    circulating_supply = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class BackfillJob(Base):
    """One backfill run per (date_range_start, date_range_end, token_scope)."""

    __tablename__ = "backfill_jobs"
    __table_args__ = (
        UniqueConstraint(
            "date_range_start", "date_range_end", "token_scope",
            name="uq_backfill_window",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    date_range_start = Column(Date, nullable=False)
    date_range_end = Column(Date, nullable=False)
    token_scope = Column(Integer, nullable=False)

    status = Column(Enum(BackfillStatus), nullable=False, default=BackfillStatus.QUEUED)
    tokens_processed = Column(Integer, nullable=False, default=0)
    last_processed_cmc_id = Column(Integer, nullable=True)
    errors = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "date_range_start": iso(self.date_range_start),
            "date_range_end": iso(self.date_range_end),
            "token_scope": self.token_scope,
            "status": self.status.value if self.status is not None else None,
            "tokens_processed": self.tokens_processed,
            "last_processed_cmc_id": self.last_processed_cmc_id,
            "errors": list(self.errors or []),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


def create_db_engine(db_path: Path):
    """
    Create a SQLAlchemy engine for the SQLite file at ``db_path``.

    The connection is shared with background backfill threads, so
    SQLite's same-thread check is disabled.
    """
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path)
    Base.metadata.create_all(engine)


def get_session_factory(db_path: Path) -> sessionmaker:
    """
    Get a session factory bound to the database.

    Objects stay readable after their session closes (no expire on
    commit), so stores can hand detached rows back to callers.
    """
    engine = create_db_engine(db_path)
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session(db_path: Path):
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    return get_session_factory(db_path)()

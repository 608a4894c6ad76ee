"""
Persistence for tokens, daily snapshots and backfill jobs.

Each store call opens its own short-lived session, so a status written
by one thread is visible to the next read from any other thread.
"""

from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, sessionmaker

from .database import BackfillJob, BackfillStatus, DailySnapshot, Token, utcnow

MARKET_FIELDS = ("market_cap", "price_usd", "volume_24h", "circulating_supply")
JOB_PROGRESS_FIELDS = {
    "status",
    "tokens_processed",
    "last_processed_cmc_id",
    "errors",
    "started_at",
    "completed_at",
}


class JobNotFoundError(LookupError):
    """No backfill job exists with the requested id."""


@contextmanager
def _transaction(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class TokenStore:
    """Tracked-token registry."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_tracked_tokens(self, limit: int) -> List[Token]:
        """Up to ``limit`` tracked tokens ordered by cmc_id ascending."""
        with _transaction(self._session_factory) as session:
            return (
                session.query(Token)
                .filter(Token.is_tracked.is_(True))
                .order_by(Token.cmc_id.asc())
                .limit(limit)
                .all()
            )

    def upsert_token(
        self,
        cmc_id: int,
        symbol: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        is_tracked: bool = True,
    ) -> Dict[str, str]:
        with _transaction(self._session_factory) as session:
            token = session.query(Token).filter_by(cmc_id=cmc_id).first()
            if token is None:
                session.add(Token(
                    cmc_id=cmc_id,
                    symbol=symbol,
                    name=name,
                    slug=slug,
                    is_tracked=is_tracked,
                ))
                return {"status": "new"}
            current = (token.symbol, token.name, token.slug, token.is_tracked)
            if current == (symbol, name, slug, is_tracked):
                return {"status": "no-change"}
            token.symbol = symbol
            token.name = name
            token.slug = slug
            token.is_tracked = is_tracked
            return {"status": "updated"}


class SnapshotStore:
    """Daily snapshots keyed by (token_id, date)."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _upsert(session: Session, token_id: int, day: date, fields: Dict[str, float]) -> bool:
        market = {k: fields[k] for k in MARKET_FIELDS if k in fields}
        snapshot = session.query(DailySnapshot).filter_by(token_id=token_id, date=day).first()
        if snapshot is None:
            # Rank stays at the placeholder until the rank pass covers this date.
            session.add(DailySnapshot(token_id=token_id, date=day, rank=0, **market))
            session.flush()
            return True
        for key, value in market.items():
            setattr(snapshot, key, value)
        return False

    def upsert_snapshot(self, token_id: int, day: date, fields: Dict[str, float]) -> bool:
        """Create or update one snapshot. Returns True when it was created."""
        with _transaction(self._session_factory) as session:
            return self._upsert(session, token_id, day, fields)

    def upsert_snapshots(self, token_id: int, rows: Iterable[Tuple[date, Dict[str, float]]]) -> Tuple[int, int]:
        """Upsert a token's snapshots in one transaction. Returns (created, updated)."""
        created = updated = 0
        with _transaction(self._session_factory) as session:
            for day, fields in rows:
                if self._upsert(session, token_id, day, fields):
                    created += 1
                else:
                    updated += 1
        return created, updated

    def find_snapshots_for_date(self, day: date) -> List[Tuple[DailySnapshot, int]]:
        """
        All snapshots for ``day`` paired with their token's cmc_id.

        Ordered by market cap descending, ties broken by cmc_id ascending.
        """
        with _transaction(self._session_factory) as session:
            rows = (
                session.query(DailySnapshot, Token.cmc_id)
                .join(Token, Token.id == DailySnapshot.token_id)
                .filter(DailySnapshot.date == day)
                .order_by(DailySnapshot.market_cap.desc(), Token.cmc_id.asc())
                .all()
            )
            return [(snapshot, cmc_id) for snapshot, cmc_id in rows]

    def find_snapshots_for_token(self, token_id: int) -> List[DailySnapshot]:
        with _transaction(self._session_factory) as session:
            return (
                session.query(DailySnapshot)
                .filter_by(token_id=token_id)
                .order_by(DailySnapshot.date.asc())
                .all()
            )

    def find_distinct_dates_in_range(self, range_start: date, range_end: date) -> List[date]:
        with _transaction(self._session_factory) as session:
            rows = (
                session.query(DailySnapshot.date)
                .filter(DailySnapshot.date >= range_start, DailySnapshot.date <= range_end)
                .distinct()
                .order_by(DailySnapshot.date.asc())
                .all()
            )
            return [row[0] for row in rows]

    def batch_update_ranks(self, day: date, ranks: Sequence[Tuple[int, int]]) -> None:
        """
        Write (snapshot_id, rank) pairs for one date atomically.

        Either every rank for the date is written or none is.
        """
        with _transaction(self._session_factory) as session:
            for snapshot_id, rank in ranks:
                updated = (
                    session.query(DailySnapshot)
                    .filter(DailySnapshot.id == snapshot_id, DailySnapshot.date == day)
                    .update({DailySnapshot.rank: rank}, synchronize_session=False)
                )
                if updated != 1:
                    raise LookupError(f"Snapshot {snapshot_id} not found for {day.isoformat()}")


class JobStore:
    """Backfill job records."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def find_job_by_id(self, job_id: str) -> Optional[BackfillJob]:
        with _transaction(self._session_factory) as session:
            return session.get(BackfillJob, job_id)

    def get_job(self, job_id: str) -> BackfillJob:
        job = self.find_job_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Backfill job not found: {job_id}")
        return job

    def find_job_by_window(self, range_start: date, range_end: date, token_scope: int) -> Optional[BackfillJob]:
        with _transaction(self._session_factory) as session:
            return (
                session.query(BackfillJob)
                .filter_by(
                    date_range_start=range_start,
                    date_range_end=range_end,
                    token_scope=token_scope,
                )
                .first()
            )

    def create_job(self, range_start: date, range_end: date, token_scope: int) -> BackfillJob:
        """Insert a QUEUED job. Raises IntegrityError if the window already has one."""
        job = BackfillJob(
            date_range_start=range_start,
            date_range_end=range_end,
            token_scope=token_scope,
            status=BackfillStatus.QUEUED,
            tokens_processed=0,
            errors=[],
        )
        with _transaction(self._session_factory) as session:
            session.add(job)
        return job

    def update_job(self, job_id: str, **fields: Any) -> BackfillJob:
        """Apply a partial update to a job's mutable fields."""
        unknown = set(fields) - JOB_PROGRESS_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        with _transaction(self._session_factory) as session:
            job = session.get(BackfillJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Backfill job not found: {job_id}")
            for key, value in fields.items():
                if key == "errors":
                    value = list(value)
                setattr(job, key, value)
            job.updated_at = utcnow()
            return job

    def transition_job(
        self,
        job_id: str,
        from_statuses: Sequence[BackfillStatus],
        to_status: BackfillStatus,
    ) -> bool:
        """
        Move a job to ``to_status`` only if it is currently in one of ``from_statuses``.

        The check and the write are one UPDATE statement, so a concurrent
        writer can never be overwritten. Returns False when no row matched.
        """
        with _transaction(self._session_factory) as session:
            updated = (
                session.query(BackfillJob)
                .filter(BackfillJob.id == job_id, BackfillJob.status.in_(list(from_statuses)))
                .update(
                    {BackfillJob.status: to_status, BackfillJob.updated_at: utcnow()},
                    synchronize_session=False,
                )
            )
            return updated == 1

    def list_jobs(self) -> List[BackfillJob]:
        """All jobs, newest first."""
        with _transaction(self._session_factory) as session:
            return session.query(BackfillJob).order_by(BackfillJob.created_at.desc()).all()

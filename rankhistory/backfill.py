"""
Historical backfill engine.

Replays daily quotes for every tracked token in a job's scope, one token
at a time in cmc_id order, and persists the job's cursor after each token
so an interrupted or paused run picks up where it stopped. Once every
token has been attempted the affected dates are re-ranked and the job is
finalised.
"""

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from .database import BackfillJob, BackfillStatus, Token, utcnow
from .env import DEFAULT_RATE_LIMIT_MS
from .logger import StructuredLogger, get_logger
from .normalize import quote_date
from .quotes import HistoricalQuote, QuoteSource
from .ranks import compute_ranks
from .storage import JobStore, SnapshotStore, TokenStore

# A run whose error count exceeds this share of the scope ends FAILED.
FAILURE_THRESHOLD = 0.5


@dataclass
class RunResult:
    """Outcome of one engine run."""

    job_id: str
    status: BackfillStatus
    tokens_processed: int = 0
    snapshots_created: int = 0
    snapshots_updated: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def error_count(self) -> int:
        return len(self.errors)


def remaining_tokens(tokens: Sequence[Token], cursor: Optional[int]) -> Tuple[List[Token], bool]:
    """
    Tokens still to process after ``cursor`` (the last attempted cmc_id).

    ``tokens`` must be ordered by cmc_id ascending. Returns the remaining
    tokens and whether the cursor itself was found in the list. A cursor
    missing from the list (scope shrank, token untracked) resumes at the
    first token past it rather than from the beginning.
    """
    if cursor is None:
        return list(tokens), True
    for index, token in enumerate(tokens):
        if token.cmc_id == cursor:
            return list(tokens[index + 1:]), True
    return [token for token in tokens if token.cmc_id > cursor], False


def failure_rate(error_count: int, scope_size: int) -> float:
    if scope_size <= 0:
        return 0.0
    return error_count / scope_size


def final_status(error_count: int, scope_size: int) -> BackfillStatus:
    if failure_rate(error_count, scope_size) > FAILURE_THRESHOLD:
        return BackfillStatus.FAILED
    return BackfillStatus.COMPLETE


def failure_kind(error: Exception) -> str:
    """Metrics label for a failed token: the HTTP failure class, else the exception type."""
    status_code = getattr(error, "status_code", None)
    if not isinstance(status_code, int):
        return type(error).__name__
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "server_error"
    return "client_error"


class BackfillEngine:
    """Runs backfill jobs against a quote source.

    ``rate_limit_ms`` is slept after every token, failed or not. Tests
    pass 0.
    """

    def __init__(
        self,
        job_store: JobStore,
        token_store: TokenStore,
        snapshot_store: SnapshotStore,
        quote_source: QuoteSource,
        rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS,
        logger: Optional[StructuredLogger] = None,
    ):
        self.job_store = job_store
        self.token_store = token_store
        self.snapshot_store = snapshot_store
        self.quote_source = quote_source
        self.rate_limit_ms = rate_limit_ms
        self.logger = logger or get_logger()

    def run(self, job_id: str) -> RunResult:
        """
        Run (or resume) a job until its scope is exhausted or it is paused.

        Quote source failures are recorded on the job and never raised.
        Store failures propagate; the job then keeps its last persisted
        progress.
        """
        started = time.monotonic()
        job = self.job_store.get_job(job_id)

        if job.status == BackfillStatus.COMPLETE:
            self.logger.info("Backfill already complete", job_id=job_id)
            return RunResult(job_id=job_id, status=BackfillStatus.COMPLETE,
                             tokens_processed=job.tokens_processed)

        self.logger.info(
            "Backfill starting",
            job_id=job_id,
            date_range_start=job.date_range_start.isoformat(),
            date_range_end=job.date_range_end.isoformat(),
            token_scope=job.token_scope,
            resume_from_cmc_id=job.last_processed_cmc_id,
        )

        updates: Dict[str, object] = {"status": BackfillStatus.RUNNING}
        if job.started_at is None:
            updates["started_at"] = utcnow()
        self.job_store.update_job(job_id, **updates)

        tokens = self.token_store.list_tracked_tokens(job.token_scope)
        to_process, cursor_found = remaining_tokens(tokens, job.last_processed_cmc_id)
        if job.last_processed_cmc_id is not None:
            log = self.logger.info if cursor_found else self.logger.warning
            log(
                "Resuming backfill" if cursor_found else "Resume cursor not in token scope",
                job_id=job_id,
                last_processed_cmc_id=job.last_processed_cmc_id,
                skipped_tokens=len(tokens) - len(to_process),
                remaining_tokens=len(to_process),
            )

        result = RunResult(job_id=job_id, status=BackfillStatus.RUNNING,
                           tokens_processed=job.tokens_processed)
        errors = list(job.errors or [])

        for token in to_process:
            current = self.job_store.get_job(job_id)
            if current.status == BackfillStatus.QUEUED:
                # Resumed while this run was still going: pick the job back up.
                self.job_store.transition_job(job_id, [BackfillStatus.QUEUED], BackfillStatus.RUNNING)
                current = self.job_store.get_job(job_id)
                self.logger.info("Backfill resumed mid-run", job_id=job_id, next_cmc_id=token.cmc_id)
            if current.status == BackfillStatus.PAUSED:
                self.logger.info(
                    "Backfill paused",
                    job_id=job_id,
                    tokens_processed=result.tokens_processed,
                    next_cmc_id=token.cmc_id,
                )
                result.status = BackfillStatus.PAUSED
                result.duration_ms = _elapsed_ms(started)
                return result

            self._process_token(job, token, result, errors)
            self._throttle()

        scope_size = len(tokens)
        compute_ranks(self.snapshot_store, job.date_range_start, job.date_range_end, logger=self.logger)

        status = final_status(len(errors), scope_size)
        self.job_store.update_job(
            job_id,
            status=status,
            completed_at=utcnow(),
            tokens_processed=result.tokens_processed,
            errors=errors,
        )

        result.status = status
        result.duration_ms = _elapsed_ms(started)
        self.logger.info(
            "Backfill finished",
            job_id=job_id,
            status=status.value,
            tokens_processed=result.tokens_processed,
            snapshots_created=result.snapshots_created,
            snapshots_updated=result.snapshots_updated,
            errors=len(errors),
            failure_rate=round(failure_rate(len(errors), scope_size), 3),
            duration_ms=result.duration_ms,
        )
        self.logger.log_metrics_summary()
        return result

    def _process_token(self, job: BackfillJob, token: Token, result: RunResult, errors: List[str]) -> None:
        self.logger.record_token_attempt()
        self.logger.debug("Backfilling token", cmc_id=token.cmc_id, symbol=token.symbol)

        try:
            quotes = self.quote_source.get_historical_quotes(
                token.cmc_id, job.date_range_start, job.date_range_end
            )
            rows = snapshot_rows(quotes, job.date_range_start, job.date_range_end)
        except Exception as e:
            message = f"Token {token.symbol} (cmcId: {token.cmc_id}): {e}"
            errors.append(message)
            result.errors.append(message)
            result.tokens_processed += 1
            self.logger.record_token_failure(failure_kind(e))
            self.logger.error("Token backfill failed", cmc_id=token.cmc_id, symbol=token.symbol, error=str(e))
            # The cursor still advances so a permanently failing token never blocks resume.
            self.job_store.update_job(
                job.id,
                tokens_processed=result.tokens_processed,
                last_processed_cmc_id=token.cmc_id,
                errors=errors,
            )
            return

        created, updated = self.snapshot_store.upsert_snapshots(token.id, rows)
        result.snapshots_created += created
        result.snapshots_updated += updated
        result.tokens_processed += 1
        self.job_store.update_job(
            job.id,
            tokens_processed=result.tokens_processed,
            last_processed_cmc_id=token.cmc_id,
        )
        self.logger.record_token_success(created + updated)
        self.logger.debug(
            "Token backfilled",
            cmc_id=token.cmc_id,
            symbol=token.symbol,
            quotes=len(quotes),
            created=created,
            updated=updated,
        )

    def _throttle(self) -> None:
        if self.rate_limit_ms > 0:
            time.sleep(self.rate_limit_ms / 1000.0)


def snapshot_rows(
    quotes: Sequence[HistoricalQuote],
    range_start: date,
    range_end: date,
) -> List[Tuple[date, Dict[str, float]]]:
    """Map quotes to (UTC day, market fields), dropping days outside the window."""
    rows = []
    for quote in quotes:
        day = quote_date(quote.timestamp)
        if day < range_start or day > range_end:
            continue
        rows.append((day, {
            "market_cap": quote.market_cap,
            "price_usd": quote.price,
            "volume_24h": quote.volume_24h,
            "circulating_supply": quote.circulating_supply,
        }))
    return rows


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

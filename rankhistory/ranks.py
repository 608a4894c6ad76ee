"""
Daily rank computation.

A token's rank on a date is its position among every snapshot for that
date ordered by market cap, largest first. Equal market caps are broken
by cmc_id ascending so the ranking is a total order.
"""

from datetime import date
from typing import List, Optional

from .logger import StructuredLogger, get_logger
from .storage import SnapshotStore


def _rank_key(row):
    snapshot, cmc_id = row
    return (-snapshot.market_cap, cmc_id)


def compute_ranks(
    snapshot_store: SnapshotStore,
    range_start: date,
    range_end: date,
    logger: Optional[StructuredLogger] = None,
) -> int:
    """
    Recompute ranks for every date in [range_start, range_end] that has snapshots.

    Each date is written as a single batch. Returns the number of dates ranked.
    """
    logger = logger or get_logger()
    dates = snapshot_store.find_distinct_dates_in_range(range_start, range_end)
    logger.info("Computing ranks", date_count=len(dates),
                range_start=range_start.isoformat(), range_end=range_end.isoformat())

    ranked_dates = 0
    for day in dates:
        rows = sorted(snapshot_store.find_snapshots_for_date(day), key=_rank_key)
        ranks = [(snapshot.id, position + 1) for position, (snapshot, _) in enumerate(rows)]
        snapshot_store.batch_update_ranks(day, ranks)
        ranked_dates += 1
        logger.debug("Ranked date", date=day.isoformat(), snapshots=len(ranks))

    logger.info("Rank computation complete", ranked_dates=ranked_dates)
    return ranked_dates


def verify_ranks(snapshot_store: SnapshotStore, range_start: date, range_end: date) -> List[str]:
    """
    Check stored ranks in a range against market caps.

    Returns a list of problems. Empty list means every date is ranked 1..n
    in market-cap order.
    """
    problems: List[str] = []
    for day in snapshot_store.find_distinct_dates_in_range(range_start, range_end):
        rows = sorted(snapshot_store.find_snapshots_for_date(day), key=_rank_key)
        label = day.isoformat()

        unranked = [cmc_id for snapshot, cmc_id in rows if snapshot.rank == 0]
        if unranked:
            problems.append(f"{label}: {len(unranked)} snapshot(s) still unranked")
            continue

        stored = [snapshot.rank for snapshot, _ in rows]
        if sorted(stored) != list(range(1, len(rows) + 1)):
            problems.append(f"{label}: ranks are not a 1..{len(rows)} sequence")
            continue

        for position, (snapshot, cmc_id) in enumerate(rows, start=1):
            if snapshot.rank != position:
                problems.append(
                    f"{label}: cmcId {cmc_id} has rank {snapshot.rank}, expected {position}"
                )
    return problems

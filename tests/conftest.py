"""
Pytest configuration and shared fixtures.
"""

from datetime import date
from typing import Callable, Dict, List, Optional

import pytest

from rankhistory.backfill import BackfillEngine
from rankhistory.database import init_database, get_session_factory
from rankhistory.logger import get_logger, reset_logger
from rankhistory.quotes import HistoricalQuote, QuoteSourceError
from rankhistory.storage import JobStore, SnapshotStore, TokenStore

WINDOW_START = date(2025, 1, 1)
WINDOW_END = date(2025, 1, 3)


def make_quote(day: str, market_cap: float, price: float = 100.0) -> HistoricalQuote:
    """Quote stamped at midnight UTC on ``day``."""
    return HistoricalQuote(
        timestamp=f"{day}T00:00:00Z",
        price=price,
        volume_24h=1_000_000.0,
        market_cap=market_cap,
        circulating_supply=market_cap / price,
    )


class FakeQuoteSource:
    """In-memory quote source recording every call."""

    def __init__(
        self,
        quotes: Optional[Dict[int, List[HistoricalQuote]]] = None,
        failing: Optional[set] = None,
        on_call: Optional[Callable[[int], None]] = None,
    ):
        self.quotes = quotes or {}
        self.failing = failing or set()
        self.on_call = on_call
        self.calls: List[int] = []

    def get_historical_quotes(self, cmc_id, range_start, range_end):
        self.calls.append(cmc_id)
        if self.on_call:
            self.on_call(cmc_id)
        if cmc_id in self.failing:
            raise QuoteSourceError("API rate limit exceeded", status_code=429)
        return list(self.quotes.get(cmc_id, []))


@pytest.fixture(autouse=True)
def quiet_logger(tmp_path):
    """Route the global logger to a temp dir with no console output."""
    reset_logger()
    logger = get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "rankhistory.db"
    init_database(path)
    return path


@pytest.fixture
def session_factory(db_path):
    return get_session_factory(db_path)


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def token_store(session_factory) -> TokenStore:
    return TokenStore(session_factory)


@pytest.fixture
def snapshot_store(session_factory) -> SnapshotStore:
    return SnapshotStore(session_factory)


@pytest.fixture
def three_tokens(token_store):
    """Tracked tokens with cmc ids 1, 2 and 3."""
    token_store.upsert_token(cmc_id=3, symbol="ETH", name="Ethereum", slug="ethereum")
    token_store.upsert_token(cmc_id=1, symbol="BTC", name="Bitcoin", slug="bitcoin")
    token_store.upsert_token(cmc_id=2, symbol="LTC", name="Litecoin", slug="litecoin")
    return token_store.list_tracked_tokens(10)


@pytest.fixture
def three_token_quotes() -> Dict[int, List[HistoricalQuote]]:
    return {
        1: [make_quote("2025-01-01", 900e9), make_quote("2025-01-02", 910e9)],
        2: [make_quote("2025-01-01", 5e9), make_quote("2025-01-02", 6e9)],
        3: [make_quote("2025-01-01", 400e9), make_quote("2025-01-02", 410e9)],
    }


@pytest.fixture
def make_engine(job_store, token_store, snapshot_store):
    """Build an engine over the test stores with no rate-limit delay."""
    def _make(quote_source) -> BackfillEngine:
        return BackfillEngine(job_store, token_store, snapshot_store, quote_source, rate_limit_ms=0)
    return _make

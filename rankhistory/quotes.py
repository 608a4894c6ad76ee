"""CoinMarketCap client: the quote source replayed by the backfill engine."""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

import requests

from .env import DEFAULT_API_BASE
from .logger import StructuredLogger, get_logger
from .normalize import to_amount
from .retry import RetryError, exponential_backoff

HISTORICAL_QUOTES_ENDPOINT = "/v2/cryptocurrency/quotes/historical"
LISTINGS_ENDPOINT = "/v1/cryptocurrency/listings/latest"


class QuoteSourceError(Exception):
    """A quote request failed. Recorded per token, never fatal to a run."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class HistoricalQuote:
    """One dated market quote for a token."""

    timestamp: str
    price: float
    volume_24h: float
    market_cap: float
    circulating_supply: float

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "HistoricalQuote":
        """Build from a CMC quote object (``{"timestamp": ..., "quote": {"USD": {...}}}``)."""
        usd = (data.get("quote") or {}).get("USD") or {}
        return cls(
            timestamp=data["timestamp"],
            price=to_amount(usd.get("price")),
            volume_24h=to_amount(usd.get("volume_24h")),
            market_cap=to_amount(usd.get("market_cap")),
            circulating_supply=to_amount(usd.get("circulating_supply")),
        )


class QuoteSource(Protocol):
    def get_historical_quotes(self, cmc_id: int, range_start: date, range_end: date) -> List[HistoricalQuote]:
        ...


def _log_retry(attempt: int, error: Exception, delay: float) -> None:
    get_logger().warning("Retrying CMC request", attempt=attempt, delay_s=delay, error=str(error))


@exponential_backoff(
    max_retries=2,
    base_delay=1.0,
    exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError),
    on_retry=_log_retry,
)
def _get_with_retry(http: requests.Session, url: str, params: Dict[str, Any], timeout: float):
    """GET with automatic retry on transport errors."""
    return http.get(url, params=params, timeout=timeout)


class CoinMarketCapClient:
    """Thin client over the CoinMarketCap Pro API.

    Every failure surfaces as :class:`QuoteSourceError` with a readable
    message, the API's ``status.error_message`` when it sends one.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        if not api_key:
            raise ValueError("CMC_API_KEY is required")
        self.logger = logger or get_logger()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({
            "X-CMC_PRO_API_KEY": api_key,
            "Accept": "application/json",
        })

    def _fetch(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        self.logger.record_api_call()
        self.logger.debug("CMC request", endpoint=endpoint, params=params)

        try:
            resp = _get_with_retry(self.http, url, params, self.timeout)
        except RetryError as e:
            self.logger.warning("CMC request failed after retries", endpoint=endpoint, error=str(e))
            raise QuoteSourceError(f"CMC request error: {e}")
        except requests.exceptions.RequestException as e:
            self.logger.error("CMC request error", endpoint=endpoint, error=str(e))
            raise QuoteSourceError(f"CMC request error: {e}")

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not resp.ok:
            message = _api_error_message(payload) or f"CMC API error: {resp.status_code}"
            self.logger.error("CMC request failed", endpoint=endpoint, status=resp.status_code, error=message)
            raise QuoteSourceError(message, status_code=resp.status_code)

        if not isinstance(payload, dict):
            raise QuoteSourceError(f"CMC returned a non-JSON body for {endpoint}", status_code=resp.status_code)

        status = payload.get("status") or {}
        self.logger.debug(
            "CMC request succeeded",
            endpoint=endpoint,
            credit_count=status.get("credit_count"),
        )
        return payload

    def get_historical_quotes(self, cmc_id: int, range_start: date, range_end: date) -> List[HistoricalQuote]:
        """Daily quotes for ``cmc_id`` covering both calendar bounds."""
        payload = self._fetch(HISTORICAL_QUOTES_ENDPOINT, {
            "id": cmc_id,
            "time_start": f"{range_start.isoformat()}T00:00:00Z",
            "time_end": f"{range_end.isoformat()}T23:59:59Z",
            "interval": "daily",
            "convert": "USD",
        })
        data = payload.get("data") or {}

        try:
            # Single-id responses are either the quote container itself or keyed by id.
            if "quotes" not in data:
                data = data.get(str(cmc_id)) or {}
                if isinstance(data, list):
                    data = data[0] if data else {}
            return [HistoricalQuote.from_api(item) for item in data.get("quotes", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise QuoteSourceError(f"Malformed quote payload for cmcId {cmc_id}: {e}")

    def get_listings(self, limit: int = 100, start: int = 1) -> List[Dict[str, Any]]:
        """Latest listings ordered by CMC rank (id, name, symbol, slug, ...)."""
        payload = self._fetch(LISTINGS_ENDPOINT, {
            "limit": limit,
            "start": start,
            "convert": "USD",
        })
        return list(payload.get("data") or [])


def _api_error_message(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        status = payload.get("status") or {}
        if isinstance(status, dict):
            return status.get("error_message")
    return None

"""Order books from decentralised exchanges and cross-exchange arbitrage detection."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

log = logging.getLogger(__name__)

# Cached books younger than this are served without a new fetch.
FRESH_CACHE_SECONDS = 0.2
# After a failed fetch, a cached book younger than this is served instead.
STALE_CACHE_SECONDS = 10.0
# Opportunities must clear this profit, in percent.
MIN_PROFIT_PERCENT = 0.5
OPPORTUNITY_LIFETIME = timedelta(milliseconds=500)
RATE_WINDOW_SECONDS = 60.0

_MIN_REQUEST_INTERVAL_MS = {
    "uniswap": 200,
    "sushiswap": 250,
    "traderjoe": 200,
    "pangolin": 300,
}

_MAX_REQUESTS_PER_MINUTE = {
    "uniswap": 100,
    "sushiswap": 80,
    "traderjoe": 100,
    "pangolin": 60,
}


class ExchangeError(Exception):
    """Raised when an exchange cannot supply the requested data."""


@dataclass(frozen=True)
class PricePoint:
    price: float
    quantity: float


@dataclass(frozen=True)
class OrderBook:
    exchange: str
    base_token: str
    quote_token: str
    bids: tuple[PricePoint, ...]
    asks: tuple[PricePoint, ...]
    timestamp: datetime


@dataclass(frozen=True)
class CrossExchangeQuote:
    """Where to buy and where to sell, and at what prices."""

    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    timestamp: datetime


@dataclass(frozen=True)
class Opportunity:
    base_token: str
    quote_token: str
    profit_percent: float
    market_data: CrossExchangeQuote
    opportunity_id: str
    expires_at: datetime


@dataclass
class HealthMetrics:
    """Call counts, latency and per-exchange status of the connector."""

    successful_calls: int = 0
    failed_calls: int = 0
    avg_response_time_ms: float = 0.0
    exchange_status: dict[str, bool] = field(default_factory=dict)
    last_error: dict[str, str] = field(default_factory=dict)
    last_successful_update: dict[str, str] = field(default_factory=dict)


@dataclass
class _RateLimits:
    min_request_interval_ms: dict[str, int]
    max_requests_per_minute: dict[str, int]
    current_request_count: dict[str, int] = field(default_factory=dict)
    counter_reset_time: dict[str, float] = field(default_factory=dict)


# Simulated books: (bids, asks), each as (price, quantity) pairs, best first.
_SIMULATED_BOOKS: dict[str, tuple[tuple[tuple[float, float], ...], tuple[tuple[float, float], ...]]] = {
    "uniswap": (
        ((4010.50, 1.5), (4010.25, 2.3), (4010.00, 3.8)),
        ((4011.00, 2.1), (4011.25, 1.7), (4011.50, 4.2)),
    ),
    "sushiswap": (
        ((4009.75, 1.2), (4009.50, 2.1), (4009.25, 3.3)),
        ((4010.50, 1.8), (4010.75, 2.5), (4011.00, 3.9)),
    ),
    "traderjoe": (
        ((4010.80, 1.3), (4010.60, 2.2), (4010.40, 3.5)),
        ((4011.20, 1.9), (4011.40, 2.4), (4011.60, 3.7)),
    ),
    "pangolin": (
        ((4009.90, 1.4), (4009.70, 2.3), (4009.50, 3.6)),
        ((4010.30, 1.7), (4010.50, 2.6), (4010.70, 3.8)),
    ),
}


def parse_token_pair(token_pair: str) -> tuple[str, str]:
    """Split a pair such as ``ETH/USDC`` into its base and quote tokens."""
    parts = token_pair.split("/")
    if len(parts) != 2:
        raise ExchangeError(f"Invalid token pair format: {token_pair}")
    return parts[0], parts[1]


def build_uniswap_query(base_token: str, quote_token: str) -> str:
    """GraphQL query selecting the Uniswap pools for a token pair."""
    return f"""
            {{
              pools(where: {{
                token0: "{base_token}", 
                token1: "{quote_token}"
              }}) {{
                id
                token0Price
                token1Price
                volumeUSD
                liquidity
              }}
            }}
        """


class ExchangeConnector:
    """Fetches order books with caching, rate limiting and health tracking."""

    def __init__(self) -> None:
        self._last_updates: dict[str, float] = {}
        self._order_book_cache: dict[str, tuple[OrderBook, float]] = {}
        self._rate_limits = _RateLimits(
            min_request_interval_ms=dict(_MIN_REQUEST_INTERVAL_MS),
            max_requests_per_minute=dict(_MAX_REQUESTS_PER_MINUTE),
        )
        self._health = HealthMetrics()

    async def get_order_book(self, exchange: str, token_pair: str) -> OrderBook:
        """Order book for a pair on an exchange, served from a short-lived cache."""
        await self._check_rate_limit(exchange)

        cache_key = f"{exchange}:{token_pair}"
        cached = self._order_book_cache.get(cache_key)
        if cached is not None and time.monotonic() - cached[1] <= FRESH_CACHE_SECONDS:
            return cached[0]

        await self._respect_min_interval(exchange)
        start = time.monotonic()
        try:
            book = self._fetch_order_book(exchange, token_pair)
        except ExchangeError as exc:
            self._update_metrics(exchange, False, (time.monotonic() - start) * 1000.0, str(exc))
            stale = self._order_book_cache.get(cache_key)
            if stale is not None and time.monotonic() - stale[1] < STALE_CACHE_SECONDS:
                log.warning(
                    "Using cached order book for %s/%s due to error: %s",
                    exchange, token_pair, exc,
                )
                return stale[0]
            raise
        self._update_metrics(exchange, True, (time.monotonic() - start) * 1000.0)
        self._order_book_cache[cache_key] = (book, time.monotonic())
        return book

    async def find_arbitrage_opportunities(
        self, base_token: str, quote_token: str, exchanges: Iterable[str]
    ) -> list[Opportunity]:
        """Compare the best bid and ask across exchanges for a profitable spread."""
        token_pair = f"{base_token}/{quote_token}"
        best_bid = (0.0, "")
        best_ask = (float("inf"), "")

        for exchange in exchanges:
            try:
                book = await self.get_order_book(exchange, token_pair)
            except ExchangeError as exc:
                log.warning("Failed to get order book for %s: %s", exchange, exc)
                continue
            if book.bids and book.bids[0].price > best_bid[0]:
                best_bid = (book.bids[0].price, exchange)
            if book.asks and book.asks[0].price < best_ask[0]:
                best_ask = (book.asks[0].price, exchange)

        opportunities: list[Opportunity] = []
        if best_bid[0] > best_ask[0] and best_bid[1] != best_ask[1]:
            profit_percent = (best_bid[0] - best_ask[0]) / best_ask[0] * 100.0
            if profit_percent > MIN_PROFIT_PERCENT:
                now = datetime.now(timezone.utc)
                quote = CrossExchangeQuote(
                    buy_exchange=best_ask[1],
                    sell_exchange=best_bid[1],
                    buy_price=best_ask[0],
                    sell_price=best_bid[0],
                    timestamp=now,
                )
                opportunities.append(
                    Opportunity(
                        base_token=base_token,
                        quote_token=quote_token,
                        profit_percent=profit_percent,
                        market_data=quote,
                        opportunity_id=(
                            f"arb-{base_token}-{quote_token}-{best_ask[1]}-{best_bid[1]}"
                        ),
                        expires_at=now + OPPORTUNITY_LIFETIME,
                    )
                )
        return opportunities

    async def get_health_metrics(self) -> HealthMetrics:
        """A snapshot of the connector's health metrics."""
        return copy.deepcopy(self._health)

    # ----- rate limiting -----

    async def _respect_min_interval(self, exchange: str) -> None:
        name = exchange.lower()
        last = self._last_updates.get(name)
        interval_ms = self._rate_limits.min_request_interval_ms.get(name)
        if last is not None and interval_ms is not None:
            elapsed = time.monotonic() - last
            if elapsed < interval_ms / 1000.0:
                await asyncio.sleep(interval_ms / 1000.0 - elapsed)
        self._last_updates[name] = time.monotonic()

    async def _check_rate_limit(self, exchange: str) -> None:
        name = exchange.lower()
        limits = self._rate_limits
        now = time.monotonic()
        reset_time = limits.counter_reset_time.get(name)

        if reset_time is None:
            limits.counter_reset_time[name] = now
            limits.current_request_count[name] = 1
            return

        elapsed = now - reset_time
        if elapsed >= RATE_WINDOW_SECONDS:
            limits.counter_reset_time[name] = now
            limits.current_request_count[name] = 1
            return

        count = limits.current_request_count.get(name)
        max_count = limits.max_requests_per_minute.get(name)
        if count is None or max_count is None:
            return
        if count >= max_count:
            wait = RATE_WINDOW_SECONDS - elapsed
            log.warning("Rate limit reached for %s, waiting %.3fs", name, wait)
            await asyncio.sleep(wait)
            limits.counter_reset_time[name] = time.monotonic()
            limits.current_request_count[name] = 1
        else:
            limits.current_request_count[name] = count + 1

    # ----- metrics -----

    def _update_metrics(
        self, exchange: str, success: bool, response_time_ms: float, error: str = ""
    ) -> None:
        metrics = self._health
        if success:
            metrics.successful_calls += 1
            metrics.exchange_status[exchange] = True
            metrics.last_successful_update[exchange] = datetime.now(timezone.utc).isoformat()
        else:
            metrics.failed_calls += 1
            metrics.exchange_status[exchange] = False
            if error:
                metrics.last_error[exchange] = error
        total = metrics.successful_calls + metrics.failed_calls
        metrics.avg_response_time_ms = (
            metrics.avg_response_time_ms * (total - 1) + response_time_ms
        ) / total

    # ----- fetching -----

    def _fetch_order_book(self, exchange: str, token_pair: str) -> OrderBook:
        name = exchange.lower()
        book = _SIMULATED_BOOKS.get(name)
        if book is None:
            raise ExchangeError(f"Unsupported exchange: {exchange}")
        log.debug("Fetching %s order book for %s", name, token_pair)
        base_token, quote_token = parse_token_pair(token_pair)
        if name == "uniswap":
            log.debug("Uniswap query: %s", build_uniswap_query(base_token, quote_token))
        bids, asks = book
        return OrderBook(
            exchange=name,
            base_token=base_token,
            quote_token=quote_token,
            bids=tuple(PricePoint(price, qty) for price, qty in bids),
            asks=tuple(PricePoint(price, qty) for price, qty in asks),
            timestamp=datetime.now(timezone.utc),
        )
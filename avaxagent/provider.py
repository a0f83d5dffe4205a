"""Market data from CoinGecko and the Avalanche C-Chain, with caching and rate limiting."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

log = logging.getLogger(__name__)

COINGECKO_COIN_URL = (
    "https://api.coingecko.com/api/v3/coins/{coin_id}?localization=false&tickers=false"
    "&market_data=true&community_data=false&developer_data=false"
)
COINGECKO_SIMPLE_PRICE_URL = (
    "https://api.coingecko.com/api/v3/simple/price?ids={ids}&vs_currencies=usd"
)

GET_RESERVES_SELECTOR = "0x0902f1ac"
TRADER_JOE_AVAX_USDC = "0xf4003f4efbe8691b60249e6afbd307abe7758adb"
TRACKED_SYMBOLS = ("AVAX/USD", "ETH/USD", "BTC/USD")

_COIN_IDS = {
    "avax/usd": "avalanche-2",
    "avax": "avalanche-2",
    "eth/usd": "ethereum",
    "eth": "ethereum",
    "btc/usd": "bitcoin",
    "btc": "bitcoin",
}

_DEFAULT_TOKEN_PRICES = {
    "avax": 35.0,
    "eth": 3500.0,
    "btc": 60000.0,
    "usdc": 1.0,
    "usdt": 1.0,
    "dai": 1.0,
}
_FALLBACK_TOKEN_PRICE = 10.0

_MAX_RETRIES = 5


class ProviderError(Exception):
    """Raised when market or chain data cannot be obtained."""


@dataclass
class DataConfig:
    """Settings for the market data providers."""

    providers: list[str] = field(default_factory=list)
    provider_type: Optional[str] = None
    update_interval_ms: int = 1000
    cache_expiry_seconds: int = 60
    avalanche_rpc_url: str = "http://localhost:9650/ext/bc/C/rpc"
    ccip_router_address: Optional[str] = None


@dataclass(frozen=True)
class MarketData:
    symbol: str
    price: float
    volume_24h: float
    change_24h: float
    high_24h: Optional[float]
    low_24h: Optional[float]
    timestamp: int


@dataclass(frozen=True)
class OrderBookData:
    symbol: str
    bids: tuple[tuple[float, float], ...]  # (price, amount)
    asks: tuple[tuple[float, float], ...]
    timestamp: int


@dataclass(frozen=True)
class DEXPair:
    dex: str
    pair_address: str
    token0: str
    token1: str
    reserves0: float
    reserves1: float
    price: float
    liquidity_usd: float


@dataclass(frozen=True)
class GasInfo:
    standard: int
    fast: int
    rapid: int
    base_fee: int
    priority_fee: int


def parse_address(text: str) -> bytes:
    """Parse a 20-byte hex address, with or without the 0x prefix."""
    digits = text[2:] if text[:2] in ("0x", "0X") else text
    if len(digits) != 40:
        raise ProviderError(f"Invalid address length: {text}")
    try:
        return bytes.fromhex(digits)
    except ValueError as exc:
        raise ProviderError(f"Invalid address: {text}") from exc


def _usd_map(value: Any, name: str) -> dict[str, float]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProviderError(f"Error parsing API response: {name} is not an object")
    try:
        return {str(k): float(v) for k, v in value.items()}
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"Error parsing API response: bad value in {name}") from exc


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"Error parsing API response: bad {name}") from exc


def parse_coingecko_market_data(symbol: str, payload: Any) -> MarketData:
    """Build MarketData from a CoinGecko coin response, flat or nested."""
    if not isinstance(payload, dict):
        raise ProviderError("Error parsing API response: expected an object")
    for required in ("id", "symbol", "name", "last_updated"):
        if not isinstance(payload.get(required), str):
            raise ProviderError(f"Error parsing API response: missing field `{required}`")

    current_price = _usd_map(payload.get("current_price"), "current_price")
    total_volume = _usd_map(payload.get("total_volume"), "total_volume")
    change_top = _optional_float(
        payload.get("price_change_percentage_24h"), "price_change_percentage_24h"
    )

    nested_raw = payload.get("market_data")
    nested: Optional[dict[str, Any]] = None
    if nested_raw is not None:
        if not isinstance(nested_raw, dict):
            raise ProviderError("Error parsing API response: market_data is not an object")
        for required in ("high_24h", "low_24h"):
            if required not in nested_raw:
                raise ProviderError(f"Error parsing API response: missing field `{required}`")
        nested = {
            "current_price": _usd_map(nested_raw.get("current_price"), "current_price"),
            "total_volume": _usd_map(nested_raw.get("total_volume"), "total_volume"),
            "change": _optional_float(
                nested_raw.get("price_change_percentage_24h"), "price_change_percentage_24h"
            ),
            "high": _usd_map(nested_raw["high_24h"], "high_24h"),
            "low": _usd_map(nested_raw["low_24h"], "low_24h"),
        }

    if current_price:
        price = current_price.get("usd", 0.0)
    elif nested is not None:
        price = nested["current_price"].get("usd", 0.0)
    else:
        log.warning("No price data found for %s, defaulting to 0", symbol)
        price = 0.0

    if total_volume:
        volume = total_volume.get("usd", 0.0)
    elif nested is not None:
        volume = nested["total_volume"].get("usd", 0.0)
    else:
        volume = 0.0

    if change_top is not None:
        change = change_top
    elif nested is not None and nested["change"] is not None:
        change = nested["change"]
    else:
        change = 0.0

    return MarketData(
        symbol=symbol.split("/")[0].upper(),
        price=price,
        volume_24h=volume,
        change_24h=change,
        high_24h=nested["high"].get("usd") if nested is not None else None,
        low_24h=nested["low"].get("usd") if nested is not None else None,
        timestamp=int(time.time()),
    )


class RateLimiter:
    """Per-endpoint spacing of one request a second, with backoff near the per-minute cap."""

    MIN_INTERVAL = 1.0
    WINDOW = 60.0
    SOFT_LIMIT = 40
    BACKOFF_STEP = 0.5

    def __init__(self) -> None:
        self._last_request: dict[str, float] = {}
        self._counts: dict[str, tuple[int, float]] = {}

    def delay_for(self, endpoint: str, now: float) -> float:
        """Record a request at `now` and return how many seconds to wait before it."""
        last = self._last_request.get(endpoint)
        wait = 0.0
        if last is not None:
            elapsed = now - last
            if elapsed < self.MIN_INTERVAL:
                wait = self.MIN_INTERVAL - elapsed
        self._last_request[endpoint] = now

        count, window_start = self._counts.get(endpoint, (0, now))
        if now - window_start > self.WINDOW:
            new_count, new_start = 1, now
        else:
            new_count, new_start = count + 1, window_start
            if new_count > self.SOFT_LIMIT:
                backoff = (new_count - self.SOFT_LIMIT) * self.BACKOFF_STEP
                return max(backoff, wait)

        self._counts[endpoint] = (new_count, new_start)
        return wait


class DataProvider:
    """Fetches market prices from CoinGecko and pair and gas data from the chain."""

    def __init__(self, config: DataConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient()
        self._cache: dict[str, tuple[float, Any]] = {}
        self._limiter = RateLimiter()
        self._refresh_task: Optional[asyncio.Task] = None
        self._rpc_id = 0

    # ----- lifecycle -----

    def start(self) -> None:
        """Start refreshing the cache in the background."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def close(self) -> None:
        """Stop the background refresh and release the HTTP client if owned."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DataProvider":
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _refresh_loop(self) -> None:
        interval = self.config.update_interval_ms / 1000.0
        while True:
            try:
                await self.refresh_cache()
            except ProviderError as exc:
                log.error("Error refreshing data cache: %s", exc)
            await asyncio.sleep(interval)

    # ----- cache -----

    def _get_cached(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is not None:
            stored_at, value = entry
            if time.monotonic() - stored_at < self.config.cache_expiry_seconds:
                return value
        return None

    def _put_cached(self, key: str, value: Any) -> None:
        self._cache[key] = (time.monotonic(), value)

    # ----- transport -----

    async def _rate_limited_request(self, url: str, endpoint_key: str) -> str:
        retries = 0
        while True:
            delay = self._limiter.delay_for(endpoint_key, time.monotonic())
            if delay > 0:
                log.debug("Rate limiting applied for %s: waiting %.3fs", endpoint_key, delay)
                await asyncio.sleep(delay)
            try:
                response = await self._client.get(url, headers={"Accept": "application/json"})
            except httpx.HTTPError as exc:
                retries += 1
                if retries > _MAX_RETRIES:
                    raise ProviderError(
                        f"API request failed after {_MAX_RETRIES} retries: {exc}"
                    ) from exc
                retry_delay = 2.0**retries
                log.warning(
                    "Network error for %s: %s. Retrying in %.0fs (attempt %d/%d)",
                    endpoint_key, exc, retry_delay, retries, _MAX_RETRIES,
                )
                await asyncio.sleep(retry_delay)
                continue

            if response.is_success:
                return response.text
            if response.status_code == 429:
                retries += 1
                if retries > _MAX_RETRIES:
                    raise ProviderError(
                        f"API request failed after {_MAX_RETRIES} retries with status: "
                        f"{response.status_code}"
                    )
                retry_delay = 2.0**retries
                log.warning(
                    "Rate limit exceeded for %s. Retrying in %.0fs (attempt %d/%d)",
                    endpoint_key, retry_delay, retries, _MAX_RETRIES,
                )
                await asyncio.sleep(retry_delay)
                continue
            raise ProviderError(f"API request failed with status: {response.status_code}")

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._rpc_id += 1
        body = {"jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params}
        try:
            response = await self._client.post(self.config.avalanche_rpc_url, json=body)
            response.raise_for_status()
            reply = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"RPC request {method} failed: {exc}") from exc
        if not isinstance(reply, dict):
            raise ProviderError(f"RPC request {method} returned a malformed reply")
        if reply.get("error"):
            raise ProviderError(f"RPC request {method} failed: {reply['error']}")
        return reply.get("result")

    # ----- public queries -----

    async def get_market_data(self, symbol: str) -> MarketData:
        key = f"market:{symbol}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        data = await self._fetch_market_data(symbol)
        self._put_cached(key, data)
        return data

    async def get_dex_pair(self, dex: str, pair_address: str) -> DEXPair:
        key = f"dex_pair:{dex}:{pair_address}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        pair = await self._fetch_dex_pair(dex, pair_address)
        self._put_cached(key, pair)
        return pair

    async def get_gas_prices(self) -> GasInfo:
        cached = self._get_cached("gas_prices")
        if cached is not None:
            return cached
        gas = await self._fetch_gas_prices()
        self._put_cached("gas_prices", gas)
        return gas

    async def get_token_price(self, token_symbol: str) -> float:
        """Spot USD price, falling back to fixed prices when the API has none."""
        lower = token_symbol.lower()
        key = f"token_price_{lower}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached

        url = COINGECKO_SIMPLE_PRICE_URL.format(ids=lower)
        try:
            response = await self._client.get(url, timeout=10.0)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"Token price request failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProviderError("Token price response is not an object")

        token_data = payload.get(lower)
        if isinstance(token_data, dict) and "usd" in token_data:
            try:
                price = float(token_data["usd"])
            except (TypeError, ValueError) as exc:
                raise ProviderError("Token price response holds a bad price") from exc
            self._put_cached(key, price)
            return price

        return _DEFAULT_TOKEN_PRICES.get(lower, _FALLBACK_TOKEN_PRICE)

    async def get_formatted_market_data(self) -> str:
        """All tracked data as Markdown text."""
        lines: list[str] = ["# Market Data\n\n"]
        for symbol in TRACKED_SYMBOLS:
            try:
                data = await self.get_market_data(symbol)
            except ProviderError as exc:
                lines.append(f"## {symbol} - Error: {exc}\n\n")
                continue
            lines.append(f"## {symbol}\n")
            lines.append(f"- Price: ${data.price:.2f}\n")
            lines.append(f"- 24h Change: {data.change_24h:.2f}%\n")
            lines.append(f"- 24h Volume: ${data.volume_24h:.2f}\n\n")

        lines.append("# DEX Data\n\n")
        try:
            pair = await self.get_dex_pair("trader_joe", TRADER_JOE_AVAX_USDC)
        except ProviderError as exc:
            lines.append(f"## Trader Joe AVAX/USDC - Error: {exc}\n\n")
        else:
            lines.append("## Trader Joe AVAX/USDC\n")
            lines.append(f"- Price: ${pair.price:.4f}\n")
            lines.append(f"- Liquidity: ${pair.liquidity_usd:.2f}\n")
            lines.append(
                f"- Reserves: {pair.reserves0:.2f} AVAX / {pair.reserves1:.2f} USDC\n\n"
            )

        lines.append("# Gas Prices (Gwei)\n\n")
        try:
            gas = await self.get_gas_prices()
        except ProviderError as exc:
            lines.append(f"Gas Price Error: {exc}\n")
        else:
            lines.append(f"- Standard: {gas.standard}\n")
            lines.append(f"- Fast: {gas.fast}\n")
            lines.append(f"- Rapid: {gas.rapid}\n")
            lines.append(f"- Base Fee: {gas.base_fee}\n")
            lines.append(f"- Priority Fee: {gas.priority_fee}\n")
        return "".join(lines)

    async def refresh_cache(self) -> None:
        """Re-fetch tracked markets, gas prices and the key DEX pair; failures are skipped."""
        for symbol in TRACKED_SYMBOLS:
            try:
                self._put_cached(f"market:{symbol}", await self._fetch_market_data(symbol))
            except ProviderError as exc:
                log.debug("Refresh of %s failed: %s", symbol, exc)
        try:
            self._put_cached("gas_prices", await self._fetch_gas_prices())
        except ProviderError as exc:
            log.debug("Refresh of gas prices failed: %s", exc)
        try:
            pair = await self._fetch_dex_pair("trader_joe", TRADER_JOE_AVAX_USDC)
            self._put_cached(f"dex_pair:trader_joe:{TRADER_JOE_AVAX_USDC}", pair)
        except ProviderError as exc:
            log.debug("Refresh of DEX pair failed: %s", exc)

    # ----- fetchers -----

    async def _fetch_market_data(self, symbol: str) -> MarketData:
        coin_id = _COIN_IDS.get(symbol.lower())
        if coin_id is None:
            raise ProviderError(f"Unsupported symbol: {symbol}")
        text = await self._rate_limited_request(
            COINGECKO_COIN_URL.format(coin_id=coin_id), f"coingecko_coin_{coin_id}"
        )
        log.debug("CoinGecko API response length: %d bytes", len(text))
        try:
            payload = httpx.Response(200, content=text.encode()).json()
        except ValueError as exc:
            log.error("Failed to parse CoinGecko response: %s, Response: %s", exc, text)
            raise ProviderError(f"Error parsing API response: {exc}") from exc
        return parse_coingecko_market_data(symbol, payload)

    async def _fetch_dex_pair(self, dex: str, pair_address: str) -> DEXPair:
        address = parse_address(pair_address)
        result = await self._rpc(
            "eth_call",
            [{"to": "0x" + address.hex(), "data": GET_RESERVES_SELECTOR}, "latest"],
        )
        if not isinstance(result, str):
            raise ProviderError("getReserves returned no data")
        try:
            raw = bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError as exc:
            raise ProviderError("getReserves returned malformed data") from exc
        if len(raw) < 64:
            raise ProviderError("getReserves returned too little data")

        reserve0_raw = int.from_bytes(raw[:32], "big")
        reserve1_raw = int.from_bytes(raw[32:64], "big")
        if reserve0_raw >= 1 << 128 or reserve1_raw >= 1 << 128:
            raise ProviderError("Reserve value out of range")

        reserve0 = reserve0_raw / 1e18
        reserve1 = reserve1_raw / 1e6
        if reserve0 == 0:
            price = math.nan if reserve1 == 0 else math.inf
        else:
            price = reserve1 / reserve0

        return DEXPair(
            dex=dex,
            pair_address=pair_address,
            token0="AVAX",
            token1="USDC",
            reserves0=reserve0,
            reserves1=reserve1,
            price=price,
            liquidity_usd=2.0 * reserve1,
        )

    async def _fetch_gas_prices(self) -> GasInfo:
        block = await self._rpc("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise ProviderError("Failed to get latest block")
        base_fee_hex = block.get("baseFeePerGas")
        try:
            base_fee_wei = int(base_fee_hex, 16) if base_fee_hex else 0
        except (TypeError, ValueError) as exc:
            raise ProviderError("Latest block holds a malformed base fee") from exc
        base_fee = base_fee_wei // 1_000_000_000
        priority_fee = 1
        return GasInfo(
            standard=base_fee + priority_fee,
            fast=base_fee + priority_fee * 2,
            rapid=base_fee + priority_fee * 3,
            base_fee=base_fee,
            priority_fee=priority_fee,
        )
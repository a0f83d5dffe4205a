"""Market data served through the Chainlink CCIP price feed and router."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Any, Optional

import httpx

from avaxagent.provider import (
    DataConfig,
    DEXPair,
    GasInfo,
    MarketData,
    ProviderError,
    parse_address,
)

log = logging.getLogger(__name__)

CCIP_ROUTER_ADDRESS = "0xF694E193200268f9a4868e4Aa017A0118C9a8177"
CCIP_PRICE_FEED_ADDRESS = "0x5498BB86BC934c8D34FDA08E81D444153d0D06aD"

_TOKEN_ADDRESSES = {
    "ETH": "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE",
    "AVAX": "0x0000000000000000000000000000000000000000",
    "BTC": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
    "LINK": "0x514910771AF9Ca656af840dff83E8264EcF986CA",
}

# Feed answers with 8 decimals, as Chainlink price feeds do.
_FEED_ANSWERS = {
    "ETH": 3_500_00000000,
    "AVAX": 35_00000000,
    "BTC": 57_000_00000000,
    "LINK": 18_00000000,
}
_FEED_DEFAULT_ANSWER = 1_00000000
_FEED_DECIMALS = 100_000_000.0

_DEX_TOKENS = {
    "uniswap": ("ETH", "USDC"),
    "sushiswap": ("AVAX", "USDT"),
    "pancakeswap": ("BNB", "BUSD"),
    "traderjoe": ("AVAX", "JOE"),
}

_DEFAULT_BASE_FEE_WEI = 25_000_000_000
_STANDARD_PRIORITY_WEI = 1_500_000_000
_FAST_PRIORITY_WEI = 3_000_000_000
_RAPID_PRIORITY_WEI = 5_000_000_000

_REFRESH_TOKENS = ("ETH", "BTC", "AVAX", "LINK")
_U64_MASK = (1 << 64) - 1


class ChainSelector(enum.IntEnum):
    """CCIP chain selectors."""

    ETHEREUM = 5009297550715157269
    AVALANCHE = 14767482510784806043
    ARBITRUM = 4949039107694359620
    OPTIMISM = 1869310431591042095
    POLYGON = 4051577828743386545


class CCIPDataProvider:
    """Serves prices, market data, DEX pairs and gas prices via CCIP and the C-Chain."""

    def __init__(self, config: DataConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient()
        self._cache: dict[str, tuple[float, Any]] = {}
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

    async def __aenter__(self) -> "CCIPDataProvider":
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
                log.error("Error refreshing CCIP data cache: %s", exc)
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

    async def get_token_price(self, token_symbol: str) -> float:
        key = f"ccip_price_{token_symbol.lower()}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        try:
            price = self._fetch_token_price(token_symbol)
        except ProviderError as exc:
            log.error("Failed to fetch price from CCIP: %s", exc)
            raise
        self._put_cached(key, price)
        return price

    async def get_market_data(self, symbol: str) -> MarketData:
        key = f"ccip_market_{symbol.lower()}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        try:
            price = self._fetch_token_price(symbol)
        except ProviderError as exc:
            log.error("Failed to fetch market data from CCIP: %s", exc)
            raise
        data = MarketData(
            symbol=symbol,
            price=price,
            volume_24h=price * 1_000_000.0,
            change_24h=0.5,
            high_24h=price * 1.02,
            low_24h=price * 0.98,
            timestamp=int(time.time()),
        )
        self._put_cached(key, data)
        return data

    async def get_dex_pair(self, dex: str, pair_address: str) -> DEXPair:
        key = f"ccip_dex_{dex.lower()}_{pair_address}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        try:
            pair = self._build_dex_pair(dex, pair_address)
        except ProviderError as exc:
            log.error("Failed to fetch DEX pair from CCIP: %s", exc)
            raise
        self._put_cached(key, pair)
        return pair

    async def get_gas_prices(self) -> GasInfo:
        key = "ccip_gas_prices"
        cached = self._get_cached(key)
        if cached is not None:
            return cached
        try:
            gas = await self._fetch_gas_prices()
        except ProviderError as exc:
            log.error("Failed to fetch gas prices: %s", exc)
            raise
        self._put_cached(key, gas)
        return gas

    async def refresh_cache(self) -> None:
        """Refresh popular token prices and gas prices; failures are logged and skipped."""
        for token in _REFRESH_TOKENS:
            try:
                await self.get_token_price(token)
            except ProviderError as exc:
                log.warning("Failed to refresh price for %s: %s", token, exc)
        try:
            await self.get_gas_prices()
        except ProviderError as exc:
            log.warning("Failed to refresh gas prices: %s", exc)

    async def send_ccip_message(
        self, destination_chain: ChainSelector, receiver: str, message: bytes
    ) -> str:
        """Send a cross-chain message and return its message id."""
        parse_address(CCIP_ROUTER_ADDRESS)
        parse_address(receiver)
        message_id = "0x" + bytes(32).hex()
        log.info(
            "CCIP message of %d bytes sent to chain %d with ID: %s",
            len(message), int(destination_chain), message_id,
        )
        return message_id

    # ----- fetchers -----

    def _fetch_token_price(self, token_symbol: str) -> float:
        upper = token_symbol.upper()
        token_address = _TOKEN_ADDRESSES.get(upper)
        if token_address is None:
            raise ProviderError(f"Unsupported token symbol: {token_symbol}")
        parse_address(token_address)
        parse_address(CCIP_PRICE_FEED_ADDRESS)
        answer = _FEED_ANSWERS.get(upper, _FEED_DEFAULT_ANSWER)
        price = answer / _FEED_DECIMALS
        log.info("CCIP Price feed for %s: $%.2f", token_symbol, price)
        return price

    @staticmethod
    def _build_dex_pair(dex: str, pair_address: str) -> DEXPair:
        parse_address(pair_address)
        digest = 0
        for char in pair_address:
            digest = (digest + ord(char)) & _U64_MASK
        price = (digest % 1000) / 100.0
        token0, token1 = _DEX_TOKENS.get(dex.lower(), ("TOKEN0", "TOKEN1"))
        reserves0 = 100_000.0 + float(digest % 900_000)
        reserves1 = reserves0 * price
        return DEXPair(
            dex=dex,
            pair_address=pair_address,
            token0=token0,
            token1=token1,
            reserves0=reserves0,
            reserves1=reserves1,
            price=price,
            liquidity_usd=reserves1 * 2.0,
        )

    async def _fetch_gas_prices(self) -> GasInfo:
        block = await self._rpc("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise ProviderError("Latest block not found")
        base_fee_hex = block.get("baseFeePerGas")
        try:
            base_fee = int(base_fee_hex, 16) if base_fee_hex else _DEFAULT_BASE_FEE_WEI
        except (TypeError, ValueError) as exc:
            raise ProviderError("Latest block holds a malformed base fee") from exc
        if base_fee > _U64_MASK:
            raise ProviderError("Base fee out of range")
        return GasInfo(
            standard=base_fee + _STANDARD_PRIORITY_WEI,
            fast=base_fee + _FAST_PRIORITY_WEI,
            rapid=base_fee + _RAPID_PRIORITY_WEI,
            base_fee=base_fee,
            priority_fee=_STANDARD_PRIORITY_WEI,
        )
"""Real-time detection of flash-loan arbitrage between DEX pairs."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, Optional, Sequence

from avaxagent.provider import DEXPair, GasInfo, ProviderError

log = logging.getLogger(__name__)

# Share of the smaller pool's liquidity borrowed for one arbitrage.
FLASH_LOAN_SHARE = 0.3
# Aave flash-loan fee, 0.09%.
FLASH_LOAN_FEE_RATE = 0.0009
# Flash loan (~300k) + two swaps (~150k each) + repayment (~80k).
FLASH_ARBITRAGE_GAS = 680_000.0
# Gas info carries no ETH price, so a fixed one is used.
ETH_PRICE_USD = 3000.0


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """A price gap between two DEXes that a flash loan can exploit."""

    source_dex: str
    target_dex: str
    token_pair: str
    source_price: float
    target_price: float
    price_difference_percent: float
    flash_loan_amount_usd: float
    estimated_profit_usd: float
    estimated_gas_cost_usd: float
    flash_loan_fee_usd: float
    net_profit_usd: float
    confidence: float


def _reserve_price(pair: DEXPair) -> Optional[float]:
    if pair.reserves0 == 0:
        return None
    price = pair.reserves1 / pair.reserves0
    return price if price != 0 else None


def find_opportunities(
    pairs: Iterable[tuple[str, DEXPair]],
    gas_info: GasInfo,
    min_price_diff_percent: float,
    min_profit_threshold: float,
) -> list[ArbitrageOpportunity]:
    """Compare every two DEXes quoting the same token pair and keep the profitable gaps."""
    by_token_pair: dict[str, list[tuple[str, DEXPair]]] = {}
    for dex, pair in pairs:
        by_token_pair.setdefault(f"{pair.token0}/{pair.token1}", []).append((dex, pair))

    gas_cost_usd = FLASH_ARBITRAGE_GAS * float(gas_info.fast) * 1e-9 * ETH_PRICE_USD
    found: list[ArbitrageOpportunity] = []

    for pair_name, quotes in by_token_pair.items():
        for (dex_a, pair_a), (dex_b, pair_b) in combinations(quotes, 2):
            price_a = _reserve_price(pair_a)
            price_b = _reserve_price(pair_b)
            if price_a is None or price_b is None:
                continue

            diff_percent = abs((price_a - price_b) / price_a) * 100.0
            if not diff_percent > min_price_diff_percent:
                continue

            liquidity = min(pair_a.reserves0 * price_a, pair_b.reserves0 * price_b)
            loan = liquidity * FLASH_LOAN_SHARE
            fee = loan * FLASH_LOAN_FEE_RATE
            profit = loan * diff_percent / 100.0
            net_profit = profit - fee - gas_cost_usd
            if not net_profit > min_profit_threshold:
                continue

            confidence = (
                0.5
                + 0.3 * min(diff_percent / 5.0, 1.0)
                + 0.2 * min(net_profit / 100.0, 1.0)
            )
            if price_a < price_b:
                source, source_price, target, target_price = dex_a, price_a, dex_b, price_b
            else:
                source, source_price, target, target_price = dex_b, price_b, dex_a, price_a

            found.append(
                ArbitrageOpportunity(
                    source_dex=source,
                    target_dex=target,
                    token_pair=pair_name,
                    source_price=source_price,
                    target_price=target_price,
                    price_difference_percent=diff_percent,
                    flash_loan_amount_usd=loan,
                    estimated_profit_usd=profit,
                    estimated_gas_cost_usd=gas_cost_usd,
                    flash_loan_fee_usd=fee,
                    net_profit_usd=net_profit,
                    confidence=confidence,
                )
            )
            log.info(
                "Found arbitrage opportunity: %s -> %s, profit: $%.2f, confidence: %.2f",
                source, target, net_profit, confidence,
            )
    return found


class RealTimeMonitor:
    """Polls a data provider and keeps the current arbitrage opportunities."""

    def __init__(
        self,
        data_provider,
        pairs: Sequence[tuple[str, str]],
        min_price_diff_percent: float,
        min_profit_threshold: float,
        polling_interval_ms: int,
    ) -> None:
        self._provider = data_provider
        self._pairs = list(pairs)
        self.min_price_diff_percent = min_price_diff_percent
        self.min_profit_threshold = min_profit_threshold
        self.polling_interval_ms = polling_interval_ms
        self._opportunities: list[ArbitrageOpportunity] = []
        self._last_update = time.monotonic()
        self._active = False
        self._task: Optional[asyncio.Task] = None

    async def scan(self) -> list[ArbitrageOpportunity]:
        """Fetch gas and pair data once and replace the stored opportunities."""
        gas_info = await self._provider.get_gas_prices()
        fetched: list[tuple[str, DEXPair]] = []
        for dex, pair_address in self._pairs:
            try:
                fetched.append((dex, await self._provider.get_dex_pair(dex, pair_address)))
            except ProviderError as exc:
                log.warning("Error fetching pair data for %s/%s: %s", dex, pair_address, exc)
        self._opportunities = find_opportunities(
            fetched, gas_info, self.min_price_diff_percent, self.min_profit_threshold
        )
        self._last_update = time.monotonic()
        return list(self._opportunities)

    async def _run(self) -> None:
        log.info("Starting real-time market monitoring for arbitrage opportunities")
        interval = self.polling_interval_ms / 1000.0
        while self._active:
            log.debug("Checking for arbitrage opportunities...")
            try:
                await self.scan()
            except ProviderError as exc:
                log.error("Failed to fetch gas prices: %s", exc)
            await asyncio.sleep(interval)
        log.info("Real-time market monitoring stopped")

    async def start_monitoring(self) -> None:
        """Start polling in a background task."""
        self._active = True
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop_monitoring(self) -> None:
        """Stop polling."""
        self._active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        log.info("Stopping real-time market monitoring")

    def get_opportunities(self) -> list[ArbitrageOpportunity]:
        return list(self._opportunities)

    def get_best_opportunity(self) -> Optional[ArbitrageOpportunity]:
        """The opportunity with the highest net profit, the last one on ties."""
        if not self._opportunities:
            return None
        return max(reversed(self._opportunities), key=lambda opp: opp.net_profit_usd)

    def time_since_last_update(self) -> float:
        """Seconds since the opportunities were last refreshed."""
        return time.monotonic() - self._last_update

    def is_active(self) -> bool:
        return self._active
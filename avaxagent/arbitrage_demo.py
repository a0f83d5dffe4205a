"""Simulated real-time flash-loan arbitrage between Avalanche DEXes."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import time
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, Optional, Sequence

from avaxagent.provider import DEXPair
from avaxagent.real_time_monitor import (
    FLASH_LOAN_FEE_RATE,
    FLASH_LOAN_SHARE,
    ArbitrageOpportunity,
)

MIN_PRICE_DIFF_PERCENT = 1.0
MIN_PROFIT_USD = 20.0
SIMULATED_GAS_COST_USD = 35.0
DEFAULT_POLLING_INTERVAL = 5.0
DEFAULT_MIN_TRADE_INTERVAL_SECONDS = 60
TRADER_TICK_SECONDS = 1.0

DEFAULT_PAIRS: tuple[tuple[str, str], ...] = (
    ("traderjoe", "0x9Ad6C38BE94206cA50bb0d90783181662f0Cfa10"),
    ("pangolin", "0xf4003F4efBE8691B60249E6afbD307aBE7758adb"),
    ("sushiswap", "0x2e8879Aa61471C5D37096293daD99f5807BF1C26"),
    ("traderjoe", "0x1E15c2695F1F920da45C30AAE47d11dE51007AF9"),
    ("pangolin", "0x1BbDaF56D8c0d9Db6Ad919ef5D2a67C91764156C"),
    ("sushiswap", "0x2Ee0a4E21bd333a6bb2ab298194320b8DaA26516"),
    ("traderjoe", "0x2cf16BF2BC053E7102E2AC1DEE6aa44F2B427C3"),
    ("pangolin", "0x2EE0a4E21bD333a6bb2aB298194320b8DaA26516"),
)

_BASE_PRICES = {"0": 1.0, "1": 1800.0, "2": 1.0}
_OTHER_BASE_PRICE = 10.0
_DEX_FACTORS = {"traderjoe": 1.0, "pangolin": 0.98, "sushiswap": 1.02}
_TOKENS = {"0": ("USDC", "WAVAX"), "1": ("WETH", "WAVAX"), "2": ("USDT", "WAVAX")}
_OTHER_TOKENS = ("TOKEN0", "TOKEN1")


@dataclass
class TradingStats:
    """Counters and totals of the simulated trader."""

    opportunities_detected: int = 0
    opportunities_executed: int = 0
    failed_trades: int = 0
    total_profit_usd: float = 0.0
    max_profit_usd: float = 0.0
    total_gas_spent_usd: float = 0.0

    @property
    def net_profit_usd(self) -> float:
        return self.total_profit_usd - self.total_gas_spent_usd


def simulate_fetch_dex_pair(dex: str, pair_address: str) -> DEXPair:
    """Deterministic pair data derived from the DEX name and the pair address."""
    first = pair_address[:1] or "0"
    base_price = _BASE_PRICES.get(first, _OTHER_BASE_PRICE)
    dex_factor = _DEX_FACTORS.get(dex, 1.0)
    random_factor = 0.95 + (len(pair_address.encode()) % 10) / 100.0

    price = base_price * dex_factor * random_factor
    reserves0 = 1_000_000.0 * random_factor
    reserves1 = reserves0 * price
    token0, token1 = _TOKENS.get(first, _OTHER_TOKENS)
    return DEXPair(
        dex=dex,
        pair_address=pair_address,
        token0=token0,
        token1=token1,
        reserves0=reserves0,
        reserves1=reserves1,
        price=price,
        liquidity_usd=reserves1,
    )


def simulate_execute_arbitrage(opportunity: ArbitrageOpportunity) -> bool:
    """Pretend to execute a trade; it succeeds when the confidence is above 0.2."""
    return opportunity.confidence > 0.2


def find_simulated_opportunities(
    pairs: Iterable[tuple[str, str]],
) -> list[ArbitrageOpportunity]:
    """Fetch simulated data for each (dex, address) and find profitable price gaps."""
    by_token_pair: dict[str, list[tuple[str, DEXPair]]] = {}
    for dex, address in pairs:
        pair = simulate_fetch_dex_pair(dex, address)
        by_token_pair.setdefault(f"{pair.token0}/{pair.token1}", []).append((dex, pair))

    found: list[ArbitrageOpportunity] = []
    for pair_name, quotes in by_token_pair.items():
        for (dex_a, pair_a), (dex_b, pair_b) in combinations(quotes, 2):
            diff_percent = abs((pair_a.price - pair_b.price) / pair_a.price) * 100.0
            if not diff_percent > MIN_PRICE_DIFF_PERCENT:
                continue

            loan = min(pair_a.liquidity_usd, pair_b.liquidity_usd) * FLASH_LOAN_SHARE
            fee = loan * FLASH_LOAN_FEE_RATE
            profit = loan * diff_percent / 100.0
            net_profit = profit - fee - SIMULATED_GAS_COST_USD
            if not net_profit > MIN_PROFIT_USD:
                continue

            confidence = (
                0.5
                + 0.3 * min(diff_percent / 5.0, 1.0)
                + 0.2 * min(net_profit / 100.0, 1.0)
            )
            if pair_a.price < pair_b.price:
                source, source_price, target, target_price = (
                    dex_a, pair_a.price, dex_b, pair_b.price,
                )
            else:
                source, source_price, target, target_price = (
                    dex_b, pair_b.price, dex_a, pair_a.price,
                )

            opportunity = ArbitrageOpportunity(
                source_dex=source,
                target_dex=target,
                token_pair=pair_name,
                source_price=source_price,
                target_price=target_price,
                price_difference_percent=diff_percent,
                flash_loan_amount_usd=loan,
                estimated_profit_usd=profit,
                estimated_gas_cost_usd=SIMULATED_GAS_COST_USD,
                flash_loan_fee_usd=fee,
                net_profit_usd=net_profit,
                confidence=confidence,
            )
            print(
                f"Found arbitrage opportunity: {source} -> {target}, "
                f"profit: ${net_profit:.2f}, confidence: {confidence:.2f}"
            )
            found.append(opportunity)
    return found


class SimulatedMonitor:
    """Polls simulated DEX data and keeps the current opportunities."""

    def __init__(
        self,
        pairs: Sequence[tuple[str, str]],
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
    ) -> None:
        self._pairs = list(pairs)
        self.polling_interval = polling_interval
        self._opportunities: list[ArbitrageOpportunity] = []
        self._active = False
        self._last_update = time.monotonic()
        self._task: Optional[asyncio.Task] = None

    def scan(self) -> list[ArbitrageOpportunity]:
        """Look for opportunities once and replace the stored ones."""
        print("Checking for arbitrage opportunities...")
        self._opportunities = find_simulated_opportunities(self._pairs)
        self._last_update = time.monotonic()
        return list(self._opportunities)

    async def _run(self) -> None:
        print("Starting real-time market monitoring for arbitrage opportunities")
        while self._active:
            self.scan()
            await asyncio.sleep(self.polling_interval)
        print("Real-time market monitoring stopped")

    async def start_monitoring(self) -> None:
        """Start polling in a background task."""
        self._active = True
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop_monitoring(self) -> None:
        self._active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        print("Stopping real-time market monitoring")

    def get_opportunities(self) -> list[ArbitrageOpportunity]:
        return list(self._opportunities)


class SimulatedTrader:
    """Executes the best opportunity of a monitor, at most once per trade interval."""

    def __init__(self, market_monitor, min_trade_interval_seconds: float) -> None:
        self._monitor = market_monitor
        self.min_trade_interval_seconds = min_trade_interval_seconds
        self._stats = TradingStats()
        self._last_trade = time.monotonic()
        self._active = False
        self._task: Optional[asyncio.Task] = None

    def step(self) -> Optional[ArbitrageOpportunity]:
        """Try one trade; return the opportunity attempted, or None if none was."""
        opportunities = self._monitor.get_opportunities()
        if not opportunities:
            print("No arbitrage opportunities available")
            return None

        best = max(reversed(opportunities), key=lambda opp: opp.net_profit_usd)
        self._stats.opportunities_detected += 1

        since_last = time.monotonic() - self._last_trade
        if since_last < self.min_trade_interval_seconds:
            remaining = self.min_trade_interval_seconds - since_last
            print(f"Waiting for trade interval ({remaining:.3f}s remaining)")
            return None

        if best.net_profit_usd <= 0.0:
            print("Opportunity no longer profitable, skipping")
            return None

        print(
            f"Executing arbitrage opportunity: {best.source_dex} -> {best.target_dex}, "
            f"expected profit: ${best.net_profit_usd:.2f}"
        )
        if simulate_execute_arbitrage(best):
            print(f"Trade executed successfully! Profit: ${best.net_profit_usd:.2f}")
            stats = self._stats
            stats.opportunities_executed += 1
            stats.total_profit_usd += best.net_profit_usd
            stats.max_profit_usd = max(stats.max_profit_usd, best.net_profit_usd)
            stats.total_gas_spent_usd += best.estimated_gas_cost_usd
        else:
            print("Trade execution failed")
            self._stats.failed_trades += 1
        self._last_trade = time.monotonic()
        return best

    async def _run(self) -> None:
        print("Starting real-time arbitrage trading")
        while self._active:
            self.step()
            await asyncio.sleep(TRADER_TICK_SECONDS)
        print("Real-time arbitrage trading stopped")

    async def start_trading(self) -> None:
        """Start trading in a background task."""
        self._active = True
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop_trading(self) -> None:
        self._active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        print("Stopping real-time arbitrage trading")

    def get_stats(self) -> TradingStats:
        return dataclasses.replace(self._stats)


def _print_parameters(min_trade_interval: float, polling_interval: float) -> None:
    print("\nMonitoring for arbitrage opportunities between these DEXes:")
    for name in ("TraderJoe", "Pangolin", "SushiSwap"):
        print(f"- {name}")
    print("\nMonitoring the following token pairs:")
    for name in ("USDC/WAVAX", "WETH/WAVAX", "USDT/WAVAX"):
        print(f"- {name}")
    print("\nTrading parameters:")
    print(f"- Minimum price difference: {MIN_PRICE_DIFF_PERCENT}%")
    print(f"- Minimum profit threshold: ${MIN_PROFIT_USD}")
    print(f"- Minimum time between trades: {min_trade_interval} seconds")
    print(f"- Polling interval: {int(polling_interval * 1000)} ms")


async def _run_demo(monitor: SimulatedMonitor, trader: SimulatedTrader) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except (NotImplementedError, RuntimeError):
        pass

    await monitor.start_monitoring()
    print("Market monitoring started")
    await trader.start_trading()
    print("Trading started! Press Ctrl+C to stop.")
    _print_parameters(trader.min_trade_interval_seconds, monitor.polling_interval)

    await stop.wait()
    print("\nReceived Ctrl+C, shutting down...")


def main(argv: Optional[list[str]] = None) -> int:
    """Run the simulated arbitrage demo until interrupted."""
    parser = argparse.ArgumentParser(description="Real-time arbitrage demo")
    parser.add_argument(
        "--min-trade-interval", type=float, default=DEFAULT_MIN_TRADE_INTERVAL_SECONDS
    )
    parser.add_argument("--polling-interval", type=float, default=DEFAULT_POLLING_INTERVAL)
    args = parser.parse_args(argv)

    print("Starting AI Trading Agent - Real-Time Arbitrage Demo")
    monitor = SimulatedMonitor(DEFAULT_PAIRS, args.polling_interval)
    print("Real-time market monitor initialized")
    trader = SimulatedTrader(monitor, args.min_trade_interval)
    print("Real-time trader initialized")

    try:
        asyncio.run(_run_demo(monitor, trader))
    except KeyboardInterrupt:
        print("\nReceived Ctrl+C, shutting down...")
    trader.stop_trading()
    monitor.stop_monitoring()

    stats = trader.get_stats()
    print("\nTrading Statistics:")
    print(f"- Opportunities detected: {stats.opportunities_detected}")
    print(f"- Trades executed: {stats.opportunities_executed}")
    print(f"- Failed trades: {stats.failed_trades}")
    print(f"- Total profit: ${stats.total_profit_usd:.2f}")
    print(f"- Maximum profit from a single trade: ${stats.max_profit_usd:.2f}")
    print(f"- Total gas spent: ${stats.total_gas_spent_usd:.2f}")
    print(f"- Net profit after gas: ${stats.net_profit_usd:.2f}")
    print("\nThank you for using the AI Trading Agent!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
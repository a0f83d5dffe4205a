import asyncio

import pytest

from avaxagent.provider import DEXPair, GasInfo, ProviderError
from avaxagent.real_time_monitor import (
    ArbitrageOpportunity,
    RealTimeMonitor,
    find_opportunities,
)


def make_pair(dex, reserves0, reserves1, token0="AVAX", token1="USDC"):
    return DEXPair(
        dex=dex,
        pair_address="0x" + "1" * 40,
        token0=token0,
        token1=token1,
        reserves0=reserves0,
        reserves1=reserves1,
        price=reserves1 / reserves0 if reserves0 else 0.0,
        liquidity_usd=2.0 * reserves1,
    )


FREE_GAS = GasInfo(standard=0, fast=0, rapid=0, base_fee=0, priority_fee=0)
COSTLY_GAS = GasInfo(standard=1000, fast=1000, rapid=1000, base_fee=999, priority_fee=1)


def test_finds_gap_between_two_dexes():
    pairs = [("joe", make_pair("joe", 1000.0, 11000.0)), ("pango", make_pair("pango", 1000.0, 10000.0))]
    [opp] = find_opportunities(pairs, FREE_GAS, 1.0, 20.0)
    assert opp.source_dex == "pango"
    assert opp.target_dex == "joe"
    assert opp.token_pair == "AVAX/USDC"
    assert opp.source_price < opp.target_price
    assert opp.confidence == pytest.approx(1.0)
    assert opp.estimated_gas_cost_usd == 0.0
    assert opp.net_profit_usd == pytest.approx(
        opp.estimated_profit_usd - opp.flash_loan_fee_usd
    )


def test_single_dex_per_token_pair_yields_nothing():
    pairs = [
        ("joe", make_pair("joe", 1000.0, 11000.0)),
        ("pango", make_pair("pango", 1000.0, 10000.0, token0="WETH")),
    ]
    assert find_opportunities(pairs, FREE_GAS, 1.0, 20.0) == []


def test_small_difference_below_threshold_is_ignored():
    pairs = [("a", make_pair("a", 1000.0, 10000.0)), ("b", make_pair("b", 1000.0, 10001.0))]
    assert find_opportunities(pairs, FREE_GAS, 1.0, 20.0) == []


def test_high_gas_removes_opportunity():
    pairs = [("a", make_pair("a", 1000.0, 11000.0)), ("b", make_pair("b", 1000.0, 10000.0))]
    assert find_opportunities(pairs, COSTLY_GAS, 1.0, 20.0) == []


def test_zero_reserves_are_skipped():
    pairs = [("a", make_pair("a", 0.0, 0.0)), ("b", make_pair("b", 1000.0, 10000.0))]
    assert find_opportunities(pairs, FREE_GAS, 1.0, 20.0) == []


def test_confidence_stays_in_range():
    pairs = [
        ("a", make_pair("a", 1000.0, 10000.0)),
        ("b", make_pair("b", 1000.0, 10300.0)),
        ("c", make_pair("c", 1000.0, 12000.0)),
    ]
    opps = find_opportunities(pairs, FREE_GAS, 1.0, 20.0)
    assert len(opps) == 3
    for opp in opps:
        assert 0.5 <= opp.confidence <= 1.0
        assert opp.price_difference_percent > 1.0


class FakeProvider:
    def __init__(self, pairs, gas=FREE_GAS, fail_gas=False, missing=()):
        self.pairs = pairs
        self.gas = gas
        self.fail_gas = fail_gas
        self.missing = set(missing)

    async def get_gas_prices(self):
        if self.fail_gas:
            raise ProviderError("no block")
        return self.gas

    async def get_dex_pair(self, dex, pair_address):
        if dex in self.missing:
            raise ProviderError("unreachable")
        return self.pairs[dex]


def provider_with_gap(**kwargs):
    return FakeProvider(
        {
            "a": make_pair("a", 1000.0, 10000.0),
            "b": make_pair("b", 1000.0, 11000.0),
            "c": make_pair("c", 1000.0, 10500.0),
        },
        **kwargs,
    )


ADDR = "0x" + "2" * 40


@pytest.mark.asyncio
async def test_scan_stores_opportunities_and_best():
    monitor = RealTimeMonitor(provider_with_gap(), [("a", ADDR), ("b", ADDR), ("c", ADDR)], 1.0, 20.0, 10)
    found = await monitor.scan()
    assert found == monitor.get_opportunities()
    best = monitor.get_best_opportunity()
    assert isinstance(best, ArbitrageOpportunity)
    assert best.net_profit_usd == max(o.net_profit_usd for o in found)


@pytest.mark.asyncio
async def test_scan_raises_when_gas_fails():
    monitor = RealTimeMonitor(provider_with_gap(fail_gas=True), [("a", ADDR)], 1.0, 20.0, 10)
    with pytest.raises(ProviderError):
        await monitor.scan()
    assert monitor.get_best_opportunity() is None


@pytest.mark.asyncio
async def test_scan_skips_failing_pairs():
    provider = provider_with_gap(missing={"b", "c"})
    monitor = RealTimeMonitor(provider, [("a", ADDR), ("b", ADDR), ("c", ADDR)], 1.0, 20.0, 10)
    assert await monitor.scan() == []


@pytest.mark.asyncio
async def test_scan_resets_update_clock():
    monitor = RealTimeMonitor(provider_with_gap(), [("a", ADDR), ("b", ADDR)], 1.0, 20.0, 10)
    await asyncio.sleep(0.05)
    before = monitor.time_since_last_update()
    await monitor.scan()
    assert monitor.time_since_last_update() < before


@pytest.mark.asyncio
async def test_start_and_stop_monitoring():
    monitor = RealTimeMonitor(provider_with_gap(), [("a", ADDR), ("b", ADDR)], 1.0, 20.0, 10)
    assert monitor.is_active() is False
    await monitor.start_monitoring()
    assert monitor.is_active() is True
    await asyncio.sleep(0.05)
    assert len(monitor.get_opportunities()) == 1
    monitor.stop_monitoring()
    assert monitor.is_active() is False
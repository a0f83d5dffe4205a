import json

import httpx
import pytest
import respx

from avaxagent.provider import (
    TRADER_JOE_AVAX_USDC,
    DataConfig,
    DataProvider,
    ProviderError,
    RateLimiter,
    parse_address,
    parse_coingecko_market_data,
)

RPC_URL = "http://localhost:9650/ext/bc/C/rpc"
COINGECKO_HOST = "api.coingecko.com"
BASE_FEE_WEI = 25_000_000_000


def _payload(price, volume=1000.0, change=None, nested=True):
    body = {"id": "coin", "symbol": "c", "name": "Coin", "last_updated": "2024-01-01T00:00:00Z"}
    if nested:
        body["market_data"] = {
            "current_price": {"usd": price},
            "total_volume": {"usd": volume},
            "price_change_percentage_24h": change,
            "high_24h": {"usd": price + 1},
            "low_24h": {"usd": price - 1},
        }
    return body


def _word(value):
    return value.to_bytes(32, "big").hex()


def _rpc_handler(block=None, reserves=(2 * 10**18, 50 * 10**6)):
    if block is None:
        block = {"number": "0x1", "baseFeePerGas": hex(BASE_FEE_WEI)}

    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "eth_getBlockByNumber":
            result = block
        else:
            result = "0x" + _word(reserves[0]) + _word(reserves[1]) + _word(0)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


@pytest.fixture
def config():
    return DataConfig(avalanche_rpc_url=RPC_URL, cache_expiry_seconds=60)


def test_parse_address_accepts_prefixed_and_bare():
    addr = "0x" + "ab" * 20
    assert parse_address(addr) == bytes([0xAB] * 20)
    assert parse_address("ab" * 20) == parse_address(addr)


@pytest.mark.parametrize("bad", ["0x1234", "0x" + "zz" * 20, ""])
def test_parse_address_rejects_invalid(bad):
    with pytest.raises(ProviderError):
        parse_address(bad)


def test_rate_limiter_spaces_requests():
    limiter = RateLimiter()
    assert limiter.delay_for("a", 100.0) == 0.0
    assert limiter.delay_for("a", 100.25) == pytest.approx(0.75)
    assert limiter.delay_for("b", 100.25) == 0.0


def test_rate_limiter_backs_off_past_soft_limit():
    limiter = RateLimiter()
    delays = [limiter.delay_for("x", float(t)) for t in range(40)]
    assert all(d == 0.0 for d in delays)
    assert limiter.delay_for("x", 40.0) == pytest.approx(0.5)


def test_rate_limiter_window_resets():
    limiter = RateLimiter()
    for t in range(41):
        limiter.delay_for("x", float(t))
    assert limiter.delay_for("x", 200.0) == 0.0


def test_parse_coingecko_nested_payload():
    data = parse_coingecko_market_data("avax/usd", _payload(35.0, volume=5.0, change=1.5))
    assert data.symbol == "AVAX"
    assert data.price == 35.0
    assert data.volume_24h == 5.0
    assert data.change_24h == 1.5
    assert data.high_24h == 36.0
    assert data.low_24h == 34.0


def test_parse_coingecko_top_level_fields_take_precedence():
    body = _payload(35.0)
    body["current_price"] = {"usd": 40.0}
    body["price_change_percentage_24h"] = -2.0
    data = parse_coingecko_market_data("AVAX", body)
    assert data.price == 40.0
    assert data.change_24h == -2.0


def test_parse_coingecko_without_market_data_defaults_to_zero():
    data = parse_coingecko_market_data("eth", _payload(0, nested=False))
    assert (data.price, data.volume_24h, data.change_24h) == (0.0, 0.0, 0.0)
    assert data.high_24h is None and data.low_24h is None


def test_parse_coingecko_missing_required_field():
    body = _payload(1.0)
    del body["id"]
    with pytest.raises(ProviderError):
        parse_coingecko_market_data("eth", body)


@pytest.mark.asyncio
async def test_get_market_data_caches(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            route = router.get(host=COINGECKO_HOST, path="/api/v3/coins/avalanche-2").mock(
                return_value=httpx.Response(200, json=_payload(35.0))
            )
            provider = DataProvider(config, client)
            first = await provider.get_market_data("AVAX/USD")
            second = await provider.get_market_data("AVAX/USD")
    assert first.price == 35.0
    assert second == first
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_get_market_data_unsupported_symbol(config):
    async with httpx.AsyncClient() as client:
        provider = DataProvider(config, client)
        with pytest.raises(ProviderError, match="Unsupported symbol"):
            await provider.get_market_data("DOGE")


@pytest.mark.asyncio
async def test_get_market_data_server_error(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.get(host=COINGECKO_HOST).mock(return_value=httpx.Response(500))
            provider = DataProvider(config, client)
            with pytest.raises(ProviderError, match="500"):
                await provider.get_market_data("ETH")


@pytest.mark.asyncio
async def test_get_gas_prices(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.post(RPC_URL).mock(side_effect=_rpc_handler())
            provider = DataProvider(config, client)
            gas = await provider.get_gas_prices()
    assert gas.base_fee == 25
    assert gas.priority_fee == 1
    assert gas.standard == gas.base_fee + 1
    assert gas.fast == gas.base_fee + 2
    assert gas.rapid == gas.base_fee + 3


@pytest.mark.asyncio
async def test_get_gas_prices_without_block(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.post(RPC_URL).mock(
                return_value=httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})
            )
            provider = DataProvider(config, client)
            with pytest.raises(ProviderError, match="latest block"):
                await provider.get_gas_prices()


@pytest.mark.asyncio
async def test_get_dex_pair_decodes_reserves(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.post(RPC_URL).mock(side_effect=_rpc_handler())
            provider = DataProvider(config, client)
            pair = await provider.get_dex_pair("trader_joe", TRADER_JOE_AVAX_USDC)
    assert pair.reserves0 == pytest.approx(2.0)
    assert pair.reserves1 == pytest.approx(50.0)
    assert pair.price == pytest.approx(pair.reserves1 / pair.reserves0)
    assert pair.liquidity_usd == pytest.approx(2 * pair.reserves1)
    assert (pair.token0, pair.token1) == ("AVAX", "USDC")


@pytest.mark.asyncio
async def test_get_dex_pair_rejects_bad_address(config):
    async with httpx.AsyncClient() as client:
        provider = DataProvider(config, client)
        with pytest.raises(ProviderError):
            await provider.get_dex_pair("trader_joe", "not-an-address")


@pytest.mark.asyncio
async def test_get_token_price_from_api_and_fallback(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.get(host=COINGECKO_HOST, path="/api/v3/simple/price").mock(
                side_effect=lambda request: httpx.Response(
                    200,
                    json={"avax": {"usd": 42.5}} if request.url.params["ids"] == "avax" else {},
                )
            )
            provider = DataProvider(config, client)
            assert await provider.get_token_price("AVAX") == 42.5
            assert await provider.get_token_price("usdc") == 1.0
            assert await provider.get_token_price("unknown") == 10.0


@pytest.mark.asyncio
async def test_formatted_market_data(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.get(host=COINGECKO_HOST, path="/api/v3/coins/avalanche-2").mock(
                return_value=httpx.Response(200, json=_payload(35.0))
            )
            router.get(host=COINGECKO_HOST).mock(return_value=httpx.Response(500))
            router.post(RPC_URL).mock(side_effect=_rpc_handler())
            provider = DataProvider(config, client)
            text = await provider.get_formatted_market_data()
    assert text.startswith("# Market Data\n\n## AVAX/USD\n- Price: $35.00\n")
    assert "## ETH/USD - Error:" in text
    assert "## Trader Joe AVAX/USDC\n" in text
    assert "- Standard: 26\n" in text
    assert text.endswith("- Priority Fee: 1\n")


@pytest.mark.asyncio
async def test_refresh_cache_fills_cache(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.get(host=COINGECKO_HOST).mock(return_value=httpx.Response(500))
            rpc = router.post(RPC_URL).mock(side_effect=_rpc_handler())
            provider = DataProvider(config, client)
            await provider.refresh_cache()
            calls_after_refresh = rpc.call_count
            gas = await provider.get_gas_prices()
            await provider.get_dex_pair("trader_joe", TRADER_JOE_AVAX_USDC)
    assert gas.base_fee == 25
    assert rpc.call_count == calls_after_refresh == 2


@pytest.mark.asyncio
async def test_context_manager_starts_and_stops(config):
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as router:
            router.get(host=COINGECKO_HOST).mock(return_value=httpx.Response(500))
            router.post(RPC_URL).mock(side_effect=_rpc_handler())
            async with DataProvider(config, client) as provider:
                task = provider._refresh_task
                assert task is not None and not task.done()
            assert task.done()
            assert provider._refresh_task is None
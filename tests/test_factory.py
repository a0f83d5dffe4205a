import pytest

from avaxagent.ccip_provider import CCIPDataProvider
from avaxagent.factory import MarketDataProvider, create_data_provider
from avaxagent.provider import DataConfig, DataProvider, ProviderError


@pytest.mark.asyncio
async def test_ccip_provider_selected():
    provider = await create_data_provider(DataConfig(provider_type="ccip"))
    try:
        assert isinstance(provider, CCIPDataProvider)
        assert isinstance(provider, MarketDataProvider)
        assert not isinstance(object(), MarketDataProvider)
        assert await provider.get_token_price("ETH") == 3500.0
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_default_is_coingecko():
    provider = await create_data_provider(DataConfig())
    try:
        assert isinstance(provider, DataProvider)
        assert isinstance(provider, MarketDataProvider)
        with pytest.raises(ProviderError, match="Unsupported symbol: DOGE"):
            await provider.get_market_data("DOGE")
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_unknown_type_falls_back_to_coingecko():
    provider = await create_data_provider(DataConfig(provider_type="mock"))
    try:
        assert type(provider) is DataProvider
        with pytest.raises(ProviderError, match="Unsupported symbol: XYZ"):
            await provider.get_market_data("XYZ")
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_created_ccip_provider_answers():
    provider = await create_data_provider(DataConfig(provider_type="ccip"))
    try:
        assert await provider.get_token_price("LINK") == 18.0
    finally:
        await provider.close()
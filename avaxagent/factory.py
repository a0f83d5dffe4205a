"""Common interface for market data providers and a factory choosing one."""

from __future__ import annotations

import logging
from typing import Protocol, Union, runtime_checkable

from avaxagent.ccip_provider import CCIPDataProvider
from avaxagent.provider import DataConfig, DataProvider, DEXPair, GasInfo, MarketData

log = logging.getLogger(__name__)


@runtime_checkable
class MarketDataProvider(Protocol):
    """What every market data provider offers."""

    async def get_token_price(self, token_symbol: str) -> float: ...

    async def get_market_data(self, symbol: str) -> MarketData: ...

    async def get_dex_pair(self, dex: str, pair_address: str) -> DEXPair: ...

    async def get_gas_prices(self) -> GasInfo: ...


async def create_data_provider(config: DataConfig) -> Union[DataProvider, CCIPDataProvider]:
    """Build the provider named by ``config.provider_type`` and start its refresh task."""
    provider_type = config.provider_type or "coingecko"
    provider: Union[DataProvider, CCIPDataProvider]
    if provider_type == "ccip":
        log.info("Creating Chainlink CCIP data provider")
        provider = CCIPDataProvider(config)
    else:
        log.info("Creating CoinGecko data provider")
        provider = DataProvider(config)
    provider.start()
    return provider
# avaxagent

Building blocks for an arbitrage trading agent on the Avalanche C-Chain.

## Contents

- **`avaxagent.provider`** holds `DataProvider`, which does three things:
  - reads market data (price, 24h volume, 24h change, high and low) from the CoinGecko coin API;
  - reads spot prices from the CoinGecko simple-price API;
  - reads pair reserves (via `eth_call` of `getReserves`) and gas prices (from the latest block's base fee) from a JSON-RPC node at `DataConfig.avalanche_rpc_url`.

  CoinGecko requests go through a per-endpoint `RateLimiter`, and HTTP 429 or network errors are retried with exponential backoff. The module also defines the data types `DataConfig`, `MarketData`, `OrderBookData`, `DEXPair` and `GasInfo`, the error `ProviderError`, and the helpers `parse_address` and `parse_coingecko_market_data`.
- **`avaxagent.ccip_provider`** holds `CCIPDataProvider`, which has the same interface:
  - token prices come from fixed price-feed answers for ETH, AVAX, BTC and LINK;
  - market data and DEX pairs are derived from their inputs;
  - gas prices are read from the JSON-RPC node, in wei.

  `send_ccip_message` checks the receiver address and returns an all-zero message id. `ChainSelector` lists the CCIP chain selectors.
- **`avaxagent.factory`** holds `create_data_provider(config)`. It returns a started `CCIPDataProvider` when `config.provider_type` is `"ccip"`, and a started `DataProvider` otherwise. `MarketDataProvider` is the protocol both providers satisfy.
- **`avaxagent.exchange_connector`** holds `ExchangeConnector`, which does three things:
  - serves order books for uniswap, sushiswap, traderjoe and pangolin, caching each for 200 ms;
  - applies per-exchange request spacing and per-minute limits;
  - records `HealthMetrics`.

  `find_arbitrage_opportunities` returns an `Opportunity` when the best bid on one exchange beats the best ask on another by more than 0.5 %. The order books are built-in simulated data; no exchange is contacted. An unknown exchange or a malformed pair raises `ExchangeError`.
- **`avaxagent.real_time_monitor`** holds `RealTimeMonitor`, which polls a data provider for gas prices and DEX pairs and keeps the flash-loan `ArbitrageOpportunity` candidates that clear the configured price gap and net profit after the loan fee and gas. The calculation is available on its own as `find_opportunities(...)`.
- **`avaxagent.mock_relayer`** is a small HTTP service for transaction bundles (see below).
- **`avaxagent.arbitrage_demo`** is a self-contained simulated monitor and trader (see below).

## Installation

```
pip install avaxagent
```

To run the test suite, install the test extra:

```
pip install "avaxagent[test]"
pytest
```

## Using a data provider

The providers are asynchronous. Used as async context managers, they start a background cache refresh on entry. On exit they stop it and close their HTTP client:

```python
from avaxagent.factory import create_data_provider
from avaxagent.provider import DataConfig


async def show_prices(config: DataConfig) -> None:
    provider = await create_data_provider(config)
    async with provider:
        print(await provider.get_token_price("avax"))
        print(await provider.get_gas_prices())
```

Both providers raise `ProviderError` in these cases:

- a request fails;
- an address is malformed;
- a symbol is unsupported, for `DataProvider.get_market_data` and for all `CCIPDataProvider` price queries.

`DataProvider.get_token_price` does not fail on a token it has no price for. It falls back to fixed prices, and to 10.0 for unknown tokens.

`DataProvider.get_formatted_market_data()` returns the tracked markets, the Trader Joe AVAX/USDC pair and gas prices as Markdown text.

## Mock bundle relayer

```
avaxagent-mock-relayer [--host HOST] [--port PORT]
```

By default it listens on `127.0.0.1:8545` and serves:

| Method | Path | Response |
|--------|------|----------|
| `POST` | `/api/v1/bundle` | Stores the bundle as `pending` and returns its `bundle_hash`. A malformed body gets 400. |
| `GET` | `/api/v1/bundle/<hash>/status` | Returns the bundle's status, or 404 with `"Bundle not found"`. |

Every two seconds a background task marks pending bundles that are at least five seconds old as `confirmed`. The same logic is available in-process as `BundleStore` (`submit`, `status`, `process`). `create_app(store)` builds the aiohttp application around a store.

## Arbitrage demo

```
avaxagent-arbitrage-demo [--min-trade-interval SECONDS] [--polling-interval SECONDS]
```

The demo runs two loops over simulated data:

- **Monitor.** Every 5 seconds by default, it derives pair data from a fixed set of TraderJoe, Pangolin and SushiSwap pairs. It keeps price gaps above 1 % that clear $20 net profit after the flash-loan fee and a fixed $35 gas cost.
- **Trader.** Every second it looks at the best opportunity and "executes" it. It executes at most once per trade interval, 60 seconds by default.

Press Ctrl+C to stop. The demo then prints its `TradingStats`: opportunities detected, trades executed, failed trades, total and maximum profit, gas spent and net profit.

## What this package does not do

- It never signs or sends transactions. Trades in the demo and in the monitors are only computed, and `send_ccip_message` does not contact the CCIP router.
- It has no trading strategy or agent command beyond the two commands above.
- The mock relayer keeps bundles in memory only; nothing is stored between runs.
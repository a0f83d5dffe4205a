"""Market data providers, arbitrage detection, a mock bundle relayer and a simulated arbitrage demo for Avalanche."""

__version__ = "0.1.0"
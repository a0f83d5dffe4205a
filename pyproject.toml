[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "avaxagent"
version = "0.1.0"
description = "Market data providers, arbitrage detection, a mock bundle relayer and a simulated arbitrage demo for an Avalanche trading agent"
requires-python = ">=3.10"
keywords = [
    "avalanche",
    "arbitrage",
    "dex",
    "market-data",
    "trading",
    "flash-loan",
    "ccip",
    "relayer",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial :: Investment",
]
dependencies = [
    "httpx>=0.24",
    "aiohttp>=3.8",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
    "respx>=0.20",
]

[project.scripts]
avaxagent-mock-relayer = "avaxagent.mock_relayer:main"
avaxagent-arbitrage-demo = "avaxagent.arbitrage_demo:main"

[tool.hatch.build.targets.wheel]
packages = ["avaxagent"]

[tool.hatch.build.targets.sdist]
include = ["avaxagent", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

"""
Shared test fixtures for the batchmigrate library.

This module provides reusable test fixtures including:
- Raw record factories for trades, candles and portfolio snapshots
- A scripted memory sampler for driving the resource governor

Usage:
    from tests.fixtures import (
        FakeMemorySampler,
        make_candles,
        make_malformed_trade,
        make_trades,
    )
"""

from tests.fixtures.records import (
    BASE_TIME_MS,
    FakeMemorySampler,
    make_candle,
    make_candles,
    make_malformed_trade,
    make_snapshot,
    make_trade,
    make_trades,
)

__all__ = [
    "BASE_TIME_MS",
    "FakeMemorySampler",
    "make_candle",
    "make_candles",
    "make_malformed_trade",
    "make_snapshot",
    "make_trade",
    "make_trades",
]

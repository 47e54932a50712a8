"""
Shared pytest fixtures for integration tests.

Integration tests run the SQLAlchemy stores against a file-backed SQLite
database through aiosqlite, with the same natural-key unique constraints a
production schema carries.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from batchmigrate.governor import ResourceGovernor
from batchmigrate.mappings import CANDLE_MAPPING, SNAPSHOT_MAPPING, TRADE_MAPPING
from batchmigrate.stores import SQLAlchemyAuditSink, SQLAlchemyDestinationStore
from tests.fixtures import FakeMemorySampler

# ============================================================================
# Schema
# ============================================================================

SCHEMA = [
    """
    CREATE TABLE trades (
        id INTEGER PRIMARY KEY,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL CHECK (side IN ('buy', 'sell')),
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        fee REAL NOT NULL DEFAULT 0,
        entry_price REAL NOT NULL,
        exit_price REAL,
        stop_loss REAL,
        take_profit REAL,
        exchange TEXT NOT NULL,
        exchange_trade_id TEXT,
        exchange_order_id TEXT,
        market_conditions TEXT,
        execution_latency_ms REAL,
        slippage REAL,
        UNIQUE (symbol, side, quantity, price)
    )
    """,
    """
    CREATE TABLE market_data (
        id INTEGER PRIMARY KEY,
        time TIMESTAMP NOT NULL,
        symbol TEXT NOT NULL,
        timeframe TEXT NOT NULL,
        open_price REAL NOT NULL,
        high_price REAL NOT NULL,
        low_price REAL NOT NULL,
        close_price REAL NOT NULL,
        volume REAL NOT NULL,
        trade_count INTEGER NOT NULL DEFAULT 0,
        volume_24h REAL,
        volume_weighted_price REAL,
        data_quality_score REAL NOT NULL,
        source TEXT NOT NULL,
        raw_data TEXT,
        UNIQUE (symbol, timeframe, time)
    )
    """,
    """
    CREATE TABLE portfolio_snapshots (
        id INTEGER PRIMARY KEY,
        time TIMESTAMP NOT NULL,
        portfolio_id TEXT NOT NULL,
        total_value REAL NOT NULL,
        cash_balance REAL NOT NULL,
        positions_value REAL NOT NULL,
        unrealized_pnl REAL NOT NULL,
        realized_pnl REAL NOT NULL,
        drawdown REAL NOT NULL,
        positions TEXT NOT NULL,
        metrics TEXT NOT NULL,
        UNIQUE (portfolio_id, time)
    )
    """,
    """
    CREATE TABLE migration_audit_log (
        id INTEGER PRIMARY KEY,
        run_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        occurred_at TIMESTAMP NOT NULL,
        phase TEXT NOT NULL,
        action TEXT NOT NULL,
        severity TEXT NOT NULL,
        details TEXT NOT NULL,
        counters TEXT NOT NULL,
        memory_usage_mb REAL NOT NULL,
        UNIQUE (run_id, sequence)
    )
    """,
]


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark every test under tests/integration as an integration test."""
    for item in items:
        if "integration" in Path(str(item.fspath)).parts:
            item.add_marker(pytest.mark.integration)


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the migration schema created."""
    db_path = tmp_path / "trading.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")

    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))

    yield engine

    await engine.dispose()


@pytest.fixture
def sql_trade_store(sqlite_engine: AsyncEngine) -> SQLAlchemyDestinationStore:
    return SQLAlchemyDestinationStore(sqlite_engine, TRADE_MAPPING, enable_tracing=False)


@pytest.fixture
def sql_candle_store(sqlite_engine: AsyncEngine) -> SQLAlchemyDestinationStore:
    return SQLAlchemyDestinationStore(sqlite_engine, CANDLE_MAPPING, enable_tracing=False)


@pytest.fixture
def sql_snapshot_store(sqlite_engine: AsyncEngine) -> SQLAlchemyDestinationStore:
    return SQLAlchemyDestinationStore(sqlite_engine, SNAPSHOT_MAPPING, enable_tracing=False)


@pytest.fixture
def sql_audit_sink(sqlite_engine: AsyncEngine) -> SQLAlchemyAuditSink:
    return SQLAlchemyAuditSink(sqlite_engine, enable_tracing=False)


@pytest.fixture
def steady_governor() -> ResourceGovernor:
    """Governor reporting a steady 50MB, so runs never throttle."""
    return ResourceGovernor(FakeMemorySampler(50.0), throttle_pause_ms=0, enable_tracing=False)

"""
Record mappings for the domain record types the engine migrates.

A RecordMapping tells the batch processor how to turn a record from the
transient in-process store into a destination row and which fields of that
row identify it logically (its natural key, used for duplicate detection
and rollback).

Presets:
    - TRADE_MAPPING: Trade executions (type tag TRADE_DATA)
    - CANDLE_MAPPING: Price candles (type tag MARKET_DATA)
    - SNAPSHOT_MAPPING: Portfolio snapshots (type tag PORTFOLIO_DATA)

Example:
    >>> from batchmigrate.mappings import TRADE_MAPPING
    >>>
    >>> row = TRADE_MAPPING.transform(
    ...     {"symbol": "BTC-USD", "side": "BUY", "quantity": 1, "entryPrice": 42000}
    ... )
    >>> TRADE_MAPPING.natural_key(row)
    ('BTC-USD', 'buy', 1.0, 42000.0)
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from batchmigrate.exceptions import ItemTransformError
from batchmigrate.protocols import NaturalKey

_MISSING = object()


class TradeRow(BaseModel):
    """Destination row for a trade execution."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., min_length=1)
    side: Literal["buy", "sell"]
    quantity: float = Field(..., gt=0)
    price: float = Field(..., ge=0)
    fee: float = 0.0
    entry_price: float
    exit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    exchange: str = "dydx_v4"
    exchange_trade_id: str | None = None
    exchange_order_id: str | None = None
    market_conditions: dict[str, Any] | None = None
    execution_latency_ms: float | None = None
    slippage: float | None = None

    @field_validator("side", mode="before")
    @classmethod
    def _lowercase_side(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class CandleRow(BaseModel):
    """Destination row for one OHLCV price candle."""

    model_config = ConfigDict(frozen=True)

    time: datetime
    symbol: str = Field(..., min_length=1)
    timeframe: str = "1m"
    open_price: float
    high_price: float
    low_price: float
    close_price: float
    volume: float = Field(..., ge=0)
    trade_count: int = 0
    volume_24h: float | None = None
    volume_weighted_price: float | None = None
    data_quality_score: float = Field(default=0.9, ge=0, le=1)
    source: str = "websocket"
    raw_data: dict[str, Any] | None = None

    @field_validator("time", mode="before")
    @classmethod
    def _parse_epoch_millis(cls, value: Any) -> Any:
        # Buffers store candle times as epoch milliseconds.
        if isinstance(value, int | float) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(value / 1000, tz=UTC)
            except (OverflowError, OSError) as e:
                raise ValueError(f"epoch milliseconds out of range: {value}") from e
        return value


class PortfolioSnapshotRow(BaseModel):
    """Destination row for a point-in-time portfolio valuation."""

    model_config = ConfigDict(frozen=True)

    time: datetime
    portfolio_id: str = Field(..., min_length=1)
    total_value: float
    cash_balance: float = 0.0
    positions_value: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    drawdown: float = 0.0
    positions: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class RecordMapping:
    """
    How one record type is transformed and identified.

    Attributes:
        type_tag: Tag used in run ids (e.g. 'TRADE_DATA')
        table: Destination table name
        row_type: Pydantic model of the destination row
        converter: Builds the row's field values from a source record
        key_fields: Row fields forming the natural key, in order
    """

    type_tag: str
    table: str
    row_type: type[BaseModel]
    converter: Callable[[Mapping[str, Any]], dict[str, Any]]
    key_fields: tuple[str, ...]

    def transform(self, raw: Any) -> BaseModel:
        """
        Convert a source record to a validated destination row.

        Args:
            raw: Source record (a mapping)

        Returns:
            Instance of ``row_type``

        Raises:
            ItemTransformError: If the record is malformed
        """
        if not isinstance(raw, Mapping):
            raise ItemTransformError(
                f"Expected a mapping for {self.type_tag} record, got {type(raw).__name__}",
                item_id=_describe(raw),
            )
        try:
            return self.row_type.model_validate(self.converter(raw))
        except ItemTransformError:
            raise
        except Exception as e:
            raise ItemTransformError(
                f"Malformed {self.type_tag} record: {e}",
                item_id=_describe(raw),
                context={"error_type": type(e).__name__},
            ) from e

    def natural_key(self, row: BaseModel) -> NaturalKey:
        """Project a row onto its natural key fields."""
        return tuple(getattr(row, name) for name in self.key_fields)

    def describe(self, row: BaseModel) -> str:
        """Human-readable identifier of a row, used as error item id."""
        return ":".join(str(part) for part in self.natural_key(row))


def _describe(raw: Any) -> str:
    if isinstance(raw, Mapping):
        for key in ("id", "tradeId", "exchangeTradeId", "symbol"):
            if raw.get(key) is not None:
                return str(raw[key])
    return repr(raw)[:64]


def _first(raw: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    """Return the first present, non-empty value among ``keys``."""
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    if default is _MISSING:
        raise KeyError(keys[0])
    return default


def _convert_trade(raw: Mapping[str, Any]) -> dict[str, Any]:
    entry_price = _first(raw, "entryPrice", "entry_price", "price")
    return {
        "symbol": raw["symbol"],
        "side": raw["side"],
        "quantity": raw["quantity"],
        "price": entry_price,
        "fee": _first(raw, "fees", "fee", default=0) or 0,
        "entry_price": entry_price,
        "exit_price": _first(raw, "exitPrice", "exit_price", default=None),
        "stop_loss": _first(raw, "stopLoss", "stop_loss", default=None),
        "take_profit": _first(raw, "takeProfit", "take_profit", default=None),
        "exchange": _first(raw, "exchange", default="dydx_v4"),
        "exchange_trade_id": _first(raw, "exchangeTradeId", "exchange_trade_id", default=None),
        "exchange_order_id": _first(raw, "exchangeOrderId", "exchange_order_id", default=None),
        "market_conditions": _first(raw, "marketConditions", "market_conditions", default=None),
        "execution_latency_ms": _first(
            raw, "executionLatency", "execution_latency_ms", default=None
        ),
        "slippage": _first(raw, "slippage", default=None),
    }


def _convert_candle(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "time": _first(raw, "timestamp", "time"),
        "symbol": raw["symbol"],
        "timeframe": _first(raw, "timeframe", default="1m"),
        "open_price": _first(raw, "open", "open_price"),
        "high_price": _first(raw, "high", "high_price"),
        "low_price": _first(raw, "low", "low_price"),
        "close_price": _first(raw, "close", "close_price"),
        "volume": raw["volume"],
        "trade_count": _first(raw, "trade_count", "tradeCount", default=0),
        "volume_24h": _first(raw, "volume_24h", default=None),
        "volume_weighted_price": _first(raw, "vwap", "volume_weighted_price", default=None),
        "data_quality_score": _first(raw, "quality_score", "data_quality_score", default=0.9),
        "source": _first(raw, "source", default="websocket"),
        "raw_data": _first(raw, "raw_data", default=None) or dict(raw),
    }


def _convert_snapshot(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "time": _first(raw, "timestamp", "time"),
        "portfolio_id": str(_first(raw, "portfolioId", "portfolio_id", "strategyId", "strategy_id")),
        "total_value": _first(raw, "totalValue", "total_value"),
        "cash_balance": _first(raw, "cashBalance", "cash_balance", default=0),
        "positions_value": _first(raw, "positionsValue", "positions_value", default=0),
        "unrealized_pnl": _first(raw, "unrealizedPnl", "unrealized_pnl", default=0),
        "realized_pnl": _first(raw, "realizedPnl", "realized_pnl", default=0),
        "drawdown": _first(raw, "drawdown", default=0),
        "positions": _first(raw, "positions", default={}),
        "metrics": _first(raw, "metrics", default={}),
    }


TRADE_MAPPING = RecordMapping(
    type_tag="TRADE_DATA",
    table="trades",
    row_type=TradeRow,
    converter=_convert_trade,
    key_fields=("symbol", "side", "quantity", "price"),
)

CANDLE_MAPPING = RecordMapping(
    type_tag="MARKET_DATA",
    table="market_data",
    row_type=CandleRow,
    converter=_convert_candle,
    key_fields=("symbol", "timeframe", "time"),
)

SNAPSHOT_MAPPING = RecordMapping(
    type_tag="PORTFOLIO_DATA",
    table="portfolio_snapshots",
    row_type=PortfolioSnapshotRow,
    converter=_convert_snapshot,
    key_fields=("portfolio_id", "time"),
)


__all__ = [
    "RecordMapping",
    "TradeRow",
    "CandleRow",
    "PortfolioSnapshotRow",
    "TRADE_MAPPING",
    "CANDLE_MAPPING",
    "SNAPSHOT_MAPPING",
]

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from dca.models import StrategyDefinition, StrategyStatus
from engine.errors import ConcurrencyConflict
from engine.models import (
    MACD,
    BollingerBands,
    ExecutionOutcome,
    ExecutionRecord,
    IndicatorSet,
    PivotPoints,
    Position,
    Signal,
    Stochastic,
)


ENGINE_STATE_COLUMNS = {"last_tick_ts", "last_error", "halted", "updated_at"}


class BaseStore:
    def ensure_owner(self, owner: str) -> None:
        raise NotImplementedError

    def set_setting(self, owner: str, key: str, value: Any) -> None:
        raise NotImplementedError

    def get_setting(self, owner: str, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set_engine_state(self, engine_id: str, **kwargs: Any) -> None:
        raise NotImplementedError

    def get_engine_state(self, engine_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def save_strategy(self, strategy: StrategyDefinition) -> None:
        raise NotImplementedError

    def get_strategy(self, strategy_id: str) -> StrategyDefinition | None:
        raise NotImplementedError

    def list_strategies(self, owner: str | None = None, status: StrategyStatus | None = None) -> list[StrategyDefinition]:
        raise NotImplementedError

    def list_due_strategies(self, now: datetime) -> list[StrategyDefinition]:
        raise NotImplementedError

    def has_execution_claim(self, strategy_id: str, scheduled: datetime) -> bool:
        raise NotImplementedError

    def add_execution_claim(self, strategy_id: str, scheduled: datetime) -> bool:
        raise NotImplementedError

    def append_execution_record(self, record: ExecutionRecord) -> None:
        raise NotImplementedError

    def get_execution_record(self, strategy_id: str, scheduled: datetime) -> ExecutionRecord | None:
        raise NotImplementedError

    def list_execution_records(self, strategy_id: str, limit: int | None = None) -> list[ExecutionRecord]:
        raise NotImplementedError

    def get_position(self, owner: str, asset: str) -> Position | None:
        raise NotImplementedError

    def save_position(self, position: Position) -> None:
        raise NotImplementedError

    def list_open_positions(self, asset: str | None = None, owner: str | None = None) -> list[Position]:
        raise NotImplementedError

    def save_indicator_set(self, indicators: IndicatorSet) -> None:
        raise NotImplementedError

    def get_indicator_set(self, asset: str) -> IndicatorSet | None:
        raise NotImplementedError

    def save_signal(self, signal: Signal) -> None:
        raise NotImplementedError

    def get_signal(self, asset: str) -> Signal | None:
        raise NotImplementedError

    def set_credentials(self, owner: str, adapter: str, data_encrypted: str) -> None:
        raise NotImplementedError

    def get_credentials(self, owner: str, adapter: str) -> str | None:
        raise NotImplementedError


class SqlStore(BaseStore):
    """Shared SQL for both backends. Queries are written with ``?`` placeholders."""

    placeholder = "?"

    @contextmanager
    def _session(self) -> Iterator[Any]:
        raise NotImplementedError

    def _sql(self, query: str) -> str:
        if self.placeholder == "?":
            return query
        return query.replace("?", self.placeholder)

    def _execute(self, query: str, params: tuple | list = ()) -> int:
        with self._session() as conn:
            cursor = conn.execute(self._sql(query), params)
            return cursor.rowcount

    def _fetchone(self, query: str, params: tuple | list = ()) -> dict[str, Any] | None:
        with self._session() as conn:
            row = conn.execute(self._sql(query), params).fetchone()
            return dict(row) if row else None

    def _fetchall(self, query: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(self._sql(query), params).fetchall()
            return [dict(r) for r in rows]

    def ensure_owner(self, owner: str) -> None:
        self._execute(
            "INSERT INTO users (owner, created_at) VALUES (?, ?) ON CONFLICT DO NOTHING",
            (owner, int(time.time())),
        )

    def set_setting(self, owner: str, key: str, value: Any) -> None:
        self._execute(
            "INSERT INTO user_settings (owner, key, value) VALUES (?, ?, ?) "
            "ON CONFLICT (owner, key) DO UPDATE SET value=excluded.value",
            (owner, key, json.dumps(value)),
        )

    def get_setting(self, owner: str, key: str, default: Any = None) -> Any:
        row = self._fetchone("SELECT value FROM user_settings WHERE owner=? AND key=?", (owner, key))
        if not row:
            return default
        return json.loads(row["value"])

    def set_engine_state(self, engine_id: str, **kwargs: Any) -> None:
        unknown = set(kwargs) - ENGINE_STATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown engine_state columns: {sorted(unknown)}")
        if "halted" in kwargs:
            kwargs["halted"] = int(bool(kwargs["halted"]))
        now = int(time.time())
        with self._session() as conn:
            conn.execute(
                self._sql("INSERT INTO engine_state (engine_id, updated_at) VALUES (?, ?) ON CONFLICT DO NOTHING"),
                (engine_id, now),
            )
            if kwargs:
                conn.execute(
                    self._sql(f"UPDATE engine_state SET {', '.join([f'{k}=?' for k in kwargs.keys()])} WHERE engine_id=?"),
                    list(kwargs.values()) + [engine_id],
                )

    def get_engine_state(self, engine_id: str) -> dict[str, Any]:
        row = self._fetchone("SELECT * FROM engine_state WHERE engine_id=?", (engine_id,))
        return row or {}

    def save_strategy(self, strategy: StrategyDefinition) -> None:
        now = int(time.time())
        self._execute(
            "INSERT INTO strategies (id, owner, status, next_execution_at, definition, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT (id) DO UPDATE SET "
            "status=excluded.status, next_execution_at=excluded.next_execution_at, "
            "definition=excluded.definition, updated_at=excluded.updated_at",
            (
                strategy.id,
                strategy.owner,
                strategy.status.value,
                _to_ts(strategy.runtime.next_execution_at),
                strategy.model_dump_json(),
                _to_ts(strategy.created_at),
                now,
            ),
        )

    def get_strategy(self, strategy_id: str) -> StrategyDefinition | None:
        row = self._fetchone("SELECT definition FROM strategies WHERE id=?", (strategy_id,))
        return StrategyDefinition.model_validate_json(row["definition"]) if row else None

    def list_strategies(self, owner: str | None = None, status: StrategyStatus | None = None) -> list[StrategyDefinition]:
        clauses = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner=?")
            params.append(owner)
        if status is not None:
            clauses.append("status=?")
            params.append(StrategyStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT definition FROM strategies{where} ORDER BY created_at, id", params)
        return [StrategyDefinition.model_validate_json(r["definition"]) for r in rows]

    def list_due_strategies(self, now: datetime) -> list[StrategyDefinition]:
        rows = self._fetchall(
            "SELECT definition FROM strategies WHERE status=? AND next_execution_at IS NOT NULL "
            "AND next_execution_at <= ? ORDER BY next_execution_at, id",
            (StrategyStatus.ACTIVE.value, _to_ts(now)),
        )
        return [StrategyDefinition.model_validate_json(r["definition"]) for r in rows]

    def has_execution_claim(self, strategy_id: str, scheduled: datetime) -> bool:
        row = self._fetchone(
            "SELECT 1 AS found FROM execution_claims WHERE strategy_id=? AND scheduled_ts=?",
            (strategy_id, _to_ts(scheduled)),
        )
        return bool(row)

    def add_execution_claim(self, strategy_id: str, scheduled: datetime) -> bool:
        inserted = self._execute(
            "INSERT INTO execution_claims (strategy_id, scheduled_ts, created_at) VALUES (?, ?, ?) ON CONFLICT DO NOTHING",
            (strategy_id, _to_ts(scheduled), int(time.time())),
        )
        return inserted == 1

    def append_execution_record(self, record: ExecutionRecord) -> None:
        created_at = record.created_at or datetime.now(timezone.utc)
        try:
            self._execute(
                "INSERT INTO execution_records (strategy_id, scheduled_ts, amount_in, amount_out, price, outcome, reason, order_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.strategy_id,
                    _to_ts(record.scheduled_time),
                    record.amount_in,
                    record.amount_out,
                    record.price,
                    ExecutionOutcome(record.outcome).value,
                    record.reason,
                    record.order_id,
                    _to_ts(created_at),
                ),
            )
        except (sqlite3.IntegrityError, psycopg.IntegrityError) as exc:
            raise ConcurrencyConflict(
                f"Execution record for {record.strategy_id} at {record.scheduled_time.isoformat()} already exists"
            ) from exc

    def get_execution_record(self, strategy_id: str, scheduled: datetime) -> ExecutionRecord | None:
        row = self._fetchone(
            "SELECT * FROM execution_records WHERE strategy_id=? AND scheduled_ts=?",
            (strategy_id, _to_ts(scheduled)),
        )
        return _record_from_row(row) if row else None

    def list_execution_records(self, strategy_id: str, limit: int | None = None) -> list[ExecutionRecord]:
        query = "SELECT * FROM execution_records WHERE strategy_id=? ORDER BY scheduled_ts"
        params: list[Any] = [strategy_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [_record_from_row(r) for r in self._fetchall(query, params)]

    def get_position(self, owner: str, asset: str) -> Position | None:
        row = self._fetchone("SELECT * FROM positions WHERE owner=? AND asset=?", (owner, asset))
        return _position_from_row(row) if row else None

    def save_position(self, position: Position) -> None:
        self._execute(
            "INSERT INTO positions (owner, asset, quantity, average_cost, last_price, realized_pnl, archived, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT (owner, asset) DO UPDATE SET "
            "quantity=excluded.quantity, average_cost=excluded.average_cost, last_price=excluded.last_price, "
            "realized_pnl=excluded.realized_pnl, archived=excluded.archived, updated_at=excluded.updated_at",
            (
                position.owner,
                position.asset,
                position.quantity,
                position.average_cost,
                position.last_price,
                position.realized_pnl,
                int(position.archived),
                int(time.time()),
            ),
        )

    def list_open_positions(self, asset: str | None = None, owner: str | None = None) -> list[Position]:
        query = "SELECT * FROM positions WHERE archived=0 AND quantity > 0"
        params: list[Any] = []
        if asset is not None:
            query += " AND asset=?"
            params.append(asset)
        if owner is not None:
            query += " AND owner=?"
            params.append(owner)
        return [_position_from_row(r) for r in self._fetchall(query + " ORDER BY owner, asset", params)]

    def save_indicator_set(self, indicators: IndicatorSet) -> None:
        self._execute(
            "INSERT INTO indicator_cache (asset, computed_at, payload) VALUES (?, ?, ?) "
            "ON CONFLICT (asset) DO UPDATE SET computed_at=excluded.computed_at, payload=excluded.payload",
            (indicators.asset, _to_ts(indicators.computed_at), indicator_set_to_json(indicators)),
        )

    def get_indicator_set(self, asset: str) -> IndicatorSet | None:
        row = self._fetchone("SELECT payload FROM indicator_cache WHERE asset=?", (asset,))
        return indicator_set_from_json(row["payload"]) if row else None

    def save_signal(self, signal: Signal) -> None:
        self._execute(
            "INSERT INTO signal_cache (asset, generated_at, payload) VALUES (?, ?, ?) "
            "ON CONFLICT (asset) DO UPDATE SET generated_at=excluded.generated_at, payload=excluded.payload",
            (signal.asset, _to_ts(signal.generated_at), signal_to_json(signal)),
        )

    def get_signal(self, asset: str) -> Signal | None:
        row = self._fetchone("SELECT payload FROM signal_cache WHERE asset=?", (asset,))
        return signal_from_json(row["payload"]) if row else None

    def set_credentials(self, owner: str, adapter: str, data_encrypted: str) -> None:
        now = int(time.time())
        self._execute(
            "INSERT INTO credentials (owner, adapter, data_encrypted, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) ON CONFLICT (owner, adapter) DO UPDATE SET "
            "data_encrypted=excluded.data_encrypted, updated_at=excluded.updated_at",
            (owner, adapter, data_encrypted, now, now),
        )

    def get_credentials(self, owner: str, adapter: str) -> str | None:
        row = self._fetchone(
            "SELECT data_encrypted FROM credentials WHERE owner=? AND adapter=?",
            (owner, adapter),
        )
        return row["data_encrypted"] if row else None


class SQLiteStore(SqlStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        with self._session() as conn:
            conn.executescript(schema_path.read_text())


class PostgresStore(SqlStore):
    placeholder = "%s"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self._ensure_schema()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.dsn, row_factory=dict_row)

    @contextmanager
    def _session(self) -> Iterator[psycopg.Connection]:
        with self._connect() as conn:
            yield conn

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema_pg.sql")
        with self._session() as conn:
            statements = [s.strip() for s in schema_path.read_text().split(";") if s.strip()]
            for stmt in statements:
                conn.execute(stmt)


def _to_ts(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_ts(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _record_from_row(row: dict[str, Any]) -> ExecutionRecord:
    return ExecutionRecord(
        strategy_id=row["strategy_id"],
        scheduled_time=_from_ts(row["scheduled_ts"]),
        amount_in=float(row["amount_in"]),
        amount_out=float(row["amount_out"]),
        price=float(row["price"]),
        outcome=ExecutionOutcome(row["outcome"]),
        reason=row["reason"],
        order_id=row["order_id"],
        created_at=_from_ts(row["created_at"]),
    )


def _position_from_row(row: dict[str, Any]) -> Position:
    return Position(
        owner=row["owner"],
        asset=row["asset"],
        quantity=float(row["quantity"]),
        average_cost=float(row["average_cost"]) if row["average_cost"] is not None else None,
        last_price=float(row["last_price"]) if row["last_price"] is not None else None,
        realized_pnl=float(row["realized_pnl"]),
        archived=bool(row["archived"]),
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def indicator_set_to_json(indicators: IndicatorSet) -> str:
    return json.dumps(asdict(indicators), default=_json_default)


def indicator_set_from_json(payload: str) -> IndicatorSet:
    data = json.loads(payload)
    parts = {"macd": MACD, "stochastic": Stochastic, "bollinger": BollingerBands, "pivots": PivotPoints}
    for key, cls in parts.items():
        if data.get(key) is not None:
            data[key] = cls(**data[key])
    data["computed_at"] = _parse_dt(data["computed_at"])
    data["undercomputed"] = tuple(data.get("undercomputed", ()))
    return IndicatorSet(**data)


def signal_to_json(signal: Signal) -> str:
    return json.dumps(asdict(signal), default=_json_default)


def signal_from_json(payload: str) -> Signal:
    data = json.loads(payload)
    data["contributing_indicators"] = tuple(data.get("contributing_indicators", ()))
    data["generated_at"] = _parse_dt(data.get("generated_at"))
    data["valid_until"] = _parse_dt(data.get("valid_until"))
    return Signal(**data)


def create_store(database_url: str | None, sqlite_path: str) -> BaseStore:
    if database_url:
        return PostgresStore(database_url)
    return SQLiteStore(sqlite_path)

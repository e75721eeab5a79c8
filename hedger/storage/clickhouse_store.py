"""ClickHouse-backed position and order store with retry logic.

Tables are ReplacingMergeTree keyed on ``id`` and versioned by
``updated_at``: every update inserts a new row version and reads use
``FINAL`` so only the latest version of each record is returned.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

import clickhouse_connect
from clickhouse_connect.driver.client import Client

from hedger.config import (
    CLICKHOUSE_DATABASE,
    CLICKHOUSE_HOST,
    CLICKHOUSE_PASSWORD,
    CLICKHOUSE_PORT,
    CLICKHOUSE_SECURE,
    CLICKHOUSE_USER,
)
from hedger.types import Order, Position, PositionStatus

logger = logging.getLogger(__name__)

WRITER_MAX_RETRIES = 3
WRITER_BASE_BACKOFF = 1.0        # Seconds, doubles per retry

# Column definitions for each table
TABLE_COLUMNS: dict[str, list[str]] = {
    "hedge_positions": [
        "id", "user_id", "side", "pool_ref", "instrument",
        "amount", "entry_price", "current_price",
        "unrealized_pnl", "realized_pnl", "fees",
        "hedge_group_id", "hedge_ratio", "status",
        "opened_at", "updated_at", "closed_at",
    ],
    "hedge_orders": [
        "id", "user_id", "order_type", "side", "instrument", "pool_ref",
        "amount", "price", "max_slippage", "status",
        "filled_amount", "average_price", "fee", "signature", "error_msg",
        "created_at", "updated_at", "executed_at",
    ],
}


def _to_row(record: dict[str, Any], columns: list[str]) -> list[Any]:
    return [
        record[c].value if isinstance(record[c], Enum) else record[c]
        for c in columns
    ]


class ClickHouseStore:
    """PositionStore and OrderStore over ClickHouse.

    The clickhouse-connect client is blocking, so every call goes through
    ``asyncio.to_thread``.
    """

    def __init__(self) -> None:
        self._client: Client | None = None
        self._lock = asyncio.Lock()

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=CLICKHOUSE_HOST,
                port=CLICKHOUSE_PORT,
                username=CLICKHOUSE_USER,
                password=CLICKHOUSE_PASSWORD,
                database=CLICKHOUSE_DATABASE,
                secure=CLICKHOUSE_SECURE,
                compress="lz4",
                connect_timeout=30,
                send_receive_timeout=300,
            )
        return self._client

    async def initialize(self) -> None:
        await asyncio.to_thread(self._get_client)
        logger.info("clickhouse_store_connected", extra={"host": CLICKHOUSE_HOST})

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
            logger.info("clickhouse_store_closed")

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def save_position(self, position: Position) -> None:
        await self._insert("hedge_positions", [position.model_dump()])

    async def get_position(self, position_id: str) -> Optional[Position]:
        rows = await self._select(
            "SELECT * FROM hedge_positions FINAL WHERE id = {id:String} LIMIT 1",
            {"id": position_id},
        )
        return Position.model_validate(rows[0]) if rows else None

    async def list_positions(
        self,
        user_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
        hedge_group_id: Optional[str] = None,
    ) -> list[Position]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if user_id is not None:
            clauses.append("user_id = {user_id:String}")
            params["user_id"] = user_id
        if status is not None:
            clauses.append("status = {status:String}")
            params["status"] = status.value
        if hedge_group_id is not None:
            clauses.append("hedge_group_id = {hedge_group_id:String}")
            params["hedge_group_id"] = hedge_group_id

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._select(
            f"SELECT * FROM hedge_positions FINAL {where} ORDER BY opened_at DESC",
            params,
        )
        return [Position.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def save_order(self, order: Order) -> None:
        await self._insert("hedge_orders", [order.model_dump()])

    async def get_order(self, order_id: str) -> Optional[Order]:
        rows = await self._select(
            "SELECT * FROM hedge_orders FINAL WHERE id = {id:String} LIMIT 1",
            {"id": order_id},
        )
        return Order.model_validate(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _select(self, query: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        client = self._get_client()
        result = await asyncio.to_thread(client.query, query, parameters=params)
        return list(result.named_results())

    async def _insert(self, table: str, records: list[dict[str, Any]]) -> None:
        columns = TABLE_COLUMNS[table]
        rows = [_to_row(r, columns) for r in records]
        backoff = WRITER_BASE_BACKOFF

        async with self._lock:
            for attempt in range(1, WRITER_MAX_RETRIES + 1):
                try:
                    client = self._get_client()
                    await asyncio.to_thread(
                        client.insert, table, rows, column_names=columns,
                    )
                    return
                except Exception:
                    logger.warning(
                        "insert_retry",
                        extra={
                            "table": table,
                            "attempt": attempt,
                            "backoff": backoff,
                            "rows": len(rows),
                        },
                        exc_info=True,
                    )
                    if attempt == WRITER_MAX_RETRIES:
                        logger.error(
                            "insert_failed",
                            extra={"table": table, "rows": len(rows)},
                        )
                        raise
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    # Reconnect on next attempt
                    self._client = None

    def run_migration(self, sql: str) -> None:
        """Execute raw SQL (for schema migration)."""
        client = self._get_client()
        for statement in sql.split(";"):
            statement = statement.strip()
            if statement and not all(
                line.strip().startswith("--") or not line.strip()
                for line in statement.splitlines()
            ):
                client.command(statement)
        logger.info("migration_complete")

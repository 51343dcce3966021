from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from research_scheduler.errors import StorageError
from research_scheduler.storage.schema import (
    LINK_COLUMNS,
    RELATIONSHIP_COLUMNS,
    RELATIONSHIP_INDEX_SQL,
    SCHEMA_SQL,
)
from research_scheduler.storage.types import (
    STATUS_ACTIVE,
    ExecutionResult,
    NewQuery,
    NewResult,
    QueryStatistics,
    ScheduledQuery,
)
from research_scheduler.utils import now_utc


logger = logging.getLogger(__name__)


def _query_from_row(row: aiosqlite.Row) -> ScheduledQuery:
    d = dict(row)
    parent_id = d.get("parent_query_id")
    return ScheduledQuery(
        id=int(d["id"]),
        query_text=d["query_text"],
        schedule_expression=d["schedule_expression"],
        date_range_start=d.get("date_range_start"),
        date_range_end=d.get("date_range_end"),
        website_filters=d.get("website_filters"),
        google_folder_id=d.get("google_folder_id"),
        status=d.get("status") or STATUS_ACTIVE,
        parent_query_id=int(parent_id) if parent_id is not None else None,
        is_followup=bool(d.get("is_followup") or 0) and parent_id is not None,
        followup_delay_minutes=d.get("followup_delay_minutes"),
        auto_triggered=bool(d.get("auto_triggered") or 0),
        created_at=d["created_at"],
    )


def _load_payload(raw: str | None, result_id: int) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("result %s has unreadable payload_json", result_id)
        return {}
    if not isinstance(data, dict):
        logger.warning("result %s payload is %s, not an object", result_id, type(data).__name__)
        return {}
    return data


def _result_from_row(row: aiosqlite.Row) -> ExecutionResult:
    return ExecutionResult(
        id=int(row["id"]),
        query_id=int(row["query_id"]),
        execution_timestamp=row["execution_timestamp"],
        payload=_load_payload(row["payload_json"], int(row["id"])),
        exported_document_id=row["exported_document_id"],
        status=row["status"],
    )


class Storage:
    """sqlite-backed repository for scheduled queries and their results.

    Relationship columns (parent link, follow-up flag, delay) may be missing
    on stores created by older releases. ``connect`` adds them when
    ``auto_migrate`` is on; otherwise follow-ups are written as ordinary
    queries without the parent link.
    """

    def __init__(self, sqlite_path: Path, auto_migrate: bool = True):
        self._path = sqlite_path
        self._auto_migrate = auto_migrate
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._relationship_columns = False
        self._auto_triggered_column = False

    @property
    def relationship_columns(self) -> bool:
        return self._relationship_columns

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self._path.as_posix())
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(SCHEMA_SQL)
            if self._auto_migrate:
                await self._migrate()
            columns = await self._columns("scheduled_queries")
            self._relationship_columns = all(name in columns for name in LINK_COLUMNS)
            self._auto_triggered_column = "auto_triggered" in columns
            if self._relationship_columns:
                await self._db.execute(RELATIONSHIP_INDEX_SQL)
            await self._db.commit()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        if not self._relationship_columns:
            logger.warning("store %s lacks follow-up columns; follow-ups will be stored unlinked", self._path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("storage not connected")
        return self._db

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            conn = self._conn()
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    async def _columns(self, table: str) -> set[str]:
        cursor = await self._conn().execute(f"PRAGMA table_info({table})")
        rows = await cursor.fetchall()
        return {r["name"] for r in rows}

    async def _migrate(self) -> None:
        conn = self._conn()
        existing = await self._columns("scheduled_queries")
        for name, ddl in RELATIONSHIP_COLUMNS:
            if name in existing:
                continue
            await conn.execute(f"ALTER TABLE scheduled_queries ADD COLUMN {name} {ddl}")
            logger.info("added column scheduled_queries.%s", name)

    async def _insert_query(self, conn: aiosqlite.Connection, columns: dict) -> int:
        names = ", ".join(columns)
        placeholders = ", ".join(["?"] * len(columns))
        cursor = await conn.execute(
            f"INSERT INTO scheduled_queries({names}) VALUES({placeholders})",
            tuple(columns.values()),
        )
        await conn.commit()
        return int(cursor.lastrowid)

    def _base_columns(self, query: NewQuery) -> dict:
        return {
            "query_text": query.query_text,
            "schedule_expression": query.schedule_expression,
            "date_range_start": query.date_range_start,
            "date_range_end": query.date_range_end,
            "website_filters": query.website_filters,
            "google_folder_id": query.google_folder_id,
            "status": STATUS_ACTIVE,
            "created_at": now_utc().isoformat(),
        }

    async def create_query(self, query: NewQuery) -> int:
        async with self._locked() as conn:
            return await self._insert_query(conn, self._base_columns(query))

    async def create_followup_query(self, parent_id: int, query: NewQuery, delay_minutes: int) -> int:
        columns = self._base_columns(query)
        if self._relationship_columns:
            columns.update(
                parent_query_id=parent_id,
                is_followup=1,
                followup_delay_minutes=delay_minutes,
            )
        else:
            logger.warning("storing follow-up of query %s without parent link", parent_id)

        async with self._locked() as conn:
            return await self._insert_query(conn, columns)

    async def list_active_queries(self) -> list[ScheduledQuery]:
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT * FROM scheduled_queries WHERE status=? ORDER BY id ASC",
                (STATUS_ACTIVE,),
            )
            rows = await cursor.fetchall()
            return [_query_from_row(r) for r in rows]

    async def get_query(self, query_id: int) -> ScheduledQuery | None:
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT * FROM scheduled_queries WHERE id=?",
                (query_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return _query_from_row(row)

    async def delete_query(self, query_id: int) -> int:
        """Hard-delete a query. Its results are kept."""
        async with self._locked() as conn:
            cursor = await conn.execute("DELETE FROM scheduled_queries WHERE id=?", (query_id,))
            await conn.commit()
            return int(cursor.rowcount or 0)

    async def list_followups(self, parent_id: int) -> list[ScheduledQuery]:
        if not self._relationship_columns:
            return []
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT * FROM scheduled_queries WHERE parent_query_id=? AND is_followup=1 ORDER BY id ASC",
                (parent_id,),
            )
            rows = await cursor.fetchall()
            return [_query_from_row(r) for r in rows]

    async def list_untriggered_followups(self, parent_id: int) -> list[ScheduledQuery]:
        if not self._auto_triggered_column:
            return await self.list_followups(parent_id)
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT * FROM scheduled_queries WHERE parent_query_id=? AND is_followup=1 AND auto_triggered=0 "
                "ORDER BY id ASC",
                (parent_id,),
            )
            rows = await cursor.fetchall()
            return [_query_from_row(r) for r in rows]

    async def mark_auto_triggered(self, query_id: int) -> int:
        if not self._auto_triggered_column:
            return 0
        async with self._locked() as conn:
            cursor = await conn.execute(
                "UPDATE scheduled_queries SET auto_triggered=1 WHERE id=?",
                (query_id,),
            )
            await conn.commit()
            return int(cursor.rowcount or 0)

    async def create_result(self, result: NewResult) -> int:
        executed_at = result.executed_at or now_utc()
        async with self._locked() as conn:
            cursor = await conn.execute(
                "INSERT INTO query_results(query_id, execution_timestamp, payload_json, exported_document_id, status) "
                "VALUES(?, ?, ?, ?, ?)",
                (
                    result.query_id,
                    executed_at.isoformat(),
                    json.dumps(result.payload, ensure_ascii=False),
                    result.exported_document_id,
                    result.status,
                ),
            )
            await conn.commit()
            return int(cursor.lastrowid)

    async def list_results(self, query_id: int) -> list[ExecutionResult]:
        """Results for a query, most recent first."""
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT * FROM query_results WHERE query_id=? ORDER BY execution_timestamp DESC, id DESC",
                (query_id,),
            )
            rows = await cursor.fetchall()
            return [_result_from_row(r) for r in rows]

    async def get_statistics(self) -> QueryStatistics:
        today = now_utc().date().isoformat()
        async with self._locked() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(1) AS n FROM scheduled_queries WHERE status=?",
                (STATUS_ACTIVE,),
            )
            scheduled = (await cursor.fetchone())["n"]

            cursor = await conn.execute(
                "SELECT COUNT(1) AS n FROM query_results WHERE exported_document_id IS NOT NULL"
            )
            documents = (await cursor.fetchone())["n"]

            cursor = await conn.execute(
                "SELECT COUNT(1) AS n FROM query_results WHERE substr(execution_timestamp, 1, 10)=?",
                (today,),
            )
            completed_today = (await cursor.fetchone())["n"]

        return QueryStatistics(
            scheduled_queries=int(scheduled),
            documents_created=int(documents),
            completed_today=int(completed_today),
        )

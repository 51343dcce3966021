"""sqlite repository for queries and results"""

from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from research_scheduler.errors import StorageError
from research_scheduler.storage.db import Storage
from research_scheduler.storage.types import RESULT_COMPLETED, RESULT_FAILED, NewQuery, NewResult


OLD_SCHEMA = """
CREATE TABLE scheduled_queries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  query_text TEXT NOT NULL,
  schedule_expression TEXT NOT NULL,
  date_range_start TEXT,
  date_range_end TEXT,
  website_filters TEXT,
  google_folder_id TEXT,
  status TEXT NOT NULL DEFAULT 'active',
  created_at TEXT NOT NULL
);
INSERT INTO scheduled_queries(query_text, schedule_expression, created_at)
VALUES ('legacy query', '0 8 * * *', '2025-01-01T00:00:00+00:00');
"""


async def _make_old_store(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(path.as_posix()) as db:
        await db.executescript(OLD_SCHEMA)
        await db.commit()


@pytest.mark.asyncio
async def test_create_and_get_query(storage):
    query_id = await storage.create_query(
        NewQuery(
            query_text="Semiconductor supply chain",
            schedule_expression="0 9 * * 1-5",
            date_range_start="2026-01-01",
            website_filters="site:reuters.com",
        )
    )

    q = await storage.get_query(query_id)
    assert q is not None
    assert q.query_text == "Semiconductor supply chain"
    assert q.schedule_expression == "0 9 * * 1-5"
    assert q.date_range_start == "2026-01-01"
    assert q.date_range_end is None
    assert q.website_filters == "site:reuters.com"
    assert q.status == "active"
    assert q.parent_query_id is None
    assert q.is_followup is False


@pytest.mark.asyncio
async def test_get_missing_query_returns_none(storage):
    assert await storage.get_query(999) is None


@pytest.mark.asyncio
async def test_results_are_listed_most_recent_first(storage):
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))
    base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    for offset, label in [(1, "middle"), (2, "newest"), (0, "oldest")]:
        await storage.create_result(
            NewResult(query_id=qid, payload={"content": label}, executed_at=base + timedelta(days=offset))
        )

    results = await storage.list_results(qid)
    assert [r.payload["content"] for r in results] == ["newest", "middle", "oldest"]


@pytest.mark.asyncio
async def test_delete_keeps_result_history(storage):
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))
    await storage.create_result(NewResult(query_id=qid, payload={"content": "kept"}))

    assert await storage.delete_query(qid) == 1
    assert await storage.delete_query(qid) == 0

    assert [q.id for q in await storage.list_active_queries()] == []
    results = await storage.list_results(qid)
    assert [r.payload["content"] for r in results] == ["kept"]


@pytest.mark.asyncio
async def test_followup_links_to_parent(storage):
    parent = await storage.create_query(NewQuery("parent", "0 9 * * *"))
    child = await storage.create_followup_query(parent, NewQuery("child", "5 9 * * *"), delay_minutes=5)
    await storage.create_query(NewQuery("unrelated", "0 10 * * *"))

    q = await storage.get_query(child)
    assert q.parent_query_id == parent
    assert q.is_followup is True
    assert q.followup_delay_minutes == 5

    followups = await storage.list_followups(parent)
    assert [f.id for f in followups] == [child]


@pytest.mark.asyncio
async def test_auto_triggered_flag(storage):
    parent = await storage.create_query(NewQuery("parent", "0 9 * * *"))
    child = await storage.create_followup_query(parent, NewQuery("child", "5 9 * * *"), delay_minutes=5)

    assert [f.id for f in await storage.list_untriggered_followups(parent)] == [child]
    assert await storage.mark_auto_triggered(child) == 1
    assert await storage.list_untriggered_followups(parent) == []
    assert (await storage.get_query(child)).auto_triggered is True


@pytest.mark.asyncio
async def test_statistics(storage):
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))
    await storage.create_query(NewQuery("q2", "0 10 * * *"))
    await storage.create_result(NewResult(query_id=qid, payload={}, exported_document_id="doc-1"))
    await storage.create_result(NewResult(query_id=qid, payload={}, status=RESULT_FAILED))
    await storage.create_result(
        NewResult(query_id=qid, payload={}, executed_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
    )

    stats = await storage.get_statistics()
    assert stats.scheduled_queries == 2
    assert stats.documents_created == 1
    assert stats.completed_today == 2


@pytest.mark.asyncio
async def test_result_round_trips_status_and_document(storage):
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))
    rid = await storage.create_result(
        NewResult(query_id=qid, payload={"content": "x"}, status=RESULT_COMPLETED, exported_document_id="d1")
    )
    [result] = await storage.list_results(qid)
    assert result.id == rid
    assert result.status == RESULT_COMPLETED
    assert result.exported_document_id == "d1"


@pytest.mark.asyncio
async def test_old_store_without_migration_stores_followups_unlinked(db_path):
    await _make_old_store(db_path)
    storage = Storage(db_path, auto_migrate=False)
    await storage.connect()
    try:
        assert storage.relationship_columns is False

        legacy = await storage.get_query(1)
        assert legacy.is_followup is False
        assert legacy.parent_query_id is None

        child = await storage.create_followup_query(1, NewQuery("child", "5 8 * * *"), delay_minutes=5)
        q = await storage.get_query(child)
        assert q.query_text == "child"
        assert q.parent_query_id is None
        assert q.is_followup is False

        assert await storage.list_followups(1) == []
        assert await storage.mark_auto_triggered(child) == 0
        assert {x.id for x in await storage.list_active_queries()} == {1, child}
    finally:
        await storage.close()


@pytest.mark.asyncio
async def test_old_store_is_migrated_on_connect(db_path):
    await _make_old_store(db_path)
    storage = Storage(db_path)
    await storage.connect()
    try:
        assert storage.relationship_columns is True
        legacy = await storage.get_query(1)
        assert legacy.is_followup is False

        child = await storage.create_followup_query(1, NewQuery("child", "5 8 * * *"), delay_minutes=5)
        q = await storage.get_query(child)
        assert q.parent_query_id == 1
        assert q.is_followup is True
    finally:
        await storage.close()


@pytest.mark.asyncio
async def test_use_before_connect_raises_storage_error(db_path):
    storage = Storage(db_path)
    with pytest.raises(StorageError):
        await storage.list_active_queries()


@pytest.mark.asyncio
async def test_sqlite_failure_is_wrapped(storage):
    await storage._conn().execute("DROP TABLE query_results")
    with pytest.raises(StorageError):
        await storage.list_results(1)


@pytest.mark.asyncio
async def test_unreadable_result_payload_reads_as_empty(storage):
    qid = await storage.create_query(NewQuery("q", "0 9 * * *"))
    await storage.create_result(NewResult(query_id=qid, payload={"content": "fine"}))
    conn = storage._conn()
    await conn.execute(
        "INSERT INTO query_results(query_id, execution_timestamp, payload_json, status) "
        "VALUES(?, '2020-01-01T00:00:00+00:00', '{broken', 'completed')",
        (qid,),
    )
    await conn.commit()

    results = await storage.list_results(qid)
    assert [r.payload for r in results] == [{"content": "fine"}, {}]


@pytest.mark.asyncio
async def test_store_missing_only_auto_triggered_still_links_followups(db_path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path.as_posix()) as db:
        await db.executescript(OLD_SCHEMA)
        await db.executescript(
            "ALTER TABLE scheduled_queries ADD COLUMN parent_query_id INTEGER;"
            "ALTER TABLE scheduled_queries ADD COLUMN is_followup INTEGER NOT NULL DEFAULT 0;"
            "ALTER TABLE scheduled_queries ADD COLUMN followup_delay_minutes INTEGER;"
        )
        await db.commit()

    storage = Storage(db_path, auto_migrate=False)
    await storage.connect()
    try:
        assert storage.relationship_columns is True
        child = await storage.create_followup_query(1, NewQuery("child", "5 8 * * *"), delay_minutes=5)

        q = await storage.get_query(child)
        assert q.parent_query_id == 1
        assert q.is_followup is True
        assert q.auto_triggered is False
        assert [f.id for f in await storage.list_followups(1)] == [child]
        assert [f.id for f in await storage.list_untriggered_followups(1)] == [child]
        assert await storage.mark_auto_triggered(child) == 0
    finally:
        await storage.close()

from __future__ import annotations

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS scheduled_queries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  query_text TEXT NOT NULL,
  schedule_expression TEXT NOT NULL,
  date_range_start TEXT,
  date_range_end TEXT,
  website_filters TEXT,
  google_folder_id TEXT,
  status TEXT NOT NULL DEFAULT 'active',
  parent_query_id INTEGER,
  is_followup INTEGER NOT NULL DEFAULT 0,
  followup_delay_minutes INTEGER,
  auto_triggered INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_scheduled_queries_status ON scheduled_queries(status);

CREATE TABLE IF NOT EXISTS query_results (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  query_id INTEGER NOT NULL,
  execution_timestamp TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  exported_document_id TEXT,
  status TEXT NOT NULL DEFAULT 'completed'
);

CREATE INDEX IF NOT EXISTS ix_query_results_query_ts ON query_results(query_id, execution_timestamp);
"""

# Columns added to scheduled_queries after the first released schema. Stores
# created before then lack them until migrated.
RELATIONSHIP_COLUMNS: list[tuple[str, str]] = [
    ("parent_query_id", "INTEGER"),
    ("is_followup", "INTEGER NOT NULL DEFAULT 0"),
    ("followup_delay_minutes", "INTEGER"),
    ("auto_triggered", "INTEGER NOT NULL DEFAULT 0"),
]

# Enough to link a follow-up to its parent.
LINK_COLUMNS = ("parent_query_id", "is_followup", "followup_delay_minutes")

RELATIONSHIP_INDEX_SQL = (
    "CREATE INDEX IF NOT EXISTS ix_scheduled_queries_parent ON scheduled_queries(parent_query_id)"
)

"""
Pipeline tables.

Defines table names and DDL for the three tables the pipeline owns:
the record store, the advisory key/value store (locks, ingestion flags,
failure counters) and the token-window buckets of the shared LLM budget.

Architecture:
    ::

        Table Registry (PIPELINE_TABLES):
        ┌────────────────────────────────────────────────────────────┐
        │ records      → pipeline_records       (one row per record) │
        │ advisory     → pipeline_advisory      (TTL'd key/value)    │
        │ token_window → pipeline_token_window  (pool x minute)      │
        └────────────────────────────────────────────────────────────┘

        Record state columns:
        ┌────────────────────────────────────────────────────────────┐
        │ status        pending | published | failed                 │
        │ audit_status  needs_audit | pass | flagged | admin_review   │
        │ quarantined_at / quarantine_cycles   explicit marker       │
        │ suppressed_at                        legal takedown        │
        └────────────────────────────────────────────────────────────┘

Examples:
    >>> from obit_pipeline.core.schema import PIPELINE_TABLES, create_pipeline_tables
    >>> PIPELINE_TABLES["records"]
    'pipeline_records'
    >>> create_pipeline_tables(conn)

Tags:
    schema, ddl, sqlite
"""

PIPELINE_TABLES = {
    "records": "pipeline_records",
    "advisory": "pipeline_advisory",
    "token_window": "pipeline_token_window",
}


PIPELINE_DDL = {
    "records": f"""
        CREATE TABLE IF NOT EXISTS {PIPELINE_TABLES["records"]} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL DEFAULT '',
            original_text TEXT,

            -- Loosely-extracted structured fields
            date_of_death TEXT,
            date_of_birth TEXT,
            age INTEGER,
            location TEXT,
            organization TEXT,

            -- Rewrite output
            rewritten_text TEXT,
            rewritten_hash TEXT,

            -- State
            status TEXT NOT NULL DEFAULT 'pending',
            audit_status TEXT,

            -- Audit bookkeeping
            audit_issues TEXT,
            audit_reason TEXT,
            audit_confidence REAL,
            last_audited_hash TEXT,
            last_audit_outcome TEXT,
            last_audit_at TEXT,
            requeue_count INTEGER NOT NULL DEFAULT 0,

            -- Quarantine marker
            quarantined_at TEXT,
            quarantine_cycles INTEGER NOT NULL DEFAULT 0,

            suppressed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
    """,
    "records_status_idx": f"""
        CREATE INDEX IF NOT EXISTS idx_pipeline_records_status
        ON {PIPELINE_TABLES["records"]}(status, created_at)
    """,
    "records_audit_idx": f"""
        CREATE INDEX IF NOT EXISTS idx_pipeline_records_audit
        ON {PIPELINE_TABLES["records"]}(audit_status, last_audit_at)
    """,
    "advisory": f"""
        CREATE TABLE IF NOT EXISTS {PIPELINE_TABLES["advisory"]} (
            key TEXT PRIMARY KEY,
            value TEXT,
            holder TEXT,
            token INTEGER NOT NULL DEFAULT 0,
            expires_at TEXT,
            updated_at TEXT NOT NULL
        )
    """,
    "advisory_expiry_idx": f"""
        CREATE INDEX IF NOT EXISTS idx_pipeline_advisory_expires
        ON {PIPELINE_TABLES["advisory"]}(expires_at)
    """,
    "token_window": f"""
        CREATE TABLE IF NOT EXISTS {PIPELINE_TABLES["token_window"]} (
            pool TEXT NOT NULL,
            bucket INTEGER NOT NULL,
            tokens INTEGER NOT NULL DEFAULT 0,
            calls INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (pool, bucket)
        )
    """,
}


def create_pipeline_tables(conn) -> None:
    """
    Create all pipeline tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for _name, ddl in PIPELINE_DDL.items():
        conn.execute(ddl)
    conn.commit()


__all__ = ["PIPELINE_TABLES", "PIPELINE_DDL", "create_pipeline_tables"]

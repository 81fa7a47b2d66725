from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("auditworker.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    for version, statements in _get_migrations():
        if version in applied:
            continue
        for statement in statements:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=%s", version)


def _get_migrations() -> list[tuple[str, list[str]]]:
    return [
        (
            "pg_bootstrap_001",
            [
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS sites (
                    id TEXT PRIMARY KEY,
                    base_url TEXT NOT NULL,
                    delivery_type TEXT NOT NULL DEFAULT 'other',
                    name TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """,
            ],
        ),
        (
            "pg_enrichment_events_002",
            [
                """
                CREATE TABLE IF NOT EXISTS enrichment_events (
                    id BIGSERIAL PRIMARY KEY,
                    audit_id TEXT NOT NULL,
                    site_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    batch_start INTEGER NULL,
                    detail_json TEXT NULL,
                    created_at TEXT NOT NULL
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_enrichment_events_audit
                ON enrichment_events(audit_id, id)
                """,
            ],
        ),
    ]

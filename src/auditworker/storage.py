from __future__ import annotations

import json
import os
from typing import Any

from .db import connect_db
from .models import Site
from .utils import json_dumps, utc_now_iso


def init_db(path: str | None = None):
    if path is None:
        data_dir = os.environ.get("AW_DATA_DIR", "/data")
        path = os.path.join(data_dir, "state.sqlite3")
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_site(conn: Any, site_dict: dict[str, object]) -> Site:
    site_id = str(site_dict.get("id") or "").strip()
    if not site_id:
        raise ValueError("site id is required")
    base_url = str(site_dict.get("base_url") or "").strip()
    if not base_url:
        raise ValueError("base_url is required")
    delivery_type = str(site_dict.get("delivery_type") or "other").strip()
    name = site_dict.get("name")
    cursor = conn.execute("SELECT created_at FROM sites WHERE id = ?", (site_id,))
    row = cursor.fetchone()
    created_at = row[0] if row else utc_now_iso()
    updated_at = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sites (id, base_url, delivery_type, name, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            base_url=excluded.base_url,
            delivery_type=excluded.delivery_type,
            name=excluded.name,
            updated_at=excluded.updated_at
        """,
        (site_id, base_url, delivery_type, name, created_at, updated_at),
    )
    conn.commit()
    return Site(
        id=site_id,
        base_url=base_url,
        delivery_type=delivery_type,
        name=str(name) if name is not None else None,
        created_at=created_at,
        updated_at=updated_at,
    )


def get_site(conn: Any, site_id: str) -> Site | None:
    cursor = conn.execute(
        """
        SELECT id, base_url, delivery_type, name, created_at, updated_at
        FROM sites
        WHERE id = ?
        """,
        (site_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_site(row)


def list_sites(conn: Any) -> list[Site]:
    cursor = conn.execute(
        """
        SELECT id, base_url, delivery_type, name, created_at, updated_at
        FROM sites
        ORDER BY id
        """
    )
    return [_row_to_site(row) for row in cursor.fetchall()]


def delete_site(conn: Any, site_id: str) -> bool:
    cursor = conn.execute("DELETE FROM sites WHERE id = ?", (site_id,))
    conn.commit()
    return cursor.rowcount == 1


def record_enrichment_event(
    conn: Any,
    audit_id: str,
    site_id: str,
    status: str,
    batch_start: int | None = None,
    detail: dict[str, object] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO enrichment_events
            (audit_id, site_id, status, batch_start, detail_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            audit_id,
            site_id,
            status,
            batch_start,
            json_dumps(detail) if detail else None,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_enrichment_events(conn: Any, audit_id: str, limit: int = 100) -> list[dict[str, Any]]:
    cursor = conn.execute(
        """
        SELECT audit_id, site_id, status, batch_start, detail_json, created_at
        FROM enrichment_events
        WHERE audit_id = ?
        ORDER BY id ASC
        LIMIT ?
        """,
        (audit_id, limit),
    )
    rows = []
    for row in cursor.fetchall():
        try:
            detail = json.loads(row[4]) if row[4] else {}
        except json.JSONDecodeError:
            detail = {}
        rows.append(
            {
                "audit_id": row[0],
                "site_id": row[1],
                "status": row[2],
                "batch_start": row[3],
                "detail": detail,
                "created_at": row[5],
            }
        )
    return rows


class EventRecorder:
    """Callable adapter so the driver can record outcomes without holding SQL."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def __call__(
        self,
        audit_id: str,
        site_id: str,
        status: str,
        batch_start: int | None = None,
        detail: dict[str, object] | None = None,
    ) -> None:
        record_enrichment_event(self._conn, audit_id, site_id, status, batch_start, detail)


def _row_to_site(row) -> Site:
    return Site(
        id=row[0],
        base_url=row[1],
        delivery_type=row[2],
        name=row[3],
        created_at=row[4],
        updated_at=row[5],
    )

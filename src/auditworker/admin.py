from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .db import DBConn
from .models import DateContext, EnrichmentRequest
from .services import Services, build_clients, build_services
from .storage import (
    delete_site,
    get_site,
    init_db,
    list_enrichment_events,
    list_sites,
    upsert_site,
)
from .utils import log_event

app = FastAPI(title="auditworker Admin API")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("AW_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if header != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class SiteRequest(BaseModel):
    id: str
    base_url: str
    delivery_type: str | None = None
    name: str | None = None


class EnrichmentStartRequest(BaseModel):
    audit_id: str
    site_id: str
    prompts: list[dict]
    week: int
    year: int
    date: str | None = None
    is_daily: bool = False
    providers: list[str] | None = None
    config_version: str | None = None
    config_exists: bool = False


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/sites")
def sites_list() -> list[dict[str, object]]:
    conn = _get_conn()
    return [asdict(site) for site in list_sites(conn)]


@app.post("/sites")
def sites_create(payload: SiteRequest, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    try:
        site = upsert_site(conn, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(site)


@app.get("/sites/{site_id}")
def sites_read(site_id: str) -> dict[str, object]:
    conn = _get_conn()
    site = get_site(conn, site_id)
    if not site:
        raise HTTPException(status_code=404, detail="site_not_found")
    return asdict(site)


@app.delete("/sites/{site_id}")
def sites_delete(site_id: str, _: None = Depends(_require_admin_token)) -> dict[str, str]:
    conn = _get_conn()
    if not delete_site(conn, site_id):
        raise HTTPException(status_code=404, detail="site_not_found")
    return {"status": "deleted"}


@app.post("/enrichment/start")
def enrichment_start(
    payload: EnrichmentStartRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    logger = logging.getLogger("auditworker.admin")
    conn = _get_conn()
    site = get_site(conn, payload.site_id)
    if not site:
        raise HTTPException(status_code=404, detail="site_not_found")
    if payload.is_daily and not payload.date:
        raise HTTPException(status_code=400, detail="date is required for daily cadence")
    config = _load_config(conn)
    services = _get_services(conn)
    request = EnrichmentRequest(
        audit_id=payload.audit_id,
        site=site,
        prompts=payload.prompts,
        date_context=DateContext(week=payload.week, year=payload.year, date=payload.date),
        providers_to_use=(
            payload.providers if payload.providers is not None else config.providers.web_search
        ),
        is_daily=payload.is_daily,
        config_version=payload.config_version,
        config_exists=payload.config_exists,
    )
    status = services.trigger.send_or_enrich(request)
    log_event(
        logger,
        logging.INFO,
        "enrichment_start_requested",
        audit_id=payload.audit_id,
        site_id=payload.site_id,
        status=status,
    )
    return {"status": status}


@app.get("/enrichment/locks/{site_id}/{lock_id}", dependencies=[Depends(_require_admin_token)])
def enrichment_lock_read(site_id: str, lock_id: str) -> dict[str, object]:
    conn = _get_conn()
    lock = _get_services(conn).locks.read(site_id, lock_id)
    if lock is None:
        raise HTTPException(status_code=404, detail="lock_not_found")
    return lock


@app.delete("/enrichment/locks/{site_id}/{lock_id}", dependencies=[Depends(_require_admin_token)])
def enrichment_lock_release(site_id: str, lock_id: str) -> dict[str, str]:
    conn = _get_conn()
    _get_services(conn).locks.release(site_id, lock_id)
    return {"status": "released"}


@app.get("/enrichment/{audit_id}")
def enrichment_status(audit_id: str) -> dict[str, object]:
    conn = _get_conn()
    services = _get_services(conn)
    metadata = services.jobs.load_metadata(audit_id)
    if metadata is None:
        raise HTTPException(status_code=404, detail="enrichment_not_found")
    lock = None
    if metadata.get("siteId") and metadata.get("lockId"):
        lock = services.locks.read(str(metadata["siteId"]), str(metadata["lockId"]))
    return {
        "metadata": metadata,
        "lock": lock,
        "timed_out": services.locks.is_timed_out(metadata),
        "events": list_enrichment_events(conn, audit_id),
    }


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("auditworker")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> DBConn:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _load_config(conn):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _get_services(conn) -> Services:
    config = _load_config(conn)
    s3_client, sqs_client = build_clients(config)
    return build_services(conn, config, s3_client, sqs_client)

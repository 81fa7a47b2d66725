from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..messaging import SqsQueue
from ..models import DateContext, EnrichmentMetadata, EnrichmentRequest
from ..utils import log_event, utc_now
from .constants import URL_ENRICHMENT_TYPE
from .detect import detect_indices_needing_enrichment
from .jobs import EnrichmentJobStore
from .lock import LockManager
from .notify import DetectionNotifier

STATUS_ENRICHING = "enriching"
STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"


def build_lock_id(date_context: DateContext, is_daily: bool = False) -> str:
    lock_id = f"w{date_context.week}-{date_context.year}"
    if is_daily:
        lock_id = f"{lock_id}-{date_context.date}"
    return lock_id


class EnrichmentTrigger:
    """Entry point for a fresh prompt set: enrich first when URLs are missing."""

    def __init__(
        self,
        jobs: EnrichmentJobStore,
        locks: LockManager,
        queue: SqsQueue,
        audits_queue: str,
        notifier: DetectionNotifier,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.jobs = jobs
        self.locks = locks
        self.queue = queue
        self.audits_queue = audits_queue
        self.notifier = notifier
        self._clock = clock
        self._logger = logger or logging.getLogger("auditworker.trigger")

    def start(self, request: EnrichmentRequest, indices: list[int] | None = None) -> bool:
        """Persist the job, take the lock and enqueue batch 0.

        Returns False when another enrichment holds the lock or any step fails;
        the caller is expected to fall back to a direct send.
        """
        site_id = request.site.get_id()
        if indices is None:
            indices = detect_indices_needing_enrichment(request.prompts).indices_to_enrich
        lock_id = build_lock_id(request.date_context, request.is_daily)
        acquired = False
        try:
            result = self.locks.acquire(site_id, lock_id, request.audit_id)
            acquired = result.acquired
            if not result.acquired:
                holder = (result.existing_lock or {}).get("auditId")
                log_event(
                    self._logger,
                    logging.INFO,
                    "enrichment_lock_busy",
                    site_id=site_id,
                    lock_id=lock_id,
                    holder=holder,
                )
                return False
            self.jobs.save_prompts(request.audit_id, request.prompts)
            metadata = self._metadata(request, lock_id, indices, self._clock().isoformat())
            self.jobs.save_metadata(metadata)
            self.queue.send_message(
                self.audits_queue,
                {
                    "type": URL_ENRICHMENT_TYPE,
                    "auditId": request.audit_id,
                    "siteId": site_id,
                    "batchStart": 0,
                },
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "enrichment_trigger_failed",
                site_id=site_id,
                audit_id=request.audit_id,
                error=str(exc),
            )
            if acquired:
                self.locks.release(site_id, lock_id, request.audit_id)
            return False
        log_event(
            self._logger,
            logging.INFO,
            "enrichment_started",
            site_id=site_id,
            audit_id=request.audit_id,
            lock_id=lock_id,
            indices=len(indices),
        )
        return True

    def send_or_enrich(self, request: EnrichmentRequest) -> str:
        site_id = request.site.get_id()
        if not request.prompts:
            log_event(self._logger, logging.WARNING, "enrichment_no_prompts", site_id=site_id)
            return STATUS_SKIPPED
        if not request.providers_to_use:
            log_event(self._logger, logging.WARNING, "enrichment_no_providers", site_id=site_id)
            return STATUS_SKIPPED

        need = detect_indices_needing_enrichment(request.prompts)
        if need.needs_enrichment:
            log_event(
                self._logger,
                logging.INFO,
                "enrichment_needed",
                site_id=site_id,
                count=len(need.indices_to_enrich),
            )
            if self.start(request, need.indices_to_enrich):
                return STATUS_ENRICHING
            log_event(self._logger, logging.WARNING, "enrichment_direct_fallback", site_id=site_id)

        lock_id = build_lock_id(request.date_context, request.is_daily)
        metadata = self._metadata(request, lock_id, [], None)
        self.notifier.send(request.prompts, metadata)
        return STATUS_SENT

    def _metadata(
        self,
        request: EnrichmentRequest,
        lock_id: str,
        indices: list[int],
        created_at: str | None,
    ) -> EnrichmentMetadata:
        return EnrichmentMetadata(
            audit_id=request.audit_id,
            site_id=request.site.get_id(),
            lock_id=lock_id,
            base_url=request.site.get_base_url(),
            delivery_type=request.site.get_delivery_type(),
            date_context=request.date_context,
            providers_to_use=list(request.providers_to_use),
            is_daily=request.is_daily,
            config_version=request.config_version,
            config_exists=request.config_exists,
            indices_to_enrich=list(indices),
            total_prompts=len(request.prompts),
            created_at=created_at,
        )

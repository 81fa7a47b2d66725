from __future__ import annotations

import logging
import math
from typing import Any, Callable

from fastapi.responses import JSONResponse

from ..messaging import SqsQueue
from ..models import ConflictCheck, EnrichmentMetadata, Site
from ..objectstore import ObjectStoreError
from ..responses import internal_server_error, not_found, ok
from ..utils import log_event
from .batch import BatchProcessor
from .constants import URL_ENRICHMENT_BATCH_SIZE, URL_ENRICHMENT_TYPE
from .jobs import EnrichmentJobStore
from .lock import LockManager
from .notify import DetectionNotifier

EventRecorder = Callable[..., None]


class ContinuationDriver:
    """Runs one batch of a URL enrichment job per queue message.

    Every invocation re-validates the job against the lock before and after
    its batch, so a duplicate or late message for a job another audit has
    taken over ends as a logged no-op instead of a second write or a second
    downstream notification.
    """

    def __init__(
        self,
        find_site: Callable[[str], Site | None],
        jobs: EnrichmentJobStore,
        locks: LockManager,
        processor: BatchProcessor,
        notifier: DetectionNotifier,
        queue: SqsQueue,
        audits_queue: str,
        batch_size: int = URL_ENRICHMENT_BATCH_SIZE,
        record_event: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.find_site = find_site
        self.jobs = jobs
        self.locks = locks
        self.processor = processor
        self.notifier = notifier
        self.queue = queue
        self.audits_queue = audits_queue
        self.batch_size = batch_size
        self._record_event = record_event
        self._logger = logger or logging.getLogger("auditworker.driver")

    def handle(self, message: dict[str, Any]) -> JSONResponse:
        audit_id = str(message.get("auditId") or "")
        site_id = str(message.get("siteId") or "")
        batch_start = 0
        log_event(
            self._logger,
            logging.INFO,
            "enrichment_batch_received",
            audit_id=audit_id,
            site_id=site_id,
            batch_start=message.get("batchStart"),
        )

        metadata: EnrichmentMetadata | None = None
        prompts: list[dict[str, Any]] | None = None
        finalizing = False
        try:
            batch_start = int(message.get("batchStart") or 0)
            site = self.find_site(site_id)
            if not site:
                log_event(self._logger, logging.ERROR, "enrichment_site_missing", site_id=site_id)
                return not_found("Site not found")

            raw = self.jobs.load_metadata(audit_id)
            if not raw or not isinstance(raw.get("indicesToEnrich"), list):
                log_event(
                    self._logger, logging.ERROR, "enrichment_metadata_invalid", audit_id=audit_id
                )
                return not_found("Enrichment metadata not found")
            metadata = EnrichmentMetadata.from_dict(raw)

            if self.locks.is_timed_out(metadata):
                return self._handle_timeout(metadata, site_id, batch_start)

            conflict = self.locks.check_conflict(site_id, metadata.lock_id, audit_id)
            if conflict.has_conflict:
                return self._abort(metadata, site_id, batch_start, conflict, conflict.reason)

            loaded = self.jobs.load_prompts(audit_id)
            if not isinstance(loaded, list):
                log_event(
                    self._logger, logging.ERROR, "enrichment_prompts_invalid", audit_id=audit_id
                )
                self._record(audit_id, site_id, "failed", batch_start, {"error": "invalid_prompts"})
                return internal_server_error("Invalid prompts data")
            prompts = loaded

            indices = metadata.indices_to_enrich
            batch_end = min(batch_start + self.batch_size, len(indices))
            batch_indices = indices[batch_start:batch_end]
            total_batches = math.ceil(len(indices) / self.batch_size)
            current_batch = batch_start // self.batch_size + 1

            enriched = self.processor.process(prompts, batch_indices, site)
            log_event(
                self._logger,
                logging.INFO,
                "enrichment_batch_done",
                audit_id=audit_id,
                batch=f"{current_batch}/{total_batches}",
                enriched=enriched,
                size=len(batch_indices),
            )
            self.jobs.save_prompts(audit_id, prompts)

            conflict = self.locks.check_conflict(site_id, metadata.lock_id, audit_id)
            if conflict.has_conflict:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "enrichment_final_conflict",
                    audit_id=audit_id,
                    reason=conflict.reason,
                )
                return self._abort(
                    metadata, site_id, batch_start, conflict, "conflict-after-batch"
                )

            remaining = len(indices) - batch_end
            if remaining > 0:
                self.queue.send_message(
                    self.audits_queue,
                    {
                        "type": URL_ENRICHMENT_TYPE,
                        "auditId": audit_id,
                        "siteId": site_id,
                        "batchStart": batch_end,
                    },
                )
                log_event(
                    self._logger,
                    logging.INFO,
                    "enrichment_continuation_sent",
                    audit_id=audit_id,
                    batch_start=batch_end,
                    remaining=remaining,
                )
                self._record(
                    audit_id,
                    site_id,
                    "processing",
                    batch_start,
                    {"enriched": enriched, "remaining": remaining},
                )
                return ok(
                    {
                        "status": "processing",
                        "batchProcessed": current_batch,
                        "totalBatches": total_batches,
                        "remaining": remaining,
                    }
                )

            self.locks.release(site_id, metadata.lock_id, audit_id)
            # Past this point some providers may already have been notified.
            finalizing = True
            self.notifier.send(prompts, metadata)
            log_event(
                self._logger,
                logging.INFO,
                "enrichment_completed",
                audit_id=audit_id,
                site_id=site_id,
                prompts=len(prompts),
            )
            self._record(audit_id, site_id, "completed", batch_start, {"enriched": enriched})
            return ok(
                {
                    "status": "completed",
                    "totalPrompts": len(prompts),
                    "enrichedCount": len(indices),
                    "sentToMystique": True,
                }
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "enrichment_failed",
                audit_id=audit_id,
                error=str(exc),
            )
            if metadata is not None and prompts is not None and not finalizing:
                if self.locks.release(site_id, metadata.lock_id, audit_id):
                    self.notifier.send_fallback(prompts, metadata)
            self._record(audit_id, site_id, "failed", batch_start, {"error": str(exc)})
            return internal_server_error(str(exc))

    def _handle_timeout(
        self, metadata: EnrichmentMetadata, site_id: str, batch_start: int
    ) -> JSONResponse:
        log_event(
            self._logger,
            logging.WARNING,
            "enrichment_timed_out",
            audit_id=metadata.audit_id,
            started=metadata.created_at,
        )
        conflict = self.locks.check_conflict(site_id, metadata.lock_id, metadata.audit_id)
        if conflict.has_conflict:
            # Another audit owns the job now, or this timeout was already handled.
            return self._abort(metadata, site_id, batch_start, conflict, conflict.reason)
        self.locks.release(site_id, metadata.lock_id, metadata.audit_id)
        try:
            prompts = self.jobs.load_prompts(metadata.audit_id)
        except ObjectStoreError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "enrichment_prompts_unavailable",
                audit_id=metadata.audit_id,
                error=str(exc),
            )
            prompts = None
        sent = False
        if isinstance(prompts, list):
            sent = self.notifier.send_fallback(prompts, metadata)
        elif prompts is not None:
            log_event(
                self._logger,
                logging.ERROR,
                "enrichment_prompts_invalid",
                audit_id=metadata.audit_id,
            )
        self._record(metadata.audit_id, site_id, "timeout", batch_start, {"sent": sent})
        return ok(
            {
                "status": "timeout",
                "message": "Enrichment timed out, sent partial results to Mystique",
                "sentToMystique": sent,
            }
        )

    def _abort(
        self,
        metadata: EnrichmentMetadata,
        site_id: str,
        batch_start: int,
        conflict: ConflictCheck,
        reason: str | None,
    ) -> JSONResponse:
        log_event(
            self._logger,
            logging.WARNING,
            "enrichment_conflict",
            audit_id=metadata.audit_id,
            reason=conflict.reason,
            newer_audit_id=conflict.newer_audit_id or "unknown",
        )
        self._record(
            metadata.audit_id,
            site_id,
            "aborted",
            batch_start,
            {"reason": reason, "newer_audit_id": conflict.newer_audit_id},
        )
        return ok(
            {
                "status": "aborted",
                "reason": reason,
                "newerAuditId": conflict.newer_audit_id,
            }
        )

    def _record(
        self,
        audit_id: str,
        site_id: str,
        status: str,
        batch_start: int,
        detail: dict[str, object] | None = None,
    ) -> None:
        if self._record_event is None:
            return
        try:
            self._record_event(audit_id, site_id, status, batch_start, detail)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "enrichment_event_record_failed",
                audit_id=audit_id,
                error=str(exc),
            )

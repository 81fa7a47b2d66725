from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from ..models import ConflictCheck, EnrichmentLock, EnrichmentMetadata, LockResult
from ..objectstore import (
    ObjectNotFound,
    ObjectStoreError,
    PreconditionFailed,
    S3ObjectStore,
    lock_key,
)
from ..utils import elapsed_ms, log_event, parse_iso, utc_now
from .constants import ENRICHMENT_TIMEOUT_MS, REASON_LOCK_MISSING, REASON_LOCK_STOLEN

_MAX_ACQUIRE_ATTEMPTS = 3


class LockManager:
    """Best-effort enrichment lock stored as one JSON object per (site, lock id).

    With ``conditional_writes`` the lock is created with a create-if-absent put
    and a stale lock is replaced with a put conditioned on the ETag we read, so
    two concurrent takeovers cannot both win. Without it, acquisition is a plain
    read-then-write and two simultaneous callers may both believe they hold it.
    """

    def __init__(
        self,
        store: S3ObjectStore,
        bucket: str,
        timeout_ms: int = ENRICHMENT_TIMEOUT_MS,
        conditional_writes: bool = True,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.bucket = bucket
        self.timeout_ms = timeout_ms
        self.conditional_writes = conditional_writes
        self._clock = clock
        self._logger = logger or logging.getLogger("auditworker.lock")

    def acquire(self, site_id: str, lock_id: str, audit_id: str) -> LockResult:
        key = lock_key(site_id, lock_id)
        if not self.conditional_writes:
            return self._acquire_unconditional(key, site_id, lock_id, audit_id)

        existing: dict[str, Any] | None = None
        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            try:
                self.store.put_json(
                    self.bucket, key, self._new_lock(site_id, lock_id, audit_id), if_none_match=True
                )
                self._log_acquired(site_id, lock_id, audit_id)
                return LockResult(acquired=True)
            except PreconditionFailed:
                pass
            try:
                existing, etag = self.store.get_json_with_etag(self.bucket, key)
            except ObjectNotFound:
                continue
            age = self._lock_age_ms(existing)
            if age is not None and age < self.timeout_ms:
                return LockResult(acquired=False, existing_lock=existing)
            try:
                self.store.put_json(
                    self.bucket,
                    key,
                    self._new_lock(site_id, lock_id, audit_id),
                    if_match=etag,
                )
            except PreconditionFailed:
                continue
            self._log_takeover(site_id, lock_id, existing, age)
            return LockResult(acquired=True)
        log_event(
            self._logger,
            logging.WARNING,
            "enrichment_lock_contended",
            site_id=site_id,
            lock_id=lock_id,
            audit_id=audit_id,
        )
        return LockResult(acquired=False, existing_lock=existing)

    def _acquire_unconditional(
        self, key: str, site_id: str, lock_id: str, audit_id: str
    ) -> LockResult:
        try:
            existing = self.store.get_json(self.bucket, key)
        except ObjectNotFound:
            existing = None
        if existing is not None:
            age = self._lock_age_ms(existing)
            if age is not None and age < self.timeout_ms:
                return LockResult(acquired=False, existing_lock=existing)
        self.store.put_json(self.bucket, key, self._new_lock(site_id, lock_id, audit_id))
        if existing is not None:
            self._log_takeover(site_id, lock_id, existing, self._lock_age_ms(existing))
        else:
            self._log_acquired(site_id, lock_id, audit_id)
        return LockResult(acquired=True)

    def read(self, site_id: str, lock_id: str) -> dict[str, Any] | None:
        try:
            lock = self.store.get_json(self.bucket, lock_key(site_id, lock_id))
        except ObjectNotFound:
            return None
        return lock if isinstance(lock, dict) else None

    def check_conflict(self, site_id: str, lock_id: str, audit_id: str) -> ConflictCheck:
        try:
            lock = self.store.get_json(self.bucket, lock_key(site_id, lock_id))
        except ObjectNotFound:
            return ConflictCheck(has_conflict=True, reason=REASON_LOCK_MISSING)
        holder = lock.get("auditId") if isinstance(lock, dict) else None
        if holder != audit_id:
            return ConflictCheck(
                has_conflict=True,
                reason=REASON_LOCK_STOLEN,
                newer_audit_id=holder,
            )
        return ConflictCheck(has_conflict=False)

    def release(self, site_id: str, lock_id: str, audit_id: str | None = None) -> bool:
        """Delete the lock; with ``audit_id`` only while that audit still holds it.

        Returns True when the lock document was deleted by this call.
        """
        key = lock_key(site_id, lock_id)
        try:
            if audit_id is not None:
                try:
                    lock = self.store.get_json(self.bucket, key)
                except ObjectNotFound:
                    return False
                holder = lock.get("auditId") if isinstance(lock, dict) else None
                if holder != audit_id:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "enrichment_lock_release_skipped",
                        site_id=site_id,
                        lock_id=lock_id,
                        audit_id=audit_id,
                        holder=holder,
                    )
                    return False
            self.store.delete(self.bucket, key)
        except ObjectStoreError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "enrichment_lock_release_failed",
                site_id=site_id,
                lock_id=lock_id,
                error=str(exc),
            )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "enrichment_lock_released",
            site_id=site_id,
            lock_id=lock_id,
        )
        return True

    def is_timed_out(self, metadata: EnrichmentMetadata | dict[str, Any] | None) -> bool:
        if metadata is None:
            return False
        if isinstance(metadata, EnrichmentMetadata):
            created_at = metadata.created_at
        elif isinstance(metadata, dict):
            created_at = metadata.get("createdAt")
        else:
            return False
        if not created_at or not isinstance(created_at, str):
            return False
        try:
            created = parse_iso(created_at)
        except ValueError:
            return False
        return elapsed_ms(created, self._clock()) >= self.timeout_ms

    def _new_lock(self, site_id: str, lock_id: str, audit_id: str) -> dict[str, Any]:
        return EnrichmentLock(
            audit_id=audit_id,
            site_id=site_id,
            lock_id=lock_id,
            started_at=self._clock().isoformat(),
        ).to_dict()

    def _lock_age_ms(self, lock: Any) -> int | None:
        # None means the lock carries no usable timestamp and is treated as abandoned.
        started_at = lock.get("startedAt") if isinstance(lock, dict) else None
        if not started_at or not isinstance(started_at, str):
            return None
        try:
            return elapsed_ms(parse_iso(started_at), self._clock())
        except ValueError:
            return None

    def _log_acquired(self, site_id: str, lock_id: str, audit_id: str) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "enrichment_lock_acquired",
            site_id=site_id,
            lock_id=lock_id,
            audit_id=audit_id,
        )

    def _log_takeover(
        self, site_id: str, lock_id: str, existing: Any, age_ms: int | None
    ) -> None:
        previous = existing.get("auditId") if isinstance(existing, dict) else None
        log_event(
            self._logger,
            logging.WARNING,
            "enrichment_lock_expired",
            site_id=site_id,
            lock_id=lock_id,
            previous_audit_id=previous,
            elapsed_ms=age_ms if age_ms is not None else "unknown",
        )

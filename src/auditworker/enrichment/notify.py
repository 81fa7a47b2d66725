from __future__ import annotations

import logging
import uuid
from typing import Any

from ..messaging import SqsQueue
from ..models import EnrichmentMetadata
from ..objectstore import S3ObjectStore, detection_payload_key
from ..utils import log_event
from .constants import GEO_BRAND_PRESENCE_DAILY_OPPTY_TYPE, GEO_BRAND_PRESENCE_OPPTY_TYPE


def transform_provider(provider: str) -> str:
    return provider.strip().lower()


def build_detection_message(
    metadata: EnrichmentMetadata, provider: str, presigned_url: str
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "type": (
            GEO_BRAND_PRESENCE_DAILY_OPPTY_TYPE
            if metadata.is_daily
            else GEO_BRAND_PRESENCE_OPPTY_TYPE
        ),
        "siteId": metadata.site_id,
        "url": metadata.base_url,
        "auditId": metadata.audit_id,
        "deliveryType": metadata.delivery_type,
        "presigned_url": presigned_url,
        "web_search_provider": transform_provider(provider),
        "week": metadata.date_context.week,
        "year": metadata.date_context.year,
        "config_version": metadata.config_version if metadata.config_exists else None,
    }
    if metadata.is_daily:
        message["date"] = metadata.date_context.date
    return message


class DetectionNotifier:
    """Hands prompts to the detection engine: one message per search provider."""

    def __init__(
        self,
        store: S3ObjectStore | None,
        bucket: str,
        queue: SqsQueue | None,
        mystique_queue: str,
        presign_expires_seconds: int = 86400,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.bucket = bucket
        self.queue = queue
        self.mystique_queue = mystique_queue
        self.presign_expires_seconds = presign_expires_seconds
        self._logger = logger or logging.getLogger("auditworker.notify")

    def send(self, prompts: list[dict[str, Any]], metadata: EnrichmentMetadata) -> int:
        if self.store is None:
            raise RuntimeError("object store is not configured")
        if self.queue is None:
            raise RuntimeError("message queue is not configured")
        key = detection_payload_key(str(uuid.uuid4()))
        self.store.put_json(self.bucket, key, prompts)
        presigned_url = self.store.presigned_get_url(
            self.bucket, key, self.presign_expires_seconds
        )
        sent = 0
        for provider in metadata.providers_to_use:
            self.queue.send_message(
                self.mystique_queue,
                build_detection_message(metadata, provider, presigned_url),
            )
            log_event(
                self._logger,
                logging.DEBUG,
                "detection_message_sent",
                site_id=metadata.site_id,
                provider=provider,
            )
            sent += 1
        log_event(
            self._logger,
            logging.INFO,
            "detection_messages_sent",
            site_id=metadata.site_id,
            audit_id=metadata.audit_id,
            count=sent,
        )
        return sent

    def send_fallback(self, prompts: list[dict[str, Any]], metadata: EnrichmentMetadata) -> bool:
        log_event(
            self._logger,
            logging.WARNING,
            "detection_fallback_sending",
            audit_id=metadata.audit_id,
        )
        try:
            self.send(prompts, metadata)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "detection_fallback_failed",
                audit_id=metadata.audit_id,
                error=str(exc),
            )
            return False
        return True

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import boto3

from .config import Config
from .enrichment.batch import BatchProcessor
from .enrichment.driver import ContinuationDriver
from .enrichment.jobs import EnrichmentJobStore
from .enrichment.links import ContentSearchLinkGenerator
from .enrichment.lock import LockManager
from .enrichment.notify import DetectionNotifier
from .enrichment.trigger import EnrichmentTrigger
from .messaging import SqsQueue
from .objectstore import S3ObjectStore
from .storage import EventRecorder, get_site


@dataclass(frozen=True)
class Services:
    store: S3ObjectStore
    queue: SqsQueue
    jobs: EnrichmentJobStore
    locks: LockManager
    notifier: DetectionNotifier
    driver: ContinuationDriver
    trigger: EnrichmentTrigger


def build_clients(config: Config) -> tuple[Any, Any]:
    kwargs: dict[str, Any] = {"region_name": config.storage.region}
    if config.storage.endpoint_url:
        kwargs["endpoint_url"] = config.storage.endpoint_url
    return boto3.client("s3", **kwargs), boto3.client("sqs", **kwargs)


def build_services(
    conn: Any,
    config: Config,
    s3_client: Any = None,
    sqs_client: Any = None,
    logger: logging.Logger | None = None,
) -> Services:
    """Wire the enrichment components for one configuration snapshot."""
    if s3_client is None or sqs_client is None:
        built_s3, built_sqs = build_clients(config)
        s3_client = s3_client or built_s3
        sqs_client = sqs_client or built_sqs

    bucket = config.storage.bucket
    store = S3ObjectStore(s3_client)
    queue = SqsQueue(sqs_client)
    jobs = EnrichmentJobStore(store, bucket)
    locks = LockManager(
        store,
        bucket,
        timeout_ms=config.enrichment.timeout_seconds * 1000,
        conditional_writes=config.storage.conditional_writes,
    )
    notifier = DetectionNotifier(
        store,
        bucket,
        queue,
        config.queues.mystique,
        presign_expires_seconds=config.enrichment.presign_expires_seconds,
    )
    generator = ContentSearchLinkGenerator(
        config.link_search.base_url,
        timeout_seconds=config.link_search.timeout_seconds,
        max_results=config.link_search.max_results,
        api_key=os.environ.get("AW_LINK_SEARCH_API_KEY") or None,
    )
    driver = ContinuationDriver(
        find_site=lambda site_id: get_site(conn, site_id),
        jobs=jobs,
        locks=locks,
        processor=BatchProcessor(generator),
        notifier=notifier,
        queue=queue,
        audits_queue=config.queues.audits,
        batch_size=config.enrichment.batch_size,
        record_event=EventRecorder(conn),
        logger=logger,
    )
    trigger = EnrichmentTrigger(
        jobs=jobs,
        locks=locks,
        queue=queue,
        audits_queue=config.queues.audits,
        notifier=notifier,
    )
    return Services(
        store=store,
        queue=queue,
        jobs=jobs,
        locks=locks,
        notifier=notifier,
        driver=driver,
        trigger=trigger,
    )

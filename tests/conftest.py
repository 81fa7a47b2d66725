from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError

from auditworker.enrichment.batch import BatchProcessor
from auditworker.enrichment.driver import ContinuationDriver
from auditworker.enrichment.jobs import EnrichmentJobStore
from auditworker.enrichment.links import LinkGenerationError
from auditworker.enrichment.lock import LockManager
from auditworker.enrichment.notify import DetectionNotifier
from auditworker.enrichment.trigger import EnrichmentTrigger
from auditworker.messaging import SqsQueue
from auditworker.models import DateContext, EnrichmentRequest, Site
from auditworker.objectstore import S3ObjectStore

BUCKET = "test-bucket"
AUDITS_QUEUE = "audit-jobs"
MYSTIQUE_QUEUE = "spacecat-to-mystique"
START = datetime(2025, 3, 18, 12, 0, tzinfo=timezone.utc)


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class FakeS3Client:
    """In-memory S3 honouring IfNoneMatch/IfMatch the way the real service does."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.fail_puts: set[str] = set()
        self.fail_gets: set[str] = set()
        self.fail_deletes = False
        self.put_keys: list[str] = []
        self._etag = 0

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        if Key in self.fail_gets:
            raise client_error("AccessDenied", "GetObject")
        if (Bucket, Key) not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        body, etag = self.objects[(Bucket, Key)]
        return {"Body": FakeBody(body), "ETag": etag}

    def put_object(
        self,
        Bucket: str,
        Key: str,
        Body: bytes,
        ContentType: str | None = None,
        IfNoneMatch: str | None = None,
        IfMatch: str | None = None,
    ) -> dict[str, Any]:
        current = self.objects.get((Bucket, Key))
        if IfNoneMatch == "*" and current is not None:
            raise client_error("PreconditionFailed", "PutObject")
        if IfMatch is not None and (current is None or current[1] != IfMatch):
            raise client_error("PreconditionFailed", "PutObject")
        if Key in self.fail_puts:
            raise client_error("InternalError", "PutObject")
        self._etag += 1
        etag = f'"etag-{self._etag}"'
        self.objects[(Bucket, Key)] = (Body, etag)
        self.put_keys.append(Key)
        return {"ETag": etag}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        if self.fail_deletes:
            raise client_error("InternalError", "DeleteObject")
        self.objects.pop((Bucket, Key), None)
        return {}

    def generate_presigned_url(self, operation: str, Params: dict, ExpiresIn: int) -> str:
        return f"https://s3.example.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"

    def load(self, bucket: str, key: str) -> Any:
        body, _ = self.objects[(bucket, key)]
        return json.loads(body)

    def store(self, bucket: str, key: str, value: Any) -> None:
        self.put_object(Bucket=bucket, Key=key, Body=json.dumps(value).encode("utf-8"))

    def has(self, bucket: str, key: str) -> bool:
        return (bucket, key) in self.objects


class FakeSqsClient:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.inbox: dict[str, list[str]] = {}
        self.deleted: list[tuple[str, str]] = []
        self._receipt = 0

    def get_queue_url(self, QueueName: str) -> dict[str, str]:
        return {"QueueUrl": f"https://sqs.example.test/123/{QueueName}"}

    def send_message(self, QueueUrl: str, MessageBody: str) -> dict[str, str]:
        self.sent.append((QueueUrl, json.loads(MessageBody)))
        return {"MessageId": str(len(self.sent))}

    def receive_message(
        self, QueueUrl: str, MaxNumberOfMessages: int, WaitTimeSeconds: int
    ) -> dict[str, Any]:
        pending = self.inbox.get(QueueUrl, [])
        taken, self.inbox[QueueUrl] = pending[:MaxNumberOfMessages], pending[MaxNumberOfMessages:]
        messages = []
        for body in taken:
            self._receipt += 1
            messages.append({"ReceiptHandle": f"receipt-{self._receipt}", "Body": body})
        return {"Messages": messages} if messages else {}

    def delete_message(self, QueueUrl: str, ReceiptHandle: str) -> dict[str, Any]:
        self.deleted.append((QueueUrl, ReceiptHandle))
        return {}

    def enqueue(self, queue_name: str, body: Any) -> None:
        url = self.get_queue_url(queue_name)["QueueUrl"]
        raw = body if isinstance(body, str) else json.dumps(body)
        self.inbox.setdefault(url, []).append(raw)

    def bodies(self, queue_name: str) -> list[dict[str, Any]]:
        url = self.get_queue_url(queue_name)["QueueUrl"]
        return [body for queue_url, body in self.sent if queue_url == url]


class Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLinkGenerator:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.calls: list[str] = []
        self.fail_on = fail_on or set()
        self.on_call = None

    def links_for_prompt(self, prompt: str, site: Site) -> list[str]:
        self.calls.append(prompt)
        if self.on_call is not None:
            self.on_call(prompt)
        if prompt in self.fail_on:
            raise LinkGenerationError("search unavailable")
        slug = prompt.lower().replace(" ", "-")
        return [f"{site.get_base_url()}/{slug}"]


@dataclass
class Harness:
    s3: FakeS3Client
    sqs: FakeSqsClient
    clock: Clock
    generator: FakeLinkGenerator
    jobs: EnrichmentJobStore
    locks: LockManager
    notifier: DetectionNotifier
    driver: ContinuationDriver
    trigger: EnrichmentTrigger
    sites: dict[str, Site]
    events: list[tuple] = field(default_factory=list)

    def continuations(self) -> list[dict[str, Any]]:
        return self.sqs.bodies(AUDITS_QUEUE)

    def detections(self) -> list[dict[str, Any]]:
        return self.sqs.bodies(MYSTIQUE_QUEUE)

    def drain(self, max_steps: int = 50) -> list[Any]:
        """Feed every pending continuation message to the driver, in order."""
        responses = []
        handled = 0
        while handled < len(self.continuations()) and len(responses) < max_steps:
            message = self.continuations()[handled]
            handled += 1
            responses.append(self.driver.handle(message))
        return responses


def make_site(site_id: str = "site-1") -> Site:
    return Site(id=site_id, base_url="https://www.example.com", delivery_type="aem_edge")


def make_prompts(count: int, with_url: set[int] | None = None) -> list[dict[str, Any]]:
    with_url = with_url or set()
    prompts = []
    for index in range(count):
        prompts.append(
            {
                "prompt": f"prompt {index}",
                "region": "US",
                "url": f"https://www.example.com/known-{index}" if index in with_url else "",
            }
        )
    return prompts


def make_request(
    prompts: list[dict[str, Any]],
    site: Site | None = None,
    audit_id: str = "audit-1",
    providers: list[str] | None = None,
    is_daily: bool = False,
) -> EnrichmentRequest:
    return EnrichmentRequest(
        audit_id=audit_id,
        site=site or make_site(),
        prompts=prompts,
        date_context=DateContext(week=12, year=2025, date="2025-03-18" if is_daily else None),
        providers_to_use=providers if providers is not None else ["chatgpt", "gemini"],
        is_daily=is_daily,
        config_version="v3",
        config_exists=True,
    )


def build_harness(
    batch_size: int = 10,
    conditional_writes: bool = True,
    s3: FakeS3Client | None = None,
) -> Harness:
    s3 = s3 or FakeS3Client()
    sqs = FakeSqsClient()
    clock = Clock()
    generator = FakeLinkGenerator()
    store = S3ObjectStore(s3)
    queue = SqsQueue(sqs)
    jobs = EnrichmentJobStore(store, BUCKET)
    locks = LockManager(store, BUCKET, conditional_writes=conditional_writes, clock=clock)
    notifier = DetectionNotifier(store, BUCKET, queue, MYSTIQUE_QUEUE)
    site = make_site()
    sites = {site.get_id(): site}
    events: list[tuple] = []
    driver = ContinuationDriver(
        find_site=sites.get,
        jobs=jobs,
        locks=locks,
        processor=BatchProcessor(generator),
        notifier=notifier,
        queue=queue,
        audits_queue=AUDITS_QUEUE,
        batch_size=batch_size,
        record_event=lambda *args: events.append(args),
    )
    trigger = EnrichmentTrigger(
        jobs=jobs,
        locks=locks,
        queue=queue,
        audits_queue=AUDITS_QUEUE,
        notifier=notifier,
        clock=clock,
    )
    return Harness(
        s3=s3,
        sqs=sqs,
        clock=clock,
        generator=generator,
        jobs=jobs,
        locks=locks,
        notifier=notifier,
        driver=driver,
        trigger=trigger,
        sites=sites,
        events=events,
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("AW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("AW_DB_URL", raising=False)
    monkeypatch.delenv("AW_CONFIG_PATH", raising=False)
    monkeypatch.delenv("AW_ADMIN_TOKEN", raising=False)

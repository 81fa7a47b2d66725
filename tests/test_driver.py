from auditworker.objectstore import lock_key, metadata_key, prompts_key
from auditworker.responses import response_body

from conftest import BUCKET, MYSTIQUE_QUEUE, build_harness, client_error, make_prompts, make_request


def _start(harness, prompts, audit_id="audit-1", **kwargs):
    request = make_request(prompts, audit_id=audit_id, **kwargs)
    assert harness.trigger.send_or_enrich(request) == "enriching"
    return request


def test_driver_walks_batches_and_completes_once(harness):
    prompts = make_prompts(23)
    _start(harness, prompts)

    responses = harness.drain()

    assert [response.status_code for response in responses] == [200, 200, 200]
    statuses = [response_body(response)["status"] for response in responses]
    assert statuses == ["processing", "processing", "completed"]
    assert [message["batchStart"] for message in harness.continuations()] == [0, 10, 20]
    assert response_body(responses[0])["remaining"] == 13
    assert response_body(responses[-1])["totalPrompts"] == 23

    stored = harness.s3.load(BUCKET, prompts_key("audit-1"))
    assert all(record["relatedUrl"] for record in stored)
    assert stored[5]["url"] == "https://www.example.com/prompt-5"
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))
    assert len(harness.detections()) == 2
    assert [event[2] for event in harness.events] == ["processing", "processing", "completed"]


def test_driver_enriches_only_detected_indices(harness):
    prompts = make_prompts(4, with_url={1, 2})
    _start(harness, prompts)

    harness.drain()

    assert harness.generator.calls == ["prompt 0", "prompt 3"]
    stored = harness.s3.load(BUCKET, prompts_key("audit-1"))
    assert stored[1]["url"] == "https://www.example.com/known-1"
    assert "relatedUrl" not in stored[1]


def test_redelivered_message_after_completion_is_a_noop(harness):
    _start(harness, make_prompts(3))
    harness.drain()
    before = harness.s3.load(BUCKET, prompts_key("audit-1"))
    calls = len(harness.generator.calls)

    response = harness.driver.handle({"auditId": "audit-1", "siteId": "site-1", "batchStart": 0})

    assert response.status_code == 200
    body = response_body(response)
    assert body["status"] == "aborted"
    assert body["reason"] == "lock-missing"
    assert len(harness.generator.calls) == calls
    assert harness.s3.load(BUCKET, prompts_key("audit-1")) == before
    assert len(harness.detections()) == 2


def test_duplicate_in_flight_message_does_not_double_notify(harness):
    _start(harness, make_prompts(5))
    first = {"auditId": "audit-1", "siteId": "site-1", "batchStart": 0}

    harness.driver.handle(first)
    harness.driver.handle(first)

    assert len(harness.detections()) == 2


def test_stolen_lock_aborts_before_any_write(harness):
    _start(harness, make_prompts(3))
    harness.s3.store(
        BUCKET,
        lock_key("site-1", "w12-2025"),
        {"auditId": "audit-2", "siteId": "site-1", "lockId": "w12-2025"},
    )

    responses = harness.drain()

    body = response_body(responses[0])
    assert body == {"status": "aborted", "reason": "lock-stolen", "newerAuditId": "audit-2"}
    assert harness.generator.calls == []
    assert harness.detections() == []


def test_conflict_detected_after_batch_stops_the_chain(harness):
    _start(harness, make_prompts(15))

    def steal(_prompt):
        harness.s3.store(
            BUCKET,
            lock_key("site-1", "w12-2025"),
            {"auditId": "audit-9", "siteId": "site-1", "lockId": "w12-2025"},
        )

    harness.generator.on_call = steal
    responses = harness.drain()

    assert len(responses) == 1
    body = response_body(responses[0])
    assert body["status"] == "aborted"
    assert body["reason"] == "conflict-after-batch"
    assert body["newerAuditId"] == "audit-9"
    assert [message["batchStart"] for message in harness.continuations()] == [0]
    assert harness.detections() == []


def test_timed_out_job_sends_partial_results(harness):
    _start(harness, make_prompts(15))
    harness.drain(max_steps=1)
    harness.clock.advance(minutes=10, seconds=1)

    response = harness.driver.handle(harness.continuations()[1])

    body = response_body(response)
    assert response.status_code == 200
    assert body["status"] == "timeout"
    assert body["sentToMystique"] is True
    assert len(harness.detections()) == 2
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))
    assert len(harness.generator.calls) == 10


def test_missing_site_returns_not_found(harness):
    _start(harness, make_prompts(2))
    harness.sites.clear()

    response = harness.driver.handle({"auditId": "audit-1", "siteId": "site-1", "batchStart": 0})

    assert response.status_code == 404
    assert response_body(response)["message"] == "Site not found"


def test_missing_or_incomplete_metadata_returns_not_found(harness):
    response = harness.driver.handle({"auditId": "nope", "siteId": "site-1", "batchStart": 0})
    assert response.status_code == 404

    harness.s3.store(BUCKET, metadata_key("audit-x"), {"auditId": "audit-x", "siteId": "site-1"})
    response = harness.driver.handle({"auditId": "audit-x", "siteId": "site-1", "batchStart": 0})
    assert response.status_code == 404
    assert harness.detections() == []


def test_invalid_prompts_document_is_an_error_without_fallback(harness):
    _start(harness, make_prompts(2))
    harness.s3.store(BUCKET, prompts_key("audit-1"), {"not": "a list"})

    responses = harness.drain()

    assert responses[0].status_code == 500
    assert response_body(responses[0])["message"] == "Invalid prompts data"
    assert harness.detections() == []


def test_failure_after_loading_sends_fallback_and_releases_lock(harness):
    _start(harness, make_prompts(4))
    harness.s3.fail_puts.add(prompts_key("audit-1"))

    responses = harness.drain()

    assert len(responses) == 1
    assert responses[0].status_code == 500
    assert len(harness.detections()) == 2
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))
    assert harness.events[-1][2] == "failed"


def test_prompt_level_search_failure_does_not_fail_the_batch(harness):
    _start(harness, make_prompts(3))
    harness.generator.fail_on = {"prompt 1"}

    responses = harness.drain()

    assert response_body(responses[-1])["status"] == "completed"
    stored = harness.s3.load(BUCKET, prompts_key("audit-1"))
    assert stored[1]["url"] == ""
    assert stored[2]["url"] == "https://www.example.com/prompt-2"


def test_daily_job_uses_daily_lock_and_detection_type():
    harness = build_harness(batch_size=5)
    _start(harness, make_prompts(3), is_daily=True)

    harness.drain()

    detections = harness.detections()
    assert {message["type"] for message in detections} == {"detect:geo-brand-presence-daily"}
    assert {message["date"] for message in detections} == {"2025-03-18"}
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025-2025-03-18"))


class ExplodingProcessor:
    def process(self, prompts, indices, site):
        raise RuntimeError("search backend crashed")


def test_batch_processor_crash_sends_fallback_and_releases_lock(harness):
    _start(harness, make_prompts(4))
    harness.driver.processor = ExplodingProcessor()

    responses = harness.drain()

    assert len(responses) == 1
    assert responses[0].status_code == 500
    assert response_body(responses[0])["message"] == "search backend crashed"
    assert len(harness.detections()) == 2
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))


def test_timeout_with_missing_prompts_still_releases_lock(harness):
    _start(harness, make_prompts(15))
    harness.drain(max_steps=1)
    del harness.s3.objects[(BUCKET, prompts_key("audit-1"))]
    harness.clock.advance(minutes=10, seconds=1)

    response = harness.driver.handle(harness.continuations()[1])

    assert response.status_code == 200
    body = response_body(response)
    assert body["status"] == "timeout"
    assert body["sentToMystique"] is False
    assert harness.detections() == []
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))


def test_late_message_for_timed_out_job_leaves_new_owner_alone(harness):
    _start(harness, make_prompts(15))
    harness.drain(max_steps=1)
    harness.clock.advance(minutes=10, seconds=1)
    _start(harness, make_prompts(3), audit_id="audit-2")
    late = harness.continuations()[1]
    assert late["auditId"] == "audit-1"

    response = harness.driver.handle(late)

    body = response_body(response)
    assert body == {"status": "aborted", "reason": "lock-stolen", "newerAuditId": "audit-2"}
    assert harness.s3.load(BUCKET, lock_key("site-1", "w12-2025"))["auditId"] == "audit-2"
    assert harness.detections() == []

    fresh = harness.driver.handle(harness.continuations()[2])
    assert response_body(fresh)["status"] == "completed"
    assert {message["auditId"] for message in harness.detections()} == {"audit-2"}
    assert len(harness.detections()) == 2


def test_second_timeout_delivery_does_not_resend(harness):
    _start(harness, make_prompts(15))
    harness.drain(max_steps=1)
    harness.clock.advance(minutes=10, seconds=1)
    late = harness.continuations()[1]

    harness.driver.handle(late)
    response = harness.driver.handle(late)

    assert response_body(response)["status"] == "aborted"
    assert response_body(response)["reason"] == "lock-missing"
    assert len(harness.detections()) == 2


def test_partial_final_send_is_not_followed_by_fallback(harness, monkeypatch):
    _start(harness, make_prompts(3))
    mystique_url = harness.sqs.get_queue_url(MYSTIQUE_QUEUE)["QueueUrl"]
    original = harness.sqs.send_message

    def flaky_send(QueueUrl, MessageBody):
        if QueueUrl == mystique_url and harness.detections():
            raise client_error("InternalError", "SendMessage")
        return original(QueueUrl=QueueUrl, MessageBody=MessageBody)

    monkeypatch.setattr(harness.sqs, "send_message", flaky_send)

    responses = harness.drain()

    assert responses[-1].status_code == 500
    providers = [message["web_search_provider"] for message in harness.detections()]
    assert providers == ["chatgpt"]
    assert not harness.s3.has(BUCKET, lock_key("site-1", "w12-2025"))


def test_non_numeric_batch_start_is_an_error_response(harness):
    _start(harness, make_prompts(2))

    response = harness.driver.handle({"auditId": "audit-1", "siteId": "site-1", "batchStart": "abc"})

    assert response.status_code == 500
    assert harness.generator.calls == []
    assert harness.detections() == []
    assert harness.events[-1][2] == "failed"

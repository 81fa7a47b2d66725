from __future__ import annotations

import argparse
import logging
import os
import time
from typing import Any

import jsonschema

from .config import ConfigError, load_runtime_config
from .enrichment.constants import URL_ENRICHMENT_TYPE
from .enrichment.driver import ContinuationDriver
from .messaging import QueueError
from .responses import response_body
from .services import build_services
from .storage import init_db
from .utils import configure_logging, log_event

MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {"type": {"type": "string", "minLength": 1}},
}

ENRICHMENT_MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "auditId", "siteId"],
    "properties": {
        "type": {"const": URL_ENRICHMENT_TYPE},
        "auditId": {"type": "string", "minLength": 1},
        "siteId": {"type": "string", "minLength": 1},
        "batchStart": {"type": "integer", "minimum": 0},
    },
}


class MessageValidationError(ValueError):
    pass


def validate_message(body: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(body, MESSAGE_SCHEMA)
        if body["type"] == URL_ENRICHMENT_TYPE:
            jsonschema.validate(body, ENRICHMENT_MESSAGE_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise MessageValidationError(exc.message) from exc
    return body


def _setup_logging() -> logging.Logger:
    return configure_logging("auditworker.worker")


def process_message(
    driver: ContinuationDriver, body: Any, logger: logging.Logger
) -> int | None:
    """Dispatch one decoded queue body; return the driver's status code if it ran."""
    try:
        message = validate_message(body)
    except MessageValidationError as exc:
        log_event(logger, logging.WARNING, "message_invalid", error=str(exc))
        return None
    if message["type"] != URL_ENRICHMENT_TYPE:
        log_event(logger, logging.WARNING, "message_unsupported", type=message["type"])
        return None
    response = driver.handle(message)
    body_out = response_body(response) or {}
    log_event(
        logger,
        logging.INFO,
        "message_handled",
        audit_id=message.get("auditId"),
        status_code=response.status_code,
        status=body_out.get("status") or body_out.get("message"),
    )
    return response.status_code


def run_once(
    max_messages: int = 1,
    wait_seconds: int = 20,
    s3_client: Any = None,
    sqs_client: Any = None,
) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        services = build_services(conn, config, s3_client, sqs_client)
        audits_queue = config.queues.audits
        try:
            messages = services.queue.receive(audits_queue, max_messages, wait_seconds)
        except QueueError as exc:
            log_event(logger, logging.ERROR, "queue_receive_failed", error=str(exc))
            return 1
        for receipt, body in messages:
            try:
                process_message(services.driver, body, logger)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.ERROR, "message_failed", error=str(exc))
            try:
                services.queue.delete(audits_queue, receipt)
            except QueueError as exc:
                log_event(logger, logging.WARNING, "queue_delete_failed", error=str(exc))
        return 0
    finally:
        conn.close()


def run_loop(sleep_seconds: int, max_messages: int = 1, wait_seconds: int = 20) -> int:
    while True:
        run_once(max_messages, wait_seconds)
        time.sleep(sleep_seconds)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="auditworker-worker")
    parser.add_argument("--once", action="store_true", help="Poll the queue once and exit")
    parser.add_argument("--sleep", type=int, default=1, help="Sleep seconds between polls")
    parser.add_argument(
        "--max-messages",
        type=int,
        default=int(os.environ.get("AW_WORKER_MAX_MESSAGES", "1")),
        help="Messages to receive per poll (1-10)",
    )
    parser.add_argument("--wait-seconds", type=int, default=20, help="Long-poll wait")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.max_messages, args.wait_seconds)
    return run_loop(args.sleep, args.max_messages, args.wait_seconds)


if __name__ == "__main__":
    raise SystemExit(main())

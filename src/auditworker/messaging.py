from __future__ import annotations

import json
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from .utils import json_dumps, log_event


class QueueError(RuntimeError):
    pass


class SqsQueue:
    def __init__(self, client: Any, logger: logging.Logger | None = None) -> None:
        self._client = client
        self._urls: dict[str, str] = {}
        self._logger = logger or logging.getLogger("auditworker.messaging")

    def queue_url(self, queue: str) -> str:
        if queue.startswith("https://") or queue.startswith("http://"):
            return queue
        if queue not in self._urls:
            try:
                response = self._client.get_queue_url(QueueName=queue)
            except (BotoCoreError, ClientError) as exc:
                raise QueueError(f"cannot resolve queue {queue}: {exc}") from exc
            self._urls[queue] = response["QueueUrl"]
        return self._urls[queue]

    def send_message(self, queue: str, payload: dict[str, Any]) -> None:
        url = self.queue_url(queue)
        try:
            self._client.send_message(QueueUrl=url, MessageBody=json_dumps(payload))
        except (BotoCoreError, ClientError) as exc:
            raise QueueError(f"send to {queue} failed: {exc}") from exc
        log_event(
            self._logger,
            logging.DEBUG,
            "queue_message_sent",
            queue=queue,
            type=payload.get("type"),
        )

    def receive(
        self, queue: str, max_messages: int = 1, wait_seconds: int = 20
    ) -> list[tuple[str, Any]]:
        url = self.queue_url(queue)
        try:
            response = self._client.receive_message(
                QueueUrl=url,
                MaxNumberOfMessages=max(1, min(max_messages, 10)),
                WaitTimeSeconds=wait_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise QueueError(f"receive from {queue} failed: {exc}") from exc
        messages = []
        for item in response.get("Messages", []):
            try:
                body = json.loads(item.get("Body") or "")
            except json.JSONDecodeError:
                body = None
            messages.append((item["ReceiptHandle"], body))
        return messages

    def delete(self, queue: str, receipt_handle: str) -> None:
        url = self.queue_url(queue)
        try:
            self._client.delete_message(QueueUrl=url, ReceiptHandle=receipt_handle)
        except (BotoCoreError, ClientError) as exc:
            raise QueueError(f"delete from {queue} failed: {exc}") from exc

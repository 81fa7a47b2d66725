from __future__ import annotations

import json
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

URL_ENRICHMENT_PREFIX = "temp/url-enrichment"
LOCK_PREFIX = "temp/url-enrichment-locks"
DETECTION_PAYLOAD_PREFIX = "temp/geo-brand-presence"

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}


class ObjectStoreError(RuntimeError):
    pass


class ObjectNotFound(ObjectStoreError):
    pass


class PreconditionFailed(ObjectStoreError):
    pass


def metadata_key(audit_id: str) -> str:
    return f"{URL_ENRICHMENT_PREFIX}/{audit_id}/metadata.json"


def prompts_key(audit_id: str) -> str:
    return f"{URL_ENRICHMENT_PREFIX}/{audit_id}/prompts.json"


def lock_key(site_id: str, lock_id: str) -> str:
    return f"{LOCK_PREFIX}/{site_id}/{lock_id}.json"


def detection_payload_key(token: str) -> str:
    return f"{DETECTION_PAYLOAD_PREFIX}/{token}/prompts.json"


class S3ObjectStore:
    """JSON documents in S3 with the error codes folded into three exceptions."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def get_json(self, bucket: str, key: str) -> Any:
        value, _ = self.get_json_with_etag(bucket, key)
        return value

    def get_json_with_etag(self, bucket: str, key: str) -> tuple[Any, str | None]:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            body = response.get("Body")
            raw = body.read() if body is not None else b""
        except ClientError as exc:
            raise _translate(exc, bucket, key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"s3://{bucket}/{key}: {exc}") from exc
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if not raw:
            return {}, response.get("ETag")
        try:
            return json.loads(raw), response.get("ETag")
        except json.JSONDecodeError as exc:
            raise ObjectStoreError(f"s3://{bucket}/{key} is not valid JSON") from exc

    def put_json(
        self,
        bucket: str,
        key: str,
        value: Any,
        *,
        if_none_match: bool = False,
        if_match: str | None = None,
    ) -> str | None:
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": json.dumps(value).encode("utf-8"),
            "ContentType": "application/json",
        }
        if if_none_match:
            params["IfNoneMatch"] = "*"
        if if_match:
            params["IfMatch"] = if_match
        try:
            response = self._client.put_object(**params)
        except ClientError as exc:
            raise _translate(exc, bucket, key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"s3://{bucket}/{key}: {exc}") from exc
        return response.get("ETag")

    def delete(self, bucket: str, key: str) -> None:
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            raise _translate(exc, bucket, key) from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"s3://{bucket}/{key}: {exc}") from exc

    def presigned_get_url(self, bucket: str, key: str, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"cannot presign s3://{bucket}/{key}: {exc}") from exc


def _translate(exc: ClientError, bucket: str, key: str) -> ObjectStoreError:
    error = exc.response.get("Error", {}) if hasattr(exc, "response") else {}
    code = str(error.get("Code") or "")
    message = f"s3://{bucket}/{key}: {code or exc}"
    if code in _NOT_FOUND_CODES:
        return ObjectNotFound(message)
    if code in _PRECONDITION_CODES:
        return PreconditionFailed(message)
    return ObjectStoreError(message)

from __future__ import annotations

from typing import Any

from ..models import EnrichmentMetadata
from ..objectstore import ObjectNotFound, S3ObjectStore, metadata_key, prompts_key


class EnrichmentJobStore:
    """Metadata and prompt documents of one enrichment run, keyed by audit id."""

    def __init__(self, store: S3ObjectStore, bucket: str) -> None:
        self.store = store
        self.bucket = bucket

    def save_metadata(self, metadata: EnrichmentMetadata | dict[str, Any]) -> None:
        data = metadata.to_dict() if isinstance(metadata, EnrichmentMetadata) else dict(metadata)
        self.store.put_json(self.bucket, metadata_key(str(data["auditId"])), data)

    def load_metadata(self, audit_id: str) -> dict[str, Any] | None:
        try:
            data = self.store.get_json(self.bucket, metadata_key(audit_id))
        except ObjectNotFound:
            return None
        return data if isinstance(data, dict) else None

    def save_prompts(self, audit_id: str, prompts: list[dict[str, Any]]) -> None:
        self.store.put_json(self.bucket, prompts_key(audit_id), prompts)

    def load_prompts(self, audit_id: str) -> Any:
        return self.store.get_json(self.bucket, prompts_key(audit_id))

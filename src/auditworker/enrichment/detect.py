from __future__ import annotations

from typing import Any, Iterable

from ..models import EnrichmentNeed


def detect_indices_needing_enrichment(records: Iterable[Any]) -> EnrichmentNeed:
    """Return the positions of records with prompt text but no usable URL.

    Order follows the input. Records without prompt text are never selected,
    whatever their URL looks like.
    """
    indices: list[int] = []
    for index, record in enumerate(records or []):
        if not isinstance(record, dict):
            continue
        if not _has_text(record.get("prompt")):
            continue
        if _has_text(record.get("url")):
            continue
        indices.append(index)
    return EnrichmentNeed(needs_enrichment=bool(indices), indices_to_enrich=indices)


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())

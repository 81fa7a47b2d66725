from __future__ import annotations

import logging
from typing import Any, Sequence

from ..models import Site
from ..utils import log_event
from .links import LinkGenerator


class BatchProcessor:
    def __init__(self, generator: LinkGenerator, logger: logging.Logger | None = None) -> None:
        self.generator = generator
        self._logger = logger or logging.getLogger("auditworker.batch")

    def process(self, prompts: list[dict[str, Any]], indices: Sequence[int], site: Site) -> int:
        """Enrich ``prompts`` in place at ``indices``; return how many changed."""
        changed = 0
        for index in indices:
            if index < 0 or index >= len(prompts):
                log_event(self._logger, logging.DEBUG, "enrich_index_out_of_range", index=index)
                continue
            record = prompts[index]
            text = record.get("prompt") if isinstance(record, dict) else None
            if not isinstance(text, str) or not text.strip():
                continue
            try:
                urls = self.generator.links_for_prompt(text.strip(), site)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.WARNING,
                    "enrich_prompt_failed",
                    index=index,
                    site_id=site.get_id(),
                    error=str(exc),
                )
                continue
            if not urls:
                log_event(self._logger, logging.DEBUG, "enrich_prompt_no_links", index=index)
                continue
            first = urls[0]
            record["relatedUrl"] = first
            if not str(record.get("url") or "").strip():
                record["url"] = first
            changed += 1
        return changed

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Protocol
from urllib.parse import urlsplit

from ..models import Site
from ..utils import log_event


class LinkGenerationError(RuntimeError):
    pass


class LinkGenerator(Protocol):
    def links_for_prompt(self, prompt: str, site: Site) -> list[str]:
        ...


class ContentSearchLinkGenerator:
    """Ask the site content search service for pages matching a prompt."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        max_results: int = 5,
        api_key: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_results = max_results
        self.api_key = api_key
        self._logger = logger or logging.getLogger("auditworker.links")

    def links_for_prompt(self, prompt: str, site: Site) -> list[str]:
        if not self.base_url:
            raise LinkGenerationError("link search base_url is not configured")
        payload = {
            "query": prompt,
            "baseURL": site.get_base_url(),
            "limit": self.max_results,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        request = urllib.request.Request(
            f"{self.base_url}/search",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except (urllib.error.URLError, TimeoutError) as exc:
            log_event(self._logger, logging.WARNING, "link_search_failed", error=str(exc))
            raise LinkGenerationError(str(exc)) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LinkGenerationError("link search returned invalid JSON") from exc
        return _same_host_urls(data.get("results") or [], site.get_base_url())


def _same_host_urls(results: list[object], base_url: str) -> list[str]:
    host = _host(base_url)
    urls: list[str] = []
    for item in results:
        url = item.get("url") if isinstance(item, dict) else item
        if not isinstance(url, str) or not url.strip():
            continue
        if host and _host(url) != host:
            continue
        if url not in urls:
            urls.append(url)
    return urls


def _host(url: str) -> str:
    netloc = urlsplit(url if "://" in url else f"https://{url}").netloc.lower()
    return netloc[4:] if netloc.startswith("www.") else netloc

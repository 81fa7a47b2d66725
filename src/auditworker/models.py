from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Site:
    id: str
    base_url: str
    delivery_type: str
    name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def get_id(self) -> str:
        return self.id

    def get_base_url(self) -> str:
        return self.base_url

    def get_delivery_type(self) -> str:
        return self.delivery_type


@dataclass(frozen=True)
class DateContext:
    week: int
    year: int
    date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"week": self.week, "year": self.year}
        if self.date:
            data["date"] = self.date
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DateContext":
        data = data or {}
        return cls(
            week=int(data.get("week") or 0),
            year=int(data.get("year") or 0),
            date=data.get("date") or None,
        )


@dataclass(frozen=True)
class EnrichmentMetadata:
    audit_id: str
    site_id: str
    lock_id: str
    base_url: str
    delivery_type: str
    date_context: DateContext
    providers_to_use: list[str]
    is_daily: bool
    config_version: str | None
    config_exists: bool
    indices_to_enrich: list[int]
    total_prompts: int
    created_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "auditId": self.audit_id,
            "siteId": self.site_id,
            "lockId": self.lock_id,
            "baseURL": self.base_url,
            "deliveryType": self.delivery_type,
            "dateContext": self.date_context.to_dict(),
            "providersToUse": list(self.providers_to_use),
            "isDaily": self.is_daily,
            "configVersion": self.config_version,
            "configExists": self.config_exists,
            "indicesToEnrich": list(self.indices_to_enrich),
            "totalPrompts": self.total_prompts,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnrichmentMetadata":
        return cls(
            audit_id=str(data.get("auditId") or ""),
            site_id=str(data.get("siteId") or ""),
            lock_id=str(data.get("lockId") or ""),
            base_url=str(data.get("baseURL") or ""),
            delivery_type=str(data.get("deliveryType") or ""),
            date_context=DateContext.from_dict(data.get("dateContext")),
            providers_to_use=[str(item) for item in data.get("providersToUse") or []],
            is_daily=bool(data.get("isDaily")),
            config_version=data.get("configVersion"),
            config_exists=bool(data.get("configExists")),
            indices_to_enrich=[int(item) for item in data.get("indicesToEnrich") or []],
            total_prompts=int(data.get("totalPrompts") or 0),
            created_at=data.get("createdAt"),
        )


@dataclass(frozen=True)
class EnrichmentLock:
    audit_id: str
    site_id: str
    lock_id: str
    started_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "auditId": self.audit_id,
            "siteId": self.site_id,
            "lockId": self.lock_id,
            "startedAt": self.started_at,
        }


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    existing_lock: dict[str, Any] | None = None


@dataclass(frozen=True)
class ConflictCheck:
    has_conflict: bool
    reason: str | None = None
    newer_audit_id: str | None = None


@dataclass(frozen=True)
class EnrichmentNeed:
    needs_enrichment: bool
    indices_to_enrich: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class EnrichmentRequest:
    audit_id: str
    site: Site
    prompts: list[dict[str, Any]]
    date_context: DateContext
    providers_to_use: list[str]
    is_daily: bool = False
    config_version: str | None = None
    config_exists: bool = False

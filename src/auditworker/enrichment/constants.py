from __future__ import annotations

ENRICHMENT_TIMEOUT_MS = 10 * 60 * 1000
URL_ENRICHMENT_BATCH_SIZE = 10
URL_ENRICHMENT_TYPE = "enrich:geo-brand-presence-json"

GEO_BRAND_PRESENCE_OPPTY_TYPE = "detect:geo-brand-presence"
GEO_BRAND_PRESENCE_DAILY_OPPTY_TYPE = "detect:geo-brand-presence-daily"

REASON_LOCK_MISSING = "lock-missing"
REASON_LOCK_STOLEN = "lock-stolen"

"""
Aggregated usage analytics over rewrite history and scam patterns.
"""

import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from saferewriter.models.rewrite_history import RewriteHistory
from saferewriter.services import history_service, pattern_service
from saferewriter.services.cache_service import CacheStore

DEFAULT_WINDOW_DAYS = 30
TREND_LIMIT = 10
TOP_REGIONS_LIMIT = 10


def _filters(start, end, region, user_id) -> list:
    filters = []
    if start is not None:
        filters.append(RewriteHistory.created_at >= start)
    if end is not None:
        filters.append(RewriteHistory.created_at <= end)
    if region:
        filters.append(RewriteHistory.region == region)
    if user_id:
        filters.append(RewriteHistory.user_id == user_id)
    return filters


def filter_digest(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    region: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    raw = json.dumps(
        {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "region": region,
            "userId": user_id,
        },
        sort_keys=True,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def compute_analytics(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    region: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    filters = _filters(start, end, region, user_id)
    summary = history_service.get_summary(db, filters)

    regions = history_service.stats_by_region(db, filters)[:TOP_REGIONS_LIMIT]

    # dailyStats always has a bounded window; region/user filters still apply
    window_end = end or datetime.utcnow()
    window_start = start or window_end - timedelta(days=DEFAULT_WINDOW_DAYS)
    daily = history_service.stats_by_date(
        db, window_start, window_end, _filters(None, None, region, user_id)
    )

    trends = [
        {"pattern": p.category, "frequency": p.frequency, "trend": "stable"}
        for p in pattern_service.find_trending(db, limit=TREND_LIMIT)
    ]

    return {
        **summary,
        "topRegions": [{"region": r["region"], "count": r["count"]} for r in regions],
        "dailyStats": daily,
        "patternTrends": trends,
    }


async def get_analytics(
    db: Session,
    cache: CacheStore,
    ttl: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    region: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """compute_analytics behind a short-lived cache keyed by the filter set."""
    key = CacheStore.analytics_key(filter_digest(start, end, region, user_id))
    cached = await cache.get(key)
    if cached is not None:
        return cached

    data = compute_analytics(db, start, end, region, user_id)
    await cache.set(key, data, ttl)
    return data

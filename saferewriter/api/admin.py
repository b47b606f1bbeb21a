"""
Admin API endpoints for SafeRewriter management.

Includes:
- Metrics and monitoring
- Cache inspection and flushing
- History retention and stale pattern cleanup
- Pattern and user statistics
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from saferewriter.api.deps import get_cache, get_db, get_settings
from saferewriter.api.responses import success_response
from saferewriter.api.security import verify_api_token
from saferewriter.config import Settings
from saferewriter.errors import CacheServiceError
from saferewriter.models.scam_pattern import PatternCategory, Severity
from saferewriter.services import history_service, pattern_service, user_service
from saferewriter.services.cache_service import CacheStore
from saferewriter.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_api_token)],
)


# ============== METRICS ==============


@router.get("/metrics")
async def get_metrics():
    """Counters, gauges and timing percentiles collected since start (or last reset)."""
    return success_response(metrics.get_stats())


@router.post("/metrics/reset")
async def reset_metrics():
    metrics.reset()
    logger.info("Metrics reset")
    return success_response({"message": "Metrics reset"})


# ============== CACHE ==============


@router.get("/cache/stats")
async def get_cache_stats(cache: CacheStore = Depends(get_cache)):
    return success_response(await cache.get_stats())


@router.post("/cache/clear")
async def clear_cache(cache: CacheStore = Depends(get_cache)):
    if not cache.is_enabled:
        raise CacheServiceError("Cache is disabled")
    if not await cache.clear():
        raise CacheServiceError("Failed to clear cache")
    return success_response({"message": "Cache cleared"})


# ============== CLEANUP ==============


@router.post("/history/cleanup")
async def cleanup_history(
    days: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Delete rewrite history older than `days` (defaults to the retention setting)."""
    days = days or settings.history_retention_days
    deleted = history_service.cleanup_old_records(db, days=days)
    return success_response({"deleted": deleted, "days": days})


@router.post("/patterns/cleanup")
async def cleanup_patterns(
    days: Optional[int] = Query(None, ge=1),
    max_frequency: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Deactivate rarely seen patterns that have gone quiet."""
    days = days or settings.pattern_inactive_days
    max_frequency = max_frequency or settings.pattern_inactive_max_frequency
    updated = pattern_service.deactivate_stale_patterns(db, days=days, max_frequency=max_frequency)
    return success_response({"deactivated": updated, "days": days, "maxFrequency": max_frequency})


# ============== STATISTICS ==============


@router.get("/patterns/stats")
async def get_pattern_stats(db: Session = Depends(get_db)):
    return success_response({
        "overall": pattern_service.get_stats(db),
        "byCategory": pattern_service.stats_by_category(db),
        "bySeverity": pattern_service.stats_by_severity(db),
    })


@router.get("/patterns")
async def list_patterns(
    category: Optional[PatternCategory] = None,
    severity: Optional[Severity] = None,
    db: Session = Depends(get_db),
):
    """Active patterns filtered by category or severity, most frequent first."""
    if category is not None:
        patterns = pattern_service.find_by_category(db, category)
        if severity is not None:
            patterns = [p for p in patterns if p.severity == severity.value]
    elif severity is not None:
        patterns = pattern_service.find_by_severity(db, severity)
    else:
        patterns = pattern_service.find_trending(db, limit=100)
    return success_response({"patterns": [p.to_dict() for p in patterns]})


@router.get("/users/stats")
async def get_user_stats(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return success_response({
        "usage": user_service.get_usage_stats(db),
        "topUsers": user_service.get_top_users(db, limit=limit),
        "history": history_service.stats_by_region(db),
    })

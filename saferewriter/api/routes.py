"""
Public /api endpoints: rewrite, history, analytics, patterns, users.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from saferewriter.api.deps import get_cache, get_db, get_rewrite_service, get_settings
from saferewriter.api.responses import success_response
from saferewriter.api.security import (
    RateLimit,
    create_access_token,
    get_current_user,
    get_optional_user,
    verify_api_token,
)
from saferewriter.config import Settings
from saferewriter.errors import ValidationError
from saferewriter.models.user import User
from saferewriter.schemas.rewrite_schemas import (
    PatternReportRequest,
    PatternReportResult,
    Region,
    RewriteRequest,
    TrendingPattern,
    UserCreateRequest,
)
from saferewriter.services import analytics_service, history_service, pattern_service, user_service
from saferewriter.services.cache_service import CacheStore
from saferewriter.services.rewrite_service import RewriteService
from saferewriter.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

# General per-IP limit on every /api route; per-operation policies stack on top
router = APIRouter(prefix="/api", tags=["api"], dependencies=[Depends(RateLimit("general"))])

TRENDING_EXAMPLES = 3


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============== REWRITE ==============


@router.post("/rewrite", dependencies=[Depends(RateLimit("rewrite"))])
async def rewrite_message(
    body: RewriteRequest,
    user: Optional[User] = Depends(get_optional_user),
    service: RewriteService = Depends(get_rewrite_service),
    db: Session = Depends(get_db),
):
    """
    Rewrite a suspicious message as an official-style communication.

    Repeated (message, region) pairs are served from cache.
    """
    user_id = user.id if user else body.userId
    result, cached = await service.analyze(db, body.message, body.region, user_id)

    metrics.increment("api.rewrite.total")
    return success_response(result.model_dump(), cached=cached)


# ============== HISTORY ==============


@router.get("/history", dependencies=[Depends(RateLimit("user", per_user=True))])
async def get_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Literal["created_at", "response_time_ms", "red_flags_fixed", "region"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    page_data = history_service.list_for_user(db, user.id, page=page, limit=limit, sort=sort, order=order)
    return success_response(page_data)


# ============== ANALYTICS ==============


@router.get(
    "/analytics",
    dependencies=[Depends(verify_api_token), Depends(RateLimit("analytics"))],
)
async def get_analytics(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    region: Optional[Region] = None,
    userId: Optional[str] = Query(None, min_length=1, max_length=100),
    db: Session = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    settings: Settings = Depends(get_settings),
):
    start, end = _naive_utc(startDate), _naive_utc(endDate)
    if start and end and start > end:
        raise ValidationError("startDate must be before endDate", field="startDate", value=startDate.isoformat())

    data = await analytics_service.get_analytics(
        db,
        cache,
        settings.analytics_cache_ttl,
        start=start,
        end=end,
        region=region,
        user_id=userId,
    )
    return success_response(data)


# ============== PATTERNS ==============


@router.post("/patterns", dependencies=[Depends(RateLimit("pattern"))])
async def report_pattern(
    body: PatternReportRequest,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    pattern = pattern_service.find_or_create_pattern(db, body.message, body.category, body.severity)

    logger.info(
        "Scam pattern reported",
        pattern_id=pattern.id,
        category=body.category.value,
        severity=body.severity.value,
        user_id=user.id if user else None,
    )
    result = PatternReportResult(patternId=pattern.id, frequency=pattern.frequency)
    return success_response(result.model_dump())


@router.get("/patterns/trending")
async def get_trending_patterns(
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    patterns = [
        TrendingPattern(
            id=p.id,
            category=p.category,
            frequency=p.frequency,
            severity=p.severity,
            lastSeen=p.last_seen,
            examples=list(p.examples or [])[:TRENDING_EXAMPLES],
        ).model_dump(mode="json")
        for p in pattern_service.find_trending(db, limit=limit)
    ]
    return success_response({"patterns": patterns})


# ============== USERS ==============


@router.post("/users", status_code=status.HTTP_201_CREATED)
async def register_user(
    body: UserCreateRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    user = user_service.create_user(db, body.email, body.preferences.model_dump())
    token = create_access_token(user.id, settings)
    return success_response({"user": user.to_dict(), "token": token})


@router.get("/users/me", dependencies=[Depends(RateLimit("user", per_user=True))])
async def get_me(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheStore = Depends(get_cache),
    settings: Settings = Depends(get_settings),
):
    key = CacheStore.user_stats_key(user.id)
    stats = await cache.get(key)
    if stats is None:
        stats = history_service.get_user_stats(db, user.id)
        await cache.set(key, stats, settings.user_stats_cache_ttl)

    return success_response({"user": user.to_dict(), "stats": stats})

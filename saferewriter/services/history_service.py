"""
Rewrite history repository: append-only request log plus its aggregates.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from saferewriter.errors import DatabaseServiceError, ValidationError
from saferewriter.models.rewrite_history import RewriteHistory
from saferewriter.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

SORTABLE_FIELDS = {
    "created_at": RewriteHistory.created_at,
    "response_time_ms": RewriteHistory.response_time_ms,
    "red_flags_fixed": RewriteHistory.red_flags_fixed,
    "region": RewriteHistory.region,
}


def record_rewrite(
    db: Session,
    original_message: str,
    safe_version: str,
    region: str,
    response_time_ms: int,
    cached: bool,
    red_flags_fixed: int,
    differences: List[Dict[str, str]],
    user_id: Optional[str] = None,
) -> RewriteHistory:
    """
    Append one history row.

    Raises:
        ValidationError: no differences, or red_flags_fixed outside [0, 10]
        DatabaseServiceError: the insert failed
    """
    if not differences:
        raise ValidationError("At least one difference must be provided", field="differences")
    if not 0 <= red_flags_fixed <= 10:
        raise ValidationError(
            "Red flags fixed must be between 0 and 10",
            field="red_flags_fixed",
            value=red_flags_fixed,
        )

    record = RewriteHistory(
        user_id=user_id,
        original_message=original_message,
        safe_version=safe_version,
        region=region,
        response_time_ms=max(0, int(response_time_ms)),
        cached=cached,
        red_flags_fixed=red_flags_fixed,
        differences=differences,
    )

    try:
        db.add(record)
        db.commit()
        db.refresh(record)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to save rewrite history", error=str(e))
        raise DatabaseServiceError() from e

    return record


def list_for_user(
    db: Session,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    sort: str = "created_at",
    order: str = "desc",
) -> Dict[str, Any]:
    """One page of a user's history with pagination metadata."""
    column = SORTABLE_FIELDS.get(sort)
    if column is None:
        raise ValidationError(
            f"sort must be one of: {', '.join(SORTABLE_FIELDS)}", field="sort", value=sort
        )
    ordering = column.asc() if order == "asc" else column.desc()

    try:
        query = db.query(RewriteHistory).filter(RewriteHistory.user_id == user_id)
        total = query.count()
        rows = (
            query.order_by(ordering, RewriteHistory.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    pages = math.ceil(total / limit) if limit else 0
    return {
        "data": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": pages,
            "hasNext": page < pages,
            "hasPrev": page > 1,
        },
    }


def stats_by_region(db: Session, filters: Optional[list] = None) -> List[Dict[str, Any]]:
    """Per-region counts, busiest region first."""
    count = func.count(RewriteHistory.id)
    try:
        rows = (
            db.query(
                RewriteHistory.region,
                count,
                func.avg(RewriteHistory.response_time_ms),
                func.avg(RewriteHistory.red_flags_fixed),
            )
            .filter(*(filters or []))
            .group_by(RewriteHistory.region)
            .order_by(count.desc(), RewriteHistory.region)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return [
        {
            "region": region,
            "count": n,
            "averageResponseTime": round(float(avg_time or 0)),
            "averageRedFlagsFixed": round(float(avg_flags or 0), 2),
        }
        for region, n, avg_time, avg_flags in rows
    ]


def stats_by_date(
    db: Session,
    start: datetime,
    end: datetime,
    filters: Optional[list] = None,
) -> List[Dict[str, Any]]:
    """Daily counts between start and end (inclusive), oldest first."""
    day = func.date(RewriteHistory.created_at)
    try:
        rows = (
            db.query(day, func.count(RewriteHistory.id), func.avg(RewriteHistory.response_time_ms))
            .filter(RewriteHistory.created_at >= start, RewriteHistory.created_at <= end)
            .filter(*(filters or []))
            .group_by(day)
            .order_by(day)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return [
        {"date": str(d), "count": n, "averageResponseTime": round(float(avg or 0))}
        for d, n, avg in rows
    ]


def get_user_stats(db: Session, user_id: str) -> Dict[str, Any]:
    try:
        total, avg_time, avg_flags, first, last = (
            db.query(
                func.count(RewriteHistory.id),
                func.avg(RewriteHistory.response_time_ms),
                func.avg(RewriteHistory.red_flags_fixed),
                func.min(RewriteHistory.created_at),
                func.max(RewriteHistory.created_at),
            )
            .filter(RewriteHistory.user_id == user_id)
            .one()
        )
        regions = [
            r for (r,) in db.query(RewriteHistory.region)
            .filter(RewriteHistory.user_id == user_id)
            .distinct()
            .order_by(RewriteHistory.region)
        ]
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return {
        "totalRewrites": total or 0,
        "averageResponseTime": round(float(avg_time or 0)),
        "averageRedFlagsFixed": round(float(avg_flags or 0), 2),
        "firstRewrite": first.isoformat() if first else None,
        "lastRewrite": last.isoformat() if last else None,
        "regions": regions,
    }


def get_summary(db: Session, filters: Optional[list] = None) -> Dict[str, Any]:
    """Totals over the filtered history: count, distinct users, avg latency, cache hit rate."""
    try:
        total, users, avg_time, hit_rate = (
            db.query(
                func.count(RewriteHistory.id),
                func.count(func.distinct(RewriteHistory.user_id)),
                func.avg(RewriteHistory.response_time_ms),
                func.avg(case((RewriteHistory.cached.is_(True), 1.0), else_=0.0)),
            )
            .filter(*(filters or []))
            .one()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return {
        "totalRewrites": total or 0,
        "uniqueUsers": users or 0,
        "averageResponseTime": round(float(avg_time or 0)),
        "cacheHitRate": round(float(hit_rate or 0), 2),
    }


def cleanup_old_records(db: Session, days: int = 30) -> int:
    """Delete rows older than `days`; returns the number removed."""
    cutoff = datetime.utcnow() - timedelta(days=days)
    try:
        deleted = (
            db.query(RewriteHistory)
            .filter(RewriteHistory.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseServiceError() from e

    logger.info("Old rewrite history removed", deleted=deleted, days=days)
    return deleted

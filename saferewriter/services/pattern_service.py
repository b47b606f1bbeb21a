"""
Scam pattern repository.

A pattern is identified by a hash of the normalized message and its
category; repeat observations bump its frequency instead of adding rows.
"""

import hashlib
from datetime import datetime, timedelta
from typing import Any, Dict, List, Union

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from saferewriter.errors import DatabaseServiceError, ValidationError
from saferewriter.models.scam_pattern import MAX_EXAMPLES, PatternCategory, ScamPattern, Severity
from saferewriter.utils.logging_config import StructuredLogger, metrics
from saferewriter.utils.preprocessing import normalize_text

logger = StructuredLogger(__name__)


def _value(enum_or_str: Union[PatternCategory, Severity, str]) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


def generate_pattern_hash(message: str, category: Union[PatternCategory, str]) -> str:
    key = normalize_text(message).lower() + "|" + _value(category)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _bump(db: Session, pattern_hash: str, severity: str, now: datetime) -> int:
    """Atomically count a repeat observation; returns the number of rows matched."""
    return (
        db.query(ScamPattern)
        .filter(ScamPattern.pattern_hash == pattern_hash)
        .update(
            {
                ScamPattern.frequency: ScamPattern.frequency + 1,
                ScamPattern.last_seen: now,
                ScamPattern.severity: severity,
                ScamPattern.is_active: True,
            },
            synchronize_session=False,
        )
    )


def _add_example(db: Session, pattern_hash: str, message: str) -> ScamPattern:
    pattern = (
        db.query(ScamPattern)
        .filter(ScamPattern.pattern_hash == pattern_hash)
        .populate_existing()
        .one()
    )
    examples = list(pattern.examples or [])
    if message not in examples and len(examples) < MAX_EXAMPLES:
        # reassign so the JSON column is flagged dirty
        pattern.examples = examples + [message]
    return pattern


def find_or_create_pattern(
    db: Session,
    message: str,
    category: Union[PatternCategory, str],
    severity: Union[Severity, str] = Severity.MEDIUM,
) -> ScamPattern:
    """
    Upsert a pattern observation.

    New hash: insert with frequency 1. Known hash: frequency + 1, last_seen
    refreshed, severity replaced, example appended if new and room remains.
    """
    if not message or not message.strip():
        raise ValidationError("Pattern message cannot be empty", field="message")

    category = _value(category)
    severity = _value(severity)
    if category not in {c.value for c in PatternCategory}:
        raise ValidationError("Invalid pattern category", field="category", value=category)
    if severity not in {s.value for s in Severity}:
        raise ValidationError("Invalid severity", field="severity", value=severity)

    pattern_hash = generate_pattern_hash(message, category)
    now = datetime.utcnow()
    created = False

    try:
        if _bump(db, pattern_hash, severity, now):
            pattern = _add_example(db, pattern_hash, message)
            db.commit()
        else:
            pattern = ScamPattern(
                pattern_hash=pattern_hash,
                category=category,
                severity=severity,
                frequency=1,
                examples=[message],
                created_at=now,
                last_seen=now,
                is_active=True,
            )
            db.add(pattern)
            try:
                db.commit()
                created = True
            except IntegrityError:
                # Lost the insert race to a concurrent request; count as a repeat
                db.rollback()
                _bump(db, pattern_hash, severity, now)
                pattern = _add_example(db, pattern_hash, message)
                db.commit()
        db.refresh(pattern)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to upsert scam pattern", category=category, error=str(e))
        raise DatabaseServiceError() from e

    metrics.increment("patterns.created" if created else "patterns.observed")
    return pattern


def find_trending(db: Session, limit: int = 10) -> List[ScamPattern]:
    """Active patterns by frequency desc, ties broken by most recently seen."""
    try:
        return (
            db.query(ScamPattern)
            .filter(ScamPattern.is_active.is_(True))
            .order_by(ScamPattern.frequency.desc(), ScamPattern.last_seen.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e


def find_by_category(db: Session, category: Union[PatternCategory, str]) -> List[ScamPattern]:
    try:
        return (
            db.query(ScamPattern)
            .filter(ScamPattern.category == _value(category), ScamPattern.is_active.is_(True))
            .order_by(ScamPattern.frequency.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e


def find_by_severity(db: Session, severity: Union[Severity, str]) -> List[ScamPattern]:
    try:
        return (
            db.query(ScamPattern)
            .filter(ScamPattern.severity == _value(severity), ScamPattern.is_active.is_(True))
            .order_by(ScamPattern.frequency.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e


def get_stats(db: Session) -> Dict[str, Any]:
    try:
        total, active, total_freq, avg_freq = db.query(
            func.count(ScamPattern.id),
            func.sum(case((ScamPattern.is_active.is_(True), 1), else_=0)),
            func.sum(ScamPattern.frequency),
            func.avg(ScamPattern.frequency),
        ).one()
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return {
        "totalPatterns": total or 0,
        "activePatterns": int(active or 0),
        "totalFrequency": int(total_freq or 0),
        "averageFrequency": round(float(avg_freq or 0), 2),
    }


def _grouped_stats(db: Session, column, key: str, with_active: bool) -> List[Dict[str, Any]]:
    total_freq = func.sum(ScamPattern.frequency)
    columns = [column, func.count(ScamPattern.id), total_freq, func.avg(ScamPattern.frequency)]
    if with_active:
        columns.append(func.sum(case((ScamPattern.is_active.is_(True), 1), else_=0)))

    try:
        rows = db.query(*columns).group_by(column).order_by(total_freq.desc(), column).all()
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    results = []
    for row in rows:
        item = {
            key: row[0],
            "count": row[1],
            "totalFrequency": int(row[2] or 0),
            "averageFrequency": round(float(row[3] or 0), 2),
        }
        if with_active:
            item["activeCount"] = int(row[4] or 0)
        results.append(item)
    return results


def stats_by_category(db: Session) -> List[Dict[str, Any]]:
    return _grouped_stats(db, ScamPattern.category, "category", with_active=True)


def stats_by_severity(db: Session) -> List[Dict[str, Any]]:
    return _grouped_stats(db, ScamPattern.severity, "severity", with_active=False)


def deactivate_stale_patterns(db: Session, days: int = 90, max_frequency: int = 5) -> int:
    """Deactivate rare patterns not seen for `days`; returns the number changed."""
    cutoff = datetime.utcnow() - timedelta(days=days)
    try:
        updated = (
            db.query(ScamPattern)
            .filter(
                ScamPattern.last_seen < cutoff,
                ScamPattern.frequency < max_frequency,
                ScamPattern.is_active.is_(True),
            )
            .update({ScamPattern.is_active: False}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseServiceError() from e

    logger.info("Stale scam patterns deactivated", updated=updated, days=days)
    return updated

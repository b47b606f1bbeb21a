"""
User repository: registration, lookup and usage counters.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from saferewriter.errors import ConflictError, DatabaseServiceError
from saferewriter.models.user import User, default_preferences
from saferewriter.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


def create_user(db: Session, email: str, preferences: Optional[Dict[str, str]] = None) -> User:
    """
    Register a new user.

    Raises:
        ConflictError: the (lower-cased) email is already registered
    """
    email = email.strip().lower()
    user = User(email=email, preferences={**default_preferences(), **(preferences or {})})

    try:
        db.add(user)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"User with email {email} already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to create user", error=str(e))
        raise DatabaseServiceError() from e

    db.refresh(user)
    logger.info("User created", user_id=user.id)
    return user


def get_user(db: Session, user_id: str) -> Optional[User]:
    try:
        return db.query(User).filter(User.id == user_id).first()
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e


def get_by_email(db: Session, email: str) -> Optional[User]:
    try:
        return db.query(User).filter(User.email == email.strip().lower()).first()
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e


def increment_usage(db: Session, user_id: str) -> bool:
    """
    Atomically bump usage_count and last_active.

    Returns False when no such user exists.
    """
    try:
        updated = (
            db.query(User)
            .filter(User.id == user_id)
            .update(
                {User.usage_count: User.usage_count + 1, User.last_active: datetime.utcnow()},
                synchronize_session=False,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to increment usage", user_id=user_id, error=str(e))
        raise DatabaseServiceError() from e

    return updated > 0


def get_usage_stats(db: Session) -> Dict[str, Any]:
    try:
        total, active, total_usage, avg_usage = db.query(
            func.count(User.id),
            func.sum(case((User.is_active.is_(True), 1), else_=0)),
            func.coalesce(func.sum(User.usage_count), 0),
            func.avg(User.usage_count),
        ).one()
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return {
        "totalUsers": total or 0,
        "activeUsers": int(active or 0),
        "totalUsage": int(total_usage or 0),
        "averageUsage": round(float(avg_usage or 0), 2),
    }


def get_top_users(db: Session, limit: int = 10) -> List[Dict[str, Any]]:
    try:
        users = (
            db.query(User)
            .filter(User.is_active.is_(True))
            .order_by(User.usage_count.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseServiceError() from e

    return [
        {
            "id": u.id,
            "email": u.email,
            "usage_count": u.usage_count,
            "last_active": u.last_active.isoformat() if u.last_active else None,
        }
        for u in users
    ]

import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON

from saferewriter.database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def default_preferences() -> dict:
    return {"region": "US", "language": "en"}


class User(Base):
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, index=True, nullable=False)  # stored lower-cased

    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_active = Column(DateTime, default=datetime.utcnow, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    preferences = Column(JSON, nullable=False, default=default_preferences)  # {"region": "US", "language": "en"}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "usage_count": self.usage_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "is_active": self.is_active,
            "preferences": self.preferences or default_preferences(),
        }

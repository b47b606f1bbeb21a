import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, Index

from saferewriter.database import Base


class RewriteHistory(Base):
    """Append-only log of orchestrated rewrite requests."""
    __tablename__ = "rewrite_history"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = Column(String(100), nullable=True, index=True)

    original_message = Column(Text, nullable=False)
    safe_version = Column(Text, nullable=False)
    region = Column(String(2), nullable=False, default="US", index=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    response_time_ms = Column(Integer, nullable=False, default=0)
    cached = Column(Boolean, nullable=False, default=False, index=True)
    red_flags_fixed = Column(Integer, nullable=False, default=0)

    differences = Column(JSON, nullable=False)  # [{"aspect", "scam", "official", "status"}]

    __table_args__ = (
        Index("ix_rewrite_history_user_created", "user_id", "created_at"),
        Index("ix_rewrite_history_region_created", "region", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "original_message": self.original_message,
            "safe_version": self.safe_version,
            "region": self.region,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "response_time_ms": self.response_time_ms,
            "cached": self.cached,
            "red_flags_fixed": self.red_flags_fixed,
            "differences": self.differences or [],
        }

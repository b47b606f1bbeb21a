"""
Scam pattern model: frequency-tracked categories of observed scam messages.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, Index

from saferewriter.database import Base


MAX_EXAMPLES = 10


class PatternCategory(str, enum.Enum):
    PHISHING = "phishing"
    URGENT_PAYMENT = "urgent_payment"
    FAKE_LINKS = "fake_links"
    PERSONAL_INFO = "personal_info"
    SUSPICIOUS_ATTACHMENTS = "suspicious_attachments"
    FAKE_AUTHORITY = "fake_authority"
    TOO_GOOD_TO_BE_TRUE = "too_good_to_be_true"
    PRESSURE_TACTICS = "pressure_tactics"
    GRAMMAR_ERRORS = "grammar_errors"
    SUSPICIOUS_SENDER = "suspicious_sender"
    OTHER = "other"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ScamPattern(Base):
    __tablename__ = "scam_patterns"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    pattern_hash = Column(String(64), unique=True, index=True, nullable=False)

    category = Column(String(32), nullable=False, index=True)    # PatternCategory value
    severity = Column(String(10), nullable=False, default=Severity.MEDIUM.value)
    frequency = Column(Integer, nullable=False, default=1)
    examples = Column(JSON, nullable=False, default=list)        # up to MAX_EXAMPLES raw messages

    created_at = Column(DateTime, default=datetime.utcnow)
    last_seen = Column(DateTime, default=datetime.utcnow, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    __table_args__ = (
        Index("ix_scam_patterns_active_frequency", "is_active", "frequency"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern_hash": self.pattern_hash,
            "category": self.category,
            "severity": self.severity,
            "frequency": self.frequency,
            "examples": list(self.examples or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "is_active": self.is_active,
        }

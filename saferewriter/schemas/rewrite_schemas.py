from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from saferewriter.models.scam_pattern import PatternCategory, Severity
from saferewriter.utils.preprocessing import sanitize_text


Region = Literal["US", "UK", "CA", "AU", "IN", "SG", "DE", "FR", "ES", "IT", "JP", "KR", "BR", "MX"]
Language = Literal["en", "es", "fr", "de", "it", "pt", "ja", "ko", "zh", "hi"]


# ============== ANALYSIS RESULT ==============


class Difference(BaseModel):
    """One aspect where the scam and the official message differ."""
    model_config = ConfigDict(frozen=True)

    aspect: str
    scam: str
    official: str
    status: str


class ToneComparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    scam: str
    official: str


class AnalysisResult(BaseModel):
    """Structured output of rewriting a scam message into a safe version."""
    model_config = ConfigDict(frozen=True)

    original_message: str
    safe_version: str
    differences: List[Difference]
    red_flags_fixed: int = Field(ge=0, le=10)
    tone_comparison: ToneComparison
    key_learning: str = ""


# ============== REQUESTS ==============


class RewriteRequest(BaseModel):
    # Length bounds depend on settings, so they are enforced by the gateway
    message: str
    region: Region = "US"
    userId: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @field_validator("message")
    @classmethod
    def _sanitize_message(cls, value: str) -> str:
        return sanitize_text(value)

    @field_validator("userId")
    @classmethod
    def _strip_user_id(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class PatternReportRequest(BaseModel):
    message: str
    category: PatternCategory
    severity: Severity = Severity.MEDIUM

    @field_validator("message")
    @classmethod
    def _sanitize_message(cls, value: str) -> str:
        return sanitize_text(value)


class UserPreferences(BaseModel):
    region: Region = "US"
    language: Language = "en"


class UserCreateRequest(BaseModel):
    email: str = Field(pattern=r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.\w{2,}$", max_length=255)
    preferences: UserPreferences = UserPreferences()

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


# ============== RESPONSES ==============


class TrendingPattern(BaseModel):
    id: str
    category: str
    frequency: int
    severity: str
    lastSeen: Optional[datetime] = None
    examples: List[str]


class PatternReportResult(BaseModel):
    patternId: str
    frequency: int
    message: str = "Pattern reported successfully"

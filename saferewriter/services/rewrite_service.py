"""
Rewrite orchestration: cache lookup, Gemini call, then best-effort
bookkeeping (cache fill, history, usage counter, pattern learning).
"""

import time
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from saferewriter.errors import DatabaseServiceError, ValidationError
from saferewriter.models.scam_pattern import PatternCategory, Severity
from saferewriter.schemas.rewrite_schemas import AnalysisResult
from saferewriter.services import history_service, pattern_service, user_service
from saferewriter.services.cache_service import CacheStore
from saferewriter.services.gemini_service import GeminiService, validate_message
from saferewriter.utils.logging_config import StructuredLogger, log_execution_time, metrics

logger = StructuredLogger(__name__)

# Logged and counted after a successful rewrite, never raised
BOOKKEEPING_ERRORS = (DatabaseServiceError, ValidationError, SQLAlchemyError)

# First matching rule wins
CATEGORY_KEYWORDS = [
    (("click", "http"), PatternCategory.FAKE_LINKS),
    (("urgent", "immediately"), PatternCategory.URGENT_PAYMENT),
    (("password", "pin"), PatternCategory.PERSONAL_INFO),
    (("bank", "account"), PatternCategory.FAKE_AUTHORITY),
    (("free", "win"), PatternCategory.TOO_GOOD_TO_BE_TRUE),
]


def categorize_message(message: str) -> PatternCategory:
    lowered = message.lower()
    for keywords, category in CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return PatternCategory.OTHER


def assess_severity(red_flags: int) -> Severity:
    if red_flags >= 7:
        return Severity.CRITICAL
    if red_flags >= 5:
        return Severity.HIGH
    if red_flags >= 3:
        return Severity.MEDIUM
    return Severity.LOW


class RewriteService:
    def __init__(self, gemini: GeminiService, cache: CacheStore, settings):
        self.gemini = gemini
        self.cache = cache
        self.cache_ttl = settings.cache_ttl
        self.max_message_length = settings.max_message_length

    @log_execution_time("saferewriter.rewrite")
    async def analyze(
        self,
        db: Session,
        message: str,
        region: str = "US",
        user_id: Optional[str] = None,
    ) -> Tuple[AnalysisResult, bool]:
        """
        Rewrite a message, serving repeats from cache.

        Returns (result, cached). Gateway errors propagate unchanged;
        bookkeeping failures are logged and never fail the request.
        """
        validate_message(message, self.max_message_length)
        start = time.time()
        cache_key = CacheStore.rewrite_key(message, region)

        cached = await self.cache.get(cache_key)
        if cached is not None:
            try:
                result = AnalysisResult.model_validate(cached)
            except ValueError:
                # Unreadable entry: drop it and fall through to the gateway
                await self.cache.delete(cache_key)
            else:
                metrics.increment("rewrite.cache_hits")
                logger.info("Cache hit for rewrite request", message_length=len(message), region=region)
                self._record_history(db, message, result, region, user_id, start, cached=True)
                self._increment_usage(db, user_id)
                return result, True

        metrics.increment("rewrite.cache_misses")
        result = await self.gemini.rewrite(message, region)

        await self.cache.set(cache_key, result.model_dump(), self.cache_ttl)
        self._record_history(db, message, result, region, user_id, start, cached=False)
        self._increment_usage(db, user_id)
        self._learn_pattern(db, message, result)

        logger.info(
            "Rewrite completed",
            message_length=len(message),
            region=region,
            response_time_ms=self._elapsed_ms(start),
            red_flags_fixed=result.red_flags_fixed,
            user_id=user_id,
        )
        return result, False

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.time() - start) * 1000)

    def _record_history(self, db, message: str, result: AnalysisResult, region, user_id, start, cached: bool):
        try:
            history_service.record_rewrite(
                db,
                original_message=message,
                safe_version=result.safe_version,
                region=region,
                response_time_ms=self._elapsed_ms(start),
                cached=cached,
                red_flags_fixed=result.red_flags_fixed,
                differences=[d.model_dump() for d in result.differences],
                user_id=user_id,
            )
        except BOOKKEEPING_ERRORS as e:
            metrics.increment("rewrite.bookkeeping_errors")
            logger.warning("Rewrite history not saved", error=str(e), cached=cached)

    def _increment_usage(self, db, user_id: Optional[str]):
        if not user_id:
            return
        try:
            user_service.increment_usage(db, user_id)
        except BOOKKEEPING_ERRORS as e:
            metrics.increment("rewrite.bookkeeping_errors")
            logger.warning("Usage counter not updated", user_id=user_id, error=str(e))

    def _learn_pattern(self, db, message: str, result: AnalysisResult):
        try:
            pattern_service.find_or_create_pattern(
                db,
                message,
                categorize_message(message),
                assess_severity(result.red_flags_fixed),
            )
        except BOOKKEEPING_ERRORS as e:
            metrics.increment("rewrite.bookkeeping_errors")
            logger.warning("Scam pattern not recorded", error=str(e))

"""Tests for the scam pattern repository."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from saferewriter.database import init_db, make_engine, make_session_factory
from saferewriter.errors import DatabaseServiceError, ValidationError
from saferewriter.models.scam_pattern import MAX_EXAMPLES, PatternCategory, ScamPattern, Severity
from saferewriter.services import pattern_service
from saferewriter.utils.logging_config import metrics


class TestPatternHash:
    def test_hash_normalizes_whitespace_and_case(self):
        a = pattern_service.generate_pattern_hash("  Click HERE   now ", PatternCategory.FAKE_LINKS)
        b = pattern_service.generate_pattern_hash("click here now", "fake_links")
        assert a == b
        assert len(a) == 64

    def test_hash_includes_category(self):
        a = pattern_service.generate_pattern_hash("click here", PatternCategory.FAKE_LINKS)
        b = pattern_service.generate_pattern_hash("click here", PatternCategory.PHISHING)
        assert a != b


class TestFindOrCreatePattern:
    def test_first_observation_creates_pattern(self, test_db):
        pattern = pattern_service.find_or_create_pattern(test_db, "Click here to win", PatternCategory.FAKE_LINKS)
        assert pattern.id is not None
        assert pattern.frequency == 1
        assert pattern.examples == ["Click here to win"]
        assert pattern.severity == "medium"
        assert pattern.is_active is True

    def test_repeat_observation_increments(self, test_db):
        first = pattern_service.find_or_create_pattern(test_db, "Click here to win", "fake_links", Severity.LOW)
        first_seen = first.last_seen

        second = pattern_service.find_or_create_pattern(test_db, "Click here to win", "fake_links", Severity.HIGH)

        assert second.id == first.id
        assert second.frequency == 2
        assert second.last_seen >= first_seen
        assert second.severity == "high"
        assert second.examples == ["Click here to win"]
        assert test_db.query(ScamPattern).count() == 1

    def test_variant_spelling_adds_example(self, test_db):
        pattern_service.find_or_create_pattern(test_db, "Click here to win", "fake_links")
        pattern = pattern_service.find_or_create_pattern(test_db, "click  HERE to win", "fake_links")

        assert pattern.frequency == 2
        assert pattern.examples == ["Click here to win", "click  HERE to win"]

    def test_examples_capped(self, test_db):
        base = "claim your prize"
        variants = [base.upper()] + [base[:i].upper() + base[i:] for i in range(1, 15)]
        for text in variants:
            pattern = pattern_service.find_or_create_pattern(test_db, text, "too_good_to_be_true")

        assert pattern.frequency == len(variants)
        assert len(pattern.examples) == MAX_EXAMPLES
        assert len(set(pattern.examples)) == MAX_EXAMPLES

    def test_reobservation_reactivates(self, test_db):
        pattern = pattern_service.find_or_create_pattern(test_db, "old scam", "other")
        pattern.is_active = False
        test_db.commit()

        pattern = pattern_service.find_or_create_pattern(test_db, "old scam", "other")
        assert pattern.is_active is True

    def test_invalid_input_rejected(self, test_db):
        with pytest.raises(ValidationError):
            pattern_service.find_or_create_pattern(test_db, "   ", "other")
        with pytest.raises(ValidationError):
            pattern_service.find_or_create_pattern(test_db, "text", "not_a_category")
        with pytest.raises(ValidationError):
            pattern_service.find_or_create_pattern(test_db, "text", "other", "extreme")

    def test_metrics_distinguish_new_and_repeat(self, test_db):
        pattern_service.find_or_create_pattern(test_db, "verify your account", "phishing")
        pattern_service.find_or_create_pattern(test_db, "verify your account", "phishing")

        assert metrics.get_counter("patterns.created") == 1
        assert metrics.get_counter("patterns.observed") == 1

    def test_lost_insert_race_counts_as_repeat(self, test_db, monkeypatch):
        pattern_service.find_or_create_pattern(test_db, "verify your account", "phishing")
        metrics.reset()

        real_bump = pattern_service._bump
        calls = []

        def miss_first(*args):
            calls.append(args)
            # the first lookup misses as if the row was inserted right after it
            return 0 if len(calls) == 1 else real_bump(*args)

        monkeypatch.setattr(pattern_service, "_bump", miss_first)
        pattern = pattern_service.find_or_create_pattern(test_db, "verify your account", "phishing")

        assert len(calls) == 2
        assert pattern.frequency == 2
        assert test_db.query(ScamPattern).count() == 1
        assert metrics.get_counter("patterns.observed") == 1
        assert metrics.get_counter("patterns.created") == 0

    def test_refresh_failure_is_a_database_error(self, test_db, monkeypatch):
        def broken_refresh(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection lost"))

        monkeypatch.setattr(test_db, "refresh", broken_refresh)
        with pytest.raises(DatabaseServiceError):
            pattern_service.find_or_create_pattern(test_db, "verify your account", "phishing")


class TestConcurrentObservations:
    @pytest.fixture
    def sessions(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'patterns.db'}")
        init_db(engine)
        factory = make_session_factory(engine)
        first, second = factory(), factory()
        yield first, second
        first.close()
        second.close()
        engine.dispose()

    def test_increment_applies_on_top_of_other_sessions(self, sessions):
        first, second = sessions
        pattern_service.find_or_create_pattern(first, "send your otp", "personal_info")
        # first now holds a loaded copy with frequency 1
        assert first.query(ScamPattern).one().frequency == 1

        pattern_service.find_or_create_pattern(second, "send your otp", "personal_info")
        pattern = pattern_service.find_or_create_pattern(first, "send your otp", "personal_info")

        assert pattern.frequency == 3
        second.expire_all()
        assert second.query(ScamPattern).one().frequency == 3


class TestQueries:
    @pytest.fixture
    def seeded(self, test_db):
        for _ in range(3):
            pattern_service.find_or_create_pattern(test_db, "click this link", "fake_links", "high")
        for _ in range(2):
            pattern_service.find_or_create_pattern(test_db, "send your pin", "personal_info", "critical")
        pattern_service.find_or_create_pattern(test_db, "you won a car", "too_good_to_be_true", "low")
        return test_db

    def test_trending_orders_by_frequency(self, seeded):
        trending = pattern_service.find_trending(seeded, limit=2)
        assert [p.category for p in trending] == ["fake_links", "personal_info"]
        assert [p.frequency for p in trending] == [3, 2]

    def test_trending_excludes_inactive(self, seeded):
        top = pattern_service.find_trending(seeded, limit=1)[0]
        top.is_active = False
        seeded.commit()

        assert "fake_links" not in [p.category for p in pattern_service.find_trending(seeded)]

    def test_find_by_category_and_severity(self, seeded):
        assert [p.frequency for p in pattern_service.find_by_category(seeded, "personal_info")] == [2]
        assert [p.category for p in pattern_service.find_by_severity(seeded, Severity.LOW)] == ["too_good_to_be_true"]

    def test_stats(self, seeded):
        stats = pattern_service.get_stats(seeded)
        assert stats == {"totalPatterns": 3, "activePatterns": 3, "totalFrequency": 6, "averageFrequency": 2.0}

        by_category = pattern_service.stats_by_category(seeded)
        assert by_category[0]["category"] == "fake_links"
        assert by_category[0]["totalFrequency"] == 3
        assert by_category[0]["activeCount"] == 1

        by_severity = {row["severity"]: row for row in pattern_service.stats_by_severity(seeded)}
        assert by_severity["critical"]["totalFrequency"] == 2
        assert "activeCount" not in by_severity["critical"]

    def test_deactivate_stale_patterns(self, seeded):
        old = datetime.utcnow() - timedelta(days=120)
        for pattern in seeded.query(ScamPattern).all():
            pattern.last_seen = old
        seeded.commit()

        changed = pattern_service.deactivate_stale_patterns(seeded, days=90, max_frequency=3)

        # only frequency < 3 is considered rare
        assert changed == 2
        active = [p.category for p in pattern_service.find_trending(seeded)]
        assert active == ["fake_links"]

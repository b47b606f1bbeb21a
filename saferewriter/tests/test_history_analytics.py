"""Tests for history, user and analytics repositories."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from saferewriter.errors import ConflictError, DatabaseServiceError, ValidationError
from saferewriter.models.rewrite_history import RewriteHistory
from saferewriter.services import analytics_service, history_service, pattern_service, user_service

DIFFS = [{"aspect": "Links", "scam": "bad link", "official": "no link", "status": "Fixed"}]


def add_history(db, user_id=None, region="US", cached=False, response_time_ms=100, flags=1, created_at=None):
    record = history_service.record_rewrite(
        db,
        original_message="msg",
        safe_version="safe",
        region=region,
        response_time_ms=response_time_ms,
        cached=cached,
        red_flags_fixed=flags,
        differences=DIFFS,
        user_id=user_id,
    )
    if created_at is not None:
        record.created_at = created_at
        db.commit()
    return record


class TestHistory:
    def test_record_requires_differences(self, test_db):
        with pytest.raises(ValidationError) as exc_info:
            history_service.record_rewrite(
                test_db, "m", "s", "US", 10, False, 1, differences=[]
            )
        assert exc_info.value.field == "differences"

    def test_record_rejects_out_of_range_flags(self, test_db):
        with pytest.raises(ValidationError):
            history_service.record_rewrite(test_db, "m", "s", "US", 10, False, 11, differences=DIFFS)

    def test_reload_failure_is_a_database_error(self, test_db, monkeypatch):
        def broken_refresh(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection lost"))

        monkeypatch.setattr(test_db, "refresh", broken_refresh)
        with pytest.raises(DatabaseServiceError):
            add_history(test_db)

    def test_pagination(self, test_db):
        for i in range(25):
            add_history(test_db, user_id="u1", response_time_ms=i)
        add_history(test_db, user_id="someone-else")

        page = history_service.list_for_user(test_db, "u1", page=2, limit=10, sort="response_time_ms", order="asc")

        assert [row["response_time_ms"] for row in page["data"]] == list(range(10, 20))
        assert page["pagination"] == {
            "page": 2, "limit": 10, "total": 25, "pages": 3, "hasNext": True, "hasPrev": True,
        }

    def test_default_sort_is_newest_first(self, test_db):
        now = datetime.utcnow()
        add_history(test_db, user_id="u1", created_at=now - timedelta(days=2))
        newest = add_history(test_db, user_id="u1", created_at=now)

        page = history_service.list_for_user(test_db, "u1")
        assert page["data"][0]["id"] == newest.id
        assert page["pagination"]["hasNext"] is False
        assert page["pagination"]["hasPrev"] is False

    def test_unknown_sort_field_rejected(self, test_db):
        with pytest.raises(ValidationError):
            history_service.list_for_user(test_db, "u1", sort="original_message")

    def test_stats_by_region(self, test_db):
        add_history(test_db, region="IN", response_time_ms=100)
        add_history(test_db, region="IN", response_time_ms=300)
        add_history(test_db, region="US")

        stats = history_service.stats_by_region(test_db)
        assert stats[0]["region"] == "IN"
        assert stats[0]["count"] == 2
        assert stats[0]["averageResponseTime"] == 200

    def test_stats_by_date(self, test_db):
        now = datetime.utcnow()
        add_history(test_db, created_at=now - timedelta(days=1))
        add_history(test_db, created_at=now)
        add_history(test_db, created_at=now)
        add_history(test_db, created_at=now - timedelta(days=60))

        daily = history_service.stats_by_date(test_db, now - timedelta(days=30), now + timedelta(minutes=1))
        assert [d["count"] for d in daily] == [1, 2]
        assert daily[-1]["date"] == now.date().isoformat()

    def test_user_stats(self, test_db):
        add_history(test_db, user_id="u1", region="IN", flags=2)
        add_history(test_db, user_id="u1", region="UK", flags=4)

        stats = history_service.get_user_stats(test_db, "u1")
        assert stats["totalRewrites"] == 2
        assert stats["averageRedFlagsFixed"] == 3.0
        assert stats["regions"] == ["IN", "UK"]
        assert stats["firstRewrite"] is not None

    def test_cleanup_old_records(self, test_db):
        add_history(test_db, created_at=datetime.utcnow() - timedelta(days=40))
        add_history(test_db)

        assert history_service.cleanup_old_records(test_db, days=30) == 1
        assert test_db.query(RewriteHistory).count() == 1


class TestUsers:
    def test_create_user_normalizes_email(self, test_db):
        user = user_service.create_user(test_db, "  Alice@Example.COM ")
        assert user.email == "alice@example.com"
        assert user.usage_count == 0
        assert user.preferences == {"region": "US", "language": "en"}
        assert user_service.get_by_email(test_db, "ALICE@example.com").id == user.id

    def test_duplicate_email_conflicts(self, test_db):
        user_service.create_user(test_db, "bob@example.com")
        with pytest.raises(ConflictError):
            user_service.create_user(test_db, "BOB@example.com")

    def test_increment_usage(self, test_db):
        user = user_service.create_user(test_db, "carol@example.com")
        assert user_service.increment_usage(test_db, user.id) is True
        assert user_service.increment_usage(test_db, user.id) is True
        assert user_service.increment_usage(test_db, "missing") is False

        test_db.expire_all()
        assert user_service.get_user(test_db, user.id).usage_count == 2

    def test_usage_stats_and_top_users(self, test_db):
        light = user_service.create_user(test_db, "light@example.com")
        heavy = user_service.create_user(test_db, "heavy@example.com")
        for _ in range(3):
            user_service.increment_usage(test_db, heavy.id)
        user_service.increment_usage(test_db, light.id)

        stats = user_service.get_usage_stats(test_db)
        assert stats == {"totalUsers": 2, "activeUsers": 2, "totalUsage": 4, "averageUsage": 2.0}

        top = user_service.get_top_users(test_db, limit=1)
        assert [u["email"] for u in top] == ["heavy@example.com"]


class TestAnalytics:
    def test_empty_database(self, test_db):
        data = analytics_service.compute_analytics(test_db)
        assert data["totalRewrites"] == 0
        assert data["uniqueUsers"] == 0
        assert data["averageResponseTime"] == 0
        assert data["cacheHitRate"] == 0
        assert data["topRegions"] == []
        assert data["dailyStats"] == []
        assert data["patternTrends"] == []

    def test_aggregates(self, test_db):
        add_history(test_db, user_id="u1", region="IN", cached=False, response_time_ms=100)
        add_history(test_db, user_id="u1", region="IN", cached=True, response_time_ms=10)
        add_history(test_db, user_id="u2", region="US", cached=False, response_time_ms=190)
        add_history(test_db, region="US", cached=True, response_time_ms=0)
        pattern_service.find_or_create_pattern(test_db, "click here", "fake_links")

        data = analytics_service.compute_analytics(test_db)

        assert data["totalRewrites"] == 4
        assert data["uniqueUsers"] == 2
        assert data["averageResponseTime"] == 75
        assert data["cacheHitRate"] == 0.5
        assert {r["region"]: r["count"] for r in data["topRegions"]} == {"IN": 2, "US": 2}
        assert sum(d["count"] for d in data["dailyStats"]) == 4
        assert data["patternTrends"] == [{"pattern": "fake_links", "frequency": 1, "trend": "stable"}]

    def test_filters(self, test_db):
        add_history(test_db, user_id="u1", region="IN")
        add_history(test_db, user_id="u2", region="US")
        add_history(test_db, user_id="u1", region="US", created_at=datetime.utcnow() - timedelta(days=10))

        by_region = analytics_service.compute_analytics(test_db, region="US")
        assert by_region["totalRewrites"] == 2

        by_user = analytics_service.compute_analytics(test_db, user_id="u1")
        assert by_user["totalRewrites"] == 2
        assert by_user["uniqueUsers"] == 1

        recent = analytics_service.compute_analytics(test_db, start=datetime.utcnow() - timedelta(days=1))
        assert recent["totalRewrites"] == 2

    @pytest.mark.asyncio
    async def test_results_cached_per_filter_set(self, test_db, cache, fake_redis):
        add_history(test_db, region="IN")
        first = await analytics_service.get_analytics(test_db, cache, 60, region="IN")
        add_history(test_db, region="IN")
        second = await analytics_service.get_analytics(test_db, cache, 60, region="IN")
        other = await analytics_service.get_analytics(test_db, cache, 60, region="US")

        assert first["totalRewrites"] == second["totalRewrites"] == 1
        assert other["totalRewrites"] == 0
        assert sum(1 for key in fake_redis.store if key.startswith("analytics:")) == 2

import pytest
from fastapi.testclient import TestClient

from saferewriter.config import Settings
from saferewriter.database import init_db, make_engine, make_session_factory
from saferewriter.schemas.rewrite_schemas import AnalysisResult
from saferewriter.services.cache_service import CacheStore
from saferewriter.tests.doubles import UPI_PAYLOAD, FakeClock, FakeGemini, FakeRedis
from saferewriter.utils.logging_config import metrics


# ============== FIXTURES ==============


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="test",
        debug=False,
        database_url="sqlite://",
        redis_url="",
        gemini_api_key="test-key",
        api_token="",
        jwt_secret="test-secret-for-saferewriter-tests-0123456789",
        rate_limit_requests=1000,
        rewrite_rate_limit=1000,
        user_rate_limit=1000,
        analytics_rate_limit=1000,
        pattern_rate_limit=1000,
    )


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def test_db(engine):
    """Create a test database session."""
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis, clock):
    return CacheStore(fake_redis, default_ttl=300, clock=clock)


@pytest.fixture
def upi_result():
    return AnalysisResult.model_validate(UPI_PAYLOAD)


@pytest.fixture
def fake_gemini(upi_result):
    return FakeGemini(result=upi_result)


@pytest.fixture
def app(test_settings, fake_gemini, cache, engine):
    from saferewriter.api.server import create_app

    return create_app(settings=test_settings, gemini=fake_gemini, cache=cache, engine=engine)


@pytest.fixture
def client(app):
    """FastAPI test client fixture."""
    with TestClient(app) as test_client:
        yield test_client

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def make_engine(database_url: str):
    """Create an engine; SQLite needs cross-thread access under FastAPI."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine):
    """Create all tables registered on Base."""
    # Import models so their tables are registered
    from saferewriter.models import user, rewrite_history, scam_pattern  # noqa: F401

    Base.metadata.create_all(bind=engine)


def ping_db(session_factory) -> bool:
    db = session_factory()
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
    finally:
        db.close()


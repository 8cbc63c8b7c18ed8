"""
Root test configuration and fixtures.

Provides database fixtures used by all tier engine tests:
- db_engine / db_session: fresh schema per test (SQLite in-memory, or
  PostgreSQL when DATABASE_URL is set)
- session_factory: sessionmaker for code that opens its own sessions
- concurrent_engine: engine whose sessions really run in parallel threads
- make_user / seeded_catalog: common data setup
"""

import os
import pytest
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from stokreal.config.tier_features import TierFeaturesConfig, reset_tier_features_config
from stokreal.config.tier_settings import reset_tier_settings
from stokreal.db_base import Base
from stokreal import models  # noqa: F401 - register tables on Base.metadata
from stokreal.models.user import SubscriptionPlan, User
from stokreal.repositories.feature_definitions_repo import FeatureDefinitionsRepository

# Set test environment
os.environ.setdefault("ENV", "test")


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


def _connect_postgres(database_url: str):
    try:
        engine = create_engine(database_url, pool_pre_ping=True)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        pytest.skip(f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}")
    return engine


@pytest.fixture(autouse=True)
def _reset_cached_config():
    """Settings and catalog are cached per process; isolate tests."""
    reset_tier_settings()
    reset_tier_features_config()
    yield
    reset_tier_settings()
    reset_tier_features_config()


@pytest.fixture(scope="function")
def db_engine():
    """
    Database engine with a fresh schema for each test.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    Services under test commit, so isolation is by schema, not by rollback.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        engine = _connect_postgres(database_url)
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def concurrent_engine(tmp_path):
    """
    Engine for multi-threaded tests.

    SQLite in-memory shares one connection, so threads would not contend.
    Use a file database where every transaction starts with BEGIN IMMEDIATE
    (takes the write lock up front, the SQLite analogue of a row lock).
    """
    if _is_postgres():
        engine = _connect_postgres(_get_test_database_url())
    else:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'concurrency.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_size=20,
            max_overflow=40,
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def catalog_config() -> TierFeaturesConfig:
    """The bundled tier_features.yml."""
    return TierFeaturesConfig()


@pytest.fixture
def seeded_catalog(db_session, catalog_config) -> TierFeaturesConfig:
    """Seed tier_feature_definitions from the bundled catalog."""
    FeatureDefinitionsRepository(db_session).sync_from_seeds(catalog_config.definitions())
    db_session.commit()
    return catalog_config


def _make_user(
    session: Session,
    user_id: Optional[str] = None,
    plan: SubscriptionPlan = SubscriptionPlan.FREE,
    expires_at: Optional[datetime] = None,
    is_active: bool = True,
    email: Optional[str] = "owner@example.com",
) -> User:
    user = User(
        subscription_plan=plan,
        subscription_expires_at=expires_at,
        is_active=is_active,
        email=email,
        first_name="Ada",
    )
    if user_id:
        user.id = user_id
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def make_user(db_session):
    """Factory: make_user(plan=..., expires_at=...) -> committed User."""

    def factory(**kwargs) -> User:
        return _make_user(db_session, **kwargs)

    return factory


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)

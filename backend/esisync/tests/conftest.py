"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory (or DATABASE_URL) with per-test rollback
- fake_clock: manually advanced monotonic clock
- memory_store: InMemoryStore driven by fake_clock
- make_yaml_config: factory for writing YAML configs to a temp dir
"""

import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session

from esisync.database.session import create_db_engine
from esisync.ingestion.shared_store import InMemoryStore

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


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        engine = create_db_engine(database_url)

    # Import and create all tables
    from esisync.db_base import Base
    import esisync.models  # noqa: F401 - record tables
    import esisync.ingestion.batch  # noqa: F401 - sync_batches
    import esisync.ingestion.jobs.models  # noqa: F401 - sync_jobs

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Session commits become SAVEPOINT releases; everything is rolled back
    when the test ends.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(fake_clock) -> InMemoryStore:
    return InMemoryStore(clock=fake_clock)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Keep module-level singletons from leaking between tests."""
    from esisync.config.sync_settings import reset_sync_settings_loader
    from esisync.ingestion.shared_store import reset_shared_store

    yield
    reset_sync_settings_loader()
    reset_shared_store()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("esisync.yml", {"retry": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make

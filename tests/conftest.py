import pytest

from rss_relay import db
from rss_relay.subscriptions import SubscriptionRegistry


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine so worker threads share one database."""
    engine = db.init_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.get_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def registry():
    return SubscriptionRegistry()

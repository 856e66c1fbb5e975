import pytest

from config import TrackerConfig
from database import init_db, make_engine, make_session_factory
from fakes import FakeLedger
from tracker import YieldTracker


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'yield-tracker.db'}"


@pytest.fixture
def engine(database_url):
    engine = make_engine(database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def config(database_url):
    # Long intervals keep the background loops quiet; tests drive detection directly.
    return TrackerConfig(
        database_url=database_url,
        poll_interval=3600,
        subscription_interval=3600,
        snapshot_interval=3600,
        lookback_blocks=100,
    )


@pytest.fixture
def tracker(config, ledger, engine):
    tracker = YieldTracker(config, ledger=ledger, engine=engine)
    yield tracker
    tracker.stop()

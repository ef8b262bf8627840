# arrival_collector/tests/conftest.py
import os

# Must be set before arrival_collector.database creates its module engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from arrival_collector.database import (
    ArrivalLogStore,
    PendingArrivalStore,
    SchedulerSettingsStore,
    TargetRegistry,
    init_db,
    make_engine,
)
from arrival_collector.tests.fakes import FakeClock


@pytest.fixture()
def clock():
    return FakeClock(datetime(2025, 10, 8, 8, 30, 0))  # Wednesday


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def log_store(session_factory):
    return ArrivalLogStore(session_factory)


@pytest.fixture()
def pending_store(session_factory):
    return PendingArrivalStore(session_factory)


@pytest.fixture()
def registry(session_factory):
    return TargetRegistry(session_factory)


@pytest.fixture()
def settings_store(session_factory):
    return SchedulerSettingsStore(session_factory)

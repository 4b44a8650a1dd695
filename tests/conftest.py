import os

# Must be set before the application settings are imported
os.environ["TESTING"] = "1"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test_ledger.db")
os.environ.setdefault("OFFLINE_QUEUE_URL", "sqlite:///./test_offline_queue.db")

import datetime as dt
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hospital_ledger import models  # noqa: F401  (register models with their metadata)
from hospital_ledger.core.database import Base, QueueBase
from hospital_ledger.schemas.booking import BookingRequest
from hospital_ledger.services.change_feed import ChangeFeed
from hospital_ledger.services.composition import build_ledger
from hospital_ledger.services.reconciliation_service import ReconciliationService
from hospital_ledger.services.token_service import TokenService


def memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def engine():
    engine = memory_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def queue_engine():
    engine = memory_engine()
    QueueBase.metadata.create_all(bind=engine)
    yield engine
    QueueBase.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def queue_db(queue_engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=queue_engine)()
    yield session
    session.close()


@pytest.fixture
def redis_mock():
    client = MagicMock()
    client.get.return_value = None
    return client


@pytest.fixture
def feed(redis_mock):
    return ChangeFeed(redis_mock, channel="test:changes")


@pytest.fixture
def tokens(db):
    return TokenService(db)


@pytest.fixture
def ledger(db, feed):
    return build_ledger(db, feed)


@pytest.fixture
def reconciler(db, feed):
    return ReconciliationService(db, feed)


def make_booking(**overrides) -> BookingRequest:
    data = {
        "patientName": "Asha Rao",
        "phone": "9876543210",
        "age": 34,
        "gender": "Female",
        "doctorId": "doc-1",
        "doctorName": "Dr. Mehta",
        "serviceId": "svc-1",
        "serviceName": "General Consultation",
        "date": (dt.date.today() + dt.timedelta(days=1)).isoformat(),
        "time": "10:30",
        "paymentMode": "Pay at Hospital",
        "fees": 500,
    }
    data.update(overrides)
    return BookingRequest.model_validate(data)


@pytest.fixture
def booking_request():
    return make_booking

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def db():
    return mongomock.MongoClient()["rental_test"]


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def client(db, clock):
    app = create_app(Settings(database_name="rental_test"), db=db, clock=clock)
    return TestClient(app)

# conftest.py
import math
import threading
from datetime import datetime

import pytest

from app import create_app
from clock import FixedClock
from config import TestingConfig
from errors import DependencyError
from models import db
from notifications import NotificationSink

HOSPITAL = (12.9716, 77.5946)
KM_PER_DEGREE = 6371.0 * math.pi / 180


def north_of(origin, km):
    """Point ``km`` due north of ``origin``; haversine distance is exact along a meridian."""
    return origin[0] + km / KM_PER_DEGREE, origin[1]


class RecordingSink(NotificationSink):
    def __init__(self):
        self.sent = []
        self.fail = False
        self._lock = threading.Lock()

    def notify(self, user_id, event):
        if self.fail:
            raise RuntimeError("sink down")
        with self._lock:
            self.sent.append((str(user_id), event))

    def names(self, user_id=None):
        return [e.name for u, e in self.sent if user_id is None or u == str(user_id)]


class FakeGeocoder:
    def __init__(self):
        self.known = {"City Hospital, Bengaluru": HOSPITAL}
        self.down = False

    def resolve(self, address):
        if self.down:
            raise DependencyError("geocoder offline", dependency="geocoder")
        return self.known.get(address)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 9, 0))


@pytest.fixture
def app(tmp_path, sink, geocoder, clock):
    class Cfg(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'rapidred.db'}"

    app = create_app(Cfg, geocoder=geocoder, notifier=sink, clock=clock)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def coordinator(app):
    return app.extensions["matching"]


@pytest.fixture
def slots(coordinator):
    return coordinator.slots


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_donor(coordinator):
    counter = iter(range(1, 10_000))

    def make(blood_type="O-", km=1.0, **kwargs):
        n = next(counter)
        if km is not None:
            lat, lon = north_of(HOSPITAL, km)
            kwargs.setdefault("latitude", lat)
            kwargs.setdefault("longitude", lon)
        kwargs.setdefault("name", f"Donor {n}")
        kwargs.setdefault("user_id", f"user-{n}")
        return coordinator.register_donor(blood_type=blood_type, **kwargs)

    return make


@pytest.fixture
def make_request(coordinator):
    def make(blood_type="O-", **kwargs):
        kwargs.setdefault("requester_id", "hospital-1")
        if "address" not in kwargs:
            kwargs.setdefault("latitude", HOSPITAL[0])
            kwargs.setdefault("longitude", HOSPITAL[1])
        return coordinator.submit_request(blood_type=blood_type, **kwargs).request

    return make


def run_concurrently(app, fn, args_list):
    """Call ``fn(arg)`` from one thread per arg, all released together."""
    barrier = threading.Barrier(len(args_list))
    outcomes = [None] * len(args_list)

    def worker(i, arg):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[i] = ("ok", fn(arg))
            except Exception as e:  # recorded for assertions
                outcomes[i] = ("error", e)

    threads = [threading.Thread(target=worker, args=(i, a)) for i, a in enumerate(args_list)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes

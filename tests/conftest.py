"""
Shared fixtures: an in-memory store, a controllable clock and a scripted
license server behind httpx.MockTransport.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from database import create_tables, make_engine, make_session_factory
from grace_period import GracePeriodController
from license_client import LicenseClient
from license_manager import LicenseManager
from state_store import StateStore

API_URL = "https://licenses.example.test/api/license"
SITE = "https://shop.example.com"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeAuthority:
    """Scripted license server. Queued replies are used first, then the default."""

    def __init__(self):
        self.calls = []
        self.offline = False
        self._queue = []
        self.default = {
            "result": "success",
            "status": "active",
            "expires_at": "2027-01-01T00:00:00+00:00",
            "max_sites": 3,
            "site_count": 1,
        }

    @property
    def actions(self):
        return [call["action"] for call in self.calls]

    def will_return(self, status_code: int = 200, **body):
        self._queue.append(("json", status_code, body))

    def will_send(self, status_code: int, content: bytes):
        self._queue.append(("raw", status_code, content))

    def will_raise(self, error_cls):
        self._queue.append(("raise", error_cls, None))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        if self.offline:
            raise httpx.ConnectError("Connection refused", request=request)
        if not self._queue:
            return httpx.Response(200, json=self.default)

        kind, first, second = self._queue.pop(0)
        if kind == "raise":
            raise first("simulated failure", request=request)
        if kind == "raw":
            return httpx.Response(first, content=second)
        return httpx.Response(first, json=second)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    engine = make_engine("sqlite://")
    create_tables(engine)
    return StateStore(make_session_factory(engine), clock=clock)


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def license_client(store, authority, clock):
    return LicenseClient(
        store,
        api_url=API_URL,
        transport=httpx.MockTransport(authority.handler),
        cache_ttl=timedelta(minutes=10),
        clock=clock
    )


@pytest.fixture
def manager(store, license_client, clock):
    return LicenseManager(
        store,
        license_client,
        SITE,
        grace=GracePeriodController(timedelta(hours=48)),
        clock=clock
    )

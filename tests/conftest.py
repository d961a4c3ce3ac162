"""
Shared fixtures: an in-memory database with one admin and one viewer, a
scripted analytics gateway and a TestClient around the full app.
"""

import copy
import time
import uuid

import pytest
from fastapi.testclient import TestClient

from api import create_app
from application import (
    AbstractAnalyticsGateway,
    AnalyticsError,
    SeedOperatorCommand,
    SeedOperatorsUseCase,
)
from config import Settings
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import AnalyticsReport, OperatorRole, ReportRow

ADMIN_EMAIL = "admin@example.com"
ADMIN_TOKEN = "admin-token-0001"
VIEWER_EMAIL = "viewer@example.com"
VIEWER_TOKEN = "viewer-token-0001"


def _report(dimension_headers, metric_headers, rows):
    return AnalyticsReport(
        dimension_headers=dimension_headers,
        metric_headers=metric_headers,
        rows=[ReportRow(dimension_values=d, metric_values=m) for d, m in rows],
        row_count=len(rows),
    )


def default_reports():
    """Canned reports keyed by the first dimension of each query."""
    return {
        "date": _report(
            ["date"],
            ["screenPageViews", "totalUsers", "sessions"],
            [
                (["20240613"], ["120", "40", "55"]),
                (["20240614"], ["80", "30", "35"]),
                (["20240615"], ["100", "50", "60"]),
            ],
        ),
        "pagePath": _report(
            ["pagePath", "pageTitle"],
            ["screenPageViews", "averageSessionDuration"],
            [
                (["/", "Home"], ["300", "65.5"]),
                (["/about", "About"], ["50", "125.0"]),
                (["/contact", "Contact"], ["120", "30.2"]),
            ],
        ),
        "deviceCategory": _report(
            ["deviceCategory"],
            ["totalUsers"],
            [(["desktop"], ["60"]), (["mobile"], ["40"])],
        ),
        "sessionSource": _report(
            ["sessionSource"],
            ["sessions"],
            [(["google"], ["75"]), (["(direct)"], ["25"])],
        ),
        "eventName": _report(
            ["eventName"],
            ["eventCount"],
            [(["click_cta"], ["12"])],
        ),
        "searchTerm": _report(["searchTerm"], ["eventCount"], []),
    }


class FakeAnalyticsGateway(AbstractAnalyticsGateway):
    """
    Serves canned reports.  `failures` maps a first dimension to the
    exception to raise; `delays` maps it to seconds to sleep first.
    """

    def __init__(self, reports=None, failures=None, delays=None):
        self.reports = reports if reports is not None else default_reports()
        self.failures = failures or {}
        self.delays = delays or {}
        self.calls = []
        self.closed = False

    def run_report(self, property_id, date_range, query, limit=None):
        key = query.dimensions[0]
        self.calls.append({"property_id": property_id, "date_range": date_range, "key": key, "limit": limit})
        if key in self.delays:
            time.sleep(self.delays[key])
        if key in self.failures:
            raise self.failures[key]
        return copy.deepcopy(self.reports.get(key, AnalyticsReport()))

    def close(self):
        self.closed = True

    def keys_called(self):
        return sorted(c["key"] for c in self.calls)


@pytest.fixture
def db():
    database = InMemoryDatabase()
    SeedOperatorsUseCase().execute(
        [
            SeedOperatorCommand(email=ADMIN_EMAIL, role=OperatorRole.ADMIN, token=ADMIN_TOKEN),
            SeedOperatorCommand(email=VIEWER_EMAIL, role=OperatorRole.VIEWER, token=VIEWER_TOKEN),
        ],
        InMemoryUnitOfWork(database),
    )
    return database


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def admin_id(uow):
    return uow.operators.get_by_email(ADMIN_EMAIL).id


@pytest.fixture
def viewer_id(uow):
    return uow.operators.get_by_email(VIEWER_EMAIL).id


@pytest.fixture
def unknown_id():
    return uuid.uuid4()


@pytest.fixture
def gateway():
    return FakeAnalyticsGateway()


@pytest.fixture
def failing_required_gateway():
    return FakeAnalyticsGateway(failures={"pagePath": AnalyticsError("quota exhausted")})


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        mcp_enabled=False,
        operators=[
            {"email": ADMIN_EMAIL, "role": "admin", "token": ADMIN_TOKEN},
            {"email": VIEWER_EMAIL, "role": "viewer", "token": VIEWER_TOKEN},
        ],
    )


@pytest.fixture
def app(settings, gateway):
    return create_app(settings, analytics_gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def viewer_headers():
    return {"Authorization": f"Bearer {VIEWER_TOKEN}"}

"""
infrastructure.py

Concrete implementations of the repository, unit-of-work and analytics
gateway interfaces declared in application.py.

Storage
-------
An in-memory document store keyed by UUID, for local development, demos
and tests without a hosted database.
Reads hand out deep copies so callers can never edit stored history in
place; schedule writes happen under a lock and are conditional on the
project's version.

To swap in a hosted document database later, implement the same Abstract*
interfaces from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: FirestoreUnitOfWork(client)

Analytics
---------
GoogleAnalyticsGateway talks to the Google Analytics Data API (GA4) through
the official ``google-analytics-data`` client.  The client is created once
at startup and closed at shutdown by the API lifespan.
"""

from __future__ import annotations

import copy
import hmac
import logging
import threading
import uuid
from typing import Any, Dict, Optional

from google.analytics.data_v1beta import BetaAnalyticsDataClient
from google.analytics.data_v1beta.types import (
    DateRange,
    Dimension,
    Filter,
    FilterExpression,
    Metric,
    OrderBy,
    RunReportRequest,
)
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError

from application import (
    AbstractAnalyticsGateway,
    AbstractOperatorRepository,
    AbstractProjectRepository,
    AbstractSiteRepository,
    AbstractUnitOfWork,
    AnalyticsError,
    ConcurrencyError,
    NotFoundError,
)
from model import (
    AnalyticsReport,
    Project,
    ReportQuery,
    ReportRow,
    ResolvedDateRange,
    Schedule,
    ScheduleEvent,
)
from service import _utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """
    A plain dict with copy-on-read get/save helpers.

    Every access goes through `lock`, shared by all stores of one database.
    """

    def __init__(self, lock: threading.RLock):
        super().__init__()
        self.lock = lock

    def fetch(self, key: uuid.UUID):
        with self.lock:
            obj = self.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def put(self, obj) -> None:
        with self.lock:
            self[obj.id] = copy.deepcopy(obj)

    def all(self) -> list:
        with self.lock:
            return [copy.deepcopy(v) for v in self.values()]


# ---------------------------------------------------------------------------
# Shared in-memory database
# Persists for the lifetime of the InMemoryDatabase instance — the API keeps
# one per application.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.projects:  _Store = _Store(self.lock)
        self.sites:     _Store = _Store(self.lock)
        self.operators: _Store = _Store(self.lock)


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store, lock: threading.RLock):
        self._s = store
        self._lock = lock

    def get(self, project_id):        return self._s.fetch(project_id)
    def list_all(self):               return self._s.all()

    def save(self, project):
        with self._lock:
            self._s.put(project)

    def append_history_and_update(
        self,
        project_id: uuid.UUID,
        field_mutations: Dict[str, Any],
        event: ScheduleEvent,
        expected_version: int,
    ) -> Project:
        with self._lock:
            project: Optional[Project] = self._s.get(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found.")
            if project.version != expected_version:
                raise ConcurrencyError(
                    f"Project {project_id} changed since it was read "
                    f"(expected version {expected_version}, found {project.version})."
                )
            updated = copy.deepcopy(project)
            schedule = updated.schedule or Schedule()
            for name, value in field_mutations.items():
                if name == "history" or not hasattr(schedule, name):
                    raise ValueError(f"Unknown schedule field '{name}'.")
                setattr(schedule, name, value)
            schedule.history.append(event)
            updated.schedule = schedule
            updated.version += 1
            updated.updated_at = _utcnow()
            self._s.put(updated)
            return copy.deepcopy(updated)


class InMemorySiteRepository(AbstractSiteRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, site_id):           return self._s.fetch(site_id)
    def list_all(self):               return self._s.all()
    def save(self, site):             self._s.put(site)


class InMemoryOperatorRepository(AbstractOperatorRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, operator_id):       return self._s.fetch(operator_id)

    def get_by_token(self, token):
        # Header values arrive latin-1 decoded; compare as bytes
        presented = token.encode("utf-8")
        for operator in self._s.all():
            if operator.token and hmac.compare_digest(operator.token.encode("utf-8"), presented):
                return operator
        return None

    def get_by_email(self, email):
        email = email.strip().lower()
        return next((o for o in self._s.all() if o.email == email), None)

    def save(self, operator):         self._s.put(operator)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  commit() and rollback() are no-ops
    because each repository write is applied immediately and atomically.
    """

    def __init__(self, db: InMemoryDatabase):
        self.projects  = InMemoryProjectRepository(db.projects, db.lock)
        self.sites     = InMemorySiteRepository(db.sites)
        self.operators = InMemoryOperatorRepository(db.operators)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory


# ---------------------------------------------------------------------------
# Google Analytics Data API gateway
# ---------------------------------------------------------------------------

class GoogleAnalyticsGateway(AbstractAnalyticsGateway):
    """
    Runs reports through BetaAnalyticsDataClient.

    Every call carries `timeout_seconds`; any API or transport error is
    re-raised as AnalyticsError so the application layer can decide whether
    the report was required.
    """

    def __init__(self, client: BetaAnalyticsDataClient, timeout_seconds: float = 25.0):
        self._client = client
        self._timeout = timeout_seconds

    @classmethod
    def from_key_file(
        cls, key_path: Optional[str], timeout_seconds: float = 25.0
    ) -> "GoogleAnalyticsGateway":
        if key_path:
            client = BetaAnalyticsDataClient.from_service_account_file(key_path)
        else:
            client = BetaAnalyticsDataClient()
        logger.info(
            "Analytics client ready (%s)",
            key_path or "application default credentials",
        )
        return cls(client, timeout_seconds)

    @staticmethod
    def build_request(
        property_id: str,
        date_range: ResolvedDateRange,
        query: ReportQuery,
        limit: Optional[int] = None,
    ) -> RunReportRequest:
        request = RunReportRequest(
            property=f"properties/{property_id}",
            date_ranges=[DateRange(start_date=date_range.start_date, end_date=date_range.end_date)],
            dimensions=[Dimension(name=name) for name in query.dimensions],
            metrics=[Metric(name=name) for name in query.metrics],
        )
        if query.order_by_metric:
            request.order_bys = [
                OrderBy(metric=OrderBy.MetricOrderBy(metric_name=query.order_by_metric), desc=True)
            ]
        if query.filter_field and query.filter_prefix:
            request.dimension_filter = FilterExpression(
                filter=Filter(
                    field_name=query.filter_field,
                    string_filter=Filter.StringFilter(
                        match_type=Filter.StringFilter.MatchType.BEGINS_WITH,
                        value=query.filter_prefix,
                    ),
                )
            )
        if limit:
            request.limit = limit
        return request

    def run_report(
        self,
        property_id: str,
        date_range: ResolvedDateRange,
        query: ReportQuery,
        limit: Optional[int] = None,
    ) -> AnalyticsReport:
        request = self.build_request(property_id, date_range, query, limit)
        try:
            response = self._client.run_report(request=request, timeout=self._timeout)
        except (GoogleAPIError, GoogleAuthError) as exc:
            raise AnalyticsError(
                f"Analytics report {query.dimensions} for property {property_id} failed: {exc}"
            ) from exc
        return AnalyticsReport(
            dimension_headers=[h.name for h in response.dimension_headers],
            metric_headers=[h.name for h in response.metric_headers],
            rows=[
                ReportRow(
                    dimension_values=[v.value for v in row.dimension_values],
                    metric_values=[v.value for v in row.metric_values],
                )
                for row in response.rows
            ],
            row_count=response.row_count,
        )

    def close(self) -> None:
        self._client.transport.close()

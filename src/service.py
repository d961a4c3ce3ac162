"""
service.py

Service layer for the Site Analytics & Delivery Schedule Dashboard.

Responsibilities
----------------
Each service class encapsulates all business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here — callers are responsible for storing
and retrieving models via a repository of their choosing.

Services
--------
- resolve_date_range      – Named preset → concrete inclusive date bounds
- ScheduleService         – Phase/progress state machine and history events
- ProjectService          – Project creation and visibility rules
- SiteService             – Site creation and field updates
- ReportService           – Sorting and formatting of analytics report rows

Design notes
------------
- UTC datetimes are used for history timestamps; calendar dates for
  analytics ranges are local dates with the time of day discarded.
- Business rule violations raise a ValueError with a descriptive message.
- Authorization checks (role enforcement) are declared as guard helpers
  and called at the start of each operation that requires elevated rights.
- The state machine never mutates a Schedule in place.  It returns the
  field mutations and the single history event that a write must apply,
  so the repository can persist both in one conditional write.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from model import (
    PHASE_LABELS,
    PHASE_ORDER,
    PHASE_PROGRESS,
    PHASE_STATUSES,
    AnalyticsReport,
    DateRangeSelector,
    DateRangeType,
    DeadlineUpdateEvent,
    Operator,
    OperatorRole,
    PhaseUpdateEvent,
    Project,
    ProjectPhase,
    ReportQuery,
    ReportRow,
    ReportType,
    ResolvedDateRange,
    Schedule,
    ScheduleEvent,
    Site,
    SortDirection,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_role(operator: Operator, *allowed_roles: OperatorRole) -> None:
    """Raise ValueError if the operator does not hold one of the allowed roles."""
    if operator.role not in allowed_roles:
        raise ValueError(
            f"Operator {operator.email} does not hold any of the required "
            f"roles: {[r.value for r in allowed_roles]}."
        )


# ---------------------------------------------------------------------------
# Date range resolution
# ---------------------------------------------------------------------------

DATE_FORMAT = "%Y-%m-%d"

WEEK_DAYS = 7
MONTH_DAYS = 30


def _trailing_window(today: date, days: int) -> ResolvedDateRange:
    start = today - timedelta(days=days - 1)
    return ResolvedDateRange(
        start_date=start.strftime(DATE_FORMAT),
        end_date=today.strftime(DATE_FORMAT),
    )


def resolve_date_range(
    selector: DateRangeSelector, today: Optional[date] = None
) -> ResolvedDateRange:
    """
    Map a date range selector to inclusive YYYY-MM-DD bounds.

    day    → today only
    week   → the 7 days ending today
    month  → the 30 days ending today
    custom → the caller's bounds verbatim, or the 30-day window when either
             bound is missing
    """
    if today is None:
        today = date.today()
    elif isinstance(today, datetime):
        today = today.date()

    if selector.type is DateRangeType.DAY:
        return _trailing_window(today, 1)
    if selector.type is DateRangeType.WEEK:
        return _trailing_window(today, WEEK_DAYS)
    if selector.type is DateRangeType.CUSTOM and selector.start_date and selector.end_date:
        return ResolvedDateRange(start_date=selector.start_date, end_date=selector.end_date)
    return _trailing_window(today, MONTH_DAYS)


# ---------------------------------------------------------------------------
# Report catalogue
# ---------------------------------------------------------------------------

DEFAULT_REPORT_LIMIT = 10

REPORT_QUERIES: Dict[ReportType, ReportQuery] = {
    ReportType.OVERVIEW: ReportQuery(
        dimensions=["date"],
        metrics=["screenPageViews", "totalUsers", "sessions"],
    ),
    ReportType.TOP_PAGES: ReportQuery(
        dimensions=["pagePath", "pageTitle"],
        metrics=["screenPageViews", "averageSessionDuration"],
        order_by_metric="screenPageViews",
        limited=True,
    ),
    ReportType.DEVICES: ReportQuery(
        dimensions=["deviceCategory"],
        metrics=["totalUsers"],
    ),
    ReportType.REFERRERS: ReportQuery(
        dimensions=["sessionSource"],
        metrics=["sessions"],
        order_by_metric="sessions",
        limited=True,
    ),
    # Only populated when click events are tagged on the site.
    ReportType.CLICKS: ReportQuery(
        dimensions=["eventName"],
        metrics=["eventCount"],
        filter_field="eventName",
        filter_prefix="click",
        limited=True,
        optional=True,
    ),
    # Only populated when site search tracking is configured.
    ReportType.SEARCH_TERMS: ReportQuery(
        dimensions=["searchTerm"],
        metrics=["eventCount"],
        order_by_metric="eventCount",
        limited=True,
        optional=True,
    ),
}


# ---------------------------------------------------------------------------
# ScheduleService
# ---------------------------------------------------------------------------

class ScheduleService:
    """
    Phase/progress state machine for a project's delivery schedule.

    Any phase may follow any other phase; selecting a phase is a free choice
    rather than a sequential gate.  Progress is a pure function of phase.
    """

    def derive_progress(self, phase: ProjectPhase) -> int:
        return PHASE_PROGRESS[phase]

    def initial_schedule(self) -> Schedule:
        return Schedule()

    def allowed_statuses(self, phase: ProjectPhase) -> List[str]:
        return list(PHASE_STATUSES[phase])

    def phase_vocabulary(self) -> List[Dict[str, Any]]:
        """Ordered description of every phase for selector widgets."""
        return [
            {
                "phase": phase.value,
                "label": PHASE_LABELS[phase],
                "order": index + 1,
                "progress": PHASE_PROGRESS[phase],
                "statuses": list(PHASE_STATUSES[phase]),
            }
            for index, phase in enumerate(PHASE_ORDER)
        ]

    def resolve_status(
        self, phase: ProjectPhase, status: Optional[str], strict: bool
    ) -> str:
        """
        Return the status to record for `phase`.

        A missing status falls back to the phase's first status.  With
        `strict` the status must belong to the phase vocabulary.
        """
        cleaned = (status or "").strip()
        if not cleaned:
            return PHASE_STATUSES[phase][0]
        if strict and cleaned not in PHASE_STATUSES[phase]:
            raise ValueError(
                f"Status '{cleaned}' is not valid for phase '{phase.value}'. "
                f"Allowed: {PHASE_STATUSES[phase]}."
            )
        return cleaned

    def plan_phase_update(
        self,
        phase: ProjectPhase,
        status: Optional[str],
        updated_by: str,
        strict: bool = True,
    ) -> Tuple[Dict[str, Any], PhaseUpdateEvent]:
        """Return the schedule field mutations and history event for a phase change."""
        resolved_status = self.resolve_status(phase, status, strict)
        event = PhaseUpdateEvent(
            phase=phase,
            status=resolved_status,
            progress=self.derive_progress(phase),
            updated_by=updated_by,
            timestamp=_utcnow(),
        )
        mutations = {
            "current_phase": phase,
            "current_status": resolved_status,
        }
        return mutations, event

    def plan_deadline_update(
        self, deadline: Optional[str], updated_by: str
    ) -> Tuple[Dict[str, Any], DeadlineUpdateEvent]:
        """
        Return the schedule field mutations and history event for a deadline change.

        An empty deadline clears it.  Anything else must be an ISO date.
        """
        cleaned = (deadline or "").strip()
        if cleaned:
            try:
                cleaned = date.fromisoformat(cleaned).isoformat()
            except ValueError as exc:
                raise ValueError(
                    f"Deadline '{cleaned}' is not an ISO date (YYYY-MM-DD)."
                ) from exc
        event = DeadlineUpdateEvent(
            deadline=cleaned,
            updated_by=updated_by,
            timestamp=_utcnow(),
        )
        return {"deadline": cleaned or None}, event

    def sorted_history(
        self, schedule: Optional[Schedule], newest_first: bool = True
    ) -> List[ScheduleEvent]:
        """History ordered by timestamp for display; storage order is untouched."""
        if schedule is None:
            return []
        ordered = sorted(schedule.history, key=lambda e: e.timestamp)
        return ordered[::-1] if newest_first else ordered


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """Manages project creation and who may see a project."""

    def create_project(
        self,
        name: str,
        client: Optional[str],
        description: str,
        accessible_users: List[str],
        operator: Operator,
    ) -> Project:
        """Create and return a new Project instance (unsaved)."""
        _require_role(operator, OperatorRole.ADMIN)
        if not name.strip():
            raise ValueError("Project name must not be empty.")
        users = [u.strip().lower() for u in accessible_users if u.strip()]
        if operator.email.lower() not in users:
            users.append(operator.email.lower())
        return Project(
            name=name.strip(),
            client=client,
            description=description,
            accessible_users=users,
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )

    def is_visible_to(self, project: Project, operator: Operator) -> bool:
        if operator.is_admin:
            return True
        return operator.email.lower() in project.accessible_users

    def visible_projects(self, projects: List[Project], operator: Operator) -> List[Project]:
        return [p for p in projects if self.is_visible_to(p, operator)]


# ---------------------------------------------------------------------------
# SiteService
# ---------------------------------------------------------------------------

class SiteService:
    """Manages the list of sites the dashboard reports on."""

    def create_site(
        self,
        name: str,
        url: str,
        property_id: str,
        description: str,
        operator: Operator,
    ) -> Site:
        _require_role(operator, OperatorRole.ADMIN)
        if not name.strip():
            raise ValueError("Site name must not be empty.")
        return Site(
            name=name.strip(),
            url=url.strip(),
            property_id=property_id.strip(),
            description=description,
        )

    def update_site(
        self,
        site: Site,
        operator: Operator,
        name: Optional[str] = None,
        url: Optional[str] = None,
        property_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Site:
        """Apply field-level updates to a site."""
        _require_role(operator, OperatorRole.ADMIN)
        if name is not None:
            if not name.strip():
                raise ValueError("Site name must not be empty.")
            site.name = name.strip()
        if url is not None:
            site.url = url.strip()
        if property_id is not None:
            site.property_id = property_id.strip()
        if description is not None:
            site.description = description
        return site


# ---------------------------------------------------------------------------
# ReportService
# ---------------------------------------------------------------------------

class ReportService:
    """
    Shapes raw analytics rows into dashboard tables.

    Sort keys mirror the table columns of the dashboard: dimension columns
    compare as strings, metric columns compare numerically.
    """

    PREVIEW_ROWS = 10

    def _sort_value(self, row: ReportRow, key: str) -> Any:
        dims = row.dimension_values
        metrics = row.metric_values
        if key in ("date", "pagePath", "device", "referrer"):
            return dims[0] if dims else ""
        if key == "pageTitle":
            return dims[1] if len(dims) > 1 else ""
        if key in ("pageViews", "sessions"):
            return _to_int(metrics[0]) if metrics else 0
        if key == "users":
            if len(metrics) > 1:
                return _to_int(metrics[1])
            return _to_int(metrics[0]) if metrics else 0
        if key == "avgDuration":
            return _to_float(metrics[1]) if len(metrics) > 1 else 0.0
        return None

    def sort_rows(
        self,
        rows: List[ReportRow],
        key: Optional[str],
        direction: SortDirection = SortDirection.ASCENDING,
    ) -> List[ReportRow]:
        """Return a sorted copy of `rows`; unknown keys keep the API order."""
        if not key or not rows or self._sort_value(rows[0], key) is None:
            return list(rows)
        return sorted(
            rows,
            key=lambda r: self._sort_value(r, key),
            reverse=direction is SortDirection.DESCENDING,
        )

    def format_report_date(self, raw: str) -> str:
        """'20240615' → '2024-06-15'; other shapes are returned unchanged."""
        if len(raw) == 8 and raw.isdigit():
            return f"{raw[0:4]}-{raw[4:6]}-{raw[6:8]}"
        return raw

    def format_duration(self, seconds: Any) -> str:
        """Seconds → 'm:ss'."""
        total = _to_float(seconds)
        minutes = int(total // 60)
        remaining = int(total % 60)
        return f"{minutes}:{remaining:02d}"

    def _preview(self, rows: List[Any], show_all: bool) -> List[Any]:
        return rows if show_all else rows[: self.PREVIEW_ROWS]

    def overview_table(
        self, report: AnalyticsReport, key: Optional[str], direction: SortDirection, show_all: bool
    ) -> Dict[str, Any]:
        rows = self.sort_rows(report.rows, key, direction)
        shaped = [
            {
                "date": self.format_report_date(r.dimension_values[0]),
                "pageViews": _to_int(r.metric_values[0]),
                "users": _to_int(r.metric_values[1]),
                "sessions": _to_int(r.metric_values[2]),
            }
            for r in rows
        ]
        return {
            "rows": self._preview(shaped, show_all),
            "total_rows": len(shaped),
            "totals": {
                "pageViews": sum(r["pageViews"] for r in shaped),
                "users": sum(r["users"] for r in shaped),
                "sessions": sum(r["sessions"] for r in shaped),
            },
        }

    def top_pages_table(
        self, report: AnalyticsReport, key: Optional[str], direction: SortDirection, show_all: bool
    ) -> Dict[str, Any]:
        rows = self.sort_rows(report.rows, key, direction)
        shaped = [
            {
                "pagePath": r.dimension_values[0],
                "pageTitle": r.dimension_values[1],
                "pageViews": _to_int(r.metric_values[0]),
                "avgDuration": self.format_duration(r.metric_values[1]),
            }
            for r in rows
        ]
        return {"rows": self._preview(shaped, show_all), "total_rows": len(shaped)}

    def share_table(
        self,
        report: AnalyticsReport,
        label: str,
        value_key: str,
        key: Optional[str],
        direction: SortDirection,
    ) -> Dict[str, Any]:
        """Single-dimension, single-metric table with each row's share of the total."""
        rows = self.sort_rows(report.rows, key, direction)
        values = [_to_int(r.metric_values[0]) for r in rows]
        total = sum(values)
        shaped = [
            {
                label: r.dimension_values[0],
                value_key: value,
                "percent": round(value * 100 / total, 2) if total else 0.0,
            }
            for r, value in zip(rows, values)
        ]
        return {"rows": shaped, "total_rows": len(shaped), "total": total}

    def event_table(self, report: Optional[AnalyticsReport], label: str) -> Optional[Dict[str, Any]]:
        if report is None:
            return None
        shaped = [
            {label: r.dimension_values[0], "count": _to_int(r.metric_values[0])}
            for r in report.rows
        ]
        return {"rows": shaped, "total_rows": len(shaped)}


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0

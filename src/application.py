"""
application.py

Application layer for the Site Analytics & Delivery Schedule Dashboard.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs — no raw domain objects are leaked upward.
  2. Declaring abstract Repository and Gateway interfaces so that the
     application layer remains persistence- and vendor-agnostic
     (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction that groups the repositories.
  4. Implementing Use Case handlers — one class per user-facing operation —
     that orchestrate authorization, service calls and repository writes.

Structure
---------
DTOs
    OperatorDTO, SiteDTO, ProjectDTO, ScheduleDTO, ScheduleEventDTO
    DateRangeDTO, ReportRowDTO, AnalyticsReportDTO, SiteAnalyticsDTO
    DashboardDTO

Repository / gateway interfaces
    AbstractProjectRepository
    AbstractSiteRepository
    AbstractOperatorRepository
    AbstractAnalyticsGateway

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Operators ---
    AuthenticateOperatorUseCase
    SeedOperatorsUseCase

    --- Sites ---
    CreateSiteUseCase, UpdateSiteUseCase, GetSiteUseCase, ListSitesUseCase

    --- Projects & schedules ---
    CreateProjectUseCase, GetProjectUseCase, ListProjectsUseCase
    GetScheduleUseCase, GetScheduleHistoryUseCase, ExportScheduleDocumentUseCase
    ListPhaseVocabularyUseCase
    SetPhaseUseCase, SetDeadlineUseCase

    --- Analytics ---
    GetAnalyticsReportUseCase
    GetSiteAnalyticsUseCase
    GetSiteDashboardUseCase

Design notes
------------
- Mutating use cases take the acting operator's id, resolve the operator and
  check the admin role before touching any repository.  An unknown or
  under-privileged operator fails closed with no change.
- Schedule writes go through AbstractProjectRepository.append_history_and_update
  so the field mutations and the history append land in a single write that
  is conditional on the version read at the start of the use case.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Errors bubble up as ApplicationError subclasses; services raise ValueError
  which use cases translate.
"""

from __future__ import annotations

import abc
import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from model import (
    AnalyticsReport,
    DateRangeSelector,
    DeadlineUpdateEvent,
    Operator,
    OperatorRole,
    Project,
    ProjectPhase,
    ReportQuery,
    ReportType,
    ResolvedDateRange,
    Schedule,
    ScheduleEvent,
    Site,
    SortDirection,
)
from service import (
    DEFAULT_REPORT_LIMIT,
    REPORT_QUERIES,
    ProjectService,
    ReportService,
    ScheduleService,
    SiteService,
    _require_role,
    resolve_date_range,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthenticationError(ApplicationError):
    """Raised when no valid operator credential was presented."""


class AuthorizationError(ApplicationError):
    """Raised when the acting operator lacks the required role."""


class MissingIdentifierError(ApplicationError):
    """Raised when a required identifier (property id, project id) is absent."""


class ConcurrencyError(ApplicationError):
    """Raised when a conditional write finds the document changed since it was read."""


class AnalyticsError(ApplicationError):
    """Raised when a required analytics report cannot be fetched."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class OperatorDTO:
    id: str
    email: str
    role: str
    is_admin: bool


@dataclass
class SiteDTO:
    id: str
    name: str
    url: str
    property_id: str
    description: str


@dataclass
class ScheduleEventDTO:
    """One history entry; `type` distinguishes the two event variants."""
    type: str
    timestamp: str
    updated_by: str
    phase: Optional[str] = None
    status: Optional[str] = None
    progress: Optional[int] = None
    action: Optional[str] = None
    deadline: Optional[str] = None


@dataclass
class ScheduleDTO:
    current_phase: str
    current_status: str
    progress: int
    deadline: Optional[str]
    history: List[ScheduleEventDTO]


@dataclass
class ProjectDTO:
    id: str
    name: str
    client: Optional[str]
    description: str
    accessible_users: List[str]
    schedule: Optional[ScheduleDTO]
    version: int
    created_at: str
    updated_at: str


@dataclass
class PhaseDTO:
    phase: str
    label: str
    order: int
    progress: int
    statuses: List[str]


@dataclass
class DateRangeDTO:
    start_date: str
    end_date: str


@dataclass
class ReportRowDTO:
    dimension_values: List[str]
    metric_values: List[str]


@dataclass
class AnalyticsReportDTO:
    dimension_headers: List[str]
    metric_headers: List[str]
    rows: List[ReportRowDTO]
    row_count: int


@dataclass
class SiteAnalyticsDTO:
    """Joined result of every report for one property and date range."""
    date_range: DateRangeDTO
    overview: AnalyticsReportDTO
    top_pages: AnalyticsReportDTO
    device_data: AnalyticsReportDTO
    referrer_data: AnalyticsReportDTO
    click_events: Optional[AnalyticsReportDTO]
    search_terms: Optional[AnalyticsReportDTO]


@dataclass
class SingleReportDTO:
    type: str
    date_range: DateRangeDTO
    report: Optional[AnalyticsReportDTO]


@dataclass
class DashboardDTO:
    """Dashboard tables for a site, already sorted and formatted."""
    site: SiteDTO
    date_range: DateRangeDTO
    overview: Dict[str, Any]
    top_pages: Dict[str, Any]
    devices: Dict[str, Any]
    referrers: Dict[str, Any]
    click_events: Optional[Dict[str, Any]]
    search_terms: Optional[Dict[str, Any]]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def operator(o: Operator) -> OperatorDTO:
        return OperatorDTO(id=str(o.id), email=o.email, role=o.role.value, is_admin=o.is_admin)

    @staticmethod
    def site(s: Site) -> SiteDTO:
        return SiteDTO(
            id=str(s.id),
            name=s.name,
            url=s.url,
            property_id=s.property_id,
            description=s.description,
        )

    @staticmethod
    def event(e: ScheduleEvent) -> ScheduleEventDTO:
        if isinstance(e, DeadlineUpdateEvent):
            return ScheduleEventDTO(
                type="deadline_update",
                timestamp=_fmt(e.timestamp),
                updated_by=e.updated_by,
                action=e.action,
                deadline=e.deadline,
            )
        return ScheduleEventDTO(
            type="phase_update",
            timestamp=_fmt(e.timestamp),
            updated_by=e.updated_by,
            phase=e.phase.value,
            status=e.status,
            progress=e.progress,
        )

    @staticmethod
    def schedule(s: Optional[Schedule]) -> Optional[ScheduleDTO]:
        if s is None:
            return None
        return ScheduleDTO(
            current_phase=s.current_phase.value,
            current_status=s.current_status,
            progress=s.progress,
            deadline=s.deadline,
            history=[_Assembler.event(e) for e in s.history],
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            name=p.name,
            client=p.client,
            description=p.description,
            accessible_users=list(p.accessible_users),
            schedule=_Assembler.schedule(p.schedule),
            version=p.version,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def date_range(r: ResolvedDateRange) -> DateRangeDTO:
        return DateRangeDTO(start_date=r.start_date, end_date=r.end_date)

    @staticmethod
    def report(r: Optional[AnalyticsReport]) -> Optional[AnalyticsReportDTO]:
        if r is None:
            return None
        return AnalyticsReportDTO(
            dimension_headers=list(r.dimension_headers),
            metric_headers=list(r.metric_headers),
            rows=[
                ReportRowDTO(
                    dimension_values=list(row.dimension_values),
                    metric_values=list(row.metric_values),
                )
                for row in r.rows
            ],
            row_count=r.row_count,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...

    @abc.abstractmethod
    def append_history_and_update(
        self,
        project_id: uuid.UUID,
        field_mutations: Dict[str, Any],
        event: ScheduleEvent,
        expected_version: int,
    ) -> Project:
        """
        Apply `field_mutations` to the project's schedule and append `event`
        to its history as one write.  A project without a schedule gets the
        initial schedule first.  Raises NotFoundError when the project is gone
        and ConcurrencyError when its version differs from `expected_version`;
        in both cases nothing is written.
        """


class AbstractSiteRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, site_id: uuid.UUID) -> Optional[Site]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Site]: ...
    @abc.abstractmethod
    def save(self, site: Site) -> None: ...


class AbstractOperatorRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, operator_id: uuid.UUID) -> Optional[Operator]: ...
    @abc.abstractmethod
    def get_by_token(self, token: str) -> Optional[Operator]: ...
    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[Operator]: ...
    @abc.abstractmethod
    def save(self, operator: Operator) -> None: ...


class AbstractAnalyticsGateway(abc.ABC):
    """Capability interface over the hosted analytics reporting API."""

    @abc.abstractmethod
    def run_report(
        self,
        property_id: str,
        date_range: ResolvedDateRange,
        query: ReportQuery,
        limit: Optional[int] = None,
    ) -> AnalyticsReport:
        """Run one report; raise AnalyticsError on any remote failure."""

    def close(self) -> None:
        """Release the underlying client."""


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single boundary.
    Use as a context manager:

        with uow:
            uow.projects.save(project)
            uow.commit()
    """
    projects: AbstractProjectRepository
    sites: AbstractSiteRepository
    operators: AbstractOperatorRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_schedule_svc = ScheduleService()
_project_svc = ProjectService()
_site_svc = SiteService()
_report_svc = ReportService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_operator_or_raise(uow: AbstractUnitOfWork, operator_id: uuid.UUID) -> Operator:
    operator = uow.operators.get(operator_id)
    if operator is None:
        raise AuthenticationError(f"Operator {operator_id} is not registered.")
    return operator


def _require_admin(operator: Operator) -> None:
    try:
        _require_role(operator, OperatorRole.ADMIN)
    except ValueError as exc:
        raise AuthorizationError(str(exc)) from exc


def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_visible_project_or_raise(
    uow: AbstractUnitOfWork, project_id: uuid.UUID, operator: Operator
) -> Project:
    project = _get_project_or_raise(uow, project_id)
    if not _project_svc.is_visible_to(project, operator):
        raise AuthorizationError(
            f"Operator {operator.email} may not view project {project_id}."
        )
    return project


def _get_site_or_raise(uow: AbstractUnitOfWork, site_id: uuid.UUID) -> Site:
    site = uow.sites.get(site_id)
    if site is None:
        raise NotFoundError(f"Site {site_id} not found.")
    return site


def _require_property_id(property_id: Optional[str]) -> str:
    cleaned = (property_id or "").strip()
    if not cleaned:
        raise MissingIdentifierError("Property ID is required")
    return cleaned


# ===========================================================================
# USE CASES — OPERATORS
# ===========================================================================

class AuthenticateOperatorUseCase:
    """Resolve a bearer token to the operator it belongs to."""

    def execute(self, token: Optional[str], uow: AbstractUnitOfWork) -> OperatorDTO:
        with uow:
            if not token:
                raise AuthenticationError("Missing bearer token.")
            operator = uow.operators.get_by_token(token)
            if operator is None:
                raise AuthenticationError("Invalid bearer token.")
            return _Assembler.operator(operator)


@dataclass
class SeedOperatorCommand:
    email: str
    role: OperatorRole
    token: str


class SeedOperatorsUseCase:
    """Register configured operators; existing e-mails get their role and token refreshed."""

    def execute(self, cmds: List[SeedOperatorCommand], uow: AbstractUnitOfWork) -> List[OperatorDTO]:
        with uow:
            result = []
            for cmd in cmds:
                email = cmd.email.strip().lower()
                operator = uow.operators.get_by_email(email) or Operator(email=email)
                operator.role = cmd.role
                operator.token = cmd.token
                uow.operators.save(operator)
                result.append(_Assembler.operator(operator))
            uow.commit()
            return result


# ===========================================================================
# USE CASES — SITES
# ===========================================================================

@dataclass
class CreateSiteCommand:
    name: str
    url: str
    property_id: str
    description: str
    acting_user_id: uuid.UUID


class CreateSiteUseCase:
    def execute(self, cmd: CreateSiteCommand, uow: AbstractUnitOfWork) -> SiteDTO:
        with uow:
            operator = _get_operator_or_raise(uow, cmd.acting_user_id)
            _require_admin(operator)
            try:
                site = _site_svc.create_site(
                    name=cmd.name,
                    url=cmd.url,
                    property_id=cmd.property_id,
                    description=cmd.description,
                    operator=operator,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.sites.save(site)
            uow.commit()
            return _Assembler.site(site)


@dataclass
class UpdateSiteCommand:
    site_id: uuid.UUID
    acting_user_id: uuid.UUID
    name: Optional[str] = None
    url: Optional[str] = None
    property_id: Optional[str] = None
    description: Optional[str] = None


class UpdateSiteUseCase:
    def execute(self, cmd: UpdateSiteCommand, uow: AbstractUnitOfWork) -> SiteDTO:
        with uow:
            operator = _get_operator_or_raise(uow, cmd.acting_user_id)
            _require_admin(operator)
            site = _get_site_or_raise(uow, cmd.site_id)
            try:
                site = _site_svc.update_site(
                    site,
                    operator=operator,
                    name=cmd.name,
                    url=cmd.url,
                    property_id=cmd.property_id,
                    description=cmd.description,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.sites.save(site)
            uow.commit()
            return _Assembler.site(site)


class GetSiteUseCase:
    def execute(self, site_id: uuid.UUID, uow: AbstractUnitOfWork) -> SiteDTO:
        with uow:
            return _Assembler.site(_get_site_or_raise(uow, site_id))


class ListSitesUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[SiteDTO]:
        with uow:
            sites = sorted(uow.sites.list_all(), key=lambda s: s.name.lower())
            return [_Assembler.site(s) for s in sites]


# ===========================================================================
# USE CASES — PROJECTS & SCHEDULES
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    client: Optional[str]
    description: str
    accessible_users: List[str]
    acting_user_id: uuid.UUID


class CreateProjectUseCase:
    """Create a project without a schedule; the first schedule write creates one."""

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            operator = _get_operator_or_raise(uow, cmd.acting_user_id)
            _require_admin(operator)
            try:
                project = _project_svc.create_project(
                    name=cmd.name,
                    client=cmd.client,
                    description=cmd.description,
                    accessible_users=cmd.accessible_users,
                    operator=operator,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            uow.projects.save(project)
            uow.commit()
            return _Assembler.project(project)


class GetProjectUseCase:
    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> ProjectDTO:
        with uow:
            operator = _get_operator_or_raise(uow, acting_user_id)
            project = _get_visible_project_or_raise(uow, project_id, operator)
            return _Assembler.project(project)


class ListProjectsUseCase:
    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            operator = _get_operator_or_raise(uow, acting_user_id)
            projects = _project_svc.visible_projects(uow.projects.list_all(), operator)
            projects.sort(key=lambda p: p.name.lower())
            return [_Assembler.project(p) for p in projects]


class GetScheduleUseCase:
    """Return the project's schedule, or None when no schedule write happened yet."""

    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> Optional[ScheduleDTO]:
        with uow:
            operator = _get_operator_or_raise(uow, acting_user_id)
            project = _get_visible_project_or_raise(uow, project_id, operator)
            return _Assembler.schedule(project.schedule)


class GetScheduleHistoryUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        newest_first: bool = True,
    ) -> List[ScheduleEventDTO]:
        with uow:
            operator = _get_operator_or_raise(uow, acting_user_id)
            project = _get_visible_project_or_raise(uow, project_id, operator)
            events = _schedule_svc.sorted_history(project.schedule, newest_first=newest_first)
            return [_Assembler.event(e) for e in events]


class ExportScheduleDocumentUseCase:
    """Return the schedule in the projects-collection document shape (camelCase keys)."""

    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> Optional[Dict[str, Any]]:
        with uow:
            operator = _get_operator_or_raise(uow, acting_user_id)
            project = _get_visible_project_or_raise(uow, project_id, operator)
            if project.schedule is None:
                return None
            return project.schedule.to_document()


class ListPhaseVocabularyUseCase:
    def execute(self) -> List[PhaseDTO]:
        return [PhaseDTO(**entry) for entry in _schedule_svc.phase_vocabulary()]


@dataclass
class SetPhaseCommand:
    project_id: uuid.UUID
    phase: ProjectPhase
    status: Optional[str]
    acting_user_id: uuid.UUID
    strict_status: bool = True


class SetPhaseUseCase:
    """
    Move a project to `phase` with `status`.

    Progress follows from the phase.  Exactly one phase-update history entry
    is appended in the same write.
    """

    def execute(self, cmd: SetPhaseCommand, uow: AbstractUnitOfWork) -> ScheduleDTO:
        with uow:
            operator = _get_operator_or_raise(uow, cmd.acting_user_id)
            _require_admin(operator)
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                mutations, event = _schedule_svc.plan_phase_update(
                    phase=cmd.phase,
                    status=cmd.status,
                    updated_by=operator.email,
                    strict=cmd.strict_status,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            updated = uow.projects.append_history_and_update(
                cmd.project_id, mutations, event, expected_version=project.version
            )
            uow.commit()
            logger.info(
                "Project %s moved to %s (%s) by %s",
                cmd.project_id, event.phase.value, event.status, operator.email,
            )
            return _Assembler.schedule(updated.schedule)


@dataclass
class SetDeadlineCommand:
    project_id: uuid.UUID
    deadline: Optional[str]
    acting_user_id: uuid.UUID


class SetDeadlineUseCase:
    """Set or clear the deadline; phase, status and progress stay as they are."""

    def execute(self, cmd: SetDeadlineCommand, uow: AbstractUnitOfWork) -> ScheduleDTO:
        with uow:
            operator = _get_operator_or_raise(uow, cmd.acting_user_id)
            _require_admin(operator)
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                mutations, event = _schedule_svc.plan_deadline_update(
                    deadline=cmd.deadline,
                    updated_by=operator.email,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            updated = uow.projects.append_history_and_update(
                cmd.project_id, mutations, event, expected_version=project.version
            )
            uow.commit()
            logger.info(
                "Project %s deadline set to %r by %s",
                cmd.project_id, event.deadline, operator.email,
            )
            return _Assembler.schedule(updated.schedule)


# ===========================================================================
# USE CASES — ANALYTICS
# ===========================================================================

_JOINED_REPORTS = [
    ReportType.OVERVIEW,
    ReportType.TOP_PAGES,
    ReportType.DEVICES,
    ReportType.REFERRERS,
    ReportType.CLICKS,
    ReportType.SEARCH_TERMS,
]


class _ReportFetcher:
    """Runs report queries against the gateway, applying the optional-report rules."""

    def __init__(
        self,
        gateway: Optional[AbstractAnalyticsGateway],
        timeout_seconds: float,
        max_workers: int,
    ):
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._max_workers = max_workers

    def _run(
        self,
        property_id: str,
        date_range: ResolvedDateRange,
        report_type: ReportType,
        limit: int,
    ) -> AnalyticsReport:
        query = REPORT_QUERIES[report_type]
        return self._gateway.run_report(
            property_id, date_range, query, limit=limit if query.limited else None
        )

    def _settle(
        self, report_type: ReportType, future: Future, deadline: float
    ) -> Optional[AnalyticsReport]:
        optional = REPORT_QUERIES[report_type].optional
        try:
            report = future.result(timeout=max(0.0, deadline - time.monotonic()))
        except (AnalyticsError, FuturesTimeoutError) as exc:
            if optional:
                logger.info("%s data not available or not configured: %s", report_type.value, exc)
                return None
            logger.error("Required report %s failed", report_type.value, exc_info=True)
            if isinstance(exc, AnalyticsError):
                raise
            raise AnalyticsError(f"Report {report_type.value} timed out.") from exc
        if optional and not report.rows:
            logger.info("%s data not configured for this property", report_type.value)
            return None
        return report

    def fetch_one(
        self,
        property_id: str,
        date_range: ResolvedDateRange,
        report_type: ReportType,
        limit: int,
    ) -> Optional[AnalyticsReport]:
        return self.fetch_many(property_id, date_range, [report_type], limit)[report_type]

    def fetch_many(
        self,
        property_id: str,
        date_range: ResolvedDateRange,
        report_types: List[ReportType],
        limit: int,
    ) -> Dict[ReportType, Optional[AnalyticsReport]]:
        """
        Fan the queries out concurrently and join them; a required failure
        aborts the join.  All queries share one deadline, `timeout_seconds`
        after submission.
        """
        if self._gateway is None:
            raise AnalyticsError("Analytics client is not configured.")
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(report_types)),
            thread_name_prefix="analytics",
        )
        try:
            futures = {
                rt: executor.submit(self._run, property_id, date_range, rt, limit)
                for rt in report_types
            }
            deadline = time.monotonic() + self._timeout
            return {rt: self._settle(rt, futures[rt], deadline) for rt in report_types}
        finally:
            executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class SiteAnalyticsQuery:
    property_id: Optional[str]
    selector: DateRangeSelector
    today: Optional[date] = None


class GetSiteAnalyticsUseCase:
    """Fetch every report for a property and join them into one result."""

    def __init__(
        self,
        gateway: Optional[AbstractAnalyticsGateway],
        timeout_seconds: float = 25.0,
        max_workers: int = 6,
    ):
        self._fetcher = _ReportFetcher(gateway, timeout_seconds, max_workers)

    def execute(self, query: SiteAnalyticsQuery) -> SiteAnalyticsDTO:
        property_id = _require_property_id(query.property_id)
        date_range = resolve_date_range(query.selector, today=query.today)
        reports = self._fetcher.fetch_many(
            property_id, date_range, _JOINED_REPORTS, DEFAULT_REPORT_LIMIT
        )
        return SiteAnalyticsDTO(
            date_range=_Assembler.date_range(date_range),
            overview=_Assembler.report(reports[ReportType.OVERVIEW]),
            top_pages=_Assembler.report(reports[ReportType.TOP_PAGES]),
            device_data=_Assembler.report(reports[ReportType.DEVICES]),
            referrer_data=_Assembler.report(reports[ReportType.REFERRERS]),
            click_events=_Assembler.report(reports[ReportType.CLICKS]),
            search_terms=_Assembler.report(reports[ReportType.SEARCH_TERMS]),
        )


@dataclass
class AnalyticsReportQuery:
    property_id: Optional[str]
    report_type: ReportType
    selector: DateRangeSelector
    limit: int = DEFAULT_REPORT_LIMIT
    today: Optional[date] = None


class GetAnalyticsReportUseCase:
    """Fetch one report type; `all` delegates to the joined fetch."""

    def __init__(
        self,
        gateway: Optional[AbstractAnalyticsGateway],
        timeout_seconds: float = 25.0,
        max_workers: int = 6,
    ):
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._max_workers = max_workers
        self._fetcher = _ReportFetcher(gateway, timeout_seconds, max_workers)

    def execute(self, query: AnalyticsReportQuery) -> Union[SingleReportDTO, SiteAnalyticsDTO]:
        property_id = _require_property_id(query.property_id)
        if query.limit < 1:
            raise ApplicationError("limit must be a positive integer.")
        if query.report_type is ReportType.ALL:
            return GetSiteAnalyticsUseCase(
                self._gateway, self._timeout, self._max_workers
            ).execute(SiteAnalyticsQuery(property_id, query.selector, query.today))

        date_range = resolve_date_range(query.selector, today=query.today)
        report = self._fetcher.fetch_one(property_id, date_range, query.report_type, query.limit)
        return SingleReportDTO(
            type=query.report_type.value,
            date_range=_Assembler.date_range(date_range),
            report=_Assembler.report(report),
        )


@dataclass
class SiteDashboardQuery:
    site_id: uuid.UUID
    selector: DateRangeSelector
    sort_table: Optional[str] = None
    sort_key: Optional[str] = None
    direction: SortDirection = SortDirection.ASCENDING
    show_all: bool = False
    today: Optional[date] = None


class GetSiteDashboardUseCase:
    """
    Build the dashboard tables for a site: daily overview with totals, top
    pages with formatted durations, device and referrer shares, and the
    optional click/search tables.  The sort applies to `sort_table` only.
    """

    def __init__(
        self,
        gateway: Optional[AbstractAnalyticsGateway],
        timeout_seconds: float = 25.0,
        max_workers: int = 6,
    ):
        self._fetcher = _ReportFetcher(gateway, timeout_seconds, max_workers)

    def _sort_for(self, query: SiteDashboardQuery, table: str) -> Optional[str]:
        return query.sort_key if query.sort_table == table else None

    def execute(self, query: SiteDashboardQuery, uow: AbstractUnitOfWork) -> DashboardDTO:
        with uow:
            site = _get_site_or_raise(uow, query.site_id)
        property_id = _require_property_id(site.property_id)
        date_range = resolve_date_range(query.selector, today=query.today)
        reports = self._fetcher.fetch_many(
            property_id, date_range, _JOINED_REPORTS, DEFAULT_REPORT_LIMIT
        )
        d = query.direction
        return DashboardDTO(
            site=_Assembler.site(site),
            date_range=_Assembler.date_range(date_range),
            overview=_report_svc.overview_table(
                reports[ReportType.OVERVIEW], self._sort_for(query, "overview"), d, query.show_all
            ),
            top_pages=_report_svc.top_pages_table(
                reports[ReportType.TOP_PAGES], self._sort_for(query, "topPages"), d, query.show_all
            ),
            devices=_report_svc.share_table(
                reports[ReportType.DEVICES], "device", "users",
                self._sort_for(query, "deviceData"), d,
            ),
            referrers=_report_svc.share_table(
                reports[ReportType.REFERRERS], "referrer", "sessions",
                self._sort_for(query, "referrerData"), d,
            ),
            click_events=_report_svc.event_table(reports[ReportType.CLICKS], "eventName"),
            search_terms=_report_svc.event_table(reports[ReportType.SEARCH_TERMS], "searchTerm"),
        )

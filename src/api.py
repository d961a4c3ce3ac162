"""
api.py

REST API layer for the Site Analytics & Delivery Schedule Dashboard.

Framework : FastAPI
Auth      : Bearer token — the token is resolved to a registered Operator by
            the get_current_operator dependency.  Every endpoint receives the
            resolved operator and passes its id to the relevant use case,
            which enforces the admin role on every mutation.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /me                             — the authenticated operator
  ├── /sites                          — site list / create / update
  │   └── /{site_id}/dashboard        — shaped dashboard tables
  ├── /analytics                      — raw analytics reports (GET one, POST all)
  ├── /projects                       — project list / create / get
  │   └── /{project_id}/schedule      — schedule, phase, deadline, history, document
  └── /schedule/phases                — phase vocabulary

Error handling
--------------
  MissingIdentifierError → 400
  AuthenticationError    → 401
  AuthorizationError     → 403
  NotFoundError          → 404
  ConcurrencyError       → 409
  ApplicationError       → 422
  Request validation     → 422
  AnalyticsError         → 500

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "error": "<message>" }

Analytics payloads use camelCase keys (topPages, deviceData, dimensionValues,
...) so dashboards can consume them unchanged.

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_mcp import FastApiMCP
from google.auth.exceptions import DefaultCredentialsError
from pydantic import BaseModel, ConfigDict, Field

from application import (
    # Exceptions
    AnalyticsError,
    ApplicationError,
    AuthenticationError,
    AuthorizationError,
    ConcurrencyError,
    MissingIdentifierError,
    NotFoundError,
    # DTOs
    OperatorDTO,
    # Use-case commands / queries
    AnalyticsReportQuery,
    CreateProjectCommand,
    CreateSiteCommand,
    SeedOperatorCommand,
    SetDeadlineCommand,
    SetPhaseCommand,
    SiteAnalyticsQuery,
    SiteDashboardQuery,
    UpdateSiteCommand,
    # Use-case classes
    AuthenticateOperatorUseCase,
    CreateProjectUseCase,
    CreateSiteUseCase,
    ExportScheduleDocumentUseCase,
    GetAnalyticsReportUseCase,
    GetProjectUseCase,
    GetScheduleHistoryUseCase,
    GetScheduleUseCase,
    GetSiteAnalyticsUseCase,
    GetSiteDashboardUseCase,
    GetSiteUseCase,
    ListPhaseVocabularyUseCase,
    ListProjectsUseCase,
    ListSitesUseCase,
    SeedOperatorsUseCase,
    SetDeadlineUseCase,
    SetPhaseUseCase,
    UpdateSiteUseCase,
    # Interfaces
    AbstractAnalyticsGateway,
    AbstractUnitOfWork,
)
from config import Settings
from infrastructure import GoogleAnalyticsGateway, InMemoryDatabase, InMemoryUnitOfWork
from model import DateRangeSelector, DateRangeType, ProjectPhase, ReportType, SortDirection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------

def _plain(data: Any) -> Any:
    if dataclasses.is_dataclass(data):
        return dataclasses.asdict(data)
    if isinstance(data, list):
        return [_plain(item) for item in data]
    return data


def _camel(key: str) -> str:
    head, *tail = key.split("_")
    return head + "".join(part.capitalize() for part in tail)


def _camelize(data: Any) -> Any:
    if isinstance(data, dict):
        return {_camel(k): _camelize(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_camelize(item) for item in data]
    return data


def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    return {"data": _plain(data)}


def _ok_camel(data: Any) -> Dict:
    return {"data": _camelize(_plain(data))}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_uow(request: Request) -> AbstractUnitOfWork:
    """Returns a Unit of Work over the application's in-memory database."""
    return InMemoryUnitOfWork(request.app.state.db)


def get_analytics_gateway(request: Request) -> Optional[AbstractAnalyticsGateway]:
    """None when no client could be built; the use cases report it after validating input."""
    return request.app.state.analytics_gateway


def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    uow: AbstractUnitOfWork = Depends(get_uow),
) -> OperatorDTO:
    token = credentials.credentials if credentials else None
    return AuthenticateOperatorUseCase().execute(token, uow)


def _operator_id(operator: OperatorDTO) -> uuid.UUID:
    return uuid.UUID(operator.id)


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

class DateRangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: DateRangeType = DateRangeType.WEEK
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")

    def to_selector(self) -> DateRangeSelector:
        return DateRangeSelector(type=self.type, start_date=self.start_date, end_date=self.end_date)


class AnalyticsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Optional here so a missing id is reported as 400 rather than 422.
    property_id: Optional[str] = Field(default=None, alias="propertyId")
    date_range: Optional[DateRangeRequest] = Field(default=None, alias="dateRange")


class CreateSiteRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    url: str = Field(default="", max_length=2000)
    property_id: str = Field(default="", max_length=64)
    description: str = Field(default="")


class UpdateSiteRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    url: Optional[str] = Field(default=None, max_length=2000)
    property_id: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = None


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    client: Optional[str] = Field(default=None, max_length=200)
    description: str = Field(default="")
    accessible_users: List[str] = Field(default_factory=list)


class SetPhaseRequest(BaseModel):
    phase: ProjectPhase
    status: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Defaults to the first status of the phase.",
    )


class SetDeadlineRequest(BaseModel):
    deadline: Optional[str] = Field(
        default=None,
        description="ISO date (YYYY-MM-DD); empty or null clears the deadline.",
    )


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

me_router = APIRouter(prefix="/me", tags=["Operators"])


@me_router.get("", summary="Get the authenticated operator")
def get_me(operator: OperatorDTO = Depends(get_current_operator)):
    return _ok(operator)


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------

site_router = APIRouter(prefix="/sites", tags=["Sites"])


@site_router.get("", summary="List all managed sites")
def list_sites(
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListSitesUseCase().execute(uow))


@site_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a site (admin only)",
)
def create_site(
    body: CreateSiteRequest,
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateSiteCommand(
        name=body.name,
        url=body.url,
        property_id=body.property_id,
        description=body.description,
        acting_user_id=_operator_id(operator),
    )
    return _ok(CreateSiteUseCase().execute(cmd, uow))


@site_router.get("/{site_id}", summary="Get a site by ID")
def get_site(
    site_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetSiteUseCase().execute(site_id, uow))


@site_router.patch("/{site_id}", summary="Update site fields such as the analytics property ID")
def update_site(
    body: UpdateSiteRequest,
    site_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateSiteCommand(
        site_id=site_id,
        acting_user_id=_operator_id(operator),
        name=body.name,
        url=body.url,
        property_id=body.property_id,
        description=body.description,
    )
    return _ok(UpdateSiteUseCase().execute(cmd, uow))


@site_router.get("/{site_id}/dashboard", summary="Sorted and formatted dashboard tables for a site")
def get_site_dashboard(
    site_id: uuid.UUID = Path(...),
    range_type: DateRangeType = Query(default=DateRangeType.WEEK, alias="range"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    table: Optional[str] = Query(
        default=None,
        description="Table to sort: overview, topPages, deviceData or referrerData",
    ),
    sort: Optional[str] = Query(default=None, description="Column key to sort by"),
    direction: SortDirection = Query(default=SortDirection.ASCENDING),
    show_all: bool = Query(default=False, alias="showAll"),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
    gateway: Optional[AbstractAnalyticsGateway] = Depends(get_analytics_gateway),
    settings: Settings = Depends(get_settings),
):
    query = SiteDashboardQuery(
        site_id=site_id,
        selector=DateRangeSelector(type=range_type, start_date=start_date, end_date=end_date),
        sort_table=table,
        sort_key=sort,
        direction=direction,
        show_all=show_all,
    )
    use_case = GetSiteDashboardUseCase(
        gateway, settings.analytics_timeout_seconds, settings.analytics_max_workers
    )
    return _ok(use_case.execute(query, uow))


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

analytics_router = APIRouter(prefix="/analytics", tags=["Analytics"])


@analytics_router.get("", summary="Fetch one analytics report type for a property")
def get_analytics(
    property_id: Optional[str] = Query(default=None, alias="propertyId"),
    report_type: ReportType = Query(default=ReportType.OVERVIEW, alias="type"),
    range_type: DateRangeType = Query(default=DateRangeType.WEEK, alias="range"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    limit: int = Query(default=10, ge=1, le=1000),
    operator: OperatorDTO = Depends(get_current_operator),
    gateway: Optional[AbstractAnalyticsGateway] = Depends(get_analytics_gateway),
    settings: Settings = Depends(get_settings),
):
    query = AnalyticsReportQuery(
        property_id=property_id,
        report_type=report_type,
        selector=DateRangeSelector(type=range_type, start_date=start_date, end_date=end_date),
        limit=limit,
    )
    use_case = GetAnalyticsReportUseCase(
        gateway, settings.analytics_timeout_seconds, settings.analytics_max_workers
    )
    return _ok_camel(use_case.execute(query))


@analytics_router.post("", summary="Fetch every analytics report for a property in one call")
def post_analytics(
    body: AnalyticsRequest,
    operator: OperatorDTO = Depends(get_current_operator),
    gateway: Optional[AbstractAnalyticsGateway] = Depends(get_analytics_gateway),
    settings: Settings = Depends(get_settings),
):
    date_range = body.date_range or DateRangeRequest()
    query = SiteAnalyticsQuery(property_id=body.property_id, selector=date_range.to_selector())
    use_case = GetSiteAnalyticsUseCase(
        gateway, settings.analytics_timeout_seconds, settings.analytics_max_workers
    )
    return _ok_camel(use_case.execute(query))


# ---------------------------------------------------------------------------
# Projects & schedules
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.get("", summary="List the projects visible to the operator")
def list_projects(
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListProjectsUseCase().execute(_operator_id(operator), uow))


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a project (admin only)",
)
def create_project(
    body: CreateProjectRequest,
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateProjectCommand(
        name=body.name,
        client=body.client,
        description=body.description,
        accessible_users=body.accessible_users,
        acting_user_id=_operator_id(operator),
    )
    return _ok(CreateProjectUseCase().execute(cmd, uow))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectUseCase().execute(project_id, _operator_id(operator), uow))


@project_router.get(
    "/{project_id}/schedule",
    summary="Get the delivery schedule (null until the first schedule change)",
)
def get_schedule(
    project_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetScheduleUseCase().execute(project_id, _operator_id(operator), uow))


@project_router.put("/{project_id}/schedule/phase", summary="Move the project to a phase")
def set_phase(
    body: SetPhaseRequest,
    project_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
    settings: Settings = Depends(get_settings),
):
    """
    Any phase may be selected regardless of the current one.  Progress is
    derived from the phase and one history entry is appended.
    """
    cmd = SetPhaseCommand(
        project_id=project_id,
        phase=body.phase,
        status=body.status,
        acting_user_id=_operator_id(operator),
        strict_status=settings.strict_status_validation,
    )
    return _ok(SetPhaseUseCase().execute(cmd, uow))


@project_router.put("/{project_id}/schedule/deadline", summary="Set or clear the deadline")
def set_deadline(
    body: SetDeadlineRequest,
    project_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = SetDeadlineCommand(
        project_id=project_id,
        deadline=body.deadline,
        acting_user_id=_operator_id(operator),
    )
    return _ok(SetDeadlineUseCase().execute(cmd, uow))


@project_router.get(
    "/{project_id}/schedule/document",
    summary="Schedule in the stored document shape (camelCase), null before the first change",
)
def export_schedule_document(
    project_id: uuid.UUID = Path(...),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ExportScheduleDocumentUseCase().execute(project_id, _operator_id(operator), uow))


@project_router.get(
    "/{project_id}/schedule/history",
    summary="Schedule history, newest first unless order=asc",
)
def get_schedule_history(
    project_id: uuid.UUID = Path(...),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    operator: OperatorDTO = Depends(get_current_operator),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetScheduleHistoryUseCase().execute(
        project_id, _operator_id(operator), uow, newest_first=order == "desc"
    )
    return _ok(result)


schedule_router = APIRouter(prefix="/schedule", tags=["Projects"])


@schedule_router.get("/phases", summary="Phases in order with their progress and statuses")
def list_phases(operator: OperatorDTO = Depends(get_current_operator)):
    return _ok(ListPhaseVocabularyUseCase().execute())


api_v1.include_router(me_router)
api_v1.include_router(site_router)
api_v1.include_router(analytics_router)
api_v1.include_router(project_router)
api_v1.include_router(schedule_router)


# ===========================================================================
# EXCEPTION HANDLERS
# ===========================================================================

def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(MissingIdentifierError)
    async def missing_identifier_handler(request, exc: MissingIdentifierError):
        return _error(400, str(exc))

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request, exc: AuthenticationError):
        response = _error(401, str(exc))
        response.headers["WWW-Authenticate"] = "Bearer"
        return response

    @app.exception_handler(AuthorizationError)
    async def authorization_handler(request, exc: AuthorizationError):
        return _error(403, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConcurrencyError)
    async def concurrency_handler(request, exc: ConcurrencyError):
        return _error(409, str(exc))

    @app.exception_handler(AnalyticsError)
    async def analytics_handler(request, exc: AnalyticsError):
        logger.error("Analytics request failed: %s", exc)
        return _error(500, "Failed to fetch analytics data")

    @app.exception_handler(ApplicationError)
    async def application_error_handler(request, exc: ApplicationError):
        return _error(422, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        return _error(422, message or "Invalid request.")

    @app.exception_handler(Exception)
    async def unhandled_handler(request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {"name": "Health", "description": "Liveness check."},
    {"name": "Operators", "description": "The operator behind the bearer token."},
    {
        "name": "Sites",
        "description": (
            "Managed websites and the analytics property that tracks each one.  "
            "The dashboard endpoint returns sorted, formatted tables for charts."
        ),
    },
    {
        "name": "Analytics",
        "description": (
            "Traffic reports from the analytics API over a day, week, month or "
            "custom date range.  Click-event and search-term reports are optional "
            "and come back as null when the property does not collect them."
        ),
    },
    {
        "name": "Projects",
        "description": (
            "Website delivery projects and their schedules: phase, status, derived "
            "progress, deadline and an append-only history of every change."
        ),
    },
]


# ===========================================================================
# APP FACTORY
# ===========================================================================

def create_app(
    settings: Settings,
    db: Optional[InMemoryDatabase] = None,
    analytics_gateway: Optional[AbstractAnalyticsGateway] = None,
) -> FastAPI:
    """
    Build the API around explicitly supplied collaborators.

    When no analytics gateway is supplied, a Google Analytics client is
    created at startup from `settings.ga_key_path` and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Optional[AbstractAnalyticsGateway] = None
        if app.state.analytics_gateway is None:
            try:
                owned = GoogleAnalyticsGateway.from_key_file(
                    settings.ga_key_path, settings.analytics_timeout_seconds
                )
                app.state.analytics_gateway = owned
            except (DefaultCredentialsError, OSError, ValueError) as exc:
                logger.warning("Analytics client unavailable, reports will fail: %s", exc)
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.analytics_gateway = None

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description=(
            "JSON API behind the site analytics dashboard and the project "
            "delivery schedule board."
        ),
        openapi_tags=tags_metadata,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = db if db is not None else InMemoryDatabase()
    app.state.analytics_gateway = analytics_gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_exception_handlers(app)

    @app.get("/health", tags=["Health"], summary="Service health check")
    def health():
        return {"status": "ok"}

    app.include_router(api_v1)

    seeded = SeedOperatorsUseCase().execute(
        [SeedOperatorCommand(email=o.email, role=o.role, token=o.token) for o in settings.operators],
        InMemoryUnitOfWork(app.state.db),
    )
    logger.info("Registered %d operator(s)", len(seeded))

    if settings.mcp_enabled:
        # Exposes the API routes as MCP tools at /mcp
        FastApiMCP(app).mount_http()

    return app

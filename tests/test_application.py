"""Use-case tests against the in-memory unit of work and a scripted analytics gateway."""

import threading
import uuid
from datetime import date

import pytest

from application import (
    AnalyticsError,
    AnalyticsReportQuery,
    ApplicationError,
    AuthenticateOperatorUseCase,
    AuthenticationError,
    AuthorizationError,
    ConcurrencyError,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateSiteCommand,
    CreateSiteUseCase,
    GetAnalyticsReportUseCase,
    GetProjectUseCase,
    GetScheduleHistoryUseCase,
    GetScheduleUseCase,
    GetSiteAnalyticsUseCase,
    GetSiteDashboardUseCase,
    ListProjectsUseCase,
    MissingIdentifierError,
    NotFoundError,
    SetDeadlineCommand,
    SetDeadlineUseCase,
    SetPhaseCommand,
    SetPhaseUseCase,
    SiteAnalyticsQuery,
    SiteDashboardQuery,
    SingleReportDTO,
    UpdateSiteCommand,
    UpdateSiteUseCase,
)
from conftest import ADMIN_TOKEN, VIEWER_EMAIL, FakeAnalyticsGateway
from infrastructure import InMemoryUnitOfWork
from model import (
    DateRangeSelector,
    DateRangeType,
    PhaseUpdateEvent,
    ProjectPhase,
    ReportType,
    SortDirection,
)

TODAY = date(2024, 6, 15)


@pytest.fixture
def project_id(uow, admin_id):
    dto = CreateProjectUseCase().execute(
        CreateProjectCommand(
            name="Corporate site",
            client="ACME",
            description="Renewal",
            accessible_users=[],
            acting_user_id=admin_id,
        ),
        uow,
    )
    return uuid.UUID(dto.id)


def _set_phase(uow, project_id, operator_id, phase, status=None, strict=True):
    return SetPhaseUseCase().execute(
        SetPhaseCommand(
            project_id=project_id,
            phase=phase,
            status=status,
            acting_user_id=operator_id,
            strict_status=strict,
        ),
        uow,
    )


def _set_deadline(uow, project_id, operator_id, deadline):
    return SetDeadlineUseCase().execute(
        SetDeadlineCommand(project_id=project_id, deadline=deadline, acting_user_id=operator_id),
        uow,
    )


# ===========================================================================
# Operators
# ===========================================================================

class TestAuthentication:

    def test_token_resolves_operator(self, uow):
        dto = AuthenticateOperatorUseCase().execute(ADMIN_TOKEN, uow)
        assert dto.email == "admin@example.com"
        assert dto.is_admin

    @pytest.mark.parametrize("token", [None, "", "not-a-real-token"])
    def test_missing_or_unknown_token(self, uow, token):
        with pytest.raises(AuthenticationError):
            AuthenticateOperatorUseCase().execute(token, uow)


# ===========================================================================
# Schedules
# ===========================================================================

class TestSetPhase:

    def test_project_starts_without_schedule(self, uow, project_id, admin_id):
        assert GetScheduleUseCase().execute(project_id, admin_id, uow) is None

    def test_first_phase_change_creates_schedule(self, uow, project_id, admin_id):
        schedule = _set_phase(uow, project_id, admin_id, ProjectPhase.CODING, "コーディング中")
        assert schedule.current_phase == "coding"
        assert schedule.current_status == "コーディング中"
        assert schedule.progress == 40
        assert schedule.deadline is None
        assert len(schedule.history) == 1
        entry = schedule.history[0]
        assert entry.type == "phase_update"
        assert (entry.phase, entry.status, entry.progress) == ("coding", "コーディング中", 40)
        assert entry.updated_by == "admin@example.com"

    def test_status_defaults_to_first_of_phase(self, uow, project_id, admin_id):
        schedule = _set_phase(uow, project_id, admin_id, ProjectPhase.PREPARATION)
        assert schedule.current_status == "サーバー設定中"
        assert schedule.progress == 80

    def test_any_phase_may_follow_any_other(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.LIVE)
        schedule = _set_phase(uow, project_id, admin_id, ProjectPhase.DESIGN)
        assert schedule.progress == 20
        assert [e.progress for e in schedule.history] == [100, 20]

    def test_each_change_appends_exactly_one_entry(self, uow, project_id, admin_id):
        phases = [ProjectPhase.DESIGN, ProjectPhase.CODING, ProjectPhase.TESTING, ProjectPhase.CODING]
        for phase in phases:
            _set_phase(uow, project_id, admin_id, phase)
        _set_deadline(uow, project_id, admin_id, "2024-09-30")
        schedule = GetScheduleUseCase().execute(project_id, admin_id, uow)
        assert len(schedule.history) == len(phases) + 1
        assert [e.phase for e in schedule.history[:4]] == [p.value for p in phases]

    def test_invalid_status_rejected_without_change(self, uow, project_id, admin_id):
        with pytest.raises(ApplicationError, match="not valid"):
            _set_phase(uow, project_id, admin_id, ProjectPhase.LIVE, "コーディング中")
        assert GetScheduleUseCase().execute(project_id, admin_id, uow) is None

    def test_lenient_mode_accepts_free_text(self, uow, project_id, admin_id):
        schedule = _set_phase(uow, project_id, admin_id, ProjectPhase.LIVE, "休止中", strict=False)
        assert schedule.current_status == "休止中"

    def test_viewer_cannot_change_phase(self, uow, project_id, viewer_id, admin_id):
        with pytest.raises(AuthorizationError):
            _set_phase(uow, project_id, viewer_id, ProjectPhase.CODING)
        project = uow.projects.get(project_id)
        assert project.schedule is None
        assert project.version == 0

    def test_unknown_operator_fails_closed(self, uow, project_id, unknown_id):
        with pytest.raises(AuthenticationError):
            _set_phase(uow, project_id, unknown_id, ProjectPhase.CODING)

    def test_missing_project(self, uow, admin_id):
        with pytest.raises(NotFoundError):
            _set_phase(uow, uuid.uuid4(), admin_id, ProjectPhase.CODING)

    def test_version_increments_per_write(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.CODING)
        _set_deadline(uow, project_id, admin_id, "2024-09-30")
        assert uow.projects.get(project_id).version == 2


class TestSetDeadline:

    def test_deadline_leaves_phase_untouched(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.TESTING, "テスト完了")
        schedule = _set_deadline(uow, project_id, admin_id, "2024-07-01")
        assert schedule.deadline == "2024-07-01"
        assert schedule.current_phase == "testing"
        assert schedule.current_status == "テスト完了"
        assert schedule.progress == 60
        entry = schedule.history[-1]
        assert entry.type == "deadline_update"
        assert entry.action == "deadline_updated"
        assert entry.deadline == "2024-07-01"

    def test_deadline_on_fresh_project_uses_initial_schedule(self, uow, project_id, admin_id):
        schedule = _set_deadline(uow, project_id, admin_id, "2024-07-01")
        assert schedule.current_phase == "design"
        assert schedule.current_status == "デザイン作成中"
        assert len(schedule.history) == 1

    def test_empty_deadline_clears(self, uow, project_id, admin_id):
        _set_deadline(uow, project_id, admin_id, "2024-07-01")
        schedule = _set_deadline(uow, project_id, admin_id, "")
        assert schedule.deadline is None
        assert schedule.history[-1].deadline == ""
        assert len(schedule.history) == 2

    def test_invalid_deadline(self, uow, project_id, admin_id):
        with pytest.raises(ApplicationError):
            _set_deadline(uow, project_id, admin_id, "next friday")
        assert uow.projects.get(project_id).schedule is None

    def test_viewer_cannot_set_deadline(self, uow, project_id, viewer_id):
        with pytest.raises(AuthorizationError):
            _set_deadline(uow, project_id, viewer_id, "2024-07-01")


class TestHistory:

    def test_history_newest_first(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.CODING)
        _set_deadline(uow, project_id, admin_id, "2024-07-01")
        history = GetScheduleHistoryUseCase().execute(project_id, admin_id, uow)
        assert [e.type for e in history] == ["deadline_update", "phase_update"]
        oldest_first = GetScheduleHistoryUseCase().execute(
            project_id, admin_id, uow, newest_first=False
        )
        assert [e.type for e in oldest_first] == ["phase_update", "deadline_update"]

    def test_history_is_empty_before_first_write(self, uow, project_id, admin_id):
        assert GetScheduleHistoryUseCase().execute(project_id, admin_id, uow) == []


class TestConditionalWrite:

    def test_stale_version_is_rejected(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.CODING)
        event = PhaseUpdateEvent(ProjectPhase.LIVE, "公開済み", 100, "admin@example.com")
        with pytest.raises(ConcurrencyError):
            uow.projects.append_history_and_update(
                project_id,
                {"current_phase": ProjectPhase.LIVE, "current_status": "公開済み"},
                event,
                expected_version=0,
            )
        project = uow.projects.get(project_id)
        assert project.schedule.current_phase is ProjectPhase.CODING
        assert len(project.schedule.history) == 1

    def test_history_cannot_be_replaced(self, uow, project_id):
        event = PhaseUpdateEvent(ProjectPhase.LIVE, "公開済み", 100, "admin@example.com")
        with pytest.raises(ValueError):
            uow.projects.append_history_and_update(project_id, {"history": []}, event, 0)

    def test_reads_cannot_edit_stored_history(self, uow, project_id, admin_id):
        _set_phase(uow, project_id, admin_id, ProjectPhase.CODING)
        project = uow.projects.get(project_id)
        project.schedule.history.clear()
        assert len(uow.projects.get(project_id).schedule.history) == 1

    def test_concurrent_writers_never_lose_an_entry(self, db, uow, project_id, admin_id):
        results = {"ok": 0, "conflict": 0}
        lock = threading.Lock()

        def writer(phase):
            try:
                _set_phase(InMemoryUnitOfWork(db), project_id, admin_id, phase)
                outcome = "ok"
            except ConcurrencyError:
                outcome = "conflict"
            with lock:
                results[outcome] += 1

        threads = [
            threading.Thread(target=writer, args=(phase,))
            for phase in list(ProjectPhase) * 4
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        project = uow.projects.get(project_id)
        assert results["ok"] + results["conflict"] == len(threads)
        assert len(project.schedule.history) == results["ok"] == project.version


class TestStoreConcurrency:

    def test_listing_while_saving_never_sees_a_resizing_dict(self, db, uow, admin_id):
        errors = []
        stop = threading.Event()

        def creator():
            writer_uow = InMemoryUnitOfWork(db)
            i = 0
            while not stop.is_set():
                CreateProjectUseCase().execute(
                    CreateProjectCommand(f"P{i}", None, "", [], acting_user_id=admin_id),
                    writer_uow,
                )
                CreateSiteUseCase().execute(
                    CreateSiteCommand(f"S{i}", "", "", "", admin_id), writer_uow
                )
                i += 1

        writer = threading.Thread(target=creator)
        writer.start()
        try:
            for _ in range(200):
                try:
                    uow.projects.list_all()
                    uow.sites.list_all()
                    uow.operators.get_by_token(ADMIN_TOKEN)
                except RuntimeError as exc:
                    errors.append(exc)
        finally:
            stop.set()
            writer.join()
        assert errors == []
        assert len(uow.projects.list_all()) == len(uow.sites.list_all())


# ===========================================================================
# Projects
# ===========================================================================

class TestProjectVisibility:

    def test_viewer_cannot_create(self, uow, viewer_id):
        with pytest.raises(AuthorizationError):
            CreateProjectUseCase().execute(
                CreateProjectCommand("X", None, "", [], acting_user_id=viewer_id), uow
            )

    def test_viewer_sees_only_shared_projects(self, uow, admin_id, viewer_id, project_id):
        shared = CreateProjectUseCase().execute(
            CreateProjectCommand("Shared", None, "", [VIEWER_EMAIL], acting_user_id=admin_id), uow
        )
        names = [p.name for p in ListProjectsUseCase().execute(viewer_id, uow)]
        assert names == ["Shared"]
        assert GetProjectUseCase().execute(uuid.UUID(shared.id), viewer_id, uow).name == "Shared"
        with pytest.raises(AuthorizationError):
            GetProjectUseCase().execute(project_id, viewer_id, uow)

    def test_admin_sees_everything(self, uow, admin_id, project_id):
        assert len(ListProjectsUseCase().execute(admin_id, uow)) == 1


# ===========================================================================
# Analytics
# ===========================================================================

WEEK = DateRangeSelector(type=DateRangeType.WEEK)


class TestSiteAnalytics:

    def test_joins_every_report(self, gateway):
        result = GetSiteAnalyticsUseCase(gateway).execute(SiteAnalyticsQuery("123", WEEK, TODAY))
        assert result.date_range.start_date == "2024-06-09"
        assert result.date_range.end_date == "2024-06-15"
        assert result.overview.row_count == 3
        assert result.top_pages.dimension_headers == ["pagePath", "pageTitle"]
        assert result.device_data.rows[0].dimension_values == ["desktop"]
        assert result.referrer_data.rows[0].metric_values == ["75"]
        assert result.click_events.rows[0].dimension_values == ["click_cta"]
        # empty optional report degrades to None
        assert result.search_terms is None
        assert gateway.keys_called() == sorted(
            ["date", "pagePath", "deviceCategory", "sessionSource", "eventName", "searchTerm"]
        )
        assert {c["property_id"] for c in gateway.calls} == {"123"}

    def test_limit_applies_to_limited_reports_only(self, gateway):
        GetSiteAnalyticsUseCase(gateway).execute(SiteAnalyticsQuery("123", WEEK, TODAY))
        limits = {c["key"]: c["limit"] for c in gateway.calls}
        assert limits["pagePath"] == 10
        assert limits["sessionSource"] == 10
        assert limits["date"] is None
        assert limits["deviceCategory"] is None

    def test_optional_failure_degrades_to_none(self):
        gateway = FakeAnalyticsGateway(failures={"eventName": AnalyticsError("not configured")})
        result = GetSiteAnalyticsUseCase(gateway).execute(SiteAnalyticsQuery("123", WEEK, TODAY))
        assert result.click_events is None
        assert result.overview is not None

    def test_required_failure_fails_the_whole_request(self, failing_required_gateway):
        with pytest.raises(AnalyticsError):
            GetSiteAnalyticsUseCase(failing_required_gateway).execute(
                SiteAnalyticsQuery("123", WEEK, TODAY)
            )

    def test_slow_required_report_times_out(self):
        gateway = FakeAnalyticsGateway(delays={"date": 0.5})
        with pytest.raises(AnalyticsError, match="timed out"):
            GetSiteAnalyticsUseCase(gateway, timeout_seconds=0.05).execute(
                SiteAnalyticsQuery("123", WEEK, TODAY)
            )

    def test_slow_optional_report_degrades(self):
        gateway = FakeAnalyticsGateway(delays={"eventName": 0.5})
        result = GetSiteAnalyticsUseCase(gateway, timeout_seconds=0.2).execute(
            SiteAnalyticsQuery("123", WEEK, TODAY)
        )
        assert result.click_events is None
        assert result.overview is not None

    def test_timeout_is_measured_from_submission_not_per_wait(self):
        # each wait alone is shorter than the timeout, the second report is not
        gateway = FakeAnalyticsGateway(
            delays={"date": 0.3, "pagePath": 0.7, "deviceCategory": 1.1}
        )
        with pytest.raises(AnalyticsError, match="topPages timed out"):
            GetSiteAnalyticsUseCase(gateway, timeout_seconds=0.5).execute(
                SiteAnalyticsQuery("123", WEEK, TODAY)
            )

    def test_missing_client_is_reported_after_property_check(self):
        with pytest.raises(MissingIdentifierError):
            GetSiteAnalyticsUseCase(None).execute(SiteAnalyticsQuery(None, WEEK, TODAY))
        with pytest.raises(AnalyticsError, match="not configured"):
            GetSiteAnalyticsUseCase(None).execute(SiteAnalyticsQuery("123", WEEK, TODAY))

    @pytest.mark.parametrize("property_id", [None, "", "   "])
    def test_missing_property_id(self, gateway, property_id):
        with pytest.raises(MissingIdentifierError, match="Property ID is required"):
            GetSiteAnalyticsUseCase(gateway).execute(SiteAnalyticsQuery(property_id, WEEK, TODAY))
        assert gateway.calls == []


class TestSingleReport:

    def test_single_report_type(self, gateway):
        query = AnalyticsReportQuery(
            "123", ReportType.TOP_PAGES, DateRangeSelector(type=DateRangeType.DAY), limit=25, today=TODAY
        )
        result = GetAnalyticsReportUseCase(gateway).execute(query)
        assert isinstance(result, SingleReportDTO)
        assert result.type == "topPages"
        assert result.date_range.start_date == "2024-06-15"
        assert gateway.calls[0]["limit"] == 25
        assert len(gateway.calls) == 1

    def test_all_delegates_to_joined_fetch(self, gateway):
        query = AnalyticsReportQuery("123", ReportType.ALL, WEEK, today=TODAY)
        result = GetAnalyticsReportUseCase(gateway).execute(query)
        assert result.top_pages is not None
        assert len(gateway.calls) == 6

    def test_empty_optional_single_report_is_none(self, gateway):
        query = AnalyticsReportQuery("123", ReportType.SEARCH_TERMS, WEEK, today=TODAY)
        assert GetAnalyticsReportUseCase(gateway).execute(query).report is None

    def test_non_positive_limit(self, gateway):
        with pytest.raises(ApplicationError):
            GetAnalyticsReportUseCase(gateway).execute(
                AnalyticsReportQuery("123", ReportType.OVERVIEW, WEEK, limit=0)
            )


# ===========================================================================
# Sites & dashboard
# ===========================================================================

class TestSitesAndDashboard:

    @pytest.fixture
    def site_id(self, uow, admin_id):
        dto = CreateSiteUseCase().execute(
            CreateSiteCommand("Corporate", "https://example.com", "123", "", admin_id), uow
        )
        return uuid.UUID(dto.id)

    def test_viewer_cannot_create_site(self, uow, viewer_id):
        with pytest.raises(AuthorizationError):
            CreateSiteUseCase().execute(CreateSiteCommand("X", "", "", "", viewer_id), uow)

    def test_update_property_id(self, uow, admin_id, site_id):
        dto = UpdateSiteUseCase().execute(
            UpdateSiteCommand(site_id=site_id, acting_user_id=admin_id, property_id=" 456 "), uow
        )
        assert dto.property_id == "456"
        assert dto.name == "Corporate"

    def test_dashboard_tables(self, uow, gateway, site_id):
        query = SiteDashboardQuery(
            site_id=site_id,
            selector=WEEK,
            sort_table="topPages",
            sort_key="pageViews",
            direction=SortDirection.DESCENDING,
            today=TODAY,
        )
        dash = GetSiteDashboardUseCase(gateway).execute(query, uow)
        assert dash.site.name == "Corporate"
        assert dash.overview["totals"] == {"pageViews": 300, "users": 120, "sessions": 150}
        assert [r["pagePath"] for r in dash.top_pages["rows"]] == ["/", "/contact", "/about"]
        assert dash.top_pages["rows"][0]["avgDuration"] == "1:05"
        assert [r["percent"] for r in dash.devices["rows"]] == [60.0, 40.0]
        assert dash.referrers["total"] == 100
        assert dash.click_events["rows"] == [{"eventName": "click_cta", "count": 12}]
        assert dash.search_terms is None

    def test_sort_applies_to_selected_table_only(self, uow, gateway, site_id):
        query = SiteDashboardQuery(
            site_id=site_id, selector=WEEK, sort_table="overview", sort_key="date",
            direction=SortDirection.DESCENDING, today=TODAY,
        )
        dash = GetSiteDashboardUseCase(gateway).execute(query, uow)
        assert dash.overview["rows"][0]["date"] == "2024-06-15"
        assert [r["pagePath"] for r in dash.top_pages["rows"]] == ["/", "/about", "/contact"]

    def test_site_without_property(self, uow, admin_id, gateway):
        dto = CreateSiteUseCase().execute(CreateSiteCommand("Blank", "", "", "", admin_id), uow)
        with pytest.raises(MissingIdentifierError):
            GetSiteDashboardUseCase(gateway).execute(
                SiteDashboardQuery(site_id=uuid.UUID(dto.id), selector=WEEK), uow
            )

    def test_missing_site(self, uow, gateway):
        with pytest.raises(NotFoundError):
            GetSiteDashboardUseCase(gateway).execute(
                SiteDashboardQuery(site_id=uuid.uuid4(), selector=WEEK), uow
            )

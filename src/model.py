"""
model.py

Domain models for the Site Analytics & Delivery Schedule Dashboard.

Entities
--------
- Project
- Schedule
- PhaseUpdateEvent
- DeadlineUpdateEvent
- Site
- Operator

Value objects
-------------
- DateRangeSelector / ResolvedDateRange
- ReportQuery / ReportRow / AnalyticsReport

All models use Python dataclasses for clean, framework-agnostic definitions.
Timestamps are always stored in UTC.  The serialised document shape of a
Schedule (camelCase keys) matches the one kept in the projects collection.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectPhase(str, Enum):
    """Delivery pipeline stages, declared in their fixed order."""
    DESIGN = "design"
    CODING = "coding"
    TESTING = "testing"
    PREPARATION = "preparation"
    LIVE = "live"


class OperatorRole(str, Enum):
    """
    Role of an authenticated operator.

    ADMIN   – may create sites/projects and mutate schedules.
    VIEWER  – read-only access to analytics and the projects shared with them.
    """
    ADMIN = "admin"
    VIEWER = "viewer"


class DateRangeType(str, Enum):
    """Named presets offered by the date range selector."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    CUSTOM = "custom"


class ReportType(str, Enum):
    """Report kinds the analytics endpoint can return."""
    OVERVIEW = "overview"
    TOP_PAGES = "topPages"
    DEVICES = "devices"
    REFERRERS = "referrers"
    CLICKS = "clicks"
    SEARCH_TERMS = "searchTerms"
    ALL = "all"


class SortDirection(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


DEADLINE_UPDATED_ACTION = "deadline_updated"


# ---------------------------------------------------------------------------
# Phase vocabulary
# ---------------------------------------------------------------------------

PHASE_ORDER: List[ProjectPhase] = list(ProjectPhase)

PHASE_PROGRESS: Dict[ProjectPhase, int] = {
    ProjectPhase.DESIGN: 20,
    ProjectPhase.CODING: 40,
    ProjectPhase.TESTING: 60,
    ProjectPhase.PREPARATION: 80,
    ProjectPhase.LIVE: 100,
}

PHASE_LABELS: Dict[ProjectPhase, str] = {
    ProjectPhase.DESIGN: "デザイン",
    ProjectPhase.CODING: "コーディング",
    ProjectPhase.TESTING: "テスト・調整",
    ProjectPhase.PREPARATION: "公開準備",
    ProjectPhase.LIVE: "公開済み",
}

# The first entry of each list is the status assigned when a phase is entered
# without an explicit status.
PHASE_STATUSES: Dict[ProjectPhase, List[str]] = {
    ProjectPhase.DESIGN: ["デザイン作成中", "デザインレビュー中", "デザイン修正中", "デザイン完了"],
    ProjectPhase.CODING: ["コーディング中", "レスポンシブ対応中", "コーディング修正中", "コーディング完了"],
    ProjectPhase.TESTING: ["内部テスト中", "クライアントレビュー中", "修正対応中", "テスト完了"],
    ProjectPhase.PREPARATION: ["サーバー設定中", "ドメイン設定中", "最終確認中", "公開準備完了"],
    ProjectPhase.LIVE: ["公開済み", "メンテナンス中"],
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Schedule history events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseUpdateEvent:
    """
    Immutable record of a phase/status change.

    `progress` is captured at write time so the history keeps the value that
    was shown to operators even if the phase table is ever revised.
    """
    phase: ProjectPhase
    status: str
    progress: int
    updated_by: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "status": self.status,
            "progress": self.progress,
            "updatedBy": self.updated_by,
        }


@dataclass(frozen=True)
class DeadlineUpdateEvent:
    """Immutable record of a deadline change.  An empty deadline means cleared."""
    deadline: str
    updated_by: str
    timestamp: datetime = field(default_factory=_utcnow)
    action: str = DEADLINE_UPDATED_ACTION

    def to_document(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "deadline": self.deadline,
            "updatedBy": self.updated_by,
        }


ScheduleEvent = Union[PhaseUpdateEvent, DeadlineUpdateEvent]


# ---------------------------------------------------------------------------
# Core Project Entities
# ---------------------------------------------------------------------------


@dataclass
class Schedule:
    """
    Delivery schedule embedded in a Project.

    The defaults describe the initial schedule synthesised on the first write:
    design phase, its first status, no deadline and an empty history.
    Progress is not stored independently; it is always read from the phase.
    """
    current_phase: ProjectPhase = ProjectPhase.DESIGN
    current_status: str = PHASE_STATUSES[ProjectPhase.DESIGN][0]
    deadline: Optional[str] = None                 # ISO date (YYYY-MM-DD)
    history: List[ScheduleEvent] = field(default_factory=list)   # append-only

    @property
    def progress(self) -> int:
        return PHASE_PROGRESS[self.current_phase]

    def to_document(self) -> Dict[str, Any]:
        return {
            "currentPhase": self.current_phase.value,
            "currentStatus": self.current_status,
            "progress": self.progress,
            "deadline": self.deadline or "",
            "history": [event.to_document() for event in self.history],
        }


@dataclass
class Project:
    """
    A website delivery project.

    `accessible_users` lists the operator e-mails allowed to view the project
    without the admin role.  `version` increments on every schedule write and
    guards the conditional write in the repository.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    client: Optional[str] = None
    description: str = ""
    accessible_users: List[str] = field(default_factory=list)

    schedule: Optional[Schedule] = None
    version: int = 0

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Site:
    """A managed website and the analytics property that tracks it."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    url: str = ""
    property_id: str = ""       # GA4 property identifier, empty until configured
    description: str = ""


@dataclass
class Operator:
    """An authenticated dashboard user."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""
    role: OperatorRole = OperatorRole.VIEWER
    token: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is OperatorRole.ADMIN


# ---------------------------------------------------------------------------
# Analytics value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRangeSelector:
    """Caller-facing date range choice; bounds are only read for CUSTOM."""
    type: DateRangeType = DateRangeType.WEEK
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True)
class ResolvedDateRange:
    """Inclusive calendar bounds formatted as YYYY-MM-DD."""
    start_date: str
    end_date: str


@dataclass(frozen=True)
class ReportQuery:
    """
    Parameters of one report against the analytics API.

    `filter_field`/`filter_prefix` express a BEGINS_WITH string filter.
    `order_by_metric` sorts descending by that metric.
    """
    dimensions: List[str]
    metrics: List[str]
    order_by_metric: Optional[str] = None
    filter_field: Optional[str] = None
    filter_prefix: Optional[str] = None
    limited: bool = False
    optional: bool = False


@dataclass
class ReportRow:
    dimension_values: List[str] = field(default_factory=list)
    metric_values: List[str] = field(default_factory=list)


@dataclass
class AnalyticsReport:
    dimension_headers: List[str] = field(default_factory=list)
    metric_headers: List[str] = field(default_factory=list)
    rows: List[ReportRow] = field(default_factory=list)
    row_count: int = 0

"""Domain models for recorded activity and its classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

DATE_FMT = "%Y-%m-%d"


def local_date(timestamp: datetime) -> str:
    """Return the local calendar date ("YYYY-MM-DD") of an instant."""
    return timestamp.astimezone().strftime(DATE_FMT)


def now() -> datetime:
    return datetime.now().astimezone()


class RuleType(str, Enum):
    TERMINAL_FOLDER = "terminal_folder"
    URL_DOMAIN = "url_domain"
    URL_PATH = "url_path"
    PAGE_TITLE = "page_title"
    DESIGN_FILE = "design_file"
    BUNDLE_ID = "bundle_id"
    WINDOW_TITLE = "window_title"

    @classmethod
    def parse(cls, value: "RuleType | str") -> "RuleType":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        return cls(normalized)


class ProjectSource(str, Enum):
    AUTO_RULE = "auto_rule"
    MANUAL = "manual"


@dataclass(slots=True)
class Heartbeat:
    """One snapshot of the foreground window reported by a sampler."""

    app_name: str
    bundle_id: str
    window_title: str
    url: Optional[str] = None
    extra_info: Optional[str] = None
    idle: bool = False
    idle_seconds: float = 0.0
    timestamp: datetime = field(default_factory=now)

    @property
    def identity(self) -> tuple[str, str, Optional[str], Optional[str]]:
        return (self.app_name, self.window_title, self.url, self.extra_info)

    @property
    def date(self) -> str:
        return local_date(self.timestamp)


@dataclass(slots=True)
class ActivityRecord:
    """A contiguous span of one unchanged window identity."""

    app_name: str
    bundle_id: str
    window_title: str
    url: Optional[str] = None
    extra_info: Optional[str] = None
    duration_seconds: int = 0
    timestamp: datetime = field(default_factory=now)
    date: str = ""
    id: Optional[int] = None
    project_id: Optional[int] = None
    project_source: Optional[ProjectSource] = None

    def __post_init__(self) -> None:
        if not self.date:
            self.date = local_date(self.timestamp)

    @classmethod
    def from_heartbeat(cls, heartbeat: Heartbeat, duration_seconds: int) -> "ActivityRecord":
        return cls(
            app_name=heartbeat.app_name,
            bundle_id=heartbeat.bundle_id,
            window_title=heartbeat.window_title,
            url=heartbeat.url,
            extra_info=heartbeat.extra_info,
            duration_seconds=duration_seconds,
            timestamp=heartbeat.timestamp,
        )


@dataclass(slots=True)
class Brand:
    id: int
    name: str
    color: str
    sort_order: int = 0


@dataclass(slots=True)
class Project:
    id: int
    brand_id: int
    name: str
    color: str
    sort_order: int = 0
    brand_name: Optional[str] = None


@dataclass(slots=True)
class ProjectRule:
    id: int
    project_id: int
    rule_type: RuleType
    pattern: str
    is_regex: bool = False
    priority: int = 0


# Report shapes


@dataclass(slots=True)
class WindowDetail:
    window_title: str
    url: Optional[str]
    extra_info: Optional[str]
    total_seconds: int
    activity_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class AppSummary:
    app_name: str
    bundle_id: str
    total_seconds: int
    windows: list[WindowDetail] = field(default_factory=list)


@dataclass(slots=True)
class DaySummary:
    date: str
    total_seconds: int
    apps: list[AppSummary]
    wall_clock_seconds: int
    active_tracking_seconds: int
    first_activity: Optional[str] = None
    last_activity: Optional[str] = None


@dataclass(slots=True)
class DayBreakdown:
    date: str
    total_seconds: int


@dataclass(slots=True)
class AppDetailReport:
    app_name: str
    total_seconds: int
    days: list[DayBreakdown]
    top_windows: list[WindowDetail]


@dataclass(slots=True)
class TimelineEntry:
    id: int
    timestamp: datetime
    app_name: str
    window_title: str
    url: Optional[str]
    extra_info: Optional[str]
    duration_seconds: int
    project_id: Optional[int] = None


@dataclass(slots=True)
class AppBreakdownEntry:
    app_name: str
    seconds: int


@dataclass(slots=True)
class ProjectSummary:
    project_id: int
    project_name: str
    brand_id: int
    brand_name: str
    color: str
    total_seconds: int
    app_breakdown: list[AppBreakdownEntry]


@dataclass(slots=True)
class BrandSummary:
    brand_id: int
    brand_name: str
    color: str
    total_seconds: int
    projects: list[ProjectSummary]


@dataclass(slots=True)
class UnassignedActivity:
    id: int
    app_name: str
    window_title: str
    url: Optional[str]
    extra_info: Optional[str]
    duration_seconds: int

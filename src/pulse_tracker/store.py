"""Persistent store for activities and the project taxonomy.

All writes go through a single connection guarded by a lock, so the sampling
loop and request handlers never interleave statements. Whole-table scans used
by the suggestion engine read through a separate read-only connection when the
database lives on disk.
"""

from __future__ import annotations

import calendar
import logging
import re
import sqlite3
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import date as Date
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

from .db import (
    DEFAULT_COLOR,
    MEMORY_PATH,
    from_epoch,
    open_database,
    reader_connection,
    row_to_record,
    to_epoch,
    transaction,
)
from .errors import StorageError, ValidationError
from .models import (
    DATE_FMT,
    ActivityRecord,
    AppBreakdownEntry,
    AppDetailReport,
    AppSummary,
    Brand,
    BrandSummary,
    DayBreakdown,
    DaySummary,
    Project,
    ProjectRule,
    ProjectSource,
    ProjectSummary,
    RuleType,
    TimelineEntry,
    UnassignedActivity,
    WindowDetail,
)

logger = logging.getLogger(__name__)

TOP_WINDOW_LIMIT = 20

# Keeps IN (...) lists under SQLite's host parameter limit.
_ID_CHUNK = 500


def validate_rule(
    rule_type: Union[RuleType, str], pattern: str, is_regex: bool
) -> tuple[RuleType, str]:
    """Check a rule definition and return its normalized type and pattern."""
    try:
        parsed_type = RuleType.parse(rule_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown rule type: {rule_type!r}") from exc
    cleaned = (pattern or "").strip()
    if not cleaned:
        raise ValidationError("Rule pattern must not be empty")
    if is_regex:
        try:
            re.compile(cleaned)
        except re.error as exc:
            raise ValidationError(f"Invalid regular expression {cleaned!r}: {exc}") from exc
    return parsed_type, cleaned


def _clean_name(name: Optional[str], kind: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"{kind} name is required")
    return cleaned


def _chunks(values: Sequence[int]) -> Iterator[Sequence[int]]:
    for start in range(0, len(values), _ID_CHUNK):
        yield values[start : start + _ID_CHUNK]


class ActivityStore:
    """SQLite-backed storage with aggregation queries."""

    def __init__(self, db_path: Union[str, Path] = MEMORY_PATH) -> None:
        self.db_path = db_path if str(db_path) == MEMORY_PATH else Path(db_path)
        self._lock = threading.RLock()
        try:
            self._conn = open_database(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database at {self.db_path}: {exc}") from exc

    def __enter__(self) -> "ActivityStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == MEMORY_PATH

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.IntegrityError as exc:
                raise ValidationError(str(exc)) from exc
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        if self.is_memory:
            with self._locked() as conn:
                yield conn
            return
        try:
            with reader_connection(self.db_path) as conn:
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    # Insert & update

    def insert(
        self,
        record: ActivityRecord,
        project_id: Optional[int] = None,
        project_source: Optional[ProjectSource] = None,
    ) -> int:
        if project_id is not None and project_source is None:
            project_source = ProjectSource.AUTO_RULE
        with self._locked() as conn:
            cur = conn.execute(
                """
                INSERT INTO activities (
                    timestamp, app_name, bundle_id, window_title, url,
                    extra_info, duration_seconds, date, project_id, project_source
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    to_epoch(record.timestamp),
                    record.app_name,
                    record.bundle_id,
                    record.window_title,
                    record.url,
                    record.extra_info,
                    int(record.duration_seconds),
                    record.date,
                    project_id,
                    project_source.value if project_source else None,
                ),
            )
            new_id = int(cur.lastrowid)
        record.id = new_id
        record.project_id = project_id
        record.project_source = project_source
        return new_id

    def update_duration(self, activity_id: int, seconds: int) -> None:
        if seconds < 0:
            raise ValidationError("Duration must not be negative")
        with self._locked() as conn:
            cur = conn.execute(
                "UPDATE activities SET duration_seconds = ? WHERE id = ?",
                (int(seconds), activity_id),
            )
        if cur.rowcount == 0:
            raise ValidationError(f"No activity found for id={activity_id}")

    def get_activity(self, activity_id: int) -> Optional[ActivityRecord]:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT * FROM activities WHERE id = ?", (activity_id,)
            ).fetchone()
        return row_to_record(row) if row else None

    # Brand CRUD

    def insert_brand(self, name: str, color: str = DEFAULT_COLOR) -> int:
        name = _clean_name(name, "Brand")
        with self._locked() as conn:
            if self._brand_name_taken(conn, name):
                raise ValidationError(f"Brand '{name}' already exists")
            (count,) = conn.execute("SELECT COUNT(*) FROM brands").fetchone()
            cur = conn.execute(
                "INSERT INTO brands (name, color, sort_order, created_at) VALUES (?, ?, ?, ?)",
                (name, color or DEFAULT_COLOR, count, time.time()),
            )
            brand_id = int(cur.lastrowid)
        logger.info("Created brand %s (id=%d)", name, brand_id)
        return brand_id

    def all_brands(self) -> list[Brand]:
        with self._locked() as conn:
            rows = conn.execute(
                "SELECT id, name, color, sort_order FROM brands ORDER BY sort_order, id"
            ).fetchall()
        return [Brand(row["id"], row["name"], row["color"], row["sort_order"]) for row in rows]

    def get_brand(self, brand_id: int) -> Optional[Brand]:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT id, name, color, sort_order FROM brands WHERE id = ?", (brand_id,)
            ).fetchone()
        if row is None:
            return None
        return Brand(row["id"], row["name"], row["color"], row["sort_order"])

    def find_brand_by_name(self, name: str) -> Optional[Brand]:
        with self._locked() as conn:
            row = conn.execute(
                "SELECT id, name, color, sort_order FROM brands WHERE name = ?",
                (name.strip(),),
            ).fetchone()
        if row is None:
            return None
        return Brand(row["id"], row["name"], row["color"], row["sort_order"])

    def update_brand(
        self, brand_id: int, name: Optional[str] = None, color: Optional[str] = None
    ) -> None:
        fields: list[str] = []
        params: list[object] = []
        with self._locked() as conn:
            self._require_brand(conn, brand_id)
            if name is not None:
                name = _clean_name(name, "Brand")
                if self._brand_name_taken(conn, name, exclude_id=brand_id):
                    raise ValidationError(f"Brand '{name}' already exists")
                fields.append("name = ?")
                params.append(name)
            if color is not None:
                fields.append("color = ?")
                params.append(color)
            if not fields:
                return
            params.append(brand_id)
            conn.execute(f"UPDATE brands SET {', '.join(fields)} WHERE id = ?", params)

    def delete_brand(self, brand_id: int) -> None:
        """Delete a brand with its projects and rules, unassigning their activities."""
        with self._locked() as conn:
            self._require_brand(conn, brand_id)
            with transaction(conn):
                conn.execute(
                    """
                    UPDATE activities SET project_id = NULL, project_source = NULL
                    WHERE project_id IN (SELECT id FROM projects WHERE brand_id = ?)
                    """,
                    (brand_id,),
                )
                conn.execute(
                    """
                    DELETE FROM project_rules
                    WHERE project_id IN (SELECT id FROM projects WHERE brand_id = ?)
                    """,
                    (brand_id,),
                )
                conn.execute("DELETE FROM projects WHERE brand_id = ?", (brand_id,))
                conn.execute("DELETE FROM brands WHERE id = ?", (brand_id,))
        logger.info("Deleted brand id=%d", brand_id)

    def merge_brand(self, source_id: int, target_id: int) -> None:
        """Move every project of ``source_id`` under ``target_id`` and drop the source."""
        if source_id == target_id:
            raise ValidationError("Cannot merge a brand into itself")
        with self._locked() as conn:
            self._require_brand(conn, source_id)
            self._require_brand(conn, target_id)
            clash = conn.execute(
                """
                SELECT s.name FROM projects s
                JOIN projects t ON t.name = s.name AND t.brand_id = ?
                WHERE s.brand_id = ?
                ORDER BY s.name
                """,
                (target_id, source_id),
            ).fetchone()
            if clash is not None:
                raise ValidationError(
                    f"Target brand already has a project named '{clash['name']}'"
                )
            with transaction(conn):
                conn.execute(
                    "UPDATE projects SET brand_id = ? WHERE brand_id = ?",
                    (target_id, source_id),
                )
                conn.execute("DELETE FROM brands WHERE id = ?", (source_id,))
        logger.info("Merged brand id=%d into id=%d", source_id, target_id)

    # Project CRUD

    def insert_project(self, brand_id: int, name: str, color: str = DEFAULT_COLOR) -> int:
        name = _clean_name(name, "Project")
        with self._locked() as conn:
            self._require_brand(conn, brand_id)
            if self._project_name_taken(conn, brand_id, name):
                raise ValidationError(f"Project '{name}' already exists in this brand")
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM projects WHERE brand_id = ?", (brand_id,)
            ).fetchone()
            cur = conn.execute(
                """
                INSERT INTO projects (brand_id, name, color, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (brand_id, name, color or DEFAULT_COLOR, count, time.time()),
            )
            project_id = int(cur.lastrowid)
        logger.info("Created project %s (id=%d, brand=%d)", name, project_id, brand_id)
        return project_id

    def all_projects(self) -> list[Project]:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.brand_id, p.name, p.color, p.sort_order, b.name AS brand_name
                FROM projects p
                JOIN brands b ON b.id = p.brand_id
                ORDER BY b.sort_order, b.id, p.sort_order, p.id
                """
            ).fetchall()
        return [self._row_to_project(row) for row in rows]

    def get_project(self, project_id: int) -> Optional[Project]:
        with self._locked() as conn:
            row = conn.execute(
                """
                SELECT p.id, p.brand_id, p.name, p.color, p.sort_order, b.name AS brand_name
                FROM projects p
                JOIN brands b ON b.id = p.brand_id
                WHERE p.id = ?
                """,
                (project_id,),
            ).fetchone()
        return self._row_to_project(row) if row else None

    def find_project_by_name(self, brand_id: int, name: str) -> Optional[Project]:
        with self._locked() as conn:
            row = conn.execute(
                """
                SELECT p.id, p.brand_id, p.name, p.color, p.sort_order, b.name AS brand_name
                FROM projects p
                JOIN brands b ON b.id = p.brand_id
                WHERE p.brand_id = ? AND p.name = ?
                """,
                (brand_id, name.strip()),
            ).fetchone()
        return self._row_to_project(row) if row else None

    def update_project(
        self,
        project_id: int,
        name: Optional[str] = None,
        color: Optional[str] = None,
        brand_id: Optional[int] = None,
    ) -> None:
        with self._locked() as conn:
            current = conn.execute(
                "SELECT brand_id, name FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
            if current is None:
                raise ValidationError(f"No project found for id={project_id}")
            target_brand = brand_id if brand_id is not None else current["brand_id"]
            target_name = _clean_name(name, "Project") if name is not None else current["name"]
            if brand_id is not None:
                self._require_brand(conn, brand_id)
            if self._project_name_taken(conn, target_brand, target_name, exclude_id=project_id):
                raise ValidationError(f"Project '{target_name}' already exists in this brand")

            fields: list[str] = []
            params: list[object] = []
            if name is not None:
                fields.append("name = ?")
                params.append(target_name)
            if color is not None:
                fields.append("color = ?")
                params.append(color)
            if brand_id is not None:
                fields.append("brand_id = ?")
                params.append(brand_id)
            if not fields:
                return
            params.append(project_id)
            conn.execute(f"UPDATE projects SET {', '.join(fields)} WHERE id = ?", params)

    def delete_project(self, project_id: int) -> None:
        with self._locked() as conn:
            if not self._project_exists(conn, project_id):
                raise ValidationError(f"No project found for id={project_id}")
            with transaction(conn):
                conn.execute(
                    """
                    UPDATE activities SET project_id = NULL, project_source = NULL
                    WHERE project_id = ?
                    """,
                    (project_id,),
                )
                conn.execute("DELETE FROM project_rules WHERE project_id = ?", (project_id,))
                conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info("Deleted project id=%d", project_id)

    # Rule CRUD

    def insert_rule(
        self,
        project_id: int,
        rule_type: Union[RuleType, str],
        pattern: str,
        is_regex: bool = False,
        priority: int = 0,
    ) -> int:
        parsed_type, cleaned = validate_rule(rule_type, pattern, is_regex)
        with self._locked() as conn:
            if not self._project_exists(conn, project_id):
                raise ValidationError(f"No project found for id={project_id}")
            cur = conn.execute(
                """
                INSERT INTO project_rules (
                    project_id, rule_type, pattern, is_regex, priority, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project_id, parsed_type.value, cleaned, 1 if is_regex else 0, priority, time.time()),
            )
            rule_id = int(cur.lastrowid)
        logger.info(
            "Created %s rule %r for project id=%d (id=%d)",
            parsed_type.value,
            cleaned,
            project_id,
            rule_id,
        )
        return rule_id

    def load_all_project_rules(self) -> list[ProjectRule]:
        """Return every rule in evaluation order (priority, then id)."""
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT id, project_id, rule_type, pattern, is_regex, priority
                FROM project_rules
                ORDER BY priority ASC, id ASC
                """
            ).fetchall()
        rules: list[ProjectRule] = []
        for row in rows:
            try:
                rule_type = RuleType(row["rule_type"])
            except ValueError:
                logger.warning("Skipping rule id=%d with unknown type %r", row["id"], row["rule_type"])
                continue
            rules.append(
                ProjectRule(
                    id=row["id"],
                    project_id=row["project_id"],
                    rule_type=rule_type,
                    pattern=row["pattern"],
                    is_regex=bool(row["is_regex"]),
                    priority=row["priority"],
                )
            )
        return rules

    def rules_fingerprint(self) -> tuple[int, int]:
        """``(count, max id)`` of the rule table; changes whenever a rule is added or removed."""
        with self._locked() as conn:
            row = conn.execute("SELECT COUNT(*), COALESCE(MAX(id), 0) FROM project_rules").fetchone()
        return int(row[0]), int(row[1])

    def delete_rule(self, rule_id: int) -> None:
        with self._locked() as conn:
            cur = conn.execute("DELETE FROM project_rules WHERE id = ?", (rule_id,))
        if cur.rowcount == 0:
            raise ValidationError(f"No rule found for id={rule_id}")

    # Project assignment

    def update_project_assignment(
        self, activity_id: int, project_id: int, source: ProjectSource
    ) -> None:
        with self._locked() as conn:
            cur = conn.execute(
                "UPDATE activities SET project_id = ?, project_source = ? WHERE id = ?",
                (project_id, source.value, activity_id),
            )
        if cur.rowcount == 0:
            raise ValidationError(f"No activity found for id={activity_id}")

    def bulk_update_project_assignment(
        self,
        activity_ids: Iterable[int],
        project_id: int,
        source: ProjectSource,
        *,
        only_unassigned: bool = False,
    ) -> int:
        """Assign many activities at once; returns the number of rows changed."""
        ids = sorted(set(activity_ids))
        if not ids:
            return 0
        guard = " AND project_id IS NULL" if only_unassigned else ""
        changed = 0
        with self._locked() as conn:
            with transaction(conn):
                for chunk in _chunks(ids):
                    placeholders = ", ".join("?" for _ in chunk)
                    cur = conn.execute(
                        f"""
                        UPDATE activities SET project_id = ?, project_source = ?
                        WHERE id IN ({placeholders}){guard}
                        """,
                        (project_id, source.value, *chunk),
                    )
                    changed += cur.rowcount
        return changed

    # Dismissed suggestions

    def add_dismissed_token(self, token: str) -> None:
        with self._locked() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO dismissed_suggestions (token, dismissed_at) VALUES (?, ?)",
                (token, time.time()),
            )

    def clear_dismissed_token(self, token: str) -> None:
        with self._locked() as conn:
            conn.execute("DELETE FROM dismissed_suggestions WHERE token = ?", (token,))

    def dismissed_tokens(self) -> set[str]:
        with self._locked() as conn:
            rows = conn.execute("SELECT token FROM dismissed_suggestions").fetchall()
        return {row["token"] for row in rows}

    # Queries

    def query_day(self, date: str) -> DaySummary:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT id, timestamp, app_name, bundle_id, window_title, url,
                       extra_info, duration_seconds
                FROM activities
                WHERE date = ?
                ORDER BY timestamp, id
                """,
                (date,),
            ).fetchall()

        if not rows:
            return DaySummary(
                date=date,
                total_seconds=0,
                apps=[],
                wall_clock_seconds=0,
                active_tracking_seconds=0,
            )

        app_totals: dict[str, int] = defaultdict(int)
        app_bundles: dict[str, str] = {}
        windows: dict[str, dict[tuple, WindowDetail]] = defaultdict(dict)
        first_ts = min(row["timestamp"] for row in rows)
        last_end = max(row["timestamp"] + row["duration_seconds"] for row in rows)
        total = 0

        for row in rows:
            seconds = int(row["duration_seconds"])
            app = row["app_name"]
            total += seconds
            app_totals[app] += seconds
            app_bundles.setdefault(app, row["bundle_id"])
            key = (row["window_title"], row["url"], row["extra_info"])
            detail = windows[app].get(key)
            if detail is None:
                detail = WindowDetail(
                    window_title=row["window_title"],
                    url=row["url"],
                    extra_info=row["extra_info"],
                    total_seconds=0,
                )
                windows[app][key] = detail
            detail.total_seconds += seconds
            detail.activity_ids.append(row["id"])

        apps = [
            AppSummary(
                app_name=app,
                bundle_id=app_bundles[app],
                total_seconds=seconds,
                windows=sorted(
                    windows[app].values(),
                    key=lambda item: (-item.total_seconds, item.window_title),
                ),
            )
            for app, seconds in app_totals.items()
            if seconds > 0
        ]
        apps.sort(key=lambda item: (-item.total_seconds, item.app_name))

        return DaySummary(
            date=date,
            total_seconds=total,
            apps=apps,
            wall_clock_seconds=int(last_end - first_ts),
            active_tracking_seconds=total,
            first_activity=from_epoch(first_ts).strftime("%H:%M"),
            last_activity=from_epoch(last_end).strftime("%H:%M"),
        )

    def query_days(self, start: str, end: str) -> list[DaySummary]:
        """Summaries for every date in ``start..end`` (inclusive) that has tracked time."""
        try:
            current = datetime.strptime(start, DATE_FMT).date()
            last = datetime.strptime(end, DATE_FMT).date()
        except ValueError as exc:
            raise ValidationError(f"Invalid date range {start!r}..{end!r}") from exc
        summaries: list[DaySummary] = []
        while current <= last:
            summary = self.query_day(current.strftime(DATE_FMT))
            if summary.total_seconds > 0:
                summaries.append(summary)
            current += timedelta(days=1)
        return summaries

    def query_week(self, today: Optional[Date] = None) -> list[DaySummary]:
        today = today or Date.today()
        start = today - timedelta(days=6)
        return self.query_days(start.strftime(DATE_FMT), today.strftime(DATE_FMT))

    def query_month(self, year: int, month: int, today: Optional[Date] = None) -> list[DaySummary]:
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month: {month}")
        today = today or Date.today()
        first = Date(year, month, 1)
        last = Date(year, month, calendar.monthrange(year, month)[1])
        end = min(last, today)
        if end < first:
            return []
        return self.query_days(first.strftime(DATE_FMT), end.strftime(DATE_FMT))

    def query_recent_dates(self, limit: int = 14) -> list[tuple[str, int]]:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT date, SUM(duration_seconds) AS seconds
                FROM activities
                GROUP BY date
                HAVING seconds > 0
                ORDER BY date DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [(row["date"], int(row["seconds"])) for row in rows]

    def query_app(self, app_name: str) -> AppDetailReport:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT id, date, window_title, url, extra_info, duration_seconds
                FROM activities
                WHERE instr(lower(app_name), lower(?)) > 0
                ORDER BY timestamp, id
                """,
                (app_name,),
            ).fetchall()

        total = 0
        per_day: dict[str, int] = defaultdict(int)
        buckets: dict[tuple, WindowDetail] = {}
        for row in rows:
            seconds = int(row["duration_seconds"])
            total += seconds
            per_day[row["date"]] += seconds
            key = (row["window_title"], row["url"], row["extra_info"])
            detail = buckets.get(key)
            if detail is None:
                detail = WindowDetail(
                    window_title=row["window_title"],
                    url=row["url"],
                    extra_info=row["extra_info"],
                    total_seconds=0,
                )
                buckets[key] = detail
            detail.total_seconds += seconds
            detail.activity_ids.append(row["id"])

        days = [
            DayBreakdown(date=day, total_seconds=seconds)
            for day, seconds in sorted(per_day.items(), reverse=True)
        ]
        top_windows = sorted(
            buckets.values(), key=lambda item: (-item.total_seconds, item.window_title)
        )[:TOP_WINDOW_LIMIT]
        return AppDetailReport(
            app_name=app_name, total_seconds=total, days=days, top_windows=top_windows
        )

    def query_timeline(self, date: str) -> list[TimelineEntry]:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT id, timestamp, app_name, window_title, url, extra_info,
                       duration_seconds, project_id
                FROM activities
                WHERE date = ?
                ORDER BY timestamp ASC, id ASC
                """,
                (date,),
            ).fetchall()
        return [
            TimelineEntry(
                id=row["id"],
                timestamp=from_epoch(row["timestamp"]),
                app_name=row["app_name"],
                window_title=row["window_title"],
                url=row["url"],
                extra_info=row["extra_info"],
                duration_seconds=int(row["duration_seconds"]),
                project_id=row["project_id"],
            )
            for row in rows
        ]

    def query_day_by_project(self, date: str) -> list[BrandSummary]:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT project_id, app_name, SUM(duration_seconds) AS seconds
                FROM activities
                WHERE date = ? AND project_id IS NOT NULL
                GROUP BY project_id, app_name
                """,
                (date,),
            ).fetchall()
        if not rows:
            return []

        per_project: dict[int, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for row in rows:
            per_project[row["project_id"]][row["app_name"]] += int(row["seconds"] or 0)

        brands = {brand.id: brand for brand in self.all_brands()}
        grouped: dict[int, list[ProjectSummary]] = defaultdict(list)
        for project in self.all_projects():
            apps = per_project.get(project.id)
            if not apps:
                continue
            project_total = sum(apps.values())
            if project_total <= 0:
                continue
            breakdown = [
                AppBreakdownEntry(app_name=app, seconds=seconds)
                for app, seconds in sorted(apps.items(), key=lambda item: (-item[1], item[0]))
                if seconds > 0
            ]
            grouped[project.brand_id].append(
                ProjectSummary(
                    project_id=project.id,
                    project_name=project.name,
                    brand_id=project.brand_id,
                    brand_name=project.brand_name or "",
                    color=project.color,
                    total_seconds=project_total,
                    app_breakdown=breakdown,
                )
            )

        summaries: list[BrandSummary] = []
        for brand_id, projects in grouped.items():
            brand = brands[brand_id]
            projects.sort(key=lambda item: (-item.total_seconds, item.project_name))
            summaries.append(
                BrandSummary(
                    brand_id=brand.id,
                    brand_name=brand.name,
                    color=brand.color,
                    total_seconds=sum(project.total_seconds for project in projects),
                    projects=projects,
                )
            )
        summaries.sort(key=lambda item: (-item.total_seconds, item.brand_name))
        return summaries

    def query_unassigned_activities(
        self, date: str, min_seconds: int = 0
    ) -> list[UnassignedActivity]:
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT id, app_name, window_title, url, extra_info, duration_seconds
                FROM activities
                WHERE date = ? AND project_id IS NULL AND duration_seconds >= ?
                ORDER BY duration_seconds DESC, id ASC
                """,
                (date, min_seconds),
            ).fetchall()
        return [
            UnassignedActivity(
                id=row["id"],
                app_name=row["app_name"],
                window_title=row["window_title"],
                url=row["url"],
                extra_info=row["extra_info"],
                duration_seconds=int(row["duration_seconds"]),
            )
            for row in rows
        ]

    def query_unassigned_raw(self, date: Optional[str] = None) -> list[ActivityRecord]:
        """Full records with no project, for re-matching and pattern detection."""
        sql = "SELECT * FROM activities WHERE project_id IS NULL"
        params: tuple = ()
        if date is not None:
            sql += " AND date = ?"
            params = (date,)
        sql += " ORDER BY id"
        with self._reader() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row_to_record(row) for row in rows]

    # Helpers

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            brand_id=row["brand_id"],
            name=row["name"],
            color=row["color"],
            sort_order=row["sort_order"],
            brand_name=row["brand_name"],
        )

    @staticmethod
    def _require_brand(conn: sqlite3.Connection, brand_id: int) -> None:
        row = conn.execute("SELECT 1 FROM brands WHERE id = ?", (brand_id,)).fetchone()
        if row is None:
            raise ValidationError(f"No brand found for id={brand_id}")

    @staticmethod
    def _project_exists(conn: sqlite3.Connection, project_id: int) -> bool:
        row = conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone()
        return row is not None

    @staticmethod
    def _brand_name_taken(
        conn: sqlite3.Connection, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        row = conn.execute(
            "SELECT id FROM brands WHERE name = ? AND id IS NOT ?", (name, exclude_id)
        ).fetchone()
        return row is not None

    @staticmethod
    def _project_name_taken(
        conn: sqlite3.Connection,
        brand_id: int,
        name: str,
        exclude_id: Optional[int] = None,
    ) -> bool:
        row = conn.execute(
            "SELECT id FROM projects WHERE brand_id = ? AND name = ? AND id IS NOT ?",
            (brand_id, name, exclude_id),
        ).fetchone()
        return row is not None

"""Console reports over the store's aggregation queries."""

from __future__ import annotations

from typing import Optional, Sequence

from .models import DaySummary
from .store import ActivityStore
from .suggestions import DetectedBrand

TOP_APPS = 10
TOP_WINDOWS = 5


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, store: ActivityStore) -> None:
        self.store = store

    def print_day(self, date: str, show_windows: bool = True) -> None:
        summary = self.store.query_day(date)
        if summary.total_seconds == 0:
            print(f"No activity recorded for {date}.")
            return

        print(f"Summary for {date}")
        print("-" * 40)
        print(f"Active time:     {format_duration(summary.active_tracking_seconds)}")
        print(f"Wall clock:      {format_duration(summary.wall_clock_seconds)}")
        print(f"First / last:    {summary.first_activity} - {summary.last_activity}")
        print()

        print("Top apps:")
        for app in summary.apps[:TOP_APPS]:
            print(f"  {app.app_name:<30} {format_duration(app.total_seconds)}")
            if not show_windows:
                continue
            for window in app.windows[:TOP_WINDOWS]:
                label = window.window_title or "(untitled)"
                print(f"      {label[:45]:<45} {format_duration(window.total_seconds)}")

    def print_range(self, title: str, summaries: Sequence[DaySummary]) -> None:
        if not summaries:
            print(f"No activity recorded for {title}.")
            return
        total = sum(summary.total_seconds for summary in summaries)
        print(title)
        print("-" * 40)
        for summary in summaries:
            top = summary.apps[0].app_name if summary.apps else ""
            print(f"  {summary.date}  {format_duration(summary.total_seconds)}  {top}")
        print("-" * 40)
        print(f"  Total       {format_duration(total)}")
        print(f"  Daily avg   {format_duration(total / len(summaries))}")

    def print_app(self, app_name: str) -> None:
        report = self.store.query_app(app_name)
        if report.total_seconds == 0:
            print(f"No activity recorded for an app matching '{app_name}'.")
            return
        print(f"App report for '{app_name}': {format_duration(report.total_seconds)}")
        print("-" * 40)
        for day in report.days:
            print(f"  {day.date}  {format_duration(day.total_seconds)}")
        print()
        print("Top windows / tabs:")
        for window in report.top_windows:
            label = window.window_title or window.url or "(untitled)"
            print(f"  {label[:50]:<50} {format_duration(window.total_seconds)}")

    def print_timeline(self, date: str) -> None:
        entries = self.store.query_timeline(date)
        if not entries:
            print(f"No activity recorded for {date}.")
            return
        print(f"Timeline for {date}")
        print("-" * 40)
        for entry in entries:
            marker = "*" if entry.project_id is not None else " "
            print(
                f"{marker} {entry.timestamp.strftime('%H:%M:%S')}  "
                f"{format_duration(entry.duration_seconds)}  "
                f"{entry.app_name[:20]:<20} {entry.window_title[:50]}"
            )

    def print_projects(self, date: str, show_unassigned: bool = True) -> None:
        brands = self.store.query_day_by_project(date)
        if brands:
            print(f"Projects for {date}")
            print("-" * 40)
            for brand in brands:
                print(f"{brand.brand_name:<32} {format_duration(brand.total_seconds)}")
                for project in brand.projects:
                    print(f"  {project.project_name:<30} {format_duration(project.total_seconds)}")
                    for entry in project.app_breakdown:
                        print(f"      {entry.app_name:<26} {format_duration(entry.seconds)}")
        else:
            print(f"No project time recorded for {date}.")

        if not show_unassigned:
            return
        unassigned = self.store.query_unassigned_activities(date)
        if unassigned:
            total = sum(item.duration_seconds for item in unassigned)
            print()
            print(f"Unassigned: {len(unassigned)} activities, {format_duration(total)}")


def print_suggestions(brands: Sequence[DetectedBrand]) -> None:
    if not brands:
        print("No suggestions.")
        return
    for brand in brands:
        print(f"{brand.suggested_name}  [{brand.token}]  {brand.total_activities} activities")
        for project in brand.projects:
            print(
                f"  {project.suggested_name:<28} [{project.token}]  "
                f"{project.activity_count} activities, apps: {', '.join(project.apps)}"
            )
            for rule in project.suggested_rules:
                kind = "regex" if rule.is_regex else "literal"
                print(f"      {rule.rule_type.value:<16} {rule.pattern} ({kind})")


def format_duration(seconds: Optional[float]) -> str:
    total_seconds = int(round(seconds or 0))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"

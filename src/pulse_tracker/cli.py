"""Command-line interface for the activity tracker."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from datetime import date as Date
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .config import CollectorSettings, SuggestionSettings
from .db import DEFAULT_COLOR
from .errors import TrackerError
from .events import DayChanged, EventChannel
from .models import DATE_FMT, RuleType, now
from .paths import get_db_path, get_log_path
from .reporting import SummaryPrinter, print_suggestions
from .rules import RuleEngine
from .store import ActivityStore
from .suggestions import PatternDetector

logger = logging.getLogger(__name__)

app = typer.Typer(help="Local-first activity tracker with project classification.")
brand_app = typer.Typer(help="Manage brands.", no_args_is_help=True)
project_app = typer.Typer(help="Manage projects.", no_args_is_help=True)
rule_app = typer.Typer(help="Manage project rules.", no_args_is_help=True)
assign_app = typer.Typer(help="Assign activities to projects.", no_args_is_help=True)
suggest_app = typer.Typer(help="Review detected project suggestions.", no_args_is_help=True)
app.add_typer(brand_app, name="brand")
app.add_typer(project_app, name="project")
app.add_typer(rule_app, name="rule")
app.add_typer(assign_app, name="assign")
app.add_typer(suggest_app, name="suggest")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _db_option():
    return typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the activity SQLite database.",
    )


def _date_option():
    return typer.Option(None, "--date", help="Date (YYYY-MM-DD). Defaults to today.")


@contextmanager
def _open_store(db_path: Optional[Path]) -> Iterator[ActivityStore]:
    """Open the store and turn tracker errors into a clean exit."""
    try:
        with ActivityStore(db_path or get_db_path()) as store:
            yield store
    except TrackerError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _resolve_date(value: Optional[str]) -> str:
    if value is None:
        return now().strftime(DATE_FMT)
    try:
        Date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}", param_hint="--date")
    return value


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
    )


@app.command()
def collect(
    db_path: Optional[Path] = _db_option(),
    sample_seconds: float = typer.Option(
        2.0,
        "--interval",
        min=1.0,
        help="Sampling interval in seconds.",
    ),
    idle_minutes: float = typer.Option(
        10.0,
        "--idle-threshold",
        min=0.5,
        help="Minutes of inactivity before the open session is closed.",
    ),
    log_file: bool = typer.Option(
        False,
        "--log-file/--no-log-file",
        help="Also write logs to the application log file.",
    ),
) -> None:
    """Run the background collector until interrupted."""
    if not sys.platform.startswith("win"):
        typer.echo("Error: no window probe is available for this platform.", err=True)
        raise typer.Exit(code=1)

    from .collector import ActivityCollector, WindowsWindowProbe
    from .merger import HeartbeatMerger

    if log_file:
        handler = logging.FileHandler(get_log_path(), encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    settings = CollectorSettings.from_intervals(
        sample_seconds=sample_seconds, idle_minutes=idle_minutes
    )
    with _open_store(db_path) as store:
        day_changed: EventChannel[DayChanged] = EventChannel()
        day_changed.subscribe(
            lambda event: logger.info("Completed tracking for %s", event.completed_date)
        )
        merger = HeartbeatMerger(
            store,
            interval=settings.interval_seconds,
            idle_threshold=settings.idle_seconds,
            rule_engine=RuleEngine(store),
            day_changed=day_changed,
        )
        collector = ActivityCollector(store, settings, WindowsWindowProbe(), merger=merger)
        collector.run_forever()


# Reports


@app.command()
def today(
    date: Optional[str] = _date_option(),
    windows: bool = typer.Option(True, "--windows/--no-windows", help="Show top windows per app."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Print the summary for one day."""
    target = _resolve_date(date)
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_day(target, show_windows=windows)


@app.command()
def week(db_path: Optional[Path] = _db_option()) -> None:
    """Print the last seven days."""
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_range("Last 7 days", store.query_week())


@app.command()
def month(
    year: Optional[int] = typer.Option(None, "--year", help="Defaults to the current year."),
    month_number: Optional[int] = typer.Option(
        None, "--month", min=1, max=12, help="Defaults to the current month."
    ),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Print every tracked day of a month."""
    current = Date.today()
    year = year or current.year
    month_number = month_number or current.month
    with _open_store(db_path) as store:
        summaries = store.query_month(year, month_number)
        SummaryPrinter(store).print_range(f"{year}-{month_number:02d}", summaries)


@app.command("app")
def app_report(
    name: str = typer.Argument(..., help="Application name (case-insensitive substring)."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Print totals, days and top windows for one application."""
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_app(name)


@app.command()
def timeline(
    date: Optional[str] = _date_option(),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Print every session of a day in order."""
    target = _resolve_date(date)
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_timeline(target)


@app.command()
def projects(
    date: Optional[str] = _date_option(),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Print time per brand and project for one day."""
    target = _resolve_date(date)
    with _open_store(db_path) as store:
        SummaryPrinter(store).print_projects(target)


# Brands


@brand_app.command("add")
def brand_add(
    name: str = typer.Argument(...),
    color: Optional[str] = typer.Option(None, "--color", help="Display color, e.g. #10b981."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        brand_id = store.insert_brand(name, color or DEFAULT_COLOR)
    typer.echo(f"Created brand {name} (id={brand_id})")


@brand_app.command("list")
def brand_list(db_path: Optional[Path] = _db_option()) -> None:
    with _open_store(db_path) as store:
        brands = store.all_brands()
    if not brands:
        typer.echo("No brands.")
        return
    for brand in brands:
        typer.echo(f"{brand.id:>4}  {brand.name:<30} {brand.color}")


@brand_app.command("rename")
def brand_rename(
    brand_id: int = typer.Argument(...),
    name: str = typer.Argument(...),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        store.update_brand(brand_id, name=name)
    typer.echo(f"Renamed brand {brand_id} to {name}")


@brand_app.command("delete")
def brand_delete(
    brand_id: int = typer.Argument(...),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Delete a brand with its projects and rules; activities are kept unassigned."""
    with _open_store(db_path) as store:
        RuleEngine(store).delete_brand(brand_id)
    typer.echo(f"Deleted brand {brand_id}")


@brand_app.command("merge")
def brand_merge(
    source_id: int = typer.Argument(...),
    target_id: int = typer.Argument(...),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Move every project of SOURCE_ID into TARGET_ID and delete SOURCE_ID."""
    with _open_store(db_path) as store:
        store.merge_brand(source_id, target_id)
    typer.echo(f"Merged brand {source_id} into {target_id}")


# Projects


@project_app.command("add")
def project_add(
    brand_id: int = typer.Argument(...),
    name: str = typer.Argument(...),
    color: Optional[str] = typer.Option(None, "--color", help="Display color, e.g. #10b981."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        project_id = store.insert_project(brand_id, name, color or DEFAULT_COLOR)
    typer.echo(f"Created project {name} (id={project_id})")


@project_app.command("list")
def project_list(db_path: Optional[Path] = _db_option()) -> None:
    with _open_store(db_path) as store:
        items = store.all_projects()
    if not items:
        typer.echo("No projects.")
        return
    for project in items:
        typer.echo(f"{project.id:>4}  {project.brand_name:<20} {project.name:<30} {project.color}")


@project_app.command("delete")
def project_delete(
    project_id: int = typer.Argument(...),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        RuleEngine(store).delete_project(project_id)
    typer.echo(f"Deleted project {project_id}")


# Rules


@rule_app.command("add")
def rule_add(
    project_id: int = typer.Argument(...),
    rule_type: str = typer.Argument(
        ..., help=f"One of: {', '.join(item.value for item in RuleType)}."
    ),
    pattern: str = typer.Argument(...),
    regex: bool = typer.Option(False, "--regex", help="Treat PATTERN as a regular expression."),
    priority: int = typer.Option(0, "--priority", help="Lower values are evaluated first."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        rule_id = RuleEngine(store).add_rule(project_id, rule_type, pattern, regex, priority)
    typer.echo(f"Created rule {rule_id}")


@rule_app.command("list")
def rule_list(db_path: Optional[Path] = _db_option()) -> None:
    with _open_store(db_path) as store:
        rules = store.load_all_project_rules()
        names = {project.id: f"{project.brand_name}/{project.name}" for project in store.all_projects()}
    if not rules:
        typer.echo("No rules.")
        return
    for rule in rules:
        kind = "regex" if rule.is_regex else "literal"
        typer.echo(
            f"{rule.id:>4}  p{rule.priority:<3} {rule.rule_type.value:<16} "
            f"{rule.pattern:<30} {kind:<8} {names.get(rule.project_id, rule.project_id)}"
        )


@rule_app.command("delete")
def rule_delete(
    rule_id: int = typer.Argument(...),
    db_path: Optional[Path] = _db_option(),
) -> None:
    with _open_store(db_path) as store:
        RuleEngine(store).delete_rule(rule_id)
    typer.echo(f"Deleted rule {rule_id}")


# Assignment


@assign_app.command("auto")
def assign_auto(
    date: Optional[str] = typer.Option(None, "--date", help="Limit to one date (YYYY-MM-DD)."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Apply the rules to every unassigned activity."""
    target = _resolve_date(date) if date else None
    with _open_store(db_path) as store:
        count = RuleEngine(store).auto_assign_unclassified(target)
    typer.echo(f"Assigned {count} activities")


@assign_app.command("classify")
def assign_classify(
    project_id: int = typer.Argument(...),
    activity_ids: List[int] = typer.Argument(..., help="Activity ids to assign."),
    rule_type: Optional[str] = typer.Option(
        None, "--rule-type", help="Also create a rule of this type."
    ),
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Pattern for the new rule."),
    regex: bool = typer.Option(False, "--regex", help="Treat --pattern as a regular expression."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Assign activities to a project by hand."""
    create_rule = rule_type is not None or pattern is not None
    with _open_store(db_path) as store:
        count = RuleEngine(store).classify(
            activity_ids,
            project_id,
            create_rule=create_rule,
            rule_type=rule_type,
            pattern=pattern,
            is_regex=regex,
        )
    typer.echo(f"Assigned {count} activities to project {project_id}")


# Suggestions


def _detector(store: ActivityStore, min_activities: int) -> PatternDetector:
    return PatternDetector(
        store, RuleEngine(store), SuggestionSettings(min_activities=min_activities)
    )


@suggest_app.command("list")
def suggest_list(
    min_activities: int = typer.Option(2, "--min-activities", min=1),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Show brands and projects detected in unassigned activities."""
    with _open_store(db_path) as store:
        brands = _detector(store, min_activities).detect()
    print_suggestions(brands)


@suggest_app.command("accept")
def suggest_accept(
    token: str = typer.Argument(..., help="Token of a detected project, e.g. folder:acme-web."),
    brand: Optional[str] = typer.Option(None, "--brand", help="Brand name to create or reuse."),
    project: Optional[str] = typer.Option(None, "--project", help="Project name to create or reuse."),
    project_id: Optional[int] = typer.Option(
        None, "--project-id", help="Attach the rules to an existing project instead."
    ),
    min_activities: int = typer.Option(2, "--min-activities", min=1),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Save the suggested rules of one detected project and assign what they match."""
    with _open_store(db_path) as store:
        detector = _detector(store, min_activities)
        found = None
        for detected_brand in detector.detect():
            for detected in detected_brand.projects:
                if detected.token == token:
                    found = detected
        if found is None:
            typer.echo(f"Error: no suggestion with token {token!r}", err=True)
            raise typer.Exit(code=1)
        if project_id is not None:
            count = detector.accept(found.suggested_rules, project_id=project_id)
        else:
            count = detector.accept_detected(found, brand_name=brand, project_name=project)
    typer.echo(f"Assigned {count} activities")


@suggest_app.command("dismiss")
def suggest_dismiss(
    token: str = typer.Argument(..., help="Project token, or a brand:<root> or brand:<root>@<app> token."),
    db_path: Optional[Path] = _db_option(),
) -> None:
    """Stop suggesting a token."""
    with _open_store(db_path) as store:
        PatternDetector(store, RuleEngine(store)).dismiss(token)
    typer.echo(f"Dismissed {token}")

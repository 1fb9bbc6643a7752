"""Detects recurring work in unassigned activities and proposes projects and rules.

Each unassigned activity yields at most one clustering token, taken from the
first source that applies:

* ``url:<host>`` for URLs on ordinary hosts, or ``design:<file>`` for design
  tool file URLs;
* ``folder:<tail>`` for folder-style extra info;
* ``title:<phrase>`` from the leading words of the window title.

Tokens with enough activities become detected projects. Projects whose tokens
share a root word (the domain name or the first word) are grouped into one
detected brand, dismissable as ``brand:<root>``. Title-derived projects are
also scoped to their application and dismissable as ``brand:<root>@<app>``.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import SuggestionSettings
from .errors import StorageError, ValidationError
from .models import ActivityRecord, Project, ProjectRule, RuleType
from .normalization import (
    domain_root,
    folder_tail,
    host_of,
    last_segment,
    looks_like_path,
    path_of,
    path_segments,
    smart_capitalize,
    strip_www,
    subdomain_of,
    title_phrase,
    title_prefix_regex,
    words_of,
)
from .rules import RuleEngine, rule_matches, validate_rule
from .store import ActivityStore

logger = logging.getLogger(__name__)

BRAND_PREFIX = "brand:"

SKIP_HOSTS = frozenset(
    {
        "google.com",
        "github.com",
        "stackoverflow.com",
        "apple.com",
        "youtube.com",
        "twitter.com",
        "x.com",
        "reddit.com",
        "localhost",
        "127.0.0.1",
        "chatgpt.com",
        "claude.ai",
    }
)

DESIGN_HOSTS = frozenset({"figma.com"})
_DESIGN_PATH_KINDS = frozenset({"file", "design", "proto", "board"})


@dataclass(slots=True, frozen=True)
class SuggestedRule:
    rule_type: RuleType
    pattern: str
    is_regex: bool = False

    def matches(self, record: ActivityRecord) -> bool:
        candidate = ProjectRule(
            id=0,
            project_id=0,
            rule_type=self.rule_type,
            pattern=self.pattern,
            is_regex=self.is_regex,
        )
        return rule_matches(candidate, record)


def brand_token(root: str, app: Optional[str] = None) -> str:
    if app is None:
        return BRAND_PREFIX + root
    return f"{BRAND_PREFIX}{root}@{app.lower().replace(' ', '-')}"


@dataclass(slots=True)
class DetectedProject:
    token: str
    suggested_name: str
    brand_root: str
    brand_name: str
    activity_count: int
    apps: list[str]
    activity_ids: list[int]
    suggested_rules: list[SuggestedRule]


@dataclass(slots=True)
class DetectedBrand:
    root: str
    suggested_name: str
    projects: list[DetectedProject]
    total_activities: int
    apps: list[str]
    app: Optional[str] = None

    @property
    def token(self) -> str:
        return brand_token(self.root, self.app)


@dataclass(slots=True, frozen=True)
class _Candidate:
    token: str
    root: str
    label: str
    rule: SuggestedRule
    per_app: bool = False


@dataclass(slots=True)
class _Group:
    root: str
    label: str
    per_app: bool = False
    records: list[ActivityRecord] = field(default_factory=list)
    rules: set[SuggestedRule] = field(default_factory=set)

    @property
    def apps(self) -> set[str]:
        return {record.app_name for record in self.records}

    def primary_app(self) -> str:
        counts = Counter(record.app_name for record in self.records)
        return min(counts.items(), key=lambda item: (-item[1], item[0]))[0]


def _root_of(label: str, min_length: int) -> str:
    first = label.split(" ", 1)[0]
    return first if len(first) >= min_length else label


class PatternDetector:
    def __init__(
        self,
        store: ActivityStore,
        rule_engine: RuleEngine,
        settings: Optional[SuggestionSettings] = None,
    ) -> None:
        self.store = store
        self.rule_engine = rule_engine
        self.settings = settings or SuggestionSettings()

    # Detection

    def detect(self) -> list[DetectedBrand]:
        """Group unassigned activities into suggested brands and projects (read-only)."""
        records = self.store.query_unassigned_raw()
        if not records:
            return []
        existing = {rule.pattern.lower() for rule in self.store.load_all_project_rules()}
        dismissed = self.store.dismissed_tokens()

        groups: dict[str, _Group] = {}
        for record in records:
            candidate = self.token_for(record)
            if candidate is None or candidate.token in dismissed:
                continue
            group = groups.get(candidate.token)
            if group is None:
                group = _Group(root=candidate.root, label=candidate.label, per_app=candidate.per_app)
                groups[candidate.token] = group
            group.records.append(record)
            group.rules.add(candidate.rule)

        by_brand: dict[tuple[str, Optional[str]], list[DetectedProject]] = {}
        for token in sorted(groups):
            group = groups[token]
            group_apps = group.apps
            if (
                len(group.records) < self.settings.min_activities
                or len(group_apps) < self.settings.min_apps
            ):
                continue
            brand_app = group.primary_app() if group.per_app else None
            if brand_token(group.root, brand_app) in dismissed:
                continue
            # Only rules that still pick up the activities they came from.
            rules = sorted(
                (
                    rule
                    for rule in group.rules
                    if rule.pattern.lower() not in existing
                    and any(rule.matches(record) for record in group.records)
                ),
                key=lambda rule: (rule.rule_type.value, rule.pattern),
            )
            if not rules:
                continue
            by_brand.setdefault((group.root, brand_app), []).append(
                DetectedProject(
                    token=token,
                    suggested_name=self._project_name(group.root, group.label),
                    brand_root=group.root,
                    brand_name=smart_capitalize(group.root),
                    activity_count=len(group.records),
                    apps=sorted(group_apps),
                    activity_ids=sorted(record.id for record in group.records if record.id is not None),
                    suggested_rules=rules,
                )
            )

        brands: list[DetectedBrand] = []
        for (root, brand_app), projects in by_brand.items():
            projects.sort(key=lambda project: (-project.activity_count, project.token))
            apps: set[str] = set()
            for project in projects:
                apps.update(project.apps)
            brands.append(
                DetectedBrand(
                    root=root,
                    suggested_name=smart_capitalize(root),
                    projects=projects,
                    total_activities=sum(project.activity_count for project in projects),
                    apps=sorted(apps),
                    app=brand_app,
                )
            )
        brands.sort(key=lambda brand: (-brand.total_activities, brand.root, brand.app or ""))
        logger.debug("Detected %d brand suggestions from %d activities", len(brands), len(records))
        return brands

    def token_for(self, record: ActivityRecord) -> Optional[_Candidate]:
        """Clustering token for one activity, or None when nothing usable is found."""
        return (
            self._url_candidate(record)
            or self._folder_candidate(record)
            or self._title_candidate(record)
        )

    def _url_candidate(self, record: ActivityRecord) -> Optional[_Candidate]:
        host = host_of(record.url)
        if not host:
            return None
        host = strip_www(host)
        if host in SKIP_HOSTS:
            return None
        if host in DESIGN_HOSTS:
            return self._design_candidate(record)
        root = domain_root(host)
        if len(root) < self.settings.min_token_length:
            return None
        subdomain = subdomain_of(host).replace(".", " ")
        label = f"{root} {subdomain}" if subdomain else root
        return _Candidate(
            token=f"url:{host}",
            root=root,
            label=label,
            rule=SuggestedRule(RuleType.URL_DOMAIN, host),
        )

    def _design_candidate(self, record: ActivityRecord) -> Optional[_Candidate]:
        segments = path_segments(path_of(record.url) or "")
        if len(segments) < 3 or segments[0].lower() not in _DESIGN_PATH_KINDS:
            return None
        file_segment = segments[2]
        label = words_of(file_segment)
        if len(label) < self.settings.min_token_length:
            return None
        return _Candidate(
            token=f"design:{label}",
            root=_root_of(label, self.settings.min_token_length),
            label=label,
            rule=SuggestedRule(RuleType.DESIGN_FILE, file_segment),
        )

    def _folder_candidate(self, record: ActivityRecord) -> Optional[_Candidate]:
        if not looks_like_path(record.extra_info):
            return None
        tail = folder_tail(record.extra_info)
        if not tail:
            return None
        label = words_of(last_segment(tail) or "")
        if len(label) < self.settings.min_token_length:
            return None
        return _Candidate(
            token=f"folder:{tail.lower()}",
            root=_root_of(label, self.settings.min_token_length),
            label=label,
            rule=SuggestedRule(RuleType.TERMINAL_FOLDER, tail),
        )

    def _title_candidate(self, record: ActivityRecord) -> Optional[_Candidate]:
        phrase = title_phrase(record.window_title, self.settings.min_token_length)
        if not phrase:
            return None
        return _Candidate(
            token=f"title:{phrase}",
            root=_root_of(phrase, self.settings.min_token_length),
            label=phrase,
            rule=SuggestedRule(RuleType.WINDOW_TITLE, title_prefix_regex(phrase), is_regex=True),
            per_app=True,
        )

    @staticmethod
    def _project_name(root: str, label: str) -> str:
        if label.startswith(root + " "):
            return smart_capitalize(label[len(root) + 1 :])
        return smart_capitalize(label)

    # Lifecycle

    def accept(
        self,
        rules: Sequence[SuggestedRule],
        brand_name: Optional[str] = None,
        project_name: Optional[str] = None,
        project_id: Optional[int] = None,
    ) -> int:
        """Save ``rules`` for a new or existing project and assign what they match.

        Either ``project_id`` or both ``brand_name`` and ``project_name`` must be
        given; a named brand or project is reused when it already exists.
        Returns the number of activities assigned.
        """
        for rule in rules:
            validate_rule(rule.rule_type, rule.pattern, rule.is_regex)

        project = self._target_project(brand_name, project_name, project_id)
        created: list[ProjectRule] = []
        for rule in rules:
            rule_id = self.store.insert_rule(project.id, rule.rule_type, rule.pattern, rule.is_regex)
            created.append(
                ProjectRule(
                    id=rule_id,
                    project_id=project.id,
                    rule_type=RuleType.parse(rule.rule_type),
                    pattern=rule.pattern.strip(),
                    is_regex=rule.is_regex,
                )
            )
        self.rule_engine.reload_rules()

        assigned = self.rule_engine.assign_with_rules(created)
        logger.info(
            "Accepted %d rules for project %s; assigned %d activities",
            len(created),
            project.name,
            assigned,
        )
        return assigned

    def accept_detected(
        self,
        project: DetectedProject,
        brand_name: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> int:
        return self.accept(
            project.suggested_rules,
            brand_name=brand_name or project.brand_name,
            project_name=project_name or project.suggested_name,
        )

    def dismiss(self, token: str) -> None:
        token = (token or "").strip()
        if not token:
            raise ValidationError("Token must not be empty")
        self.store.add_dismissed_token(token)
        logger.info("Dismissed suggestion %s", token)

    def restore(self, token: str) -> None:
        self.store.clear_dismissed_token(token.strip())

    def _target_project(
        self,
        brand_name: Optional[str],
        project_name: Optional[str],
        project_id: Optional[int],
    ) -> Project:
        if project_id is not None:
            project = self.store.get_project(project_id)
            if project is None:
                raise ValidationError(f"No project found for id={project_id}")
            return project

        if not (brand_name or "").strip() or not (project_name or "").strip():
            raise ValidationError("A brand name and project name, or a project id, are required")
        brand = self.store.find_brand_by_name(brand_name)
        brand_id = brand.id if brand is not None else self.store.insert_brand(brand_name)
        existing = self.store.find_project_by_name(brand_id, project_name)
        if existing is not None:
            return existing
        new_id = self.store.insert_project(brand_id, project_name)
        project = self.store.get_project(new_id)
        if project is None:
            raise StorageError(f"Project id={new_id} vanished right after it was created")
        return project

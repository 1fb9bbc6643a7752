"""Rule matching and project assignment."""

from __future__ import annotations

import logging
import re
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union

from .errors import ValidationError
from .models import ActivityRecord, ProjectRule, ProjectSource, RuleType
from .normalization import host_of, last_segment, path_of, path_segments
from .store import ActivityStore, validate_rule

logger = logging.getLogger(__name__)

__all__ = [
    "CompiledRule",
    "RuleCache",
    "RuleEngine",
    "field_for_rule",
    "rule_matches",
    "validate_rule",
]


@dataclass(slots=True)
class CompiledRule:
    rule: ProjectRule
    regex: Optional[re.Pattern[str]] = None


def field_for_rule(rule_type: RuleType, record: ActivityRecord) -> Optional[str]:
    """Return the record field a rule of ``rule_type`` inspects, or None when unpopulated."""
    if rule_type is RuleType.TERMINAL_FOLDER:
        return record.extra_info if last_segment(record.extra_info) else None
    if rule_type is RuleType.URL_DOMAIN:
        return host_of(record.url)
    if rule_type is RuleType.URL_PATH:
        return path_of(record.url)
    if rule_type in (RuleType.PAGE_TITLE, RuleType.WINDOW_TITLE):
        return record.window_title or None
    if rule_type is RuleType.DESIGN_FILE:
        values = [value for value in (record.extra_info, record.url) if value]
        return "\n".join(values) if values else None
    if rule_type is RuleType.BUNDLE_ID:
        return record.bundle_id or None
    return None


def _domain_matches(pattern: str, host: str) -> bool:
    pattern = pattern.strip().lower()
    if "/" in pattern:
        pattern = host_of(pattern) or pattern
    pattern = pattern.lstrip(".")
    return host == pattern or host.endswith("." + pattern)


def _folder_matches(pattern: str, path: str) -> bool:
    wanted = [segment.lower() for segment in path_segments(pattern)]
    if not wanted:
        return False
    actual = [segment.lower() for segment in path_segments(path)]
    if len(wanted) == 1:
        return bool(actual) and actual[-1] == wanted[0]
    return actual[-len(wanted) :] == wanted


def rule_matches(
    rule: ProjectRule, record: ActivityRecord, regex: Optional[re.Pattern[str]] = None
) -> bool:
    value = field_for_rule(rule.rule_type, record)
    if value is None:
        return False

    if rule.is_regex:
        compiled = regex if regex is not None else re.compile(rule.pattern)
        if rule.rule_type is RuleType.TERMINAL_FOLDER:
            value = last_segment(value) or ""
        return compiled.search(value) is not None

    if rule.rule_type is RuleType.TERMINAL_FOLDER:
        return _folder_matches(rule.pattern, value)
    if rule.rule_type is RuleType.URL_DOMAIN:
        return _domain_matches(rule.pattern, value)
    if rule.rule_type is RuleType.BUNDLE_ID:
        return value.casefold() == rule.pattern.strip().casefold()
    return rule.pattern.casefold() in value.casefold()


class RuleCache:
    """Snapshot of all project rules in evaluation order.

    Rules are immutable once stored and ids are never reused, so the
    ``(count, max id)`` fingerprint of the rule table is enough to notice
    changes made through another connection or process.
    """

    def __init__(self, store: ActivityStore) -> None:
        self._store = store
        self._rules: Optional[list[CompiledRule]] = None
        self._fingerprint: Optional[tuple[int, int]] = None
        self._lock = threading.Lock()

    @property
    def rules(self) -> list[CompiledRule]:
        with self._lock:
            if self._rules is None:
                self._rules = self._load()
            return self._rules

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None

    def reload(self) -> list[CompiledRule]:
        with self._lock:
            self._rules = self._load()
            return self._rules

    def refresh(self) -> list[CompiledRule]:
        """Current rules, reloaded first if the stored rule set changed."""
        fingerprint = self._store.rules_fingerprint()
        with self._lock:
            if self._rules is None or fingerprint != self._fingerprint:
                if self._rules is not None:
                    logger.info("Rule set changed on disk; reloading")
                self._rules = self._load()
            return self._rules

    def _load(self) -> list[CompiledRule]:
        self._fingerprint = self._store.rules_fingerprint()
        compiled: list[CompiledRule] = []
        for rule in self._store.load_all_project_rules():
            regex = None
            if rule.is_regex:
                try:
                    regex = re.compile(rule.pattern)
                except re.error:
                    logger.warning("Skipping rule id=%d with invalid pattern %r", rule.id, rule.pattern)
                    continue
            compiled.append(CompiledRule(rule=rule, regex=regex))
        logger.debug("Loaded %d project rules", len(compiled))
        return compiled


class RuleEngine:
    """Assigns activities to projects using the cached rule set."""

    def __init__(self, store: ActivityStore, cache: Optional[RuleCache] = None) -> None:
        self.store = store
        self.cache = cache if cache is not None else RuleCache(store)

    def match(self, record: ActivityRecord) -> Optional[int]:
        """Project id of the first matching rule, or None.

        Picks up rules added or removed by other processes since the last call.
        """
        return self._first_match(self.cache.refresh(), record)

    def reload_rules(self) -> None:
        self.cache.reload()

    def auto_assign_unclassified(self, date: Optional[str] = None) -> int:
        """Match every unassigned activity (optionally for one date); returns how many were assigned."""
        rules = self.cache.reload()
        if not rules:
            return 0
        return self._assign(rules, self.store.query_unassigned_raw(date))

    def assign_with_rules(self, rules: Sequence[ProjectRule], date: Optional[str] = None) -> int:
        """Assign unassigned activities matched by ``rules`` only."""
        ordered = sorted(rules, key=lambda rule: (rule.priority, rule.id))
        compiled = [
            CompiledRule(rule=rule, regex=re.compile(rule.pattern) if rule.is_regex else None)
            for rule in ordered
        ]
        if not compiled:
            return 0
        return self._assign(compiled, self.store.query_unassigned_raw(date))

    def classify(
        self,
        activity_ids: Iterable[int],
        project_id: int,
        create_rule: bool = False,
        rule_type: Union[RuleType, str, None] = None,
        pattern: Optional[str] = None,
        is_regex: bool = False,
        priority: int = 0,
    ) -> int:
        """Assign activities to a project by hand, optionally saving a rule for the future."""
        if self.store.get_project(project_id) is None:
            raise ValidationError(f"No project found for id={project_id}")
        if create_rule:
            if rule_type is None or pattern is None:
                raise ValidationError("A rule type and pattern are required to create a rule")
            rule_type, pattern = validate_rule(rule_type, pattern, is_regex)

        ids = list(activity_ids)
        assigned = self.store.bulk_update_project_assignment(ids, project_id, ProjectSource.MANUAL)
        logger.info("Classified %d activities into project id=%d", assigned, project_id)

        if create_rule:
            self.store.insert_rule(project_id, rule_type, pattern, is_regex, priority)
            self.reload_rules()
        return assigned

    def add_rule(
        self,
        project_id: int,
        rule_type: Union[RuleType, str],
        pattern: str,
        is_regex: bool = False,
        priority: int = 0,
    ) -> int:
        rule_id = self.store.insert_rule(project_id, rule_type, pattern, is_regex, priority)
        self.reload_rules()
        return rule_id

    def delete_rule(self, rule_id: int) -> None:
        self.store.delete_rule(rule_id)
        self.reload_rules()

    def delete_project(self, project_id: int) -> None:
        self.store.delete_project(project_id)
        self.reload_rules()

    def delete_brand(self, brand_id: int) -> None:
        self.store.delete_brand(brand_id)
        self.reload_rules()

    @staticmethod
    def _first_match(rules: Sequence[CompiledRule], record: ActivityRecord) -> Optional[int]:
        for compiled in rules:
            if rule_matches(compiled.rule, record, compiled.regex):
                return compiled.rule.project_id
        return None

    def _assign(self, rules: Sequence[CompiledRule], records: Sequence[ActivityRecord]) -> int:
        by_project: dict[int, list[int]] = defaultdict(list)
        for record in records:
            project_id = self._first_match(rules, record)
            if project_id is not None and record.id is not None:
                by_project[project_id].append(record.id)

        assigned = 0
        for project_id, ids in sorted(by_project.items()):
            assigned += self.store.bulk_update_project_assignment(
                ids, project_id, ProjectSource.AUTO_RULE, only_unassigned=True
            )
        if assigned:
            logger.info("Auto-assigned %d activities", assigned)
        return assigned

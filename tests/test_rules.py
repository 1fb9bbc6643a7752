"""Tests for rule matching and project assignment."""

import os
import shutil
import tempfile
import unittest
from datetime import datetime

import pytest

from pulse_tracker.errors import ValidationError
from pulse_tracker.models import ActivityRecord, ProjectRule, ProjectSource, RuleType
from pulse_tracker.rules import RuleCache, RuleEngine, field_for_rule, rule_matches
from pulse_tracker.store import ActivityStore

WHEN = datetime(2024, 1, 15, 9, 0).astimezone()


def activity(app="Safari", title="", url=None, extra=None, bundle="com.apple.Safari", when=WHEN):
    return ActivityRecord(
        app_name=app,
        bundle_id=bundle,
        window_title=title,
        url=url,
        extra_info=extra,
        duration_seconds=30,
        timestamp=when,
    )


def rule(rule_type, pattern, is_regex=False, rule_id=1, project_id=1, priority=0):
    return ProjectRule(
        id=rule_id,
        project_id=project_id,
        rule_type=rule_type,
        pattern=pattern,
        is_regex=is_regex,
        priority=priority,
    )


class TestRuleMatches(unittest.TestCase):
    def test_domain_matches_host_and_subdomains(self):
        domain = rule(RuleType.URL_DOMAIN, "acme.com")

        self.assertTrue(rule_matches(domain, activity(url="https://acme.com/")))
        self.assertTrue(rule_matches(domain, activity(url="https://app.ACME.com/x")))
        self.assertFalse(rule_matches(domain, activity(url="https://other.com")))
        self.assertFalse(rule_matches(domain, activity(url="https://notacme.com")))
        self.assertFalse(rule_matches(domain, activity(url=None)))

    def test_folder_matches_last_segment_exactly(self):
        folder = rule(RuleType.TERMINAL_FOLDER, "acme-web")

        self.assertTrue(rule_matches(folder, activity(extra="~/projects/Acme-Web")))
        self.assertTrue(rule_matches(folder, activity(extra="/home/me/acme-web/")))
        self.assertFalse(rule_matches(folder, activity(extra="~/projects/acme-web-old")))
        self.assertFalse(rule_matches(folder, activity(extra="~/acme-web/src")))

    def test_folder_with_separator_matches_path_suffix(self):
        folder = rule(RuleType.TERMINAL_FOLDER, "clients/acme")

        self.assertTrue(rule_matches(folder, activity(extra="~/work/clients/acme")))
        self.assertFalse(rule_matches(folder, activity(extra="~/work/oldclients/acme")))

    def test_title_rules_are_case_insensitive_substrings(self):
        for rule_type in (RuleType.WINDOW_TITLE, RuleType.PAGE_TITLE):
            title_rule = rule(rule_type, "Launch Plan")
            self.assertTrue(rule_matches(title_rule, activity(title="Q3 launch plan - Docs")))
            self.assertFalse(rule_matches(title_rule, activity(title="Budget")))

    def test_url_path_and_design_file(self):
        path_rule = rule(RuleType.URL_PATH, "/acme/")
        design_rule = rule(RuleType.DESIGN_FILE, "Acme-Homepage")

        self.assertTrue(rule_matches(path_rule, activity(url="https://github.com/ACME/web")))
        self.assertFalse(rule_matches(path_rule, activity(url="https://acme.com/")))
        self.assertTrue(
            rule_matches(design_rule, activity(url="https://www.figma.com/file/k3y/acme-homepage"))
        )
        self.assertTrue(rule_matches(design_rule, activity(extra="acme-homepage.fig")))
        self.assertFalse(rule_matches(design_rule, activity(title="acme-homepage")))

    def test_bundle_id_is_exact(self):
        bundle_rule = rule(RuleType.BUNDLE_ID, "com.apple.safari")

        self.assertTrue(rule_matches(bundle_rule, activity()))
        self.assertFalse(rule_matches(bundle_rule, activity(bundle="com.apple.Safari.beta")))

    def test_regex_is_case_sensitive_search(self):
        regex_rule = rule(RuleType.WINDOW_TITLE, r"^ACME-\d+", is_regex=True)

        self.assertTrue(rule_matches(regex_rule, activity(title="ACME-12 fix login")))
        self.assertFalse(rule_matches(regex_rule, activity(title="acme-12 fix login")))

    def test_regex_folder_rule_sees_last_segment(self):
        regex_rule = rule(RuleType.TERMINAL_FOLDER, r"^acme-", is_regex=True)

        self.assertTrue(rule_matches(regex_rule, activity(extra="~/projects/acme-api")))
        self.assertFalse(rule_matches(regex_rule, activity(extra="~/acme-old/notes")))

    def test_unpopulated_field_is_not_a_candidate(self):
        self.assertIsNone(field_for_rule(RuleType.URL_DOMAIN, activity()))
        self.assertIsNone(field_for_rule(RuleType.TERMINAL_FOLDER, activity(extra="")))
        self.assertIsNone(field_for_rule(RuleType.WINDOW_TITLE, activity(title="")))
        self.assertFalse(rule_matches(rule(RuleType.WINDOW_TITLE, "a"), activity(title="")))


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = ActivityStore(os.path.join(self.temp_dir, "activity.sqlite3"))
        self.engine = RuleEngine(self.store)
        self.brand_id = self.store.insert_brand("Acme")
        self.web = self.store.insert_project(self.brand_id, "Web")
        self.api = self.store.insert_project(self.brand_id, "API")

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.temp_dir)


class TestMatch(EngineTestCase):
    def test_first_rule_by_priority_wins(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com", priority=10)
        self.engine.add_rule(self.api, RuleType.URL_PATH, "/api", priority=1)
        record = activity(url="https://acme.com/api/v1")

        self.assertEqual(self.engine.match(record), self.api)
        self.assertEqual(self.engine.match(record), self.api)

    def test_equal_priority_breaks_ties_by_rule_id(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        self.engine.add_rule(self.api, RuleType.URL_DOMAIN, "app.acme.com")

        self.assertEqual(self.engine.match(activity(url="https://app.acme.com")), self.web)

    def test_match_sees_rules_inserted_behind_the_cache(self):
        cache = RuleCache(self.store)
        engine = RuleEngine(self.store, cache)
        record = activity(url="https://acme.com")
        self.assertIsNone(engine.match(record))

        self.store.insert_rule(self.web, RuleType.URL_DOMAIN, "acme.com")

        self.assertEqual(engine.match(record), self.web)

    def test_rule_changes_from_another_connection_reach_the_cache(self):
        record = activity(url="https://acme.com")
        self.assertIsNone(self.engine.match(record))

        with ActivityStore(self.store.db_path) as other:
            other_engine = RuleEngine(other)

            rule_id = other_engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
            self.assertEqual(self.engine.match(record), self.web)

            other_engine.delete_rule(rule_id)
            self.assertIsNone(self.engine.match(record))

            other_engine.add_rule(self.api, RuleType.URL_DOMAIN, "acme.com")
            self.assertEqual(self.engine.match(record), self.api)

            other_engine.delete_project(self.api)
            self.assertIsNone(self.engine.match(record))

    def test_refresh_keeps_rules_when_nothing_changed(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        cache = RuleCache(self.store)
        first = cache.refresh()

        self.assertIs(cache.refresh(), first)

    def test_invalidate_reloads_lazily(self):
        cache = RuleCache(self.store)
        self.assertEqual(cache.rules, [])
        self.store.insert_rule(self.web, RuleType.URL_DOMAIN, "acme.com")

        cache.invalidate()

        self.assertEqual([compiled.rule.pattern for compiled in cache.rules], ["acme.com"])


class TestAutoAssign(EngineTestCase):
    def test_scenario_domain_rule(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        matched = self.store.insert(activity(url="https://app.acme.com/board"))
        other = self.store.insert(activity(url="https://other.com"))

        self.assertEqual(self.engine.auto_assign_unclassified(), 1)
        self.assertEqual(self.store.get_activity(matched).project_id, self.web)
        self.assertEqual(self.store.get_activity(matched).project_source, ProjectSource.AUTO_RULE)
        self.assertIsNone(self.store.get_activity(other).project_id)

    def test_is_idempotent(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        for index in range(10):
            self.store.insert(activity(title=f"Board {index}", url="https://acme.com/board"))

        self.assertEqual(self.engine.auto_assign_unclassified("2024-01-15"), 10)
        self.assertEqual(self.engine.auto_assign_unclassified("2024-01-15"), 0)

    def test_date_scope_and_no_rules(self):
        self.assertEqual(self.engine.auto_assign_unclassified(), 0)
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        self.store.insert(activity(url="https://acme.com", when=datetime(2024, 1, 16, 9).astimezone()))

        self.assertEqual(self.engine.auto_assign_unclassified("2024-01-15"), 0)
        self.assertEqual(self.engine.auto_assign_unclassified("2024-01-16"), 1)

    def test_manual_assignments_are_not_touched(self):
        manual = self.store.insert(activity(url="https://acme.com"))
        self.engine.classify([manual], self.api)
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")

        self.assertEqual(self.engine.auto_assign_unclassified(), 0)
        self.assertEqual(self.store.get_activity(manual).project_id, self.api)


class TestClassify(EngineTestCase):
    def test_assigns_and_can_create_rule(self):
        first = self.store.insert(activity(title="Acme roadmap"))
        second = self.store.insert(activity(title="Acme budget"))
        later = self.store.insert(activity(title="Acme hiring"))

        count = self.engine.classify(
            [first, second],
            self.web,
            create_rule=True,
            rule_type="window-title",
            pattern="acme",
        )

        self.assertEqual(count, 2)
        self.assertEqual(self.store.get_activity(first).project_source, ProjectSource.MANUAL)
        self.assertEqual(self.engine.match(self.store.get_activity(later)), self.web)

    def test_reassigns_already_assigned(self):
        activity_id = self.store.insert(activity())
        self.engine.classify([activity_id], self.web)
        self.engine.classify([activity_id], self.api)

        self.assertEqual(self.store.get_activity(activity_id).project_id, self.api)

    def test_rejects_unknown_project_and_bad_rule_before_writing(self):
        activity_id = self.store.insert(activity(title="x"))

        with self.assertRaises(ValidationError):
            self.engine.classify([activity_id], 999)
        with self.assertRaises(ValidationError):
            self.engine.classify(
                [activity_id], self.web, create_rule=True, rule_type="window_title", pattern="(", is_regex=True
            )
        with self.assertRaises(ValidationError):
            self.engine.classify([activity_id], self.web, create_rule=True)

        self.assertIsNone(self.store.get_activity(activity_id).project_id)
        self.assertEqual(self.store.load_all_project_rules(), [])


class TestDeletes(EngineTestCase):
    def test_delete_brand_reloads_and_clears_assignments(self):
        self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        activity_id = self.store.insert(activity(url="https://acme.com"))
        self.engine.auto_assign_unclassified()

        self.engine.delete_brand(self.brand_id)

        self.assertIsNone(self.engine.match(activity(url="https://acme.com")))
        stored = self.store.get_activity(activity_id)
        self.assertIsNone(stored.project_id)
        self.assertEqual(stored.duration_seconds, 30)

    def test_delete_rule_and_project(self):
        rule_id = self.engine.add_rule(self.web, RuleType.URL_DOMAIN, "acme.com")
        self.engine.delete_rule(rule_id)
        self.assertIsNone(self.engine.match(activity(url="https://acme.com")))

        with self.assertRaises(ValidationError):
            self.engine.delete_rule(rule_id)

        self.engine.delete_project(self.api)
        self.assertIsNone(self.store.get_project(self.api))


def test_invalid_regex_rejected_at_insert(store):
    project_id = store.insert_project(store.insert_brand("Acme"), "Web")
    engine = RuleEngine(store)

    with pytest.raises(ValidationError):
        engine.add_rule(project_id, RuleType.WINDOW_TITLE, "[unclosed", is_regex=True)
    assert engine.cache.rules == []

"""Tests for the heartbeat-to-session merger."""

import os
import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from pulse_tracker.errors import StorageError
from pulse_tracker.events import DayChanged, EventChannel
from pulse_tracker.merger import STATE_IDLE, STATE_TRACKING, HeartbeatMerger
from pulse_tracker.models import ActivityRecord, Heartbeat, ProjectSource, RuleType
from pulse_tracker.rules import RuleEngine
from pulse_tracker.store import ActivityStore

START = datetime(2024, 1, 15, 9, 0, 0).astimezone()


def beat(offset=0, app="Code", title="main.py", url=None, extra=None, idle=False, idle_seconds=0.0, start=START):
    return Heartbeat(
        app_name=app,
        bundle_id=f"com.example.{app.lower()}",
        window_title=title,
        url=url,
        extra_info=extra,
        idle=idle,
        idle_seconds=idle_seconds,
        timestamp=start + timedelta(seconds=offset),
    )


class MergerTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = ActivityStore(os.path.join(self.temp_dir, "activity.sqlite3"))
        self.merger = HeartbeatMerger(self.store, interval=2, idle_threshold=600)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.temp_dir)

    def timeline(self, date="2024-01-15"):
        return self.store.query_timeline(date)


class TestSessions(MergerTestCase):
    def test_unchanged_identity_accumulates_into_one_record(self):
        for index in range(15):
            self.merger.process(beat(offset=index * 2))

        entries = self.timeline()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].duration_seconds, 30)
        self.assertEqual(self.merger.state, STATE_TRACKING)
        self.assertEqual(self.merger.accumulated_seconds, 30)

    def test_one_write_per_heartbeat(self):
        with patch.object(self.store, "insert", wraps=self.store.insert) as insert, patch.object(
            self.store, "update_duration", wraps=self.store.update_duration
        ) as update:
            for index in range(15):
                self.merger.process(beat(offset=index * 2))
            self.merger.close()

        self.assertEqual(insert.call_count, 1)
        self.assertEqual(update.call_count, 14)

    def test_switch_closes_and_opens(self):
        for index in range(5):
            self.merger.process(beat(offset=index * 2))
        self.merger.process(beat(offset=10, app="Safari", title="Docs"))

        entries = self.timeline()
        self.assertEqual([entry.app_name for entry in entries], ["Code", "Safari"])
        self.assertEqual([entry.duration_seconds for entry in entries], [10, 2])
        self.assertEqual(self.merger.current_record_id, entries[1].id)

    def test_any_identity_field_change_splits(self):
        self.merger.process(beat(offset=0, url="https://acme.com/a"))
        self.merger.process(beat(offset=2, url="https://acme.com/b"))
        self.merger.process(beat(offset=4, url="https://acme.com/b", extra="~/src"))
        self.merger.process(beat(offset=6, url="https://acme.com/b", extra="~/src", title="Main.py"))

        self.assertEqual(len(self.timeline()), 4)

    def test_close_is_idempotent(self):
        self.merger.process(beat())
        self.merger.close()
        self.merger.close()

        self.assertEqual(self.merger.state, STATE_IDLE)
        self.assertIsNone(self.merger.current_record_id)
        self.assertEqual(self.timeline()[0].duration_seconds, 2)


class TestIdle(MergerTestCase):
    def test_idle_flag_closes_session_and_leaves_a_gap(self):
        self.merger.process(beat(offset=0))
        self.merger.process(beat(offset=2))
        self.merger.process(beat(offset=4, idle=True))
        self.merger.process(beat(offset=600, idle=True))
        self.merger.process(beat(offset=1200))

        entries = self.timeline()
        self.assertEqual([entry.duration_seconds for entry in entries], [4, 2])
        summary = self.store.query_day("2024-01-15")
        self.assertEqual(summary.active_tracking_seconds, 6)
        self.assertEqual(summary.wall_clock_seconds, 1202)

    def test_idle_seconds_over_threshold_counts_as_idle(self):
        self.merger.process(beat(offset=0))
        self.merger.process(beat(offset=2, idle_seconds=600))

        self.assertEqual(self.merger.state, STATE_IDLE)
        self.assertEqual(self.timeline()[0].duration_seconds, 2)

    def test_idle_seconds_below_threshold_keeps_tracking(self):
        self.merger.process(beat(offset=0))
        self.merger.process(beat(offset=2, idle_seconds=599))

        self.assertEqual(self.merger.state, STATE_TRACKING)
        self.assertEqual(self.timeline()[0].duration_seconds, 4)


class TestDayChange(MergerTestCase):
    def setUp(self):
        super().setUp()
        self.events = []
        self.channel = EventChannel()
        self.channel.subscribe(self.events.append)
        self.merger = HeartbeatMerger(self.store, interval=2, day_changed=self.channel)
        self.late = datetime(2024, 1, 15, 23, 59, 56).astimezone()

    def test_session_is_split_at_midnight(self):
        for index in range(4):
            self.merger.process(beat(offset=index * 2, start=self.late))

        first_day = self.timeline("2024-01-15")
        second_day = self.timeline("2024-01-16")
        self.assertEqual([entry.duration_seconds for entry in first_day], [4])
        self.assertEqual([entry.duration_seconds for entry in second_day], [4])
        self.assertEqual(self.events, [DayChanged(completed_date="2024-01-15", new_date="2024-01-16")])

    def test_rollover_while_idle_fires_once(self):
        self.merger.process(beat(offset=0, start=self.late))
        self.merger.process(beat(offset=2, start=self.late, idle=True))
        self.merger.process(beat(offset=6, start=self.late, idle=True))
        self.merger.process(beat(offset=8, start=self.late, idle=True))

        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.timeline("2024-01-16"), [])

    def test_failing_subscriber_does_not_stop_tracking(self):
        self.channel.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        with self.assertLogs("pulse_tracker.events", level="ERROR"):
            self.merger.process(beat(offset=0, start=self.late))
            self.merger.process(beat(offset=4, start=self.late))

        self.assertEqual(len(self.timeline("2024-01-16")), 1)
        self.assertEqual(len(self.events), 1)


class TestFailures(MergerTestCase):
    def test_failed_insert_is_logged_and_retried(self):
        with patch.object(self.store, "insert", side_effect=StorageError("disk full")):
            with self.assertLogs("pulse_tracker.merger", level="ERROR"):
                self.merger.process(beat(offset=0))

        self.assertEqual(self.merger.state, STATE_IDLE)
        self.merger.process(beat(offset=2))

        entries = self.timeline()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].duration_seconds, 2)

    def test_failed_update_is_written_on_close(self):
        self.merger.process(beat(offset=0))
        with patch.object(self.store, "update_duration", side_effect=StorageError("locked")):
            with self.assertLogs("pulse_tracker.merger", level="ERROR"):
                self.merger.process(beat(offset=2))

        self.assertEqual(self.timeline()[0].duration_seconds, 2)
        self.merger.process(beat(offset=4, app="Safari"))

        self.assertEqual([entry.duration_seconds for entry in self.timeline()], [4, 2])


class TestAutomaticAssignment(MergerTestCase):
    def test_new_session_is_matched_at_insert(self):
        project_id = self.store.insert_project(self.store.insert_brand("Acme"), "Web")
        self.store.insert_rule(project_id, RuleType.URL_DOMAIN, "acme.com")
        merger = HeartbeatMerger(self.store, rule_engine=RuleEngine(self.store))

        merger.process(beat(url="https://app.acme.com/dashboard"))
        merger.process(beat(offset=2, app="Safari", url="https://other.com"))

        first, second = self.timeline()
        self.assertEqual(first.project_id, project_id)
        self.assertEqual(self.store.get_activity(first.id).project_source, ProjectSource.AUTO_RULE)
        self.assertIsNone(second.project_id)

    def test_rule_changes_from_another_store_apply_to_new_sessions(self):
        merger = HeartbeatMerger(self.store, rule_engine=RuleEngine(self.store))
        merger.process(beat(app="Safari", url="https://acme.com/a"))

        with ActivityStore(self.store.db_path) as other:
            project_id = other.insert_project(other.insert_brand("Acme"), "Web")
            RuleEngine(other).add_rule(project_id, RuleType.URL_DOMAIN, "acme.com")
            merger.process(beat(offset=2, app="Safari", url="https://acme.com/b"))
            self.assertEqual(merger.current_record.project_id, project_id)

            RuleEngine(other).delete_project(project_id)
            for index in range(5):
                merger.process(beat(offset=4 + index * 2, app="Safari", url="https://acme.com/c"))
        merger.close()

        entries = self.timeline()
        self.assertEqual(len(entries), 3)
        self.assertIsNone(entries[2].project_id)
        self.assertEqual(entries[2].duration_seconds, 10)

    def test_match_for_a_deleted_project_is_stored_unassigned(self):
        project_id = self.store.insert_project(self.store.insert_brand("Acme"), "Web")
        engine = RuleEngine(self.store)
        merger = HeartbeatMerger(self.store, rule_engine=engine)
        self.store.delete_project(project_id)

        with patch.object(engine, "match", return_value=project_id):
            with self.assertLogs("pulse_tracker.merger", level="WARNING") as logs:
                merger.process(beat(url="https://acme.com/"))
            for index in range(1, 5):
                merger.process(beat(offset=index * 2, url="https://acme.com/"))

        self.assertIn("storing it unassigned", logs.output[0])
        self.assertEqual(merger.state, STATE_TRACKING)
        (entry,) = self.timeline()
        self.assertIsNone(entry.project_id)
        self.assertEqual(entry.duration_seconds, 10)


class TestConcurrentWriters(MergerTestCase):
    HEARTBEATS = 150

    def setUp(self):
        super().setUp()
        brand_id = self.store.insert_brand("Acme")
        self.web = self.store.insert_project(brand_id, "Web")
        self.ops = self.store.insert_project(brand_id, "Ops")
        self.store.insert_rule(self.web, RuleType.TERMINAL_FOLDER, "acme-web")
        self.folder_ids = [
            self.store.insert(
                ActivityRecord(
                    app_name="Terminal",
                    bundle_id="com.apple.Terminal",
                    window_title=f"zsh {index}",
                    extra_info="~/projects/acme-web",
                    duration_seconds=30,
                    timestamp=START,
                )
            )
            for index in range(40)
        ]

    def run_side_by_side(self, assigner_store):
        engine = RuleEngine(assigner_store)
        manual_ids = self.folder_ids[::2]
        errors = []

        def sample():
            try:
                for index in range(self.HEARTBEATS):
                    self.merger.process(beat(offset=index * 2))
                self.merger.close()
            except Exception as exc:
                errors.append(exc)

        def assign():
            try:
                for chunk_start in range(0, len(manual_ids), 4):
                    engine.classify(manual_ids[chunk_start : chunk_start + 4], self.ops)
                    engine.auto_assign_unclassified("2024-01-15")
            except Exception as exc:
                errors.append(exc)

        with self.assertNoLogs("pulse_tracker", level="ERROR"):
            threads = [threading.Thread(target=sample), threading.Thread(target=assign)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=60)

        self.assertEqual(errors, [])
        (session,) = [entry for entry in self.timeline() if entry.app_name == "Code"]
        self.assertEqual(session.duration_seconds, self.HEARTBEATS * 2)
        for activity_id in self.folder_ids:
            expected = self.ops if activity_id in manual_ids else self.web
            self.assertEqual(self.store.get_activity(activity_id).project_id, expected)

    def test_sampling_and_assignment_share_one_store(self):
        self.run_side_by_side(self.store)

    def test_sampling_and_assignment_on_separate_connections(self):
        with ActivityStore(self.store.db_path) as other:
            self.run_side_by_side(other)


def test_interval_must_be_positive(store):
    with pytest.raises(ValueError):
        HeartbeatMerger(store, interval=0)

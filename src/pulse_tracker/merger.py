"""Turns the heartbeat stream into persisted activity sessions."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional

from .errors import TrackerError, ValidationError
from .events import DayChanged, EventChannel
from .models import ActivityRecord, Heartbeat, ProjectSource
from .store import ActivityStore

if TYPE_CHECKING:
    from .rules import RuleEngine

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_TRACKING = "tracking"


class HeartbeatMerger:
    """Keeps at most one open session and writes its running duration.

    A session is identified by ``(app_name, window_title, url, extra_info)``.
    Each heartbeat either opens a session (insert with one interval of
    duration) or extends it (duration update). Idle heartbeats and a change
    of local date close the open session.
    """

    def __init__(
        self,
        store: ActivityStore,
        interval: int = 2,
        idle_threshold: float = 600,
        rule_engine: Optional["RuleEngine"] = None,
        day_changed: Optional[EventChannel[DayChanged]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.interval = int(interval)
        self.idle_threshold = idle_threshold
        self.rule_engine = rule_engine
        self.day_changed = day_changed if day_changed is not None else EventChannel()
        self._record: Optional[ActivityRecord] = None
        self._accumulated = 0
        self._persisted = 0
        self._last_date: Optional[str] = None
        self._lock = threading.RLock()

    @property
    def state(self) -> str:
        return STATE_TRACKING if self._record is not None else STATE_IDLE

    @property
    def current_record(self) -> Optional[ActivityRecord]:
        return self._record

    @property
    def current_record_id(self) -> Optional[int]:
        return self._record.id if self._record is not None else None

    @property
    def accumulated_seconds(self) -> int:
        return self._accumulated

    def is_idle(self, heartbeat: Heartbeat) -> bool:
        return heartbeat.idle or heartbeat.idle_seconds >= self.idle_threshold

    def process(self, heartbeat: Heartbeat) -> None:
        with self._lock:
            date = heartbeat.date
            if self._last_date is not None and date != self._last_date:
                completed = self._last_date
                self._close()
                self._last_date = date
                logger.info("Day changed from %s to %s", completed, date)
                self.day_changed.emit(DayChanged(completed_date=completed, new_date=date))
            self._last_date = date

            if self.is_idle(heartbeat):
                if self._record is not None:
                    logger.debug("Idle detected; closing session id=%s", self.current_record_id)
                self._close()
                return

            record = self._record
            if record is not None and _identity_of(record) == heartbeat.identity:
                self._extend()
                return

            self._close()
            self._open(heartbeat)

    def close(self) -> None:
        """Finalize the open session, if any."""
        with self._lock:
            self._close()

    def _open(self, heartbeat: Heartbeat) -> None:
        record = ActivityRecord.from_heartbeat(heartbeat, self.interval)
        if not self._insert(record, self._match(record)):
            return
        self._record = record
        self._accumulated = self.interval
        self._persisted = self.interval
        logger.debug(
            "Opened session id=%s app=%s title=%s", record.id, record.app_name, record.window_title
        )

    def _insert(self, record: ActivityRecord, project_id: Optional[int]) -> bool:
        try:
            if project_id is None:
                self.store.insert(record)
                return True
            try:
                self.store.insert(record, project_id=project_id, project_source=ProjectSource.AUTO_RULE)
            except ValidationError:
                # The matched project was deleted since the rules were cached.
                logger.warning(
                    "Project id=%d rejected activity for %s; storing it unassigned",
                    project_id,
                    record.app_name,
                )
                self._reload_rules()
                self.store.insert(record)
        except TrackerError:
            logger.exception("Failed to insert activity for %s", record.app_name)
            return False
        return True

    def _reload_rules(self) -> None:
        if self.rule_engine is None:
            return
        try:
            self.rule_engine.reload_rules()
        except TrackerError:
            logger.exception("Failed to reload rules")

    def _extend(self) -> None:
        self._accumulated += self.interval
        self._write_duration()

    def _close(self) -> None:
        if self._record is None:
            return
        if self._accumulated != self._persisted:
            self._write_duration()
        logger.debug(
            "Closed session id=%s after %ds", self.current_record_id, self._accumulated
        )
        self._record = None
        self._accumulated = 0
        self._persisted = 0

    def _write_duration(self) -> None:
        record = self._record
        if record is None or record.id is None:
            return
        try:
            self.store.update_duration(record.id, self._accumulated)
        except TrackerError:
            logger.exception("Failed to update duration for activity id=%s", record.id)
            return
        record.duration_seconds = self._accumulated
        self._persisted = self._accumulated

    def _match(self, record: ActivityRecord) -> Optional[int]:
        if self.rule_engine is None:
            return None
        try:
            return self.rule_engine.match(record)
        except TrackerError:
            logger.exception("Rule matching failed; storing activity unassigned")
            return None


def _identity_of(record: ActivityRecord) -> tuple:
    return (record.app_name, record.window_title, record.url, record.extra_info)

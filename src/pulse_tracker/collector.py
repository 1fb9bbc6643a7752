"""Foreground-window sampling loop."""

from __future__ import annotations

import ctypes
import logging
import threading
from typing import Optional, Protocol

import psutil

from .config import CollectorSettings
from .merger import HeartbeatMerger
from .models import Heartbeat, now
from .normalization import normalize_window_title
from .store import ActivityStore

logger = logging.getLogger(__name__)


class WindowProbe(Protocol):
    """Source of foreground-window snapshots."""

    def snapshot(self) -> Optional[Heartbeat]:
        """Return the current foreground window, or None when there is none."""
        ...


class WindowsIdleDetector:
    """Detects idle time using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", ctypes.c_uint), ("dwTime", ctypes.c_ulong)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()
        elapsed = self._kernel32.GetTickCount64() - last_input.dwTime
        return int(elapsed)

    def idle_seconds(self) -> float:
        try:
            return self.milliseconds_since_input() / 1000.0
        except OSError:
            logger.exception("Failed to query idle state; assuming not idle.")
            return 0.0


class WindowsWindowProbe:
    """Reads the foreground window title and process name on Windows."""

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._idle_detector = WindowsIdleDetector()

    def snapshot(self) -> Optional[Heartbeat]:
        hwnd = self._user32.GetForegroundWindow()
        if not hwnd:
            return None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        window_title = buffer.value.strip()

        pid = ctypes.c_ulong()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        process_name: Optional[str] = None
        try:
            if pid.value:
                process_name = psutil.Process(pid.value).name()
        except (psutil.Error, ProcessLookupError):
            process_name = None
        if not process_name:
            return None

        return Heartbeat(
            app_name=process_name,
            bundle_id=process_name.lower(),
            window_title=window_title,
            idle_seconds=self._idle_detector.idle_seconds(),
            timestamp=now(),
        )


class ActivityCollector:
    """Samples foreground activity at a fixed interval and feeds the session merger."""

    def __init__(
        self,
        store: ActivityStore,
        settings: CollectorSettings,
        probe: WindowProbe,
        merger: Optional[HeartbeatMerger] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._probe = probe
        self.merger = merger if merger is not None else HeartbeatMerger(
            store,
            interval=settings.interval_seconds,
            idle_threshold=settings.idle_seconds,
        )
        self._lock = threading.Lock()

    def run_forever(self) -> None:
        stop_event = threading.Event()
        try:
            self._run_loop(stop_event)
        except KeyboardInterrupt:
            logger.info("Collector interrupted; closing the open session.")
        finally:
            self._shutdown()

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Run the collector until the provided event is set."""
        try:
            self._run_loop(stop_event)
        finally:
            self._shutdown()

    def sample_once(self) -> None:
        with self._lock:
            try:
                heartbeat = self._probe.snapshot()
                if heartbeat is None:
                    self.merger.close()
                    return
                heartbeat.window_title = (
                    normalize_window_title(heartbeat.app_name, heartbeat.window_title) or ""
                )
                self.merger.process(heartbeat)
            except Exception:
                logger.exception("Sampling failed; continuing with the next tick.")
                return
        logger.debug(
            "Sampled: state=%s app=%s title=%s",
            self.merger.state,
            heartbeat.app_name,
            heartbeat.window_title,
        )

    def _run_loop(self, stop_event: threading.Event) -> None:
        logger.info("Starting collector; writing to %s", self.store.db_path)
        interval = self.settings.sample_interval.total_seconds()
        while not stop_event.is_set():
            self.sample_once()
            # Sleep in an interruptible manner.
            stop_event.wait(interval)

    def _shutdown(self) -> None:
        with self._lock:
            self.merger.close()
        logger.info("Collector stopped.")

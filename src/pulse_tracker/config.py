"""Configuration models for the collector and the suggestion engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class CollectorSettings:
    """Runtime configuration for the activity collector."""

    sample_interval: timedelta = timedelta(seconds=2)
    idle_threshold: timedelta = timedelta(minutes=10)

    @classmethod
    def from_intervals(cls, sample_seconds: float, idle_minutes: float) -> "CollectorSettings":
        if sample_seconds <= 0:
            raise ValueError("sample_seconds must be positive")
        if idle_minutes <= 0:
            raise ValueError("idle_minutes must be positive")
        return cls(
            sample_interval=timedelta(seconds=sample_seconds),
            idle_threshold=timedelta(minutes=idle_minutes),
        )

    @property
    def interval_seconds(self) -> int:
        return max(1, int(round(self.sample_interval.total_seconds())))

    @property
    def idle_seconds(self) -> float:
        return self.idle_threshold.total_seconds()


@dataclass(slots=True)
class SuggestionSettings:
    """Minimum-signal thresholds for detected projects."""

    min_activities: int = 2
    min_apps: int = 1
    min_token_length: int = 3

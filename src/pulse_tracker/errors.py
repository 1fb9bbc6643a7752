"""Exception types raised by the tracker core."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for tracker errors."""


class StorageError(TrackerError):
    """The database could not be read or written."""


class ValidationError(TrackerError, ValueError):
    """A CRUD or classification request was rejected."""

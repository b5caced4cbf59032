"""Lifecycle states shared by the Twitch auth manager and platform entries."""

from __future__ import annotations

from enum import Enum


class PlatformState(str, Enum):
    """Lifecycle state of an authenticated component or platform connection.

    ``UNINITIALIZED -> INITIALIZING -> READY`` is the only success path.  Any
    failure lands in ``ERROR``; a configuration change returns to
    ``UNINITIALIZED``.  ``REFRESHING`` is entered only from ``READY`` while a
    timer-driven token refresh runs.
    """

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    REFRESHING = "REFRESHING"
    ERROR = "ERROR"

"""
Error taxonomy for the voice pipeline.

Every failure the pipeline classifies derives from KaiwaError so callers can
catch the whole family at the seams (start, per-chunk, per-response).
"""

import time
from typing import Dict, Optional


class KaiwaError(Exception):
    """Base class for pipeline errors."""


class AcquisitionError(KaiwaError):
    """Capture device could not be acquired (permission denied, not found, busy)."""

    def __init__(self, message: str, mode: Optional[str] = None):
        self.mode = mode
        super().__init__(message)


class RecordingError(KaiwaError):
    """A recording cycle failed (recorder did not start, flush timed out)."""


class TranscriptionError(KaiwaError):
    """A chunk could not be transcribed."""

    def __init__(self, message: str, recoverable: bool = False):
        self.recoverable = recoverable
        super().__init__(message)


class ResponseError(KaiwaError):
    """The assistant response could not be produced."""


class ConfigError(KaiwaError):
    """Required configuration is missing or invalid."""


# Substrings that mark a transient network failure
_RECOVERABLE_MARKERS = ('network', 'timeout', 'timed out', 'econnreset', 'etimedout', 'connection error')

# Undecodable-audio errors are dropped silently
_SILENT_MARKERS = ('could not process file', 'invalid media file')


def is_recoverable_message(message: Optional[str]) -> bool:
    """Whether an error message describes a transient network/timeout failure."""
    lowered = (message or '').lower()
    return any(marker in lowered for marker in _RECOVERABLE_MARKERS)


def is_silent_message(message: Optional[str]) -> bool:
    """Whether an error message describes a chunk the service could not decode."""
    lowered = (message or '').lower()
    return any(marker in lowered for marker in _SILENT_MARKERS)


class ErrorThrottle:
    """
    Suppresses repeated identical messages inside a time window.

    allow() returns True the first time a message is seen and again once
    window_seconds have passed since it was last let through.
    """

    def __init__(self, window_seconds: float = 2.0, clock=time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_seen: Dict[str, float] = {}

    def allow(self, message: str) -> bool:
        now = self._clock()
        last = self._last_seen.get(message)
        if last is not None and now - last < self.window_seconds:
            return False
        self._last_seen[message] = now
        # Forget stale entries so the map stays small
        cutoff = now - self.window_seconds
        for key in [k for k, t in self._last_seen.items() if t < cutoff]:
            del self._last_seen[key]
        return True

    def reset(self):
        self._last_seen.clear()

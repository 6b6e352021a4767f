"""
Concurrency-capped transcription of recorded chunks.
"""

import asyncio
import time
from typing import Callable, Optional, Set

import requests

from .errors import ErrorThrottle, TranscriptionError, is_recoverable_message, is_silent_message
from .logger import debug, log_error, log_warning
from .session import AudioChunk, ProviderProfile, SessionState, TranscriptionOutcome


def _debug(msg: str):
    debug(msg, "dispatch")


class TaskPool:
    """
    Set of running tasks with an optional size limit.

    spawn() refuses work past the limit instead of queueing it. drain() waits
    for running tasks without cancelling them.
    """

    def __init__(self, size: Optional[int] = None, name: str = "pool"):
        self.size = size
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self):
        return len(self._tasks)

    @property
    def full(self) -> bool:
        return self.size is not None and len(self._tasks) >= self.size

    def spawn(self, coro) -> Optional[asyncio.Task]:
        """Schedule coro on the running loop; returns None (coro closed) when full."""
        if self.full:
            coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_error(f"Unhandled error in {self.name} task", exc)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for running tasks; True if all finished within timeout."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            log_warning(f"{self.name}: {len(pending)} task(s) still running after {timeout}s")
        return not pending


class TranscriptionDispatcher:
    """
    Sends chunks to the transcription service, at most max_in_flight at a time.

    transcribe(audio_bytes, api_key, provider_kind, model) is a blocking call
    run on a worker thread. Successful outcomes are handed to
    on_outcome(session, outcome) on the event loop while the session is active.
    """

    def __init__(self, transcribe: Callable, on_outcome: Callable[[SessionState, TranscriptionOutcome], None],
                 profile: Optional[ProviderProfile] = None,
                 min_bytes: int = 5000, max_in_flight: int = 3,
                 on_error: Optional[Callable[[str], None]] = None,
                 throttle: Optional[ErrorThrottle] = None):
        self.transcribe = transcribe
        self.on_outcome = on_outcome
        self.profile = profile
        self.min_bytes = min_bytes
        self.on_error = on_error
        self.throttle = throttle or ErrorThrottle()
        self.pool = TaskPool(max_in_flight, name="transcription")

    @property
    def in_flight(self) -> int:
        return len(self.pool)

    def submit(self, session: SessionState, chunk: AudioChunk) -> bool:
        """Dispatch chunk without waiting for the result. Returns False if it was dropped."""
        if chunk.byte_size < self.min_bytes:
            _debug(f"Skipping small chunk {chunk.id}: {chunk.byte_size} bytes < {self.min_bytes}")
            return False
        if self.profile is None:
            log_error("Transcription profile not set; dropping chunk")
            return False
        if self.pool.full:
            session.stats.dropped += 1
            log_warning(f"Dropping chunk {chunk.id}: {self.in_flight} transcriptions already in flight")
            return False

        self.pool.spawn(self._run(session, chunk, self.profile))
        session.is_processing = True
        return True

    async def _run(self, session: SessionState, chunk: AudioChunk, profile: ProviderProfile):
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        error = None
        result = None
        try:
            result = await loop.run_in_executor(
                None, self.transcribe, chunk.bytes, profile.api_key, profile.kind, profile.model
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            error = TranscriptionError(f"Network error: {e}", recoverable=True)
        except Exception as e:
            # Any other failure is per-chunk: classify it and keep listening
            error = TranscriptionError(f"{type(e).__name__}: {e}", recoverable=is_recoverable_message(str(e)))
        else:
            if not result.ok:
                message = result.error or "Transcription failed"
                error = TranscriptionError(message, recoverable=is_recoverable_message(message))
        finally:
            # The just-finished task is still counted by the pool
            if self.in_flight <= 1:
                session.is_processing = False

        duration_ms = (time.monotonic() - started) * 1000
        if not session.is_active:
            _debug(f"Ignoring result for {chunk.id}: session {session.id} stopped")
            return

        if error is not None:
            self._handle_error(chunk, error)
            return

        session.stats.transcriptions += 1
        outcome = TranscriptionOutcome(
            chunk_id=chunk.id,
            ok=True,
            text=result.text,
            provider_kind=profile.kind,
            duration_ms=duration_ms,
        )
        _debug(f"{chunk.id} transcribed in {duration_ms:.0f}ms: {outcome.text!r}")
        self.on_outcome(session, outcome)

    def _handle_error(self, chunk: AudioChunk, error: TranscriptionError):
        message = str(error)
        if error.recoverable:
            # Network hiccups don't interrupt listening
            if self.throttle.allow(message):
                log_warning(f"Recoverable transcription error: {message}")
            return
        log_error(f"Transcription failed for {chunk.id}: {message}")
        if is_silent_message(message):
            return
        if self.on_error is not None:
            self.on_error(f"Transcription error: {message}")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        return await self.pool.drain(timeout)

"""
Record-stop-emit loop that slices a live capture stream into chunks.

Every cycle uses a fresh FrameRecorder and emits one complete container,
so each chunk can be decoded on its own by the transcription service.
"""

import asyncio
import time
from typing import Callable, List, Optional

import numpy as np

from .audio import encode_container
from .capture import CaptureStream
from .errors import RecordingError
from .logger import debug, log_error
from .session import AudioChunk, SessionState

STATE_IDLE = "idle"
STATE_RECORDING = "recording"
STATE_FLUSHING = "flushing"


def _debug(msg: str):
    debug(msg, "recorder")


class FrameRecorder:
    """Collects the frames of one recording cycle from a CaptureStream."""

    def __init__(self, stream: CaptureStream):
        self.stream = stream
        self.recording = False
        self.discarded = False
        self._frames: List[np.ndarray] = []

    async def start(self):
        if not self.stream.is_live:
            raise RecordingError("Recorder did not start: capture stream has no live tracks")
        # Frames from before this cycle belong to nobody
        self.stream.clear()
        self.recording = True

    def request_data(self):
        """Move whatever the device has delivered so far into this cycle's buffer."""
        if not self.recording:
            return
        frames = self.stream.read_available()
        if frames is not None:
            self._frames.append(frames)

    def stop(self) -> np.ndarray:
        """Final flush. Returns the cycle's mono int16 audio (possibly empty)."""
        self.request_data()
        self.recording = False
        frames, self._frames = self._frames, []
        if not frames:
            return np.zeros(0, dtype=np.int16)
        return np.concatenate(frames)

    def discard(self):
        self.recording = False
        self.discarded = True
        self._frames = []


class ChunkRecorder:
    """
    Runs recording cycles until the session goes inactive or stop() is called.

    Each emitted chunk is passed to on_chunk(session, chunk). on_chunk must not
    block; the dispatcher hands transcription off to worker threads.
    """

    def __init__(self, on_chunk: Callable[[SessionState, AudioChunk], object],
                 sample_rate: int = 16000,
                 chunk_seconds: float = 2.0,
                 flush_timeout: float = 3.0,
                 start_timeout: float = 0.5,
                 cycle_gap: float = 0.1,
                 container: str = 'flac',
                 recorder_factory: Callable[[CaptureStream], FrameRecorder] = FrameRecorder):
        self.on_chunk = on_chunk
        self.sample_rate = sample_rate
        self.chunk_seconds = chunk_seconds
        self.flush_timeout = flush_timeout
        self.start_timeout = start_timeout
        self.cycle_gap = cycle_gap
        self.container = container
        self.recorder_factory = recorder_factory

        self.state = STATE_IDLE
        self.cycles = 0
        self._recorder: Optional[FrameRecorder] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def run(self, session: SessionState, stream: CaptureStream):
        """Loop record cycles; returns once the session is inactive or stop() was called."""
        self._stop_event = asyncio.Event()
        self.cycles = 0
        _debug(f"Recording loop started (session {session.id}, mode={session.mode})")
        try:
            while session.is_active and not self.stopping:
                try:
                    chunk = await self.record_cycle(session, stream)
                except RecordingError as e:
                    log_error(f"Recording cycle {self.cycles} abandoned", e)
                    chunk = None

                if chunk is not None and session.is_active and not self.stopping:
                    session.stats.chunks += 1
                    self.on_chunk(session, chunk)

                if session.is_active and not self.stopping:
                    await self._wait(self.cycle_gap)
        finally:
            self._discard_recorder()
            self.state = STATE_IDLE
            _debug(f"Recording loop ended after {self.cycles} cycles")

    async def record_cycle(self, session: SessionState, stream: CaptureStream) -> Optional[AudioChunk]:
        """One Idle -> Recording -> Flushing -> Idle round. Returns the chunk or None."""
        self.cycles += 1
        cycle_seq = self.cycles
        captured_at = time.time()
        recorder = self.recorder_factory(stream)
        self._recorder = recorder
        loop = asyncio.get_running_loop()

        try:
            try:
                await asyncio.wait_for(recorder.start(), timeout=self.start_timeout)
            except asyncio.TimeoutError:
                raise RecordingError(f"Recorder did not start within {self.start_timeout}s")
            self.state = STATE_RECORDING

            await self._wait(self.chunk_seconds)
            if self.stopping or not session.is_active or recorder.discarded:
                return None

            self.state = STATE_FLUSHING
            audio = recorder.stop()
            if audio.size == 0:
                _debug(f"Cycle {cycle_seq}: empty flush, no chunk")
                return None

            try:
                data = await asyncio.wait_for(
                    loop.run_in_executor(None, encode_container, audio, self.sample_rate, self.container),
                    timeout=self.flush_timeout,
                )
            except asyncio.TimeoutError:
                raise RecordingError(f"Flush did not complete within {self.flush_timeout}s")
            except (ValueError, RuntimeError) as e:
                raise RecordingError(f"Could not encode chunk: {e}") from e

            chunk = AudioChunk.create(data, cycle_seq, captured_at)
            _debug(f"Cycle {cycle_seq}: {len(audio)} samples -> {chunk.byte_size} bytes")
            return chunk
        finally:
            if self._recorder is recorder:
                self._recorder = None
            if recorder.recording:
                recorder.discard()
            self.state = STATE_IDLE

    def stop(self):
        """Halt the loop at the next boundary and discard the in-flight recorder."""
        if self._stop_event is not None:
            self._stop_event.set()
        self._discard_recorder()

    def _discard_recorder(self):
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            recorder.discard()

    async def _wait(self, seconds: float):
        """Sleep that ends early when stop() is called."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

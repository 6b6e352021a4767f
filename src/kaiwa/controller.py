"""
Top-level state machine for the voice assistant.

    controller = ModeController(capture, recorder, dispatcher, speech_filter, streamer)
    await controller.start("mic")
    ...
    await controller.set_mode("system")   # stop() then start("system")
    await controller.stop()
"""

import asyncio
import time
from typing import Callable, List, Optional

from .capture import CaptureSource
from .dispatcher import TranscriptionDispatcher
from .errors import AcquisitionError, ConfigError, ErrorThrottle
from .logger import debug, log_error
from .providers import select_transcription_profile
from .recorder import ChunkRecorder
from .session import MODE_MIC, MODE_SYSTEM, SessionState, TranscriptionOutcome, validate_mode
from .speech_filter import SpeechFilter
from .streamer import ResponseStreamer
from .utils import ConfigManager

STATE_IDLE = "idle"
STATE_MIC_ACTIVE = "mic_active"
STATE_SYSTEM_ACTIVE = "system_active"

_ACTIVE_STATES = {MODE_MIC: STATE_MIC_ACTIVE, MODE_SYSTEM: STATE_SYSTEM_ACTIVE}


def _debug(msg: str):
    debug(msg, "controller")


class ModeController:
    """
    Coordinates capture, recording, transcription and responses for one
    listening session at a time.

    Transitions are serialized: a start/stop/set_mode issued while another
    transition is still running is rejected (returns False).
    """

    def __init__(self, capture: CaptureSource, recorder: ChunkRecorder,
                 dispatcher: TranscriptionDispatcher, speech_filter: SpeechFilter,
                 streamer: ResponseStreamer,
                 config_source: Callable[[], dict] = ConfigManager.get_config,
                 mode: str = MODE_MIC,
                 drain_timeout: float = 5.0,
                 toggle_cooldown: float = 0.5,
                 recent_window: int = 5,
                 throttle: Optional[ErrorThrottle] = None,
                 clock=time.monotonic):
        self.capture = capture
        self.recorder = recorder
        self.dispatcher = dispatcher
        self.speech_filter = speech_filter
        self.streamer = streamer
        self.config_source = config_source
        self.mode = validate_mode(mode)
        self.drain_timeout = drain_timeout
        self.toggle_cooldown = toggle_cooldown
        self.recent_window = recent_window
        self.throttle = throttle or ErrorThrottle()
        self._clock = clock

        self.state = STATE_IDLE
        self.session = SessionState(mode=self.mode)
        self._stream = None
        self._recorder_task: Optional[asyncio.Task] = None
        self._busy = False
        self._last_toggle: Optional[float] = None
        self._state_listeners: List[Callable] = []
        self._error_listeners: List[Callable] = []

        # Chunks flow recorder -> dispatcher -> filter -> streamer
        self.recorder.on_chunk = self.dispatcher.submit
        self.dispatcher.on_outcome = self._on_transcript
        self.dispatcher.on_error = self.report_error

    # --- observers ---

    def add_listener(self, on_state_change: Optional[Callable] = None,
                     on_error: Optional[Callable] = None):
        """Register observers; registering the same callable twice has no effect."""
        if on_state_change is not None and on_state_change not in self._state_listeners:
            self._state_listeners.append(on_state_change)
        if on_error is not None and on_error not in self._error_listeners:
            self._error_listeners.append(on_error)

    def remove_listener(self, callback: Callable):
        for listeners in (self._state_listeners, self._error_listeners):
            if callback in listeners:
                listeners.remove(callback)

    def report_error(self, message: str):
        """Surface a user-visible error, collapsing repeats inside the throttle window."""
        if not self.throttle.allow(message):
            return
        ConfigManager.console_print(f"[!] {message}")
        for listener in list(self._error_listeners):
            listener(message)

    def _set_state(self, state: str):
        self.state = state
        for listener in list(self._state_listeners):
            listener(state, self.session)

    @property
    def is_active(self) -> bool:
        return self.state != STATE_IDLE

    # --- transitions ---

    async def start(self, mode: Optional[str] = None) -> bool:
        if self._busy:
            _debug("start() rejected: transition in progress")
            return False
        self._busy = True
        try:
            return await self._start(mode)
        finally:
            self._busy = False

    async def stop(self) -> bool:
        if self._busy:
            _debug("stop() rejected: transition in progress")
            return False
        self._busy = True
        try:
            await self._stop()
            return True
        finally:
            self._busy = False

    async def set_mode(self, mode: str) -> bool:
        """Switch capture mode; restarts capture only when currently active."""
        validate_mode(mode)
        if self._busy:
            _debug("set_mode() rejected: transition in progress")
            return False
        if not self.is_active:
            self.mode = mode
            self.session.mode = mode
            self._set_state(STATE_IDLE)
            return True
        self._busy = True
        try:
            await self._stop()
            return await self._start(mode)
        finally:
            self._busy = False

    async def toggle_mode(self) -> bool:
        if not self._cooldown_elapsed():
            return False
        current = self.session.mode if self.is_active else self.mode
        return await self.set_mode(MODE_SYSTEM if current == MODE_MIC else MODE_MIC)

    async def toggle(self) -> bool:
        if not self._cooldown_elapsed():
            return False
        if self.is_active:
            return await self.stop()
        return await self.start()

    def _cooldown_elapsed(self) -> bool:
        now = self._clock()
        if self._last_toggle is not None and now - self._last_toggle < self.toggle_cooldown:
            _debug("Toggle ignored: cooldown")
            return False
        self._last_toggle = now
        return True

    async def _start(self, mode: Optional[str]) -> bool:
        if self.is_active:
            return True
        mode = validate_mode(mode or self.mode)
        self.mode = mode

        try:
            config = self.config_source()
            settings = config.get('settings') or {}
            self.dispatcher.profile = select_transcription_profile(
                config.get('accounts') or [], settings.get('voice_api'), settings.get('whisper_model'))
        except ConfigError as e:
            log_error("Cannot start voice assistant", e)
            self.report_error(str(e))
            return False

        try:
            self._stream = await self.capture.acquire(mode)
        except AcquisitionError as e:
            log_error(f"Failed to acquire {mode} audio", e)
            self.capture.release()
            self._stream = None
            self.report_error(str(e))
            return False

        self.session = SessionState.start(mode, recent_window=self.recent_window)
        self.throttle.reset()
        self._recorder_task = asyncio.ensure_future(self.recorder.run(self.session, self._stream))
        self._recorder_task.add_done_callback(self._on_recorder_done)
        self._set_state(_ACTIVE_STATES[mode])
        ConfigManager.console_print(f"Listening ({mode} mode)...")
        _debug(f"Session {self.session.id} started in {mode} mode")
        return True

    async def _stop(self):
        if not self.is_active:
            return
        session = self.session
        session.is_active = False

        # Halt the loop and drop the in-flight recorder, then release devices
        self.recorder.stop()
        if self._recorder_task is not None:
            await asyncio.wait({self._recorder_task}, timeout=self.drain_timeout)
            self._recorder_task = None
        self.capture.release()
        self._stream = None

        await self.dispatcher.drain(self.drain_timeout)
        await self.streamer.drain(self.drain_timeout)

        _debug(f"Session {session.id} stopped: {session.stats}")
        self.session = SessionState(mode=session.mode)
        self._set_state(STATE_IDLE)
        ConfigManager.console_print("Stopped listening.")

    def _on_recorder_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_error("Recording loop crashed", exc)
            self.report_error(f"Recording stopped: {exc}")

    # --- pipeline glue ---

    def _on_transcript(self, session: SessionState, outcome: TranscriptionOutcome):
        if not session.is_active:
            return
        text = outcome.text.strip()
        if not text:
            return
        if self.speech_filter.accept(session, text):
            _debug(f"Accepted transcript: {text!r}")
            self.streamer.submit(session, text)

    async def shutdown(self):
        """Stop regardless of a pending transition (used on exit)."""
        while self._busy:
            await asyncio.sleep(0.05)
        await self.stop()

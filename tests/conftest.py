"""
Pytest fixtures for Kaiwa tests.
"""

import os
import sys
import tempfile
import threading
from pathlib import Path
import pytest

# Keep test runs out of the real logs folder
os.environ.setdefault("KAIWA_LOG_DIR", tempfile.mkdtemp(prefix="kaiwa-test-logs-"))

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from kaiwa.capture import CaptureStream, CaptureTrack  # noqa: E402
from kaiwa.conversation import Conversation  # noqa: E402
from kaiwa.errors import AcquisitionError  # noqa: E402
from kaiwa.providers import CompletionResult, TranscriptionResult  # noqa: E402


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_config():
    """Snapshot in the shape returned by ConfigManager.get_config()."""
    return {
        "accounts": [
            {"name": "groq", "type": "groq", "apiKey": "gsk_test", "model": "llama-3.1-8b-instant"},
            {"name": "work-openai", "type": "openai", "apiKey": "sk-test"},
        ],
        "settings": {
            "mode": "mic",
            "voice_api": "groq-whisper",
            "whisper_model": None,
            "chat_provider": None,
            "mode_providers": {"mic": None, "system": None},
            "context": None,
            "recording": {},
            "pipeline": {},
        },
    }


class FakeCaptureSource:
    """CaptureSource stand-in that hands out streams with labelled fake tracks."""

    def __init__(self, labels=None, error=None):
        self.labels = labels or {"mic": "Built-in Microphone", "system": "Speakers (Loopback)"}
        self.error = error
        self.acquired = []
        self.release_count = 0
        self.tracks = []
        self.stream = None

    async def acquire(self, mode):
        if self.error is not None:
            raise self.error
        stream = CaptureStream(mode, 16000)
        track = CaptureTrack(self.labels[mode], "fake")
        stream.add_track(track)
        self.tracks.append(track)
        self.acquired.append(mode)
        self.stream = stream
        return stream

    def release(self):
        self.release_count += 1
        if self.stream is not None:
            self.stream.stop()
            self.stream = None


class FakeTranscriber:
    """Blocking transcribe() stand-in that records concurrency."""

    def __init__(self, text="what is the weather", ok=True, error=None, gate=None, raises=None):
        self.text = text
        self.ok = ok
        self.error = error
        self.gate = gate
        self.raises = raises
        self.calls = []
        self.current = 0
        self.max_concurrent = 0
        self._lock = threading.Lock()

    def __call__(self, audio_bytes, api_key, provider_kind, model):
        with self._lock:
            self.calls.append((len(audio_bytes), api_key, provider_kind, model))
            self.current += 1
            self.max_concurrent = max(self.max_concurrent, self.current)
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if self.raises is not None:
                raise self.raises
            if self.ok:
                return TranscriptionResult(True, text=self.text)
            return TranscriptionResult(False, error=self.error)
        finally:
            with self._lock:
                self.current -= 1


class FakeChat:
    """stream_complete() stand-in that emits the given tokens."""

    def __init__(self, tokens=("Sunny ", "and ", "warm."), result=None):
        self.tokens = list(tokens)
        self.result = result
        self.calls = []

    def __call__(self, profile, messages, on_token):
        self.calls.append((profile, messages))
        for token in self.tokens:
            on_token(token)
        if self.result is not None:
            return self.result
        return CompletionResult(True, content="".join(self.tokens))


@pytest.fixture
def fake_capture():
    return FakeCaptureSource()


@pytest.fixture
def failing_capture():
    return FakeCaptureSource(error=AcquisitionError("Microphone access denied: permission denied", mode="mic"))


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_chat():
    return FakeChat()


@pytest.fixture
def sink():
    return Conversation()

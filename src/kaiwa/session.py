"""
Data model shared by the voice pipeline components.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

MODE_MIC = "mic"
MODE_SYSTEM = "system"
MODES = (MODE_MIC, MODE_SYSTEM)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLES = (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT)

STATUS_LISTENING = "Listening..."
STATUS_PROCESSING = "Processing..."
STATUS_UNCLEAR = "I heard unclear or non-speech audio."


def validate_mode(mode: str) -> str:
    """Return mode if it is a known capture mode, else raise ValueError."""
    if mode not in MODES:
        raise ValueError(f"Invalid mode: {mode!r} (expected one of {', '.join(MODES)})")
    return mode


@dataclass(frozen=True)
class AudioChunk:
    """One self-contained recorded audio container."""
    id: str
    bytes: bytes
    byte_size: int
    captured_at: float      # Wall clock time the cycle started recording
    cycle_seq: int          # Recording cycle number within the session

    @classmethod
    def create(cls, data: bytes, cycle_seq: int, captured_at: Optional[float] = None) -> "AudioChunk":
        captured_at = time.time() if captured_at is None else captured_at
        return cls(
            id=f"chunk-{int(captured_at * 1000)}-{cycle_seq}",
            bytes=data,
            byte_size=len(data),
            captured_at=captured_at,
            cycle_seq=cycle_seq,
        )


@dataclass
class TranscriptionOutcome:
    """Result of transcribing one chunk."""
    chunk_id: str
    ok: bool
    text: str = ""
    error: Optional[str] = None
    provider_kind: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class ConversationTurn:
    """A single chat turn."""
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ProviderProfile:
    """Named configuration bundle for a transcription or chat provider."""
    kind: str
    api_key: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_account(cls, account: dict) -> "ProviderProfile":
        """Build a profile from a config store account ({type, apiKey, model, baseURL, name})."""
        api_key = (account.get("apiKey") or account.get("api_key") or "").strip() or None
        return cls(
            kind=account.get("type") or account.get("kind") or "openai",
            api_key=api_key,
            model=account.get("model") or None,
            base_url=account.get("baseURL") or account.get("base_url") or None,
            name=account.get("name") or None,
        )


@dataclass
class SessionStats:
    chunks: int = 0
    dropped: int = 0
    transcriptions: int = 0
    ai_responses: int = 0


@dataclass
class SessionState:
    """
    State of one listening session.

    Created by ModeController.start() and replaced by an empty instance when
    stop() completes. Late callbacks hold a reference to the old instance and
    see is_active == False, so their effects are dropped.
    """
    mode: str = MODE_MIC
    is_active: bool = False
    is_processing: bool = False
    last_accepted_text: str = ""
    recent_accepted: Deque[str] = field(default_factory=lambda: deque(maxlen=5))
    last_accepted_at: Optional[float] = None
    status: str = ""
    stats: SessionStats = field(default_factory=SessionStats)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @classmethod
    def start(cls, mode: str, recent_window: int = 5) -> "SessionState":
        return cls(
            mode=validate_mode(mode),
            is_active=True,
            recent_accepted=deque(maxlen=recent_window),
            status=STATUS_LISTENING,
        )

    def remember_accepted(self, text: str, now: float):
        """Record an accepted transcript (oldest evicted past the window)."""
        self.recent_accepted.append(text)
        self.last_accepted_text = text
        self.last_accepted_at = now

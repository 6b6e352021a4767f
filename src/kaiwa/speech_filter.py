"""
Transcript filtering: drops noise, filler, debounced repeats and near-duplicates.
"""

import re
import time
from typing import Optional, Set

from .logger import debug
from .session import STATUS_UNCLEAR, SessionState

NOISE_PATTERNS = [
    re.compile(r'^[\s.,!?\-]+$'),                              # Only punctuation/whitespace
    re.compile(r'^(?:(?:uh|um|ah|er|hmm|mm|huh)[\s.,!?\-]*)+$', re.IGNORECASE),  # Only filler words
    re.compile(r'^[^\w\s]+$'),                                  # Only special characters
    re.compile(r'^[a-z]{1,2}$', re.IGNORECASE),                 # Single or double letter
    re.compile(r'^(?:the|a|an)\s+[a-z]{1,2}[.,!?]*$', re.IGNORECASE),  # Article + very short word
]

# Single-word transcripts that still count as speech
ALLOWED_SHORT = frozenset([
    'what', 'who', 'where', 'when', 'why', 'how', 'which', 'whose',
    'yes', 'no', 'ok', 'okay', 'help', 'stop', 'start',
])

_EDGE_PUNCTUATION = '.,!?;:"\'()[]{}-…'


def _words(text: str) -> Set[str]:
    words = (w.strip(_EDGE_PUNCTUATION) for w in text.lower().split())
    return {w for w in words if w}


def similarity(a: str, b: str) -> float:
    """Jaccard similarity of the distinct words of a and b (0.0 - 1.0)."""
    words_a, words_b = _words(a), _words(b)
    union = words_a | words_b
    if not union:
        return 1.0 if not a.strip() and not b.strip() else 0.0
    return len(words_a & words_b) / len(union)


def is_meaningful_speech(text: str) -> bool:
    if not text or len(text) < 3:
        return False
    for pattern in NOISE_PATTERNS:
        if pattern.match(text):
            return False
    real_words = [w for w in text.split() if len(w) > 1]
    if len(real_words) < 2:
        return text.strip().strip(_EDGE_PUNCTUATION).lower() in ALLOWED_SHORT
    return True


class SpeechFilter:
    """Decides which transcripts are forwarded to the assistant."""

    def __init__(self, debounce_seconds: float = 0.5, duplicate_threshold: float = 0.8,
                 clock=time.monotonic):
        self.debounce_seconds = debounce_seconds
        self.duplicate_threshold = duplicate_threshold
        self._clock = clock

    def is_duplicate(self, session: SessionState, text: str) -> bool:
        return any(similarity(text, prev) > self.duplicate_threshold for prev in session.recent_accepted)

    def accept(self, session: SessionState, text: str, now: Optional[float] = None) -> bool:
        """Return True if text should be answered; records it in the session when accepted."""
        text = (text or '').strip()
        now = self._clock() if now is None else now

        if not is_meaningful_speech(text):
            session.status = STATUS_UNCLEAR
            debug(f"Rejected as noise: {text!r}", "filter")
            return False

        if session.last_accepted_at is not None and now - session.last_accepted_at < self.debounce_seconds:
            debug(f"Debounced: {text!r}", "filter")
            return False

        if self.is_duplicate(session, text):
            debug(f"Skipping duplicate transcription: {text!r}", "filter")
            return False

        session.remember_accepted(text, now)
        session.status = text
        return True

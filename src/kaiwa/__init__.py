"""
Kaiwa - live voice conversation assistant.

Listens to your microphone or to the system's output audio, transcribes it
in short chunks and streams back an AI response.
"""

__version__ = "0.3.0"


# Lazy imports so importing the package doesn't open PortAudio
def __getattr__(name):
    if name == "ModeController":
        from .controller import ModeController
        return ModeController
    elif name == "CaptureSource":
        from .capture import CaptureSource
        return CaptureSource
    elif name == "ChunkRecorder":
        from .recorder import ChunkRecorder
        return ChunkRecorder
    elif name == "TranscriptionDispatcher":
        from .dispatcher import TranscriptionDispatcher
        return TranscriptionDispatcher
    elif name == "SpeechFilter":
        from .speech_filter import SpeechFilter
        return SpeechFilter
    elif name == "ResponseStreamer":
        from .streamer import ResponseStreamer
        return ResponseStreamer
    elif name == "build_controller":
        from .main import build_controller
        return build_controller
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "ModeController",
    "CaptureSource",
    "ChunkRecorder",
    "TranscriptionDispatcher",
    "SpeechFilter",
    "ResponseStreamer",
    "build_controller",
]

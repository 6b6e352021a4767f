"""
PCM helpers for the capture and recording stages.

- Loop-back audio arrives at the device rate with several channels; it is
  downmixed and resampled to the pipeline rate.
- Microphone audio optionally passes a high-pass filter and noise gate.
- Each recording cycle is encoded into one self-contained container.
"""

import io
from math import gcd

import numpy as np
import soundfile as sf
from scipy.signal import butter, resample_poly, sosfilt, sosfilt_zi

CONTAINER_FORMATS = {
    # container -> (soundfile format, subtype)
    'flac': ('FLAC', 'PCM_16'),
    'wav': ('WAV', 'PCM_16'),
    'ogg': ('OGG', 'VORBIS'),
}


def to_mono(audio: np.ndarray, channels: int) -> np.ndarray:
    """Downmix interleaved int16 audio to mono with +3dB gain compensation."""
    if channels <= 1:
        return audio.reshape(-1)
    audio_float = audio.astype(np.float32).reshape(-1, channels)
    # Sum channels (not mean) to preserve energy, then normalize
    mono = audio_float.sum(axis=1) / np.sqrt(channels)
    return np.clip(mono, -32768, 32767).astype(np.int16)


def resample(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resample int16 mono audio (anti-aliasing included)."""
    if source_rate == target_rate or audio.size == 0:
        return audio
    g = gcd(target_rate, source_rate)
    resampled = resample_poly(audio.astype(np.float32), target_rate // g, source_rate // g)
    return np.clip(resampled, -32768, 32767).astype(np.int16)


def preprocess_loopback_audio(
    audio: np.ndarray,
    channels: int,
    source_rate: int,
    target_rate: int = 16000,
) -> np.ndarray:
    """Convert raw loop-back frames into pipeline-rate mono int16."""
    return resample(to_mono(audio, channels), source_rate, target_rate)


def rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(audio.astype(np.float32) ** 2)))


class NoiseSuppressor:
    """
    High-pass filter plus a running noise gate for microphone frames.

    Filter state carries over between calls so consecutive frames join up
    without clicks.
    """

    def __init__(self, sample_rate: int, cutoff_hz: float = 120.0,
                 gate_ratio: float = 1.5, smoothing: float = 0.95, floor: float = 60.0):
        self.sample_rate = sample_rate
        self.gate_ratio = gate_ratio
        self.smoothing = max(0.0, min(float(smoothing), 0.999))
        self.floor = floor
        self._sos = butter(2, max(10.0, float(cutoff_hz)), btype='highpass', fs=sample_rate, output='sos')
        self._zi = sosfilt_zi(self._sos) * 0.0
        self._noise_rms = floor

    def apply(self, pcm: np.ndarray) -> np.ndarray:
        if pcm.size == 0:
            return pcm
        filtered, self._zi = sosfilt(self._sos, pcm.astype(np.float32), zi=self._zi)
        level = rms(filtered)
        # Only track the floor downward quickly, upward slowly
        if level < self._noise_rms:
            self._noise_rms = level
        else:
            self._noise_rms = self.smoothing * self._noise_rms + (1 - self.smoothing) * level
        threshold = max(self.floor, self._noise_rms * self.gate_ratio)
        if level < threshold:
            filtered = filtered * 0.1
        return np.clip(filtered, -32768, 32767).astype(np.int16)


def encode_container(audio: np.ndarray, sample_rate: int, container: str = 'flac') -> bytes:
    """Encode mono int16 audio into a complete, independently decodable file."""
    if container not in CONTAINER_FORMATS:
        raise ValueError(f"Unsupported container: {container}")
    fmt, subtype = CONTAINER_FORMATS[container]
    buffer = io.BytesIO()
    sf.write(buffer, audio.reshape(-1), sample_rate, format=fmt, subtype=subtype)
    return buffer.getvalue()

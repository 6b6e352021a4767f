"""
Audio capture for the voice pipeline.

mic mode:    default input device via sounddevice.
system mode: Windows uses PyAudioWPatch for WASAPI loopback; macOS uses a
             BlackHole virtual device and Linux a PulseAudio/PipeWire
             "Monitor of ..." source, both through sounddevice.

Device callbacks run on PortAudio threads and only push int16 frames into a
thread-safe queue; everything else happens on the event loop.
"""

import asyncio
import queue
import re
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .audio import NoiseSuppressor, preprocess_loopback_audio
from .errors import AcquisitionError
from .logger import debug, log_error
from .session import MODE_MIC, MODE_SYSTEM, validate_mode

_IS_WINDOWS = sys.platform == 'win32'
_IS_MAC = sys.platform == 'darwin'

# Label fragments that identify system/loop-back sources
_SYSTEM_LABEL = re.compile(
    r'desktop|screen|system|loopback|stereo mix|monitor of|blackhole|what u hear|speaker|output',
    re.IGNORECASE,
)
# Checked for mic mode; "speaker"/"output" are left out because headset mics use them
_MIC_MODE_REJECT = re.compile(
    r'desktop|screen|system|loopback|stereo mix|monitor of|blackhole|what u hear',
    re.IGNORECASE,
)
_MICROPHONE_LABEL = re.compile(r'\bmic(rophone)?\b|\binput\b|\bheadset\b', re.IGNORECASE)


def looks_like_system_audio(label: str) -> bool:
    return bool(_SYSTEM_LABEL.search(label or ''))


def looks_like_microphone(label: str) -> bool:
    return bool(_MICROPHONE_LABEL.search(label or ''))


def _debug(msg: str):
    debug(msg, "capture")


@dataclass
class CaptureConstraints:
    """Processing requested from the capture path."""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = False


class CaptureTrack:
    """One opened device stream. stop() is idempotent."""

    def __init__(self, label: str, kind: str, stop_callback: Optional[Callable[[], None]] = None):
        self.label = label
        self.kind = kind
        self._stop_callback = stop_callback
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        if self._stop_callback is not None:
            try:
                self._stop_callback()
            except Exception as e:
                # Device already gone; the track is stopped either way
                _debug(f"Track '{self.label}' stop raised: {e}")

    def __repr__(self):
        return f"CaptureTrack(label={self.label!r}, kind={self.kind!r}, stopped={self._stopped})"


class CaptureStream:
    """A set of capture tracks feeding one mono int16 frame queue."""

    def __init__(self, mode: str, sample_rate: int):
        self.mode = mode
        self.sample_rate = sample_rate
        self.tracks: List[CaptureTrack] = []
        self._frames: queue.Queue = queue.Queue()

    def add_track(self, track: CaptureTrack):
        self.tracks.append(track)

    @property
    def live_tracks(self) -> List[CaptureTrack]:
        return [t for t in self.tracks if not t.stopped]

    @property
    def is_live(self) -> bool:
        return bool(self.live_tracks)

    def push(self, frames: np.ndarray):
        """Called from device callbacks with mono int16 frames."""
        if frames is not None and frames.size:
            self._frames.put(frames)

    def clear(self):
        """Drop anything captured so far."""
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                break

    def read_available(self) -> Optional[np.ndarray]:
        """Drain all queued frames without blocking; None if nothing is queued."""
        chunks = []
        while True:
            try:
                chunks.append(self._frames.get_nowait())
            except queue.Empty:
                break
        if chunks:
            return np.concatenate(chunks)
        return None

    def stop(self):
        for track in self.tracks:
            track.stop()
        self.clear()


class CaptureSource:
    """Acquires and releases the audio stream for one capture mode."""

    def __init__(self, sample_rate: int = 16000, block_size: int = 1024,
                 mic_device=None, constraints: Optional[CaptureConstraints] = None):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.mic_device = mic_device
        self.constraints = constraints or CaptureConstraints()
        self.stream: Optional[CaptureStream] = None
        self._pyaudio = None

    async def acquire(self, mode: str) -> CaptureStream:
        """Open the capture stream for mode without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.open_stream, mode)

    def open_stream(self, mode: str) -> CaptureStream:
        """Open and validate the capture stream for mode. Raises AcquisitionError."""
        validate_mode(mode)
        self.release()
        stream = CaptureStream(mode, self.sample_rate)
        self.stream = stream
        try:
            if mode == MODE_MIC:
                self._acquire_microphone(stream)
            else:
                self._acquire_system_audio(stream)
        except AcquisitionError:
            self.release()
            raise
        except Exception as e:
            self.release()
            raise AcquisitionError(f"Failed to start {mode} capture: {e}", mode=mode) from e
        _debug(f"Acquired {mode} stream: {[t.label for t in stream.live_tracks]}")
        return stream

    def release(self):
        """Stop every track. Safe to call repeatedly and after partial failures."""
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.stop()
            _debug(f"Released {stream.mode} stream")
        if self._pyaudio is not None:
            try:
                self._pyaudio.terminate()
            except Exception as e:
                _debug(f"PyAudio terminate raised: {e}")
            self._pyaudio = None

    # --- mic mode ---

    def _acquire_microphone(self, stream: CaptureStream):
        try:
            track = self._open_microphone(stream)
        except AcquisitionError:
            raise
        except Exception as e:
            raise AcquisitionError(f"Microphone access denied: {e}", mode=MODE_MIC) from e
        stream.add_track(track)

        for t in list(stream.live_tracks):
            # Some platforms hand back a loop-back device as the default input
            if _MIC_MODE_REJECT.search(t.label):
                _debug(f"MIC mode: rejecting system audio track '{t.label}'")
                t.stop()

        if not stream.is_live:
            raise AcquisitionError(
                "Only system audio devices were found. Mic mode needs a microphone.",
                mode=MODE_MIC,
            )

    def _open_microphone(self, stream: CaptureStream) -> CaptureTrack:
        import sounddevice as sd

        device = self.mic_device
        if isinstance(device, str) and device.isdigit():
            device = int(device)
        info = sd.query_devices(device, kind='input')
        suppressor = NoiseSuppressor(self.sample_rate) if self.constraints.noise_suppression else None

        def callback(indata, frames, time_info, status):
            if status:
                _debug(f"Mic callback status: {status}")
            audio = indata[:, 0].copy()
            if suppressor is not None:
                audio = suppressor.apply(audio)
            stream.push(audio)

        sd_stream = sd.InputStream(
            device=device,
            samplerate=self.sample_rate,
            channels=1,
            dtype='int16',
            blocksize=self.block_size,
            callback=callback,
        )
        sd_stream.start()
        print(f"[Kaiwa Audio] Microphone stream started: {info['name']}")
        return CaptureTrack(info['name'], 'microphone', _closer(sd_stream.stop, sd_stream.close))

    # --- system mode ---

    def _acquire_system_audio(self, stream: CaptureStream):
        track = None
        try:
            track = self._open_primary_loopback(stream)
        except Exception as e:
            _debug(f"Primary loopback failed, trying fallback: {e}")
        if track is None:
            try:
                track = self._open_fallback_loopback(stream)
            except Exception as e:
                log_error("System audio capture failed", e)
                track = None
        if track is None:
            raise AcquisitionError(
                "System audio capture not available. System mode requires system/speaker audio, "
                "not microphone. Set up a loopback device (BlackHole on macOS, a monitor source "
                "on Linux) or use mic mode.",
                mode=MODE_SYSTEM,
            )
        stream.add_track(track)

        has_system_audio = False
        for t in list(stream.live_tracks):
            if looks_like_system_audio(t.label):
                has_system_audio = True
            elif looks_like_microphone(t.label):
                _debug(f"SYSTEM mode: rejecting microphone track '{t.label}'")
                t.stop()
        if not has_system_audio and stream.is_live:
            _debug("SYSTEM mode: no clear system audio label, keeping tracks")

        if not stream.is_live:
            raise AcquisitionError(
                "No system audio tracks available. System mode requires system/speaker audio.",
                mode=MODE_SYSTEM,
            )

    def _open_primary_loopback(self, stream: CaptureStream) -> Optional[CaptureTrack]:
        """The platform's default loop-back device."""
        if _IS_WINDOWS:
            pyaudio = self._get_pyaudio()
            return self._open_wasapi(stream, self._pyaudio.get_default_wasapi_loopback(), pyaudio)
        import sounddevice as sd
        marker = 'blackhole' if _IS_MAC else 'monitor'
        for index, dev in enumerate(sd.query_devices()):
            if marker in dev['name'].lower() and dev['max_input_channels'] > 0:
                return self._open_sounddevice_loopback(stream, index, dev)
        return None

    def _open_fallback_loopback(self, stream: CaptureStream) -> Optional[CaptureTrack]:
        """Any input device that identifies as loop-back."""
        if _IS_WINDOWS:
            pyaudio = self._get_pyaudio()
            p = self._pyaudio
            wasapi_info = p.get_host_api_info_by_type(pyaudio.paWASAPI)
            for i in range(p.get_device_count()):
                device = p.get_device_info_by_index(i)
                if device.get('hostApi') == wasapi_info['index'] and device.get('isLoopbackDevice', False):
                    return self._open_wasapi(stream, device, pyaudio)
            return None
        import sounddevice as sd
        for index, dev in enumerate(sd.query_devices()):
            if dev['max_input_channels'] > 0 and looks_like_system_audio(dev['name']):
                return self._open_sounddevice_loopback(stream, index, dev)
        return None

    def _get_pyaudio(self):
        import pyaudiowpatch as pyaudio
        if self._pyaudio is None:
            self._pyaudio = pyaudio.PyAudio()
        return pyaudio

    def _open_wasapi(self, stream: CaptureStream, device: Optional[dict], pyaudio) -> Optional[CaptureTrack]:
        if not device:
            return None
        rate = int(device['defaultSampleRate'])
        # Some WASAPI devices must be opened with all channels
        channels = int(device['maxInputChannels'])
        target_rate = self.sample_rate

        def callback(in_data, frame_count, time_info, status):
            audio = np.frombuffer(in_data, dtype=np.int16)
            stream.push(preprocess_loopback_audio(audio, channels, rate, target_rate))
            return (None, pyaudio.paContinue)

        pa_stream = self._pyaudio.open(
            format=pyaudio.paInt16,
            channels=channels,
            rate=rate,
            input=True,
            input_device_index=int(device['index']),
            frames_per_buffer=self.block_size,
            stream_callback=callback,
        )
        pa_stream.start_stream()
        print(f"[Kaiwa Audio] Loopback stream started: {device['name']} ({rate}Hz, {channels}ch)")
        return CaptureTrack(device['name'], 'loopback', _closer(pa_stream.stop_stream, pa_stream.close))

    def _open_sounddevice_loopback(self, stream: CaptureStream, index: int, dev) -> CaptureTrack:
        import sounddevice as sd

        rate = int(dev['default_samplerate'])
        channels = int(min(dev['max_input_channels'], 2))
        target_rate = self.sample_rate

        def callback(indata, frames, time_info, status):
            stream.push(preprocess_loopback_audio(indata.reshape(-1).copy(), channels, rate, target_rate))

        sd_stream = sd.InputStream(
            device=index,
            samplerate=rate,
            channels=channels,
            dtype='int16',
            blocksize=self.block_size,
            callback=callback,
        )
        sd_stream.start()
        print(f"[Kaiwa Audio] Loopback stream started: {dev['name']} ({rate}Hz, {channels}ch)")
        return CaptureTrack(dev['name'], 'loopback', _closer(sd_stream.stop, sd_stream.close))


def _closer(*steps: Callable[[], None]) -> Callable[[], None]:
    """Run each shutdown step even if an earlier one fails."""
    def close():
        errors = []
        for step in steps:
            try:
                step()
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]
    return close


def list_devices() -> List[str]:
    """Human-readable input device list for --list-devices."""
    import sounddevice as sd
    lines = []
    for index, dev in enumerate(sd.query_devices()):
        if dev['max_input_channels'] <= 0:
            continue
        tag = 'system' if looks_like_system_audio(dev['name']) else 'mic'
        lines.append(f"{index:3d}  [{tag:6s}] {dev['name']} ({int(dev['default_samplerate'])}Hz)")
    return lines

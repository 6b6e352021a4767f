"""
Terminal front end for Kaiwa.

    kaiwa --mode system --context "weekly standup"

Commands (type and press Enter):
    s   start/stop listening
    m   switch between mic and system audio
    q   quit
"""

import argparse
import asyncio
import sys

from dotenv import load_dotenv

from .capture import CaptureConstraints, CaptureSource, list_devices
from .controller import ModeController
from .conversation import ConsoleConversation
from .dispatcher import TranscriptionDispatcher
from .errors import ErrorThrottle
from .logger import log_exception
from .providers import ChatClient, TranscriptionClient
from .recorder import ChunkRecorder
from .session import MODES
from .speech_filter import SpeechFilter
from .streamer import PLACEHOLDER, ResponseStreamer
from .utils import ConfigManager


def build_controller(sink=None, transcription_client=None, chat_client=None) -> ModeController:
    """Wire the pipeline from the current configuration."""
    recording = ConfigManager.get_config_section('recording_options')
    pipeline = ConfigManager.get_config_section('pipeline')
    voice = ConfigManager.get_config_section('voice')

    sink = sink if sink is not None else ConsoleConversation(placeholder=PLACEHOLDER)
    transcription_client = transcription_client or TranscriptionClient()
    chat_client = chat_client or ChatClient()
    error_window = pipeline['error_window_ms'] / 1000

    capture = CaptureSource(
        sample_rate=recording['sample_rate'],
        mic_device=recording.get('mic_device'),
        constraints=CaptureConstraints(
            echo_cancellation=recording['echo_cancellation'],
            noise_suppression=recording['noise_suppression'],
        ),
    )
    dispatcher = TranscriptionDispatcher(
        transcribe=transcription_client.transcribe,
        on_outcome=None,
        min_bytes=recording['min_chunk_bytes'],
        max_in_flight=pipeline['max_in_flight'],
        throttle=ErrorThrottle(error_window),
    )
    recorder = ChunkRecorder(
        on_chunk=dispatcher.submit,
        sample_rate=recording['sample_rate'],
        chunk_seconds=recording['chunk_seconds'],
        flush_timeout=recording['flush_timeout'],
        start_timeout=recording['start_timeout'],
        cycle_gap=recording['cycle_gap'],
        container=recording['container'],
    )
    speech_filter = SpeechFilter(
        debounce_seconds=pipeline['debounce_ms'] / 1000,
        duplicate_threshold=pipeline['duplicate_threshold'],
    )
    streamer = ResponseStreamer(
        chat_client.stream_complete,
        sink,
        history_turns=pipeline['history_turns'],
    )
    return ModeController(
        capture, recorder, dispatcher, speech_filter, streamer,
        mode=voice.get('mode') or 'mic',
        drain_timeout=pipeline['drain_timeout'],
        toggle_cooldown=pipeline['toggle_cooldown_ms'] / 1000,
        recent_window=pipeline['recent_window'],
        throttle=ErrorThrottle(error_window),
    )


def _print_state(state, session):
    ConfigManager.console_print(f"[Kaiwa] {state} ({session.mode})")


async def run(controller: ModeController, autostart: bool = True):
    loop = asyncio.get_running_loop()
    controller.add_listener(on_state_change=_print_state)
    print("Commands: s = start/stop, m = switch mic/system, q = quit")
    if autostart:
        await controller.start()

    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            command = line.strip().lower()
            if command == 'q':
                break
            elif command == 's':
                await controller.toggle()
            elif command == 'm':
                await controller.toggle_mode()
            elif command:
                print(f"Unknown command: {command}")
    finally:
        await controller.shutdown()
        sink = controller.streamer.sink
        if hasattr(sink, 'close'):
            sink.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='kaiwa', description="Live voice conversation assistant.")
    parser.add_argument('--mode', choices=MODES, help="Audio source: your microphone or system audio.")
    parser.add_argument('--config', help="Path to a config.yaml overriding the defaults.")
    parser.add_argument('--context', help="Conversation context passed to the assistant.")
    parser.add_argument('--list-devices', action='store_true', help="List audio input devices and exit.")
    parser.add_argument('--no-start', action='store_true', help="Wait for 's' before listening.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if args.list_devices:
        for line in list_devices():
            print(line)
        return 0

    load_dotenv()
    ConfigManager.initialize(config_path=args.config)
    if args.mode:
        ConfigManager.set_config_value(args.mode, 'voice', 'mode')
    if args.context:
        ConfigManager.set_config_value(args.context, 'voice', 'context')

    print('Starting Kaiwa...')
    controller = build_controller()
    try:
        asyncio.run(run(controller, autostart=not args.no_start))
    except KeyboardInterrupt:
        print("\nStopped.")
    except Exception as e:
        log_exception(e, "in main loop")
        raise
    return 0


if __name__ == '__main__':
    sys.exit(main())

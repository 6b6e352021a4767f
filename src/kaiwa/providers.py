"""
HTTP clients for the speech-to-text and chat-completion services.

Both clients are synchronous (requests) and are called from worker threads by
the dispatcher and the response streamer.

    client = TranscriptionClient()
    result = client.transcribe(flac_bytes, api_key, "groq", "whisper-large-v3-turbo")
    if result.ok:
        print(result.text)
"""

import json
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import requests

from .errors import ConfigError
from .logger import debug
from .session import ROLES, ProviderProfile

GROQ_TRANSCRIPTION_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
OPENAI_TRANSCRIPTION_URL = "https://api.openai.com/v1/audio/transcriptions"

# Transcription-only models per provider; the first entry is the default
TRANSCRIPTION_MODELS = {
    'groq': ['whisper-large-v3-turbo', 'whisper-large-v3'],
    'openai': ['whisper-1'],
}
ALL_TRANSCRIPTION_MODELS = frozenset(m for models in TRANSCRIPTION_MODELS.values() for m in models)

VOICE_API_KINDS = {
    'groq-whisper': 'groq',
    'openai-whisper': 'openai',
}

CHAT_BASE_URLS = {
    'groq': "https://api.groq.com/openai/v1",
    'openai': "https://api.openai.com/v1",
    'ollama': "http://localhost:11434/v1",
    'openai-compatible': "http://localhost:8080/v1",
}
DEFAULT_CHAT_MODELS = {
    'groq': 'llama-3.1-8b-instant',
    'openai': 'gpt-3.5-turbo',
    'ollama': 'llama3.1',
}
PROVIDER_NAMES = {
    'groq': 'Groq',
    'openai': 'OpenAI',
    'ollama': 'Ollama',
    'openai-compatible': 'OpenAI-compatible',
}
KEYLESS_KINDS = ('ollama', 'openai-compatible')


def _debug(msg: str):
    debug(msg, "providers")


def is_transcription_model(model: Optional[str]) -> bool:
    return bool(model) and model.strip() in ALL_TRANSCRIPTION_MODELS


@dataclass
class TranscriptionResult:
    ok: bool
    text: str = ""
    error: Optional[str] = None


@dataclass
class CompletionResult:
    ok: bool
    content: str = ""
    error: Optional[str] = None


def select_transcription_profile(accounts: List[dict], voice_api: Optional[str] = None,
                                 whisper_model: Optional[str] = None) -> ProviderProfile:
    """
    Pick the account used for speech-to-text.

    The preferred provider (voice_api) wins when it has a key; otherwise any
    openai or groq account with a key is used. Raises ConfigError if none.
    """
    candidates = [a for a in accounts if (a.get('apiKey') or '').strip()
                  and a.get('type') in TRANSCRIPTION_MODELS]
    preferred_kind = VOICE_API_KINDS.get(voice_api or '', 'groq')
    account = next((a for a in candidates if a.get('type') == preferred_kind), None)
    if account is None:
        account = next((a for a in candidates if a.get('type') == 'openai'), None)
    if account is None:
        account = next((a for a in candidates if a.get('type') == 'groq'), None)
    if account is None:
        raise ConfigError(
            "No transcription API key configured. Add a Groq or OpenAI account "
            "(or set GROQ_API_KEY / OPENAI_API_KEY)."
        )

    kind = account['type']
    model = whisper_model if whisper_model in TRANSCRIPTION_MODELS[kind] else TRANSCRIPTION_MODELS[kind][0]
    return ProviderProfile(kind=kind, api_key=account['apiKey'].strip(), model=model,
                           name=account.get('name'))


class TranscriptionClient:
    """Client for the Whisper transcription endpoints of Groq and OpenAI."""

    def __init__(self, timeout: float = 30.0, connect_timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout  # Read timeout
        self.connect_timeout = connect_timeout
        self.http = session or requests.Session()

    def transcribe(self, audio_bytes: bytes, api_key: str, provider_kind: str,
                   model: Optional[str] = None, filename: Optional[str] = None) -> TranscriptionResult:
        """
        Transcribe one self-contained audio container.

        Returns:
            TranscriptionResult; on failure ok is False and error holds a message.
        """
        if not api_key:
            return TranscriptionResult(False, error=f"{PROVIDER_NAMES.get(provider_kind, provider_kind)} API key is required")
        if provider_kind not in TRANSCRIPTION_MODELS:
            return TranscriptionResult(False, error=f"Unsupported transcription provider: {provider_kind}")

        allowed = TRANSCRIPTION_MODELS[provider_kind]
        model = model if model in allowed else allowed[0]
        filename = filename or _guess_filename(audio_bytes)
        url = GROQ_TRANSCRIPTION_URL if provider_kind == 'groq' else OPENAI_TRANSCRIPTION_URL
        data = {'model': model, 'temperature': '0', 'response_format': 'json'}
        if provider_kind == 'openai':
            data['language'] = 'en'
        headers = {'Authorization': f"Bearer {api_key}"}

        # Retry logic with exponential backoff
        max_retries = 2
        retry_delays = [1.0, 2.0]
        last_error = None

        for attempt in range(max_retries + 1):
            try:
                if attempt > 0:
                    delay = retry_delays[attempt - 1]
                    _debug(f"  Retry {attempt}/{max_retries} after {delay}s delay...")
                    time.sleep(delay)

                _debug(f"POST {url} ({len(audio_bytes)} bytes, model={model})")
                response = self.http.post(
                    url,
                    headers=headers,
                    data=data,
                    files={'file': (filename, audio_bytes, _mime_type(filename))},
                    timeout=(self.connect_timeout, self.timeout),
                )

                if response.status_code == 200:
                    text = (response.json().get('text') or '').strip()
                    _debug(f"  Success: {len(text)} chars")
                    return TranscriptionResult(True, text=text)
                elif response.status_code == 401:
                    # Auth error - don't retry
                    return TranscriptionResult(False, error=_error_message(provider_kind, response))
                else:
                    last_error = _error_message(provider_kind, response)
                    _debug(f"  Server error: {response.status_code}")
                    if response.status_code >= 500:
                        continue
                    return TranscriptionResult(False, error=last_error)

            except (requests.Timeout, requests.ConnectionError) as e:
                kind = 'Timeout' if isinstance(e, requests.Timeout) else 'Network error'
                _debug(f"  {kind.upper()} (attempt {attempt + 1}/{max_retries + 1}): {e}")
                last_error = f"{kind}: {e}"
                continue

            except requests.RequestException as e:
                return TranscriptionResult(False, error=f"Network error: {e}")

            except ValueError as e:
                return TranscriptionResult(False, error=f"Invalid response from transcription service: {e}")

        return TranscriptionResult(False, error=f"Failed after {max_retries + 1} attempts: {last_error}")


class ChatClient:
    """Streaming client for OpenAI-compatible chat completion endpoints."""

    def __init__(self, timeout: float = 30.0, connect_timeout: float = 5.0,
                 temperature: float = 0.7, max_tokens: int = 2048,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.http = session or requests.Session()

    @staticmethod
    def validate(profile: ProviderProfile, messages: List[Dict[str, str]]) -> str:
        """Check profile and messages before anything is sent. Returns the model name."""
        if profile.kind not in CHAT_BASE_URLS:
            raise ConfigError(f"Unsupported chat provider: {profile.kind}")
        model = (profile.model or DEFAULT_CHAT_MODELS.get(profile.kind) or '').strip()
        if not model:
            raise ConfigError(f"Model name is required for {PROVIDER_NAMES[profile.kind]} API")
        if is_transcription_model(model):
            raise ConfigError(
                f'Model "{model}" is for audio transcription only, not chat completions. '
                "Choose a chat model for responses."
            )
        if not messages:
            raise ValueError("Messages array is required and cannot be empty")
        for msg in messages:
            if not msg.get('role') or not msg.get('content'):
                raise ValueError('Each message must have "role" and "content" fields')
            if msg['role'] not in ROLES:
                raise ValueError(f"Invalid message role: {msg['role']}. Must be system, user, or assistant")
        return model

    def chat_url(self, profile: ProviderProfile) -> str:
        base = (profile.base_url or CHAT_BASE_URLS[profile.kind]).rstrip('/')
        if profile.kind == 'openai-compatible' and not base.endswith('/v1'):
            base += '/v1'
        return f"{base}/chat/completions"

    def stream_complete(self, profile: ProviderProfile, messages: List[Dict[str, str]],
                        on_token: Optional[Callable[[str], None]] = None) -> CompletionResult:
        """
        Stream a chat completion, calling on_token for every content delta.

        Configuration problems raise ConfigError before any request is made.
        Transport and provider failures come back as CompletionResult(ok=False).
        """
        model = self.validate(profile, messages)
        provider = PROVIDER_NAMES[profile.kind]
        headers = {'Content-Type': 'application/json'}
        if profile.api_key:
            headers['Authorization'] = f"Bearer {profile.api_key}"
        elif profile.kind not in KEYLESS_KINDS:
            return CompletionResult(False, error=f"{provider} API key is required")

        body = {
            'model': model,
            'messages': [{'role': m['role'], 'content': str(m['content'])} for m in messages],
            'stream': True,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
        }
        url = self.chat_url(profile)
        _debug(f"POST {url} (model={model}, {len(messages)} messages)")

        try:
            with self.http.post(url, headers=headers, json=body, stream=True,
                                timeout=(self.connect_timeout, self.timeout)) as response:
                if response.status_code != 200:
                    return CompletionResult(False, error=_error_message(profile.kind, response, hints=True))
                content = ''.join(_iter_deltas(response.iter_lines(decode_unicode=True), on_token))
                return CompletionResult(True, content=content)
        except requests.Timeout as e:
            return CompletionResult(False, error=f"Timeout: {e}")
        except requests.RequestException as e:
            return CompletionResult(False, error=f"Network error: {e}")


def _iter_deltas(lines: Iterable[str], on_token: Optional[Callable[[str], None]]):
    """Yield content deltas from SSE lines until the [DONE] sentinel."""
    for line in lines:
        if not line or not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            continue
        choices = payload.get('choices') or [{}]
        delta = (choices[0].get('delta') or {}).get('content')
        if delta:
            if on_token is not None:
                on_token(delta)
            yield delta


def _error_message(kind: str, response, hints: bool = False) -> str:
    """Reduce a provider error body to '<Provider> API error: <message>'."""
    provider = PROVIDER_NAMES.get(kind, kind)
    status = response.status_code
    message = f"{provider} API error ({status})"
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get('error')
        if isinstance(error, dict) and error.get('message'):
            message = f"{provider} API error: {error['message']}"
        elif error:
            message = f"{provider} API error: {json.dumps(error) if not isinstance(error, str) else error}"
        elif data.get('message'):
            message = f"{provider} API error: {data['message']}"
    elif getattr(response, 'text', ''):
        message = f"{provider} API error: {response.text[:200]}"

    if status == 401:
        message += f"\n\nInvalid API key. Please check your {provider} API key."
    elif hints and status == 400:
        message += "\n\nPossible causes:\n- Invalid model name\n- Invalid request format\n- Missing required parameters"
    elif hints and status == 429:
        message += "\n\nRate limit exceeded. Please try again later."
    return message


def _guess_filename(audio_bytes: bytes) -> str:
    """Name the upload after its container so the service picks the right decoder."""
    if audio_bytes[:4] == b"fLaC":
        return "audio.flac"
    if audio_bytes[:4] == b"OggS":
        return "audio.ogg"
    return "audio.wav"


def _mime_type(filename: str) -> str:
    if filename.endswith('.flac'):
        return 'audio/flac'
    if filename.endswith('.ogg'):
        return 'audio/ogg'
    return 'audio/wav'

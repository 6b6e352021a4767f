"""
Tests for the transcription and chat HTTP clients.

requests is mocked; nothing leaves the machine.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
from kaiwa.errors import ConfigError
from kaiwa.providers import (GROQ_TRANSCRIPTION_URL, OPENAI_TRANSCRIPTION_URL, ChatClient,
                             TranscriptionClient, select_transcription_profile)
from kaiwa.session import ProviderProfile

FLAC = b"fLaC" + b"\x00" * 6000


def _response(status=200, payload=None, lines=None, text=""):
    response = MagicMock()
    response.status_code = status
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload if payload is not None else {}
    response.iter_lines.return_value = iter(lines or [])
    response.text = text
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


def _sse(*deltas, done=True):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}" for d in deltas]
    if done:
        lines.append("data: [DONE]")
    return lines


class TestSelectTranscriptionProfile:

    def test_prefers_configured_api(self):
        accounts = [{"type": "groq", "apiKey": "gsk"}, {"type": "openai", "apiKey": "sk"}]
        assert select_transcription_profile(accounts, "openai-whisper").kind == "openai"
        assert select_transcription_profile(accounts, "groq-whisper").kind == "groq"

    def test_falls_back_to_any_keyed_account(self):
        accounts = [{"type": "groq", "apiKey": ""}, {"type": "openai", "apiKey": "sk"}]
        profile = select_transcription_profile(accounts, "groq-whisper")
        assert profile.kind == "openai"
        assert profile.model == "whisper-1"

    def test_model_must_belong_to_provider(self):
        accounts = [{"type": "groq", "apiKey": "gsk"}]
        assert select_transcription_profile(accounts, "groq-whisper", "whisper-large-v3").model == "whisper-large-v3"
        assert select_transcription_profile(accounts, "groq-whisper", "whisper-1").model == "whisper-large-v3-turbo"

    def test_no_keys(self):
        with pytest.raises(ConfigError):
            select_transcription_profile([{"type": "ollama"}], "groq-whisper")


class TestTranscriptionClient:

    def test_groq_success(self):
        http = MagicMock()
        http.post.return_value = _response(payload={"text": " What is the weather? "})
        client = TranscriptionClient(session=http)

        result = client.transcribe(FLAC, "gsk", "groq", "whisper-large-v3-turbo")

        assert result.ok
        assert result.text == "What is the weather?"
        args, kwargs = http.post.call_args
        assert args[0] == GROQ_TRANSCRIPTION_URL
        assert kwargs["headers"]["Authorization"] == "Bearer gsk"
        assert kwargs["data"]["model"] == "whisper-large-v3-turbo"
        assert kwargs["data"]["temperature"] == "0"
        assert "language" not in kwargs["data"]
        filename, body, mime = kwargs["files"]["file"]
        assert (filename, mime) == ("audio.flac", "audio/flac")
        assert body == FLAC

    def test_openai_sends_language(self):
        http = MagicMock()
        http.post.return_value = _response(payload={"text": "hello there"})

        TranscriptionClient(session=http).transcribe(FLAC, "sk", "openai", None)

        args, kwargs = http.post.call_args
        assert args[0] == OPENAI_TRANSCRIPTION_URL
        assert kwargs["data"]["model"] == "whisper-1"
        assert kwargs["data"]["language"] == "en"

    def test_missing_key_makes_no_request(self):
        http = MagicMock()
        result = TranscriptionClient(session=http).transcribe(FLAC, "", "groq")
        assert not result.ok
        http.post.assert_not_called()

    def test_auth_error_not_retried(self):
        http = MagicMock()
        http.post.return_value = _response(401, {"error": {"message": "Invalid API Key"}})

        result = TranscriptionClient(session=http).transcribe(FLAC, "bad", "groq")

        assert not result.ok
        assert result.error.startswith("Groq API error: Invalid API Key")
        assert http.post.call_count == 1

    @patch("kaiwa.providers.time.sleep")
    def test_server_error_retried(self, mock_sleep):
        http = MagicMock()
        http.post.side_effect = [_response(503, {"error": "busy"}), _response(200, {"text": "ok then"})]

        result = TranscriptionClient(session=http).transcribe(FLAC, "gsk", "groq")

        assert result.ok
        assert result.text == "ok then"
        mock_sleep.assert_called_once_with(1.0)

    @patch("kaiwa.providers.time.sleep")
    def test_timeouts_exhaust_retries(self, mock_sleep):
        http = MagicMock()
        http.post.side_effect = requests.Timeout("read timed out")

        result = TranscriptionClient(session=http).transcribe(FLAC, "gsk", "groq")

        assert not result.ok
        assert "Timeout" in result.error
        assert http.post.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_client_error_not_retried(self):
        http = MagicMock()
        http.post.return_value = _response(400, {"error": {"message": "could not process file"}})

        result = TranscriptionClient(session=http).transcribe(FLAC, "gsk", "groq")

        assert result.error == "Groq API error: could not process file"
        assert http.post.call_count == 1

    def test_wav_upload_named_by_content(self):
        http = MagicMock()
        http.post.return_value = _response(payload={"text": "hi there"})

        TranscriptionClient(session=http).transcribe(b"RIFF" + b"\x00" * 6000, "gsk", "groq")

        filename, _, mime = http.post.call_args.kwargs["files"]["file"]
        assert (filename, mime) == ("audio.wav", "audio/wav")


class TestChatClient:

    PROFILE = ProviderProfile(kind="groq", api_key="gsk", model="llama-3.1-8b-instant")
    MESSAGES = [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hello"}]

    def test_streams_deltas(self):
        http = MagicMock()
        http.post.return_value = _response(lines=[""] + _sse("Hel", "lo", "!") + ["data: ignored-after-done"])
        tokens = []

        result = ChatClient(session=http).stream_complete(self.PROFILE, self.MESSAGES, tokens.append)

        assert result.ok
        assert result.content == "Hello!"
        assert tokens == ["Hel", "lo", "!"]
        args, kwargs = http.post.call_args
        assert args[0] == "https://api.groq.com/openai/v1/chat/completions"
        body = kwargs["json"]
        assert body["stream"] is True
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 2048
        assert body["model"] == "llama-3.1-8b-instant"

    def test_skips_malformed_lines(self):
        http = MagicMock()
        http.post.return_value = _response(lines=["data: {not json", ": keep-alive"] + _sse("ok"))

        result = ChatClient(session=http).stream_complete(self.PROFILE, self.MESSAGES)

        assert result.content == "ok"

    def test_whisper_model_rejected_before_request(self):
        http = MagicMock()
        profile = ProviderProfile(kind="openai", api_key="sk", model="whisper-1")

        with pytest.raises(ConfigError):
            ChatClient(session=http).stream_complete(profile, self.MESSAGES)

        http.post.assert_not_called()

    def test_invalid_role_rejected(self):
        http = MagicMock()
        with pytest.raises(ValueError):
            ChatClient(session=http).stream_complete(self.PROFILE, [{"role": "tool", "content": "x"}])
        http.post.assert_not_called()

    def test_rate_limit_hint(self):
        http = MagicMock()
        http.post.return_value = _response(429, {"error": {"message": "Rate limit reached"}})

        result = ChatClient(session=http).stream_complete(self.PROFILE, self.MESSAGES)

        assert not result.ok
        assert result.error.startswith("Groq API error: Rate limit reached")
        assert "Rate limit exceeded" in result.error

    def test_network_error(self):
        http = MagicMock()
        http.post.side_effect = requests.ConnectionError("connection refused")

        result = ChatClient(session=http).stream_complete(self.PROFILE, self.MESSAGES)

        assert not result.ok
        assert result.error.startswith("Network error")

    def test_openai_compatible_url(self):
        profile = ProviderProfile(kind="openai-compatible", base_url="http://localhost:1234/", model="qwen")
        assert ChatClient().chat_url(profile) == "http://localhost:1234/v1/chat/completions"

    def test_keyless_ollama_sends_no_auth(self):
        http = MagicMock()
        http.post.return_value = _response(lines=_sse("hi"))
        profile = ProviderProfile(kind="ollama", model="llama3.1")

        ChatClient(session=http).stream_complete(profile, self.MESSAGES)

        args, kwargs = http.post.call_args
        assert args[0] == "http://localhost:11434/v1/chat/completions"
        assert "Authorization" not in kwargs["headers"]

"""
Tests for streamed assistant responses.
"""

import asyncio
import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
from conftest import FakeChat
from kaiwa.conversation import Conversation
from kaiwa.errors import ConfigError, ResponseError
from kaiwa.providers import CompletionResult
from kaiwa.session import SessionState
from kaiwa.streamer import PLACEHOLDER, ResponseStreamer, SYSTEM_PROMPTS, select_chat_profile


class RecordingSink:
    """Conversation that also logs every assistant update."""

    def __init__(self):
        self.conversation = Conversation()
        self.updates = []

    def append_turn(self, role, content):
        return self.conversation.append_turn(role, content)

    def update_last_assistant_turn(self, content):
        self.updates.append(content)
        return self.conversation.update_last_assistant_turn(content)

    def turns(self):
        return self.conversation.turns()


def _respond(chat, config, text="what is the weather", sink=None, mode="mic", session=None):
    sink = sink or RecordingSink()
    session = session or SessionState.start(mode)
    streamer = ResponseStreamer(chat, sink, config_source=lambda: config)
    asyncio.run(streamer.respond(session, text))
    return sink, session


class TestSelectChatProfile:

    def test_falls_back_to_first_groq_account(self, mock_config):
        profile = select_chat_profile(mock_config, "mic")
        assert profile.kind == "groq"
        assert profile.model == "llama-3.1-8b-instant"

    def test_explicit_selection_wins(self, mock_config):
        mock_config["settings"]["chat_provider"] = "work-openai"
        mock_config["settings"]["mode_providers"]["mic"] = "groq"

        profile = select_chat_profile(mock_config, "mic")

        assert profile.kind == "openai"
        assert profile.model == "gpt-3.5-turbo"

    def test_mode_default(self, mock_config):
        mock_config["settings"]["mode_providers"]["system"] = "work-openai"
        assert select_chat_profile(mock_config, "system").kind == "openai"
        assert select_chat_profile(mock_config, "mic").kind == "groq"

    def test_no_accounts(self):
        with pytest.raises(ConfigError):
            select_chat_profile({"accounts": [], "settings": {}}, "mic")

    def test_transcription_model_rejected(self, mock_config):
        mock_config["accounts"] = [{"name": "openai", "type": "openai", "apiKey": "sk", "model": "whisper-1"}]
        with pytest.raises(ConfigError):
            select_chat_profile(mock_config, "mic")

    def test_missing_key(self, mock_config):
        mock_config["accounts"] = [{"name": "openai", "type": "openai", "apiKey": ""}]
        mock_config["settings"]["chat_provider"] = "openai"
        with pytest.raises(ResponseError):
            select_chat_profile(mock_config, "mic")

    def test_ollama_needs_no_key(self, mock_config):
        mock_config["accounts"] = [{"name": "local", "type": "ollama"}]
        mock_config["settings"]["chat_provider"] = "local"
        assert select_chat_profile(mock_config, "mic").kind == "ollama"


class TestRespond:

    def test_streams_tokens_into_sink(self, mock_config, fake_chat):
        sink, session = _respond(fake_chat, mock_config)

        turns = sink.turns()
        assert [(t.role, t.content) for t in turns] == [
            ("user", "what is the weather"),
            ("assistant", "Sunny and warm."),
        ]
        # Partial buffers arrive in order, then one final update
        assert sink.updates == ["Sunny ", "Sunny and ", "Sunny and warm.", "Sunny and warm."]
        assert session.stats.ai_responses == 1

    def test_placeholder_shown_before_tokens(self, mock_config):
        seen = []

        def chat(profile, messages, on_token):
            seen.append([(t.role, t.content) for t in sink.turns()])
            on_token("Hi")
            return CompletionResult(True, content="Hi")

        sink = RecordingSink()
        _respond(chat, mock_config, sink=sink)

        assert seen[0][-1] == ("assistant", PLACEHOLDER)

    def test_user_turn_not_duplicated(self, mock_config, fake_chat):
        sink = RecordingSink()
        sink.append_turn("user", "what is the weather")

        _respond(fake_chat, mock_config, sink=sink)

        assert [t.role for t in sink.turns()] == ["user", "assistant"]

    def test_whisper_profile_rejected_before_network(self, mock_config, fake_chat):
        config = copy.deepcopy(mock_config)
        config["accounts"] = [{"name": "openai", "type": "openai", "apiKey": "sk", "model": "whisper-1"}]

        sink, session = _respond(fake_chat, config)

        assert fake_chat.calls == []
        last = sink.turns()[-1]
        assert last.role == "assistant"
        assert last.content.startswith("Error: ")
        assert "whisper-1" in last.content
        assert session.is_active

    def test_empty_response_is_an_error(self, mock_config):
        chat = FakeChat(tokens=[], result=CompletionResult(True, content=""))

        sink, _ = _respond(chat, mock_config)

        assert sink.turns()[-1].content.startswith("Error: Empty response")
        assert PLACEHOLDER not in [t.content for t in sink.turns()]

    def test_provider_error_becomes_error_turn(self, mock_config):
        chat = FakeChat(tokens=[], result=CompletionResult(False, error="Groq API error: rate limited"))

        sink, session = _respond(chat, mock_config)

        assert sink.turns()[-1].content == "Error: Groq API error: rate limited"
        assert session.stats.ai_responses == 0

    def test_inactive_session_has_no_effect(self, mock_config, fake_chat):
        session = SessionState.start("mic")
        session.is_active = False

        sink, _ = _respond(fake_chat, mock_config, session=session)

        assert sink.turns() == []
        assert fake_chat.calls == []


class TestBuildMessages:

    def test_mode_prompts(self, mock_config, fake_chat):
        _respond(fake_chat, mock_config, mode="system")
        _, messages = fake_chat.calls[0]
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPTS["system"]}
        assert messages[-1] == {"role": "user", "content": "what is the weather"}

    def test_context_prefixes(self, mock_config, fake_chat):
        mock_config["settings"]["context"] = "job interview"

        _respond(fake_chat, mock_config)

        _, messages = fake_chat.calls[0]
        assert messages[0]["content"].startswith("Context: job interview. ")
        assert messages[-1]["content"] == "[Context: job interview] what is the weather"

    def test_history_is_trimmed_and_placeholders_dropped(self, mock_config, fake_chat):
        sink = RecordingSink()
        for i in range(15):
            sink.append_turn("user", f"question {i}")
            sink.append_turn("assistant", f"answer {i}")
        sink.append_turn("assistant", PLACEHOLDER)

        _respond(fake_chat, mock_config, sink=sink)

        _, messages = fake_chat.calls[0]
        history = messages[1:]
        assert len(history) == 20
        assert all(m["content"] != PLACEHOLDER for m in history)
        assert history[-1] == {"role": "user", "content": "what is the weather"}

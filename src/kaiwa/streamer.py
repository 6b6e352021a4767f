"""
Streams assistant responses for accepted transcripts into a message sink.
"""

import asyncio
from typing import Callable, Dict, List, Optional

from .conversation import MessageSink
from .dispatcher import TaskPool
from .errors import ConfigError, KaiwaError, ResponseError
from .logger import debug, log_error, log_exception
from .providers import DEFAULT_CHAT_MODELS, KEYLESS_KINDS, PROVIDER_NAMES, is_transcription_model
from .session import (MODE_SYSTEM, ROLE_ASSISTANT, ROLE_USER, STATUS_LISTENING, STATUS_PROCESSING,
                      ProviderProfile, SessionState)
from .utils import ConfigManager

PLACEHOLDER = "Thinking..."

SYSTEM_PROMPTS = {
    'mic': ("You are a real-time voice AI assistant. Provide short, clear, conversational responses. "
            "Respond naturally as if in a conversation."),
    MODE_SYSTEM: ("You are a real-time voice AI assistant listening to system audio. Provide short, clear, "
                  "helpful responses. If the audio contains questions or meaningful content, answer them "
                  "conversationally."),
}


def _debug(msg: str):
    debug(msg, "streamer")


def select_chat_profile(config: dict, mode: str) -> ProviderProfile:
    """
    Resolve the account used for chat responses.

    Order: explicitly selected account, the mode's default account, then the
    first groq and openai accounts with a key.
    """
    accounts = [a for a in config.get('accounts') or [] if isinstance(a, dict)]
    settings = config.get('settings') or {}

    def by_name(name):
        if not name:
            return None
        return (next((a for a in accounts if a.get('name') == name), None)
                or next((a for a in accounts if a.get('type') == name), None))

    account = by_name(settings.get('chat_provider'))
    if account is None:
        account = by_name((settings.get('mode_providers') or {}).get(mode))
    if account is None:
        for kind in ('groq', 'openai'):
            account = next((a for a in accounts if a.get('type') == kind and (a.get('apiKey') or '').strip()), None)
            if account is not None:
                break
    if account is None:
        raise ConfigError("No AI provider configured. Add a Groq or OpenAI account for responses.")

    profile = ProviderProfile.from_account(account)
    if not profile.model:
        profile = ProviderProfile(profile.kind, profile.api_key, DEFAULT_CHAT_MODELS.get(profile.kind),
                                  profile.base_url, profile.name)
    if is_transcription_model(profile.model):
        raise ConfigError(
            f'Model "{profile.model}" is for audio transcription only, not chat completions. '
            "Choose a chat model for responses."
        )
    if not profile.api_key and profile.kind not in KEYLESS_KINDS:
        raise ResponseError(f"{PROVIDER_NAMES.get(profile.kind, profile.kind)} API key is required")
    return profile


class ResponseStreamer:
    """
    Answers accepted transcripts with a streamed chat completion.

    stream_complete(profile, messages, on_token) runs on a worker thread; each
    token is forwarded to the event loop and pushed to the sink as a partial
    assistant turn.
    """

    def __init__(self, stream_complete: Callable, sink: MessageSink,
                 config_source: Callable[[], dict] = ConfigManager.get_config,
                 history_turns: int = 20):
        self.stream_complete = stream_complete
        self.sink = sink
        self.config_source = config_source
        self.history_turns = history_turns
        self.pool = TaskPool(name="response")

    def submit(self, session: SessionState, text: str) -> asyncio.Task:
        return self.pool.spawn(self.respond(session, text))

    async def drain(self, timeout: Optional[float] = None) -> bool:
        return await self.pool.drain(timeout)

    def build_messages(self, mode: str, context: Optional[str] = None) -> List[Dict[str, str]]:
        system_prompt = SYSTEM_PROMPTS.get(mode, SYSTEM_PROMPTS['mic'])
        if context:
            system_prompt = f"Context: {context}. {system_prompt}"

        history = [t for t in self.sink.turns()
                   if t.content and t.content != PLACEHOLDER and t.role in (ROLE_USER, ROLE_ASSISTANT)]
        messages = [t.to_message() for t in history[-self.history_turns:]]
        if context:
            for message in reversed(messages):
                if message['role'] == ROLE_USER:
                    message['content'] = f"[Context: {context}] {message['content']}"
                    break
        return [{'role': 'system', 'content': system_prompt}] + messages

    async def respond(self, session: SessionState, text: str):
        if not session.is_active:
            return
        turns = self.sink.turns()
        if not turns or turns[-1].role != ROLE_USER or turns[-1].content != text:
            self.sink.append_turn(ROLE_USER, text)

        session.status = STATUS_PROCESSING
        try:
            config = self.config_source()
            profile = select_chat_profile(config, session.mode)
            context = (config.get('settings') or {}).get('context')
            messages = self.build_messages(session.mode, context)

            last = self.sink.turns()[-1]
            if not (last.role == ROLE_ASSISTANT and last.content == PLACEHOLDER):
                self.sink.append_turn(ROLE_ASSISTANT, PLACEHOLDER)

            content = await self._stream(session, profile, messages)
            if not session.is_active:
                return
            if not content.strip():
                raise ResponseError("Empty response from AI provider. Please try again.")
            self.sink.update_last_assistant_turn(content)
            session.stats.ai_responses += 1
            _debug(f"Response complete ({len(content)} chars, {profile.kind}/{profile.model})")
        except KaiwaError as e:
            log_error(f"Response failed for {text!r}", e)
            self._show_error(session, str(e))
        except Exception as e:
            log_exception(e, "while generating response")
            self._show_error(session, str(e) or type(e).__name__)
        finally:
            if session.is_active:
                session.status = STATUS_LISTENING

    async def _stream(self, session: SessionState, profile: ProviderProfile,
                      messages: List[Dict[str, str]]) -> str:
        loop = asyncio.get_running_loop()
        buffer: List[str] = []

        def apply_token(token: str):
            buffer.append(token)
            if session.is_active:
                self.sink.update_last_assistant_turn(''.join(buffer))

        def on_token(token: str):
            # Worker thread -> event loop; queued ahead of the executor result
            loop.call_soon_threadsafe(apply_token, token)

        result = await loop.run_in_executor(None, self.stream_complete, profile, messages, on_token)
        if not result.ok:
            raise ResponseError(result.error or "AI provider returned an error")
        return ''.join(buffer) or result.content or ''

    def _show_error(self, session: SessionState, message: str):
        if not session.is_active:
            return
        turns = self.sink.turns()
        if turns and turns[-1].role == ROLE_ASSISTANT and turns[-1].content == PLACEHOLDER:
            self.sink.update_last_assistant_turn(f"Error: {message}")
        else:
            self.sink.append_turn(ROLE_ASSISTANT, f"Error: {message}")

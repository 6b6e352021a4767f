"""
Message sinks: where the pipeline writes chat turns.
"""

import sys
from typing import List, Protocol, TextIO

from .session import ROLE_ASSISTANT, ROLE_USER, ROLES, ConversationTurn


class MessageSink(Protocol):
    def append_turn(self, role: str, content: str) -> ConversationTurn: ...

    def update_last_assistant_turn(self, content: str) -> ConversationTurn: ...

    def turns(self) -> List[ConversationTurn]: ...


class Conversation:
    """In-memory, append-only list of turns."""

    def __init__(self):
        self._turns: List[ConversationTurn] = []

    def append_turn(self, role: str, content: str) -> ConversationTurn:
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role!r}")
        turn = ConversationTurn(role, content)
        self._turns.append(turn)
        return turn

    def update_last_assistant_turn(self, content: str) -> ConversationTurn:
        """Replace the content of the trailing assistant turn, appending one if needed."""
        if self._turns and self._turns[-1].role == ROLE_ASSISTANT:
            self._turns[-1].content = content
            return self._turns[-1]
        return self.append_turn(ROLE_ASSISTANT, content)

    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def __len__(self):
        return len(self._turns)


class ConsoleConversation(Conversation):
    """Conversation that also echoes turns to a terminal, streaming assistant text."""

    LABELS = {ROLE_USER: "You", ROLE_ASSISTANT: "Assistant"}

    def __init__(self, out: TextIO = None, placeholder: str = "Thinking..."):
        super().__init__()
        self.out = out or sys.stdout
        self.placeholder = placeholder
        self._printed = None  # Text already shown for the open assistant line

    def append_turn(self, role: str, content: str) -> ConversationTurn:
        turn = super().append_turn(role, content)
        self._close_line()
        label = self.LABELS.get(role, role.capitalize())
        if role == ROLE_ASSISTANT:
            self._write(f"{label}: ")
            self._printed = ""
            self._show(content)
        else:
            self._write(f"{label}: {content}\n")
        return turn

    def update_last_assistant_turn(self, content: str) -> ConversationTurn:
        if not (self._turns and self._turns[-1].role == ROLE_ASSISTANT):
            return self.append_turn(ROLE_ASSISTANT, content)
        turn = super().update_last_assistant_turn(content)
        self._show(content)
        return turn

    def close(self):
        self._close_line()

    def _show(self, content: str):
        if content == self.placeholder:
            return
        if self._printed is None:
            self._printed = ""
        if content.startswith(self._printed):
            self._write(content[len(self._printed):])
        else:
            self._write(f"\n  {content}")
        self._printed = content

    def _close_line(self):
        if self._printed is not None:
            self._write("\n")
            self._printed = None

    def _write(self, text: str):
        self.out.write(text)
        self.out.flush()

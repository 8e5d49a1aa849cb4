"""Per-call conversation memory with a fixed system preamble."""

import time
from dataclasses import dataclass, field
from typing import Dict, List

VALID_ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ConversationTurn:
    """A single message in the conversation."""
    role: str  # "system", "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """
    Ordered message log: preamble at index 0, then a bounded recency window.

    The preamble is never evicted. Every append prunes, so at most
    `max_messages` messages follow it at any time.
    """

    def __init__(self, preamble: str, max_messages: int = 20):
        if max_messages <= 0:
            raise ValueError("max_messages must be positive")
        self.max_messages = max_messages
        self._turns: List[ConversationTurn] = [ConversationTurn(role="system", content=preamble)]

    @property
    def preamble(self) -> ConversationTurn:
        return self._turns[0]

    def append(self, role: str, content: str) -> None:
        """Add a message at the end of the conversation and enforce the bound."""
        if role not in VALID_ROLES:
            raise ValueError(f"Unknown role: {role}")
        self._turns.append(ConversationTurn(role=role, content=content))
        self.prune()

    def add_user_message(self, content: str) -> None:
        self.append("user", content)

    def add_assistant_message(self, content: str) -> None:
        self.append("assistant", content)

    def prune(self) -> int:
        """
        Remove the oldest non-preamble messages beyond the bound.

        Returns:
            Number of messages removed
        """
        excess = len(self._turns) - 1 - self.max_messages
        if excess <= 0:
            return 0
        del self._turns[1:1 + excess]
        return excess

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format, preamble first."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index: int) -> ConversationTurn:
        return self._turns[index]

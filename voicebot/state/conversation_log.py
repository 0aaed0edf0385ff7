"""Append-only conversation history."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import structlog


logger = structlog.get_logger()


class Role(str, Enum):
    USER = "user"
    BOT = "bot"


@dataclass(frozen=True)
class Turn:
    """One role-tagged message. Immutable once appended."""

    role: Role
    content: str
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }


class ConversationLog:
    """
    Ordered sequence of turns. Only ever appended to.

    Insertion order is the conversation order and is what the chat backend
    receives as context.
    """

    def __init__(self):
        self._turns: List[Turn] = []
        self._listener: Optional[Callable[[Turn], None]] = None

    def append(self, role: Role, content: str) -> Turn:
        turn = Turn(role=Role(role), content=content)
        self._turns.append(turn)
        logger.debug(
            "Turn appended", role=turn.role.value, index=len(self._turns) - 1
        )
        if self._listener:
            try:
                self._listener(turn)
            except Exception as e:
                logger.error("Conversation listener error", error=str(e))
        return turn

    def add_user_message(self, text: str) -> Turn:
        return self.append(Role.USER, text)

    def add_bot_message(self, text: str) -> Turn:
        return self.append(Role.BOT, text)

    def recent(self, limit: int) -> Tuple[Turn, ...]:
        """The most recent ``limit`` turns, oldest first."""
        if limit <= 0:
            return ()
        return tuple(self._turns[-limit:])

    def set_listener(self, listener: Optional[Callable[[Turn], None]]) -> None:
        """Observe appends (presentation layer)."""
        self._listener = listener

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def to_list(self) -> List[Dict[str, Any]]:
        return [turn.to_dict() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

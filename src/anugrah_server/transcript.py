"""In-memory chat transcript with a single streaming tail message."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .gateway import Turn

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


class InvalidState(RuntimeError):
    """A transcript operation was invoked out of contract."""


def _new_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Message
# -----------------------------
@dataclass(frozen=True)
class Message:
    """One immutable entry of a transcript.

    Only :class:`Transcript` produces new versions of its streaming tail;
    callers never hold a writable message.
    """
    role: str
    text: str = ""
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    streaming: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")
        if self.streaming and self.role != ASSISTANT:
            raise ValueError("only assistant messages can be streaming")

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=USER, text=text)

    @classmethod
    def assistant(cls, text: str = "", *, streaming: bool = False) -> "Message":
        return cls(role=ASSISTANT, text=text, streaming=streaming)

    @classmethod
    def placeholder(cls) -> "Message":
        """Empty assistant message that fills in as fragments arrive."""
        return cls(role=ASSISTANT, text="", streaming=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
            "streaming": self.streaming,
        }


# -----------------------------
# Transcript
# -----------------------------
class Transcript:
    """Append-only ordered log of messages.

    At most one message is in streaming state, and when one exists it is the
    last element. Once :meth:`close` is called the store rejects every write.
    """

    def __init__(self, messages: Optional[List[Message]] = None) -> None:
        self._messages: List[Message] = []
        self._alive = True
        for m in messages or []:
            self.append(m)

    @classmethod
    def seeded(cls, greeting: Optional[str]) -> "Transcript":
        """Create a transcript that opens with an assistant greeting."""
        if not greeting:
            return cls()
        return cls([Message.assistant(greeting)])

    # --------- read side ----------
    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    @property
    def in_flight(self) -> bool:
        last = self.last
        return bool(last and last.streaming)

    @property
    def alive(self) -> bool:
        return self._alive

    def __len__(self) -> int:
        return len(self._messages)

    def find(self, message_id: str) -> Optional[Message]:
        """Current version of the message with ``message_id``, newest first."""
        for m in reversed(self._messages):
            if m.id == message_id:
                return m
        return None

    def turns(self, exclude_last: int = 0) -> List[Turn]:
        """Prior (role, text) pairs, oldest first, skipping the newest ``exclude_last``."""
        items = self._messages[: len(self._messages) - exclude_last] if exclude_last else self._messages
        return [Turn(role=m.role, text=m.text) for m in items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alive": self._alive,
            "in_flight": self.in_flight,
            "messages": [m.to_dict() for m in self._messages],
        }

    # --------- write side ----------
    def append(self, message: Message) -> None:
        self._check_alive()
        if self.in_flight:
            raise InvalidState("cannot append while the last message is still streaming")
        self._messages.append(message)

    def update_last(self, text: str) -> None:
        self._check_alive()
        last = self.last
        if last is None:
            raise InvalidState("transcript is empty")
        if not last.streaming:
            raise InvalidState("last message is not streaming")
        self._messages[-1] = replace(last, text=text)

    def finalize(self) -> None:
        """End streaming state of the last message. Repeat calls are no-ops."""
        self._check_alive()
        last = self.last
        if last is None:
            raise InvalidState("transcript is empty")
        if last.streaming:
            self._messages[-1] = replace(last, streaming=False)

    def close(self) -> None:
        """Tear the store down; later writes fail with :class:`InvalidState`."""
        self._alive = False

    def _check_alive(self) -> None:
        if not self._alive:
            raise InvalidState("transcript has been closed")

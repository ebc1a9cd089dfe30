"""Per-session ownership of transcripts and their conversation services."""
from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .conversation import ConversationService
from .gateway import CompletionGateway
from .transcript import Transcript

logger = logging.getLogger(__name__)

DEFAULT_GREETING = (
    "Namaste! I am Anugrah AI. I can help you with Roman Nepali Bible verses, "
    "theological questions, or sermon prep. How can I serve you today?"
)


@dataclass
class ChatSession:
    id: str
    transcript: Transcript
    service: ConversationService

    @property
    def busy(self) -> bool:
        return self.service.busy

    def to_dict(self) -> Dict[str, Any]:
        data = self.transcript.to_dict()
        return {"id": self.id, "busy": self.busy, "messages": data["messages"]}


class SessionRegistry:
    """Creates, looks up and tears down chat sessions.

    Closing a session closes its transcript first, so any turn still
    streaming for it stops writing.
    """

    def __init__(
        self,
        gateway: CompletionGateway,
        *,
        greeting: Optional[str] = DEFAULT_GREETING,
        max_sessions: Optional[int] = None,
    ) -> None:
        self.gateway = gateway
        self.greeting = greeting
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, ChatSession]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def ids(self) -> List[str]:
        return list(self._sessions)

    def create(self) -> ChatSession:
        if self.max_sessions and len(self._sessions) >= self.max_sessions:
            self._evict_one()
        transcript = Transcript.seeded(self.greeting)
        session = ChatSession(
            id=uuid.uuid4().hex,
            transcript=transcript,
            service=ConversationService(transcript, self.gateway),
        )
        self._sessions[session.id] = session
        logger.info("session %s created (%d open)", session.id, len(self._sessions))
        return session

    def get(self, session_id: str) -> ChatSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"unknown session: {session_id}") from None

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.transcript.close()
        logger.info("session %s closed (%d open)", session_id, len(self._sessions))
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)

    def _evict_one(self) -> None:
        # Oldest idle session first; fall back to the oldest overall.
        victim = next((s.id for s in self._sessions.values() if not s.busy), None)
        if victim is None:
            victim = next(iter(self._sessions))
        logger.info("session cap %s reached; evicting %s", self.max_sessions, victim)
        self.close(victim)

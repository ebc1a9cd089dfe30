"""Drive a gateway fragment stream into a transcript, one turn at a time."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .gateway import CompletionGateway, Turn
from .transcript import Message, Transcript

logger = logging.getLogger(__name__)

APOLOGY = "I apologize, but I am having trouble connecting right now. Please try again later."


class StreamOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"   # transcript torn down mid-stream; nothing written after teardown


UpdateListener = Callable[[Message], None]


@dataclass
class PendingTurn:
    """A turn whose user message and placeholder are already in the transcript."""
    utterance: str
    history: List[Turn]
    reply_id: str


class ConversationService:
    """Stream aggregator for a single transcript.

    ``begin`` reserves a turn synchronously (user message plus an empty
    assistant placeholder); ``run`` grows the placeholder as fragments
    arrive. ``submit`` does both. Only one turn may be in flight per
    transcript; a second ``begin`` during a stream is refused.
    """

    def __init__(self, transcript: Transcript, gateway: CompletionGateway, *, apology: str = APOLOGY) -> None:
        self.transcript = transcript
        self.gateway = gateway
        self.apology = apology

    @property
    def busy(self) -> bool:
        return self.transcript.in_flight

    def begin(self, utterance: str) -> Optional[PendingTurn]:
        """Append the user message and placeholder. ``None`` when not accepted."""
        if not (utterance or "").strip():
            return None
        transcript = self.transcript
        if not transcript.alive or transcript.in_flight:
            logger.debug("turn refused: alive=%s in_flight=%s", transcript.alive, transcript.in_flight)
            return None

        transcript.append(Message.user(utterance))
        placeholder = Message.placeholder()
        transcript.append(placeholder)
        return PendingTurn(
            utterance=utterance,
            history=transcript.turns(exclude_last=2),
            reply_id=placeholder.id,
        )

    async def run(self, turn: PendingTurn, on_update: Optional[UpdateListener] = None) -> StreamOutcome:
        """Stream the reply for a turn reserved by :meth:`begin`."""
        transcript = self.transcript
        stream = self.gateway.stream_chat(turn.history, turn.utterance)
        fragments = stream.__aiter__()
        accumulated = ""
        try:
            while True:
                # Only the gateway's own failures are contained here; store
                # defects and listener errors propagate.
                try:
                    fragment = await fragments.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    logger.warning("chat stream failed after %d chars: %s", len(accumulated), e)
                    if not transcript.alive:
                        return StreamOutcome.ABANDONED
                    transcript.update_last(self.apology)
                    transcript.finalize()
                    self._notify(on_update)
                    return StreamOutcome.FAILED

                if not transcript.alive:
                    logger.info("transcript closed mid-stream; abandoning turn")
                    return StreamOutcome.ABANDONED
                accumulated += fragment
                transcript.update_last(accumulated)
                self._notify(on_update)
        except BaseException:
            # Never leave the tail streaming behind an escaping error.
            if transcript.alive and transcript.in_flight:
                transcript.finalize()
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not transcript.alive:
            return StreamOutcome.ABANDONED
        transcript.finalize()
        return StreamOutcome.COMPLETED

    async def submit(self, utterance: str, on_update: Optional[UpdateListener] = None) -> Optional[StreamOutcome]:
        """Run one turn. Returns ``None`` when the utterance was not accepted."""
        turn = self.begin(utterance)
        if turn is None:
            return None
        return await self.run(turn, on_update)

    def _notify(self, on_update: Optional[UpdateListener]) -> None:
        last = self.transcript.last
        if on_update is not None and last is not None:
            on_update(last)

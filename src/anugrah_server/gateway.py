"""Boundary types for the generative-AI provider."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, TypedDict


class Turn(TypedDict):
    """A prior conversation turn handed to the provider."""

    role: str    # "user" | "assistant"
    text: str


@dataclass
class Generation:
    """Result of a single non-streaming generation call."""
    text: str
    sources: List[str] = field(default_factory=list)


# -----------------------------
# Errors
# -----------------------------
class ProviderError(Exception):
    """Base class for failures attributable to the external provider."""


class GatewayFailure(ProviderError):
    """Transport or provider failure while calling or streaming from the gateway."""


class MalformedResponse(ProviderError):
    """The provider answered, but not with the structured record that was asked for."""


# -----------------------------
# Ports
# -----------------------------
class CompletionGateway(Protocol):
    def stream_chat(self, history: Sequence[Turn], message: str) -> AsyncIterator[str]:
        """Return a single-pass stream of non-empty text fragments.

        The stream ends normally or raises :class:`GatewayFailure`.
        """
        ...


class ContentGateway(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        response_schema: Optional[Dict[str, Any]] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Generation:
        ...

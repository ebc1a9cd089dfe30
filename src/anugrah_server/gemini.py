"""Gemini REST adapter implementing the completion and content gateways."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from .gateway import GatewayFailure, Generation, Turn
from .transcript import ASSISTANT

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_SYSTEM_PROMPT = (
    "You are a wise, compassionate, and knowledgeable theological assistant for "
    "Anugrah Church. You answer questions about the Bible, faith, and church life "
    "with grace and accuracy. Stick to orthodox Christian theology."
)
# Statuses worth another attempt on non-streaming calls
RETRY_STATUSES = {429, 500, 502, 503, 504}


@dataclass
class GeminiSettings:
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 0.75
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


def _provider_role(role: str) -> str:
    return "model" if role == ASSISTANT else "user"


def _candidate(payload: Dict[str, Any]) -> Dict[str, Any]:
    cands = payload.get("candidates") or []
    if not cands:
        block = (payload.get("promptFeedback") or {}).get("blockReason")
        if block:
            raise GatewayFailure(f"prompt blocked by provider: {block}")
        return {}
    return cands[0] or {}


def _candidate_text(cand: Dict[str, Any]) -> str:
    parts = (cand.get("content") or {}).get("parts") or []
    # "thought" parts are model reasoning summaries, not reply text
    return "".join(
        str(p.get("text") or "")
        for p in parts
        if isinstance(p, dict) and not p.get("thought")
    )


def _grounding_sources(cand: Dict[str, Any]) -> List[str]:
    chunks = (cand.get("groundingMetadata") or {}).get("groundingChunks") or []
    seen: Dict[str, None] = {}
    for chunk in chunks:
        uri = ((chunk or {}).get("web") or {}).get("uri")
        if isinstance(uri, str) and uri:
            seen.setdefault(uri, None)
    return list(seen)


# -----------------------------
# Gateway
# -----------------------------
class GeminiGateway:
    """Thin async wrapper around the Gemini ``generateContent`` endpoints."""

    def __init__(self, settings: GeminiSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout, connect=10.0))

    @property
    def model(self) -> str:
        return self.settings.model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------
    # Streaming chat
    # -------------------------
    async def stream_chat(self, history: Sequence[Turn], message: str) -> AsyncIterator[str]:
        """Yield reply fragments for ``message`` given the prior ``history``."""
        contents = [
            {"role": _provider_role(t["role"]), "parts": [{"text": t["text"]}]}
            for t in history
            if t["text"]
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        body = {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": self.settings.system_prompt}]},
        }

        url = self._url("streamGenerateContent")
        try:
            async with self._client.stream(
                "POST", url, params={"alt": "sse"}, json=body, headers=self._headers()
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise GatewayFailure(f"stream request failed with HTTP {resp.status_code}: {resp.text[:200]}")
                async for line in resp.aiter_lines():
                    line = line.strip()
                    # SSE frames; blank lines and comments separate events
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise GatewayFailure(f"unparseable stream frame: {data[:80]!r}") from e
                    text = _candidate_text(_candidate(payload))
                    if text:
                        yield text
        except httpx.HTTPError as e:
            raise GatewayFailure(f"stream transport error: {e}") from e

    # -------------------------
    # One-shot generation
    # -------------------------
    async def generate(
        self,
        prompt: str,
        *,
        response_schema: Optional[Dict[str, Any]] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Generation:
        """Single ``generateContent`` call with linear-backoff retries."""
        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if response_schema is not None:
            body["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": response_schema,
            }
        if tools:
            body["tools"] = tools

        payload = await self._post_with_retries(self._url("generateContent"), body)
        cand = _candidate(payload)
        return Generation(text=_candidate_text(cand), sources=_grounding_sources(cand))

    # -------------------------
    # Internals
    # -------------------------
    def _url(self, method: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}/models/{self.settings.model}:{method}"

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.settings.api_key, "Content-Type": "application/json"}

    async def _post_with_retries(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        attempts = max(1, int(self.settings.max_retries))
        last_err: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._client.post(url, json=body, headers=self._headers())
                if resp.status_code in RETRY_STATUSES:
                    raise httpx.HTTPStatusError(
                        f"HTTP {resp.status_code}", request=resp.request, response=resp
                    )
                if resp.status_code >= 400:
                    raise GatewayFailure(f"request failed with HTTP {resp.status_code}: {resp.text[:200]}")
                try:
                    return resp.json()
                except ValueError as e:
                    raise GatewayFailure("provider returned a non-JSON body") from e
            except httpx.HTTPError as e:
                last_err = e
                if attempt == attempts:
                    break
                delay = self.settings.retry_delay * attempt
                logger.warning("generate retry %d for %s: %s (sleep %.2fs)", attempt, self.settings.model, e, delay)
                await asyncio.sleep(delay)
        logger.error("generate failed for %s: %s", self.settings.model, last_err)
        raise GatewayFailure(f"request failed after {attempts} attempt(s): {last_err}") from last_err


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> GeminiGateway:
    """Create a GeminiGateway from a config dict (e.g., loaded YAML)."""
    g = (cfg or {}).get("gemini", {}) if isinstance(cfg, dict) else {}
    api_key = g.get("api_key") or os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY")
    if not api_key:
        raise RuntimeError("No Gemini API key configured (gemini.api_key, GEMINI_API_KEY or API_KEY).")

    settings = GeminiSettings(
        api_key=str(api_key),
        model=str(g.get("model") or DEFAULT_MODEL),
        base_url=str(g.get("base_url") or DEFAULT_BASE_URL),
        timeout=float(g.get("timeout", 60.0)),
        max_retries=int(g.get("max_retries", 3)),
        retry_delay=float(g.get("retry_delay", 0.75)),
        system_prompt=str(g.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).strip(),
    )
    return GeminiGateway(settings, client=client)

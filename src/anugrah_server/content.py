"""Bible, lyrics and devotional lookups backed by the content gateway."""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from .gateway import ContentGateway, MalformedResponse

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# -----------------------------
# Records
# -----------------------------
class BiblePassage(BaseModel):
    reference: str
    text: str
    translation: str
    language: str
    summary: Optional[str] = None


class SongLyrics(BaseModel):
    title: str
    artist: str
    lyrics: str = Field(..., description="Stanzas separated by blank lines.")
    themes: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class DailyDevotional(BaseModel):
    date: str = ""
    title: str
    scripture: str
    content: str
    prayer: str


# -----------------------------
# Response schemas (provider JSON-schema subset)
# -----------------------------
_STRING = {"type": "STRING"}

BIBLE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "reference": {"type": "STRING", "description": "e.g., John 3:16"},
        "text": {"type": "STRING", "description": "The full scripture text"},
        "translation": {"type": "STRING", "description": "The abbreviation of the translation used"},
        "language": _STRING,
        "summary": {"type": "STRING", "description": "Brief context or summary"},
    },
    "required": ["reference", "text", "translation", "language"],
}

DEVOTIONAL_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "date": _STRING,
        "title": _STRING,
        "scripture": _STRING,
        "content": _STRING,
        "prayer": _STRING,
    },
    "required": ["title", "scripture", "content", "prayer"],
}

# Search grounding cannot be combined with a response schema.
SEARCH_TOOLS: List[Dict[str, Any]] = [{"google_search": {}}]

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def _parse_record(text: str, model: Type[M], *, what: str) -> M:
    if not (text or "").strip():
        raise MalformedResponse(f"empty {what} response")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"{what} response is not valid JSON") from e
    if not isinstance(data, dict):
        raise MalformedResponse(f"{what} response is not a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"{what} response is missing fields: {e.error_count()} error(s)") from e


def extract_json_block(text: str) -> str:
    """Return the outermost ``{...}`` span of a reply (it may be wrapped in markdown fences)."""
    m = _JSON_BLOCK.search(text or "")
    return m.group(0) if m else ""


# -----------------------------
# Services
# -----------------------------
async def fetch_bible_passage(
    gateway: ContentGateway,
    query: str,
    language: str = "English",
    translation: str = "NIV",
) -> BiblePassage:
    prompt = f"""
Retrieve the Bible passage for: "{query}".
Language: {language}.
Preferred Translation/Version: {translation}.

Special Instructions:
- If the language is "Nepali (Romanized)", output the Nepali translation transliterated into the Roman/English script. This is VERY important. Do NOT output Devanagari script for "Nepali (Romanized)".
- If the language is "Nepali", output standard Devanagari script (NNRV).
- If the user enters a topic (e.g., "Love"), find a relevant passage.
- Ensure the text is accurate to the requested translation.
- Provide a brief 1-sentence summary/context.
"""
    gen = await gateway.generate(prompt, response_schema=BIBLE_SCHEMA)
    return _parse_record(gen.text, BiblePassage, what="bible passage")


async def fetch_song_lyrics(gateway: ContentGateway, query: str) -> SongLyrics:
    prompt = f"""
Search for the lyrics for the Christian/Worship song: "{query}".

Instructions:
1. Search the web for the accurate lyrics. Prioritize sources like nepalichristiansongs.com for Nepali songs.
2. If the song is Nepali but the query is in English script (Romanized), return the lyrics in Romanized Nepali.
3. Return the response strictly as a JSON object. Do not include any other text (like markdown backticks) before or after the JSON.

JSON Structure:
{{
  "title": "Song Title",
  "artist": "Artist Name",
  "lyrics": "Full lyrics with newlines...",
  "themes": ["Theme 1", "Theme 2"]
}}
"""
    gen = await gateway.generate(prompt, tools=SEARCH_TOOLS)
    block = extract_json_block(gen.text)
    if not block:
        logger.warning("lyrics reply for %r carried no JSON object", query)
    song = _parse_record(block, SongLyrics, what="lyrics")
    # Grounding metadata is authoritative for sources
    song.sources = list(gen.sources)
    return song


async def generate_daily_devotional(gateway: ContentGateway, today: Optional[date] = None) -> DailyDevotional:
    day = (today or date.today()).isoformat()
    prompt = f"""
Generate a short, inspiring Christian daily devotional for today ({day}).
Include a title, a key scripture verse (text and reference), a 1-paragraph reflection, and a short closing prayer.
"""
    gen = await gateway.generate(prompt, response_schema=DEVOTIONAL_SCHEMA)
    devotional = _parse_record(gen.text, DailyDevotional, what="devotional")
    if not devotional.date:
        devotional.date = day
    return devotional

"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from anugrah_server.gateway import GatewayFailure, Generation, Turn  # noqa: E402


class FakeGateway:
    """Scripted gateway: each script item is a fragment, or an exception to raise."""

    def __init__(self, script: Sequence[Union[str, BaseException]] = (), generation: Optional[Generation] = None):
        self.script = list(script)
        self.generation = generation or Generation(text="{}")
        self.calls: List[Tuple[List[Turn], str]] = []
        self.prompts: List[Dict[str, Any]] = []
        self.closed = 0
        self.model = "fake-model"

    async def stream_chat(self, history, message):
        self.calls.append((list(history), message))
        try:
            for item in self.script:
                if isinstance(item, BaseException):
                    raise item
                await asyncio.sleep(0)
                yield item
        finally:
            self.closed += 1

    async def generate(self, prompt, *, response_schema=None, tools=None):
        self.prompts.append({"prompt": prompt, "response_schema": response_schema, "tools": tools})
        if isinstance(self.generation, BaseException):
            raise self.generation
        return self.generation


class GatedGateway(FakeGateway):
    """Holds the stream open after the first fragment until ``release`` is set."""

    def __init__(self, script: Sequence[str] = ("first", "second")):
        super().__init__(script)
        self.release: Optional[asyncio.Event] = None

    async def stream_chat(self, history, message):
        self.calls.append((list(history), message))
        self.release = self.release or asyncio.Event()
        try:
            for i, item in enumerate(self.script):
                if i == 1:
                    await self.release.wait()
                yield item
        finally:
            self.closed += 1


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway(["Grace ", "is ", "unmerited favor."])


@pytest.fixture
def failing_gateway() -> FakeGateway:
    return FakeGateway(["I th", "ink...", GatewayFailure("connection reset")])


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def config_file(tmp_path: Path) -> Path:
    """Minimal config with a fixed greeting, isolated from the repo's config.yaml."""
    p = tmp_path / "config.yaml"
    p.write_text(
        "chat:\n"
        "  greeting: Hello from Anugrah.\n"
        "  max_sessions: 4\n"
        "logging:\n"
        "  level: WARNING\n",
        encoding="utf-8",
    )
    return p


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in ["ANUGRAH_CONFIG", "GEMINI_API_KEY", "API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("ANUGRAH__"):
            monkeypatch.delenv(var, raising=False)
    yield

"""Assistant server for the Anugrah church app.

Streams pastoral-assistant chat replies from Gemini into per-session
transcripts, and serves Bible passage, song lyrics and devotional lookups.

Typical usage
-------------
from anugrah_server import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`anugrah_server.server.create_app`; the import is
    deferred so that ``import anugrah_server`` stays cheap.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)

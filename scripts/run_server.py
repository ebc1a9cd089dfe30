"""Script to launch the Anugrah assistant server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run from a checkout)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from anugrah_server.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Anugrah assistant server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $ANUGRAH_CONFIG or config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        help="uvicorn log level (default: info)",
    )
    args = parser.parse_args()

    # Sessions live in process memory, so there is no --workers flag.
    if args.reload:
        # The reloader imports the factory itself; hand it the config via env.
        if args.config:
            os.environ["ANUGRAH_CONFIG"] = os.path.abspath(args.config)
        uvicorn.run(
            "anugrah_server.server:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=True,
            reload_dirs=[SRC_DIR],
            log_level=args.log_level,
        )
        return

    app = create_app(config_path=args.config)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()

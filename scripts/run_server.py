"""Script to launch the webhook chat server."""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from webhook_chat.server import create_app  # noqa: E402


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the webhook chat server.")
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
        help="Restart the server when source files change (development only)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $WEBHOOK_CHAT_CONFIG or config/default.yaml)",
    )
    args = parser.parse_args(argv)

    if args.reload:
        # The reloader re-imports the app in a child process, so it needs an
        # import string and picks the config file up from the environment.
        if args.config:
            os.environ["WEBHOOK_CHAT_CONFIG"] = args.config
        uvicorn.run(
            "webhook_chat.server:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=True,
            reload_dirs=[SRC_DIR],
            log_level="info",
        )
        return

    # Rate-limit state lives in this process, so a single worker is used.
    app = create_app(config_path=args.config)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()

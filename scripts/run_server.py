"""Script to launch the hubot relay server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from hubot_relay.config import load_config, setup_logging  # noqa: E402
from hubot_relay.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the hubot relay server.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $HUBOT_RELAY_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind the server to (default: server.host from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind the server to (default: $PORT or 8080)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg)

    # Single worker: the deduplication registry lives in process memory.
    app = create_app(config=cfg)

    server_cfg = cfg.get("server", {})
    uvicorn.run(
        app,
        host=args.host or server_cfg.get("host", "0.0.0.0"),
        port=args.port or int(server_cfg.get("port", 8080)),
        log_level=str(cfg.get("logging", {}).get("level", "info")).lower(),
    )


if __name__ == "__main__":
    main()

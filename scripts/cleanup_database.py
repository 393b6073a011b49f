"""Remove legacy ``{query, timestamp}`` entries from every stored conversation."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from hubot_relay.cleanup import cleanup_conversations  # noqa: E402
from hubot_relay.config import load_config, setup_logging  # noqa: E402
from hubot_relay.store import ConversationStore, RealtimeDatabase  # noqa: E402


async def run(cfg: dict, dry_run: bool) -> dict:
    db_cfg = cfg.get("database", {})
    if not db_cfg.get("url"):
        raise SystemExit("FIREBASE_DATABASE_URL (database.url) is required")
    db = RealtimeDatabase(
        db_cfg["url"],
        auth_token=db_cfg.get("auth_token"),
        timeout=float(db_cfg.get("timeout_seconds", 10.0)),
    )
    try:
        store = ConversationStore(db, root=db_cfg.get("root") or "conversations")
        report = await cleanup_conversations(store, dry_run=dry_run)
    finally:
        await db.aclose()
    return report.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="Strip legacy entries from stored conversations.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config file")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg)
    print(json.dumps(asyncio.run(run(cfg, args.dry_run)), indent=2))


if __name__ == "__main__":
    main()

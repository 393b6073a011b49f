"""One-shot maintenance pass that strips legacy-format conversation entries."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .models import is_legacy_entry
from .store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    users_scanned: int = 0
    users_updated: int = 0
    entries_removed: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {
            "usersScanned": d["users_scanned"],
            "usersUpdated": d["users_updated"],
            "entriesRemoved": d["entries_removed"],
            "dryRun": d["dry_run"],
        }


def _drop_legacy(entries: List[Any]) -> Optional[List[Any]]:
    kept = [e for e in entries if not is_legacy_entry(e)]
    return kept if len(kept) != len(entries) else None


async def cleanup_conversations(store: ConversationStore, *, dry_run: bool = False) -> CleanupReport:
    """Drop ``{query, timestamp}`` entries; rewrite a user only if something was removed.

    Each user is reloaded and rewritten under the store's per-user lock, so
    exchanges appended while the pass runs are kept.
    """
    report = CleanupReport(dry_run=dry_run)
    conversations = await store.list_conversations()
    for key, entries in conversations.items():
        report.users_scanned += 1
        if dry_run:
            stored, kept = entries, _drop_legacy(entries)
        else:
            stored, kept = await store.rewrite(key, _drop_legacy)
        if kept is None:
            continue
        removed = len(stored) - len(kept)
        report.entries_removed += removed
        report.users_updated += 1
        if dry_run:
            logger.info("Would remove %d legacy entries for %s", removed, key)
        else:
            logger.info("Removed %d legacy entries for %s", removed, key)

    logger.info(
        "Cleanup finished: %d users scanned, %d updated, %d entries removed",
        report.users_scanned,
        report.users_updated,
        report.entries_removed,
    )
    return report

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from codeloop.memory.session_store import SessionStore


def prune_sessions(
    store: SessionStore,
    *,
    max_sessions: int,
    retention_days: int,
    keep: set[str] | None = None,
) -> list[str]:
    """Delete sessions past retention, then all but the newest ``max_sessions``.

    Sessions named in ``keep`` (the active one) are never deleted. Returns
    the ids that were removed.
    """
    keep = keep or set()
    cutoff = (datetime.now(UTC) - timedelta(days=max(1, retention_days))).isoformat(timespec="microseconds")
    sessions = store.list_sessions()

    removed: list[str] = []
    survivors = []
    for summary in sessions:
        if summary.session_id not in keep and summary.updated_at < cutoff:
            store.delete(summary.session_id)
            removed.append(summary.session_id)
        else:
            survivors.append(summary)

    if max_sessions > 0:
        for summary in survivors[max_sessions:]:
            if summary.session_id in keep:
                continue
            store.delete(summary.session_id)
            removed.append(summary.session_id)

    if removed:
        logger.info(f"Pruned {len(removed)} session(s) from {store.directory}")
    return removed

"""Append-only log of operator decisions about duplicate groups."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from .catalog import resolve_entity_type
from .database import SQLiteStore, utcnow_iso
from .errors import ValidationError


LOGGER = logging.getLogger(__name__)

HISTORY_ACTIONS = ("approved", "declined")


@dataclass
class HistoryEntry:
    group_sig: str
    action: str
    keep_type: Optional[str] = None
    decided_at: Optional[str] = None


class MergeHistory(SQLiteStore):
    """Decisions keyed by group signature; the latest decision wins."""

    def record(self, group_sig: str, action: str, keep_type: Optional[str] = None) -> None:
        signature = (group_sig or "").strip()
        if not signature:
            raise ValidationError("group_sig is required")
        if action not in HISTORY_ACTIONS:
            raise ValidationError(f"Unknown history action: {action!r}")
        if keep_type:
            keep_type = resolve_entity_type(keep_type).key
        else:
            keep_type = None

        with self._session() as conn:
            self._execute(
                conn,
                """
                INSERT INTO merge_history(group_sig, action, keep_type, decided_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_sig) DO UPDATE SET
                    action = excluded.action,
                    keep_type = excluded.keep_type,
                    decided_at = excluded.decided_at
                """,
                (signature, action, keep_type, utcnow_iso()),
                action="merge_history.upsert",
                table="merge_history",
            )
        LOGGER.debug("Recorded %s decision for %s", action, signature)

    def list(self) -> List[HistoryEntry]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT group_sig, action, keep_type, decided_at FROM merge_history ORDER BY id",
                action="merge_history.list",
                table="merge_history",
            ).fetchall()
        return [self._entry_from_row(row) for row in rows]

    def reset(self) -> int:
        with self._session() as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM merge_history",
                action="merge_history.reset",
                table="merge_history",
            )
            removed = int(cursor.rowcount)
        LOGGER.info("Cleared %s merge history entries", removed)
        return removed

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            group_sig=row["group_sig"],
            action=row["action"],
            keep_type=row["keep_type"],
            decided_at=row["decided_at"],
        )


__all__ = ["HISTORY_ACTIONS", "HistoryEntry", "MergeHistory"]

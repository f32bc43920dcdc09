"""Shared SQLite plumbing used by the catalog, job and history stores."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

from ..config import AppConfig
from .errors import StoreFailure


LOGGER = logging.getLogger(__name__)

_CONNECT_TIMEOUT_SECONDS = 30.0


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with microseconds."""

    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SQLiteStore:
    """Base class exposing instrumented connections and statements."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting query events."""

        self._event_emitter = emitter

    def _emit_event(self, event_type: str, message: str, **payload: Any) -> None:
        if self._event_emitter is None:
            return
        filtered = {key: value for key, value in payload.items() if value is not None}
        self._event_emitter(event_type, message, payload=filtered)

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:  # pragma: no cover - instrumentation only
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...]
        if parameters is None:
            params = ()
        elif isinstance(parameters, tuple):
            params = parameters
        else:
            params = tuple(parameters)
        sql_summary = self._summarize_sql(statement)
        with self._track_db_event(
            action,
            table=table,
            sql=sql_summary,
            parameter_count=len(params),
        ) as event:
            try:
                cursor = connection.execute(statement, params)
            except sqlite3.Error as exc:
                event.setdefault("status", "error")
                event.setdefault("error", f"{exc.__class__.__name__}: {exc}")
                LOGGER.debug("Statement %s failed: %s", action, exc)
                raise StoreFailure(f"{action} failed: {exc}") from exc
            rowcount = cursor.rowcount if cursor.rowcount >= 0 else None
            if rowcount is not None:
                event.setdefault("rowcount", int(rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        try:
            connection = sqlite3.connect(
                self._db_path,
                timeout=_CONNECT_TIMEOUT_SECONDS,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StoreFailure(f"Could not open database {self._db_path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        self._execute(
            connection,
            "PRAGMA foreign_keys = ON",
            action="pragma_foreign_keys",
        )
        return connection

    @contextlib.contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection wrapped in a single transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises. ``immediate`` takes the write lock up front.
        """

        connection = self._connect()
        try:
            self._execute(
                connection,
                "BEGIN IMMEDIATE" if immediate else "BEGIN",
                action="transaction.begin",
            )
            try:
                yield connection
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    connection.execute("ROLLBACK")
                raise
            self._execute(connection, "COMMIT", action="transaction.commit")
        finally:
            connection.close()

    @contextlib.contextmanager
    def _session(
        self, connection: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction or open a short-lived one."""

        if connection is not None:
            yield connection
            return
        with self.transaction() as owned:
            yield owned


__all__ = ["SQLiteStore", "utcnow_iso"]

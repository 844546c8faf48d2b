"""SQLite persistence for in-progress contract drafts.

This module provides the resumable draft cache used by the workflow:
- One row per lead; saving overwrites (last write wins).
- Drafts older than the TTL (24 hours by default) are deleted lazily on
  the next read, never by a background sweep.
- Saving a draft whose contract is already signed discards it instead.

`DraftAutosaver` layers a debounced, fire-and-forget write on top so the
editor never blocks on disk.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from studioflow.orchestrator.models import ContractDraft, ContractStatus
from studioflow.utils.dates import coerce_dt, to_epoch, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


class DraftStoreError(Exception):
    """Raised when persistence operations fail."""


def _json_loads(text: Optional[str], default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


class DraftStore:
    """SQLite-backed store for contract drafts, keyed by lead."""

    def __init__(
        self,
        db_path: Union[str, Path] = "drafts.db",
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_path = str(db_path)
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        try:
            self.conn.close()
        except sqlite3.Error as e:
            raise DraftStoreError(str(e)) from e

    def __enter__(self) -> "DraftStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create tables if they do not exist."""

        try:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS drafts (
                    lead_id TEXT PRIMARY KEY,
                    step TEXT NOT NULL,
                    fields_json TEXT NOT NULL,
                    meta_json TEXT NOT NULL,
                    saved_at TEXT NOT NULL,
                    saved_at_ts INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_drafts_saved_at_ts ON drafts(saved_at_ts);
                """
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise DraftStoreError(f"Failed to initialize schema: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, lead_id: str, draft: ContractDraft) -> bool:
        """Insert or overwrite the draft for a lead.

        Returns:
            True if a row was written. False when the draft's contract is
            already signed, in which case any stored draft is discarded.
        """

        if draft.lead_id != lead_id:
            raise DraftStoreError(f"Draft belongs to lead {draft.lead_id}, not {lead_id}")

        if draft.contract_status == ContractStatus.SIGNED:
            self.discard(lead_id)
            return False

        data = draft.to_dict()
        fields = data.pop("fields")
        step = data.pop("step")
        data.pop("saved_at")
        data.pop("lead_id")

        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO drafts (lead_id, step, fields_json, meta_json, saved_at, saved_at_ts)
                    VALUES (:lead_id, :step, :fields_json, :meta_json, :saved_at, :saved_at_ts)
                    ON CONFLICT(lead_id) DO UPDATE SET
                        step=excluded.step,
                        fields_json=excluded.fields_json,
                        meta_json=excluded.meta_json,
                        saved_at=excluded.saved_at,
                        saved_at_ts=excluded.saved_at_ts
                    """,
                    {
                        "lead_id": lead_id,
                        "step": step,
                        "fields_json": json.dumps(fields, default=str),
                        "meta_json": json.dumps(data, default=str),
                        "saved_at": to_iso(draft.saved_at),
                        "saved_at_ts": to_epoch(draft.saved_at),
                    },
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise DraftStoreError(f"Failed to save draft for lead {lead_id}: {e}") from e

        logger.debug("Draft saved for lead %s at step %s", lead_id, step)
        return True

    def load(self, lead_id: str) -> Optional[ContractDraft]:
        """Return the non-expired draft for a lead, or None.

        An expired draft is deleted as a side effect.
        """

        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT * FROM drafts WHERE lead_id=?",
                    (lead_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise DraftStoreError(f"Failed to load draft for lead {lead_id}: {e}") from e

        if row is None:
            return None

        saved_at = coerce_dt(row["saved_at"])
        if saved_at is None or self.is_expired(saved_at):
            logger.info("Draft for lead %s expired (saved %s); discarding", lead_id, row["saved_at"])
            self.discard(lead_id)
            return None

        meta: Dict[str, Any] = _json_loads(row["meta_json"], {})
        return ContractDraft.from_dict(
            {
                **meta,
                "lead_id": row["lead_id"],
                "step": row["step"],
                "fields": _json_loads(row["fields_json"], {}),
                "saved_at": saved_at,
            }
        )

    def discard(self, lead_id: str) -> None:
        """Delete the draft for a lead (no-op if none exists)."""

        with self._lock:
            try:
                cur = self.conn.execute("DELETE FROM drafts WHERE lead_id=?", (lead_id,))
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise DraftStoreError(f"Failed to discard draft for lead {lead_id}: {e}") from e

        if cur.rowcount:
            logger.info("Cleared saved contract draft for lead %s", lead_id)

    def is_expired(self, saved_at: datetime) -> bool:
        return self.clock() - saved_at > self.ttl

    def lead_ids(self) -> List[str]:
        """Lead ids with a stored draft, expired rows included."""

        with self._lock:
            try:
                rows = self.conn.execute("SELECT lead_id FROM drafts ORDER BY saved_at_ts DESC").fetchall()
            except sqlite3.Error as e:
                raise DraftStoreError(f"Failed to list stored drafts: {e}") from e
        return [str(r["lead_id"]) for r in rows]


class DraftAutosaver:
    """Debounced, fire-and-forget draft writes.

    Each `schedule` replaces the pending snapshot and restarts the timer, so
    rapid edits collapse into one write of the latest state.
    """

    def __init__(self, store: DraftStore, delay_seconds: float = 0.5) -> None:
        self.store = store
        self.delay_seconds = delay_seconds
        self._lock = threading.Lock()
        self._pending: Optional[ContractDraft] = None
        self._timer: Optional[threading.Timer] = None

    def schedule(self, draft: ContractDraft) -> None:
        snapshot = copy.deepcopy(draft)
        if self.delay_seconds <= 0:
            self._write(snapshot)
            return

        with self._lock:
            self._pending = snapshot
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Write the pending snapshot now, if any."""

        with self._lock:
            pending = self._take_pending()
        if pending is not None:
            self._write(pending)

    def cancel(self) -> None:
        """Drop the pending snapshot without writing it."""

        with self._lock:
            self._take_pending()

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def _take_pending(self) -> Optional[ContractDraft]:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending, self._pending = self._pending, None
        return pending

    def _fire(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, None
            self._timer = None
        if pending is None:
            return
        try:
            self._write(pending)
        except DraftStoreError:
            logger.exception("Autosave failed for lead %s", pending.lead_id)

    def _write(self, draft: ContractDraft) -> None:
        self.store.save(draft.lead_id, draft)

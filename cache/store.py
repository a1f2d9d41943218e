"""
cache/store.py -- Persisted client state as named JSON blobs.

Two blobs survive process restarts:
  "session"         the persisted subset of the session ({identity,
                    authenticated, verified, requires_password_reset});
                    written by SessionManager
  "reference-data"  slow-changing taxonomy (organization types), independent
                    of session lifetime; written by OrganizationsStore

Usage:
    state = PersistedStateStore("sqlite:///bizdir_state.db")
    state.save(SESSION_BLOB, {"authenticated": False})
    data = state.load(SESSION_BLOB)     # {} when absent
    state.close()

Pattern: Repository over SQLAlchemy Core (same as the other stores). All
queries use bound parameters.

Degraded mode: with no database URL, or when the database cannot be opened,
the store keeps blobs in process memory and logs a warning. Reads never
raise -- a first run, a corrupt row, and an unavailable disk all read as {}.

Layer rule: no imports from auth/, directory/, or sync/.
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("bizdir.state")

SESSION_BLOB = "session"
REFERENCE_BLOB = "reference-data"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_blobs = Table(
    "state_blobs",
    _metadata,
    Column("name", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON object
    Column("saved_at", String(32), nullable=False),  # ISO 8601
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; set per-connection because PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PersistedStateStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        self._memory: dict[str, dict] = {}
        self.engine: Optional[Engine] = None
        if not db_url:
            logger.info("No state database configured -- persisted state kept in memory")
            return
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        try:
            engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(engine, "connect", _set_wal_mode)
            _metadata.create_all(engine)
        except SQLAlchemyError as e:
            logger.warning("State database unavailable (%s) -- persisted state kept in memory", e)
            return
        self.engine = engine

    @property
    def durable(self) -> bool:
        """True when blobs are written to a database rather than memory."""
        return self.engine is not None

    def load(self, name: str) -> dict:
        """Return the blob stored under name, or {} if absent or unreadable."""
        if self.engine is None:
            return copy.deepcopy(self._memory.get(name, {}))
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(_blobs.c.data).where(_blobs.c.name == name)).fetchone()
        except SQLAlchemyError as e:
            logger.warning("Could not read state blob %r: %s", name, e)
            return {}
        if row is None:
            return {}
        try:
            data = json.loads(row[0])
        except ValueError:
            logger.warning("State blob %r is not valid JSON -- ignoring it", name)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, name: str, data: dict) -> None:
        """Replace the blob stored under name. Failures are logged, not raised."""
        if self.engine is None:
            self._memory[name] = copy.deepcopy(data)
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(_blobs.delete().where(_blobs.c.name == name))
                conn.execute(_blobs.insert().values(name=name, data=json.dumps(data), saved_at=_now_iso()))
        except SQLAlchemyError as e:
            logger.warning("Could not write state blob %r: %s", name, e)

    def clear(self, name: str) -> None:
        if self.engine is None:
            self._memory.pop(name, None)
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(_blobs.delete().where(_blobs.c.name == name))
        except SQLAlchemyError as e:
            logger.warning("Could not clear state blob %r: %s", name, e)

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()

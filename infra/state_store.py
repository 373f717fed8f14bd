"""
yield-allocator Infrastructure: State Store

Persistent state management with atomic writes.
Backends: in-memory (tests), JSON file (temp file + rename), SQLite (single row).
"""

import copy
import json
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import logging

from core.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "circuit_breaker": {
        "is_paused": False,
        "reason": None,
        "paused_at": None,
        "paused_by": None,
    },
    "risk_history": {},      # opportunity_id -> bounded list of score snapshots
    "investments": [],       # append-only committed investments
    "decisions": [],         # append-only pipeline decisions per user
    "updated_at": None,
}


def _default_state() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_STATE)


class StateBackend(ABC):
    """Storage primitive behind StateStore."""

    def __init__(self):
        self._tx_lock = threading.RLock()

    @abstractmethod
    def read(self) -> Optional[Dict[str, Any]]:
        """Return the raw persisted state, or None when nothing was written yet."""

    @abstractmethod
    def write(self, state: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def describe(self) -> str:
        ...

    def transact(self, fn: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]) -> Dict[str, Any]:
        """Read, transform and write back; default is serialized by a process lock."""
        with self._tx_lock:
            state = fn(self.read())
            self.write(state)
            return state

    def close(self) -> None:
        pass


class MemoryStateBackend(StateBackend):
    """Volatile backend for tests and DRY_RUN experiments."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data = copy.deepcopy(initial) if initial is not None else None

    def read(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data) if self._data is not None else None

    def write(self, state: Dict[str, Any]) -> None:
        self._data = copy.deepcopy(state)

    def describe(self) -> str:
        return "memory"


class JsonFileBackend(StateBackend):
    """JSON document on disk, written atomically via temp file + os.replace."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.debug("No state file found, using defaults")
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid state file format in {self.path}")
        return data

    def write(self, state: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def describe(self) -> str:
        return f"json:{self.path}"


class SQLiteStateBackend(StateBackend):
    """
    Single-row SQLite document store.

    Read-modify-write runs inside BEGIN IMMEDIATE so concurrent writers
    (other processes included) serialize on the database lock.
    """

    def __init__(self, path, timeout: float = 5.0):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        conn = self._connect()
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS agent_state ("
                " id INTEGER PRIMARY KEY CHECK (id = 1),"
                " payload TEXT NOT NULL,"
                " updated_at TEXT NOT NULL)"
            )
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path), timeout=self._timeout, isolation_level=None)

    @staticmethod
    def _read_row(conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT payload FROM agent_state WHERE id = 1").fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    @staticmethod
    def _write_row(conn: sqlite3.Connection, state: Dict[str, Any]) -> None:
        conn.execute(
            "INSERT INTO agent_state (id, payload, updated_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at",
            (json.dumps(state, default=str), datetime.now(timezone.utc).isoformat()),
        )

    def read(self) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            return self._read_row(conn)
        finally:
            conn.close()

    def write(self, state: Dict[str, Any]) -> None:
        conn = self._connect()
        try:
            self._write_row(conn, state)
        finally:
            conn.close()

    def transact(self, fn: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]) -> Dict[str, Any]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                state = fn(self._read_row(conn))
                self._write_row(conn, state)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return state
        finally:
            conn.close()

    def describe(self) -> str:
        return f"sqlite:{self.path}"


class StateStore:
    """
    Persistent agent state.

    Features:
    - Defaults merged on every load
    - Atomic writes through the configured backend
    - mutate(fn) for read-modify-write without lost updates

    Backend failures raise StoreUnavailable; callers decide the safe default.
    """

    def __init__(self, backend: Optional[StateBackend] = None, state_file: Optional[str] = None):
        if backend is None:
            if state_file is None:
                state_file = os.getenv("STATE_FILE", "data/.state.json")
            backend = JsonFileBackend(state_file)
        self._backend = backend
        logger.info(f"Initialized StateStore ({backend.describe()})")

    @staticmethod
    def _merge_defaults(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        state = _default_state()
        if data:
            state.update(data)
        return state

    def load(self) -> Dict[str, Any]:
        """
        Load state with defaults merged.

        Raises:
            StoreUnavailable: backend could not be read
        """
        try:
            data = self._backend.read()
        except Exception as e:
            logger.error(f"Failed to load state from {self._backend.describe()}: {e}")
            raise StoreUnavailable(self._backend.describe(), e) from e
        return self._merge_defaults(data)

    def save(self, state: Dict[str, Any]) -> None:
        state = dict(state)
        state["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            self._backend.write(state)
        except Exception as e:
            logger.error(f"Failed to save state to {self._backend.describe()}: {e}")
            raise StoreUnavailable(self._backend.describe(), e) from e
        logger.debug("Saved state")

    def mutate(self, fn: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        """
        Atomically apply fn to the state (fn edits the dict in place).

        Returns:
            The state as written
        """
        def apply(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            state = self._merge_defaults(raw)
            fn(state)
            state["updated_at"] = datetime.now(timezone.utc).isoformat()
            return state

        try:
            return self._backend.transact(apply)
        except StoreUnavailable:
            raise
        except (OSError, ValueError, sqlite3.Error) as e:
            logger.error(f"Failed to mutate state in {self._backend.describe()}: {e}")
            raise StoreUnavailable(self._backend.describe(), e) from e

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def reset(self) -> Dict[str, Any]:
        logger.warning("Full state reset")
        state = _default_state()
        self.save(state)
        return state

    def describe(self) -> str:
        return self._backend.describe()

    def close(self) -> None:
        self._backend.close()


def create_state_store_from_config(cfg: Optional[Dict[str, Any]]) -> StateStore:
    """
    Build a StateStore from the `state` section of app.yaml.

    cfg: {"store": "memory" | "json" | "sqlite", "path": "..."}
    """
    cfg = cfg or {}
    kind = str(cfg.get("store", "json")).lower()
    if kind == "memory":
        backend: StateBackend = MemoryStateBackend()
    elif kind == "sqlite":
        backend = SQLiteStateBackend(cfg.get("path", "data/agent_state.db"))
    elif kind == "json":
        backend = JsonFileBackend(cfg.get("path", "data/.state.json"))
    else:
        raise ValueError(f"Unknown state store backend: {kind}")
    return StateStore(backend=backend)

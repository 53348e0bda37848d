"""Checkpoint Store: durable, namespaced snapshots of workflow state.

Thread snapshots live in a LangGraph checkpoint saver (``SqliteSaver`` on disk,
``InMemorySaver`` for tests), keyed by the structured thread id as
``configurable.thread_id``. The engine graph writes them as it runs;
``WorkflowCheckpointStore`` reads them back through ``get_tuple``/``list`` and
validates the ``workflow`` channel into a ``WorkflowState``.

Session records are not workflow state. They go to a small key-value
``RecordBackend`` (a directory of JSON files, or memory) that stores opaque
text payloads under a namespace key.
"""

from __future__ import annotations

import fcntl
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Protocol, TypedDict
from urllib.parse import quote, unquote

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import PersistenceError
from .models import WorkflowState
from .settings import RuntimeSettings
from .threads import namespace_for

logger = logging.getLogger(__name__)

WORKFLOW_CHANNEL = "workflow"
_WRITER_NODE = "checkpoint_write"


class CheckpointRecord(BaseModel):
    thread_id: str
    state: WorkflowState
    updated_at: datetime


def state_to_payload(state: WorkflowState) -> dict[str, Any]:
    """JSON-safe form of a state, as held in the graph's ``workflow`` channel."""
    return state.model_dump(mode="json")


def state_from_payload(payload: Any, label: str) -> WorkflowState:  # noqa: ANN401 - raw channel value.
    """Raises ``PersistenceError`` if the channel value is not a valid state."""
    try:
        return WorkflowState.model_validate(payload)
    except PydanticValidationError as exc:
        raise PersistenceError(f"checkpoint {label} failed validation: {exc}") from exc


def thread_config(thread_id: str) -> dict[str, Any]:
    return {"configurable": {"thread_id": thread_id}}


# ---------------------------------------------------------------------------
# Record backends
# ---------------------------------------------------------------------------


class RecordBackend(Protocol):
    def get(self, namespace: str) -> str | None: ...

    def put(self, namespace: str, payload: str) -> None: ...

    def delete(self, namespace: str) -> None: ...

    def list_namespaces(self, prefix: str = "") -> list[str]: ...


class InMemoryRecordBackend:
    """Process-local record backend for tests and throwaway runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str) -> str | None:
        with self._lock:
            return self._data.get(namespace)

    def put(self, namespace: str, payload: str) -> None:
        with self._lock:
            self._data[namespace] = payload

    def delete(self, namespace: str) -> None:
        with self._lock:
            self._data.pop(namespace, None)

    def list_namespaces(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(namespace for namespace in self._data if namespace.startswith(prefix))


_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be replaced with ``os.replace``
    while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise PersistenceError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise PersistenceError(f"{label} at {path} is empty")
    return text


class FileRecordBackend:
    """One JSON file per namespace under ``root``.

    File names are the percent-encoded namespace, so listing can recover the
    namespace exactly.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create record directory {root}: {exc}") from exc

    def _path(self, namespace: str) -> Path:
        return self.root / f"{quote(namespace, safe='')}.json"

    def get(self, namespace: str) -> str | None:
        path = self._path(namespace)
        if not path.is_file():
            return None
        try:
            with _locked_file(path):
                if not path.is_file():
                    return None
                return _safe_read_text(path, f"record {namespace}")
        except OSError as exc:
            raise PersistenceError(f"cannot read record {namespace}: {exc}") from exc

    def put(self, namespace: str, payload: str) -> None:
        path = self._path(namespace)
        try:
            with _locked_file(path):
                _atomic_write_text(path, payload)
        except OSError as exc:
            raise PersistenceError(f"cannot write record {namespace}: {exc}") from exc

    def delete(self, namespace: str) -> None:
        path = self._path(namespace)
        try:
            with _locked_file(path):
                path.unlink(missing_ok=True)
            path.with_suffix(path.suffix + _LOCK_SUFFIX).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot delete record {namespace}: {exc}") from exc

    def list_namespaces(self, prefix: str = "") -> list[str]:
        try:
            namespaces = [unquote(path.name[: -len(".json")]) for path in self.root.glob("*.json")]
        except OSError as exc:
            raise PersistenceError(f"cannot list records under {self.root}: {exc}") from exc
        return sorted(namespace for namespace in namespaces if namespace.startswith(prefix))


# ---------------------------------------------------------------------------
# Workflow-aware facade over the saver
# ---------------------------------------------------------------------------


class _WriterState(TypedDict):
    workflow: dict[str, Any]


def _keep(state: _WriterState) -> _WriterState:
    return state


class WorkflowCheckpointStore:
    """Reads and writes ``CheckpointRecord``s keyed by validated thread id.

    ``put`` writes through a one-node graph compiled on the same saver, so a
    state stored here and one written by the engine look the same to readers.
    A ``put`` replaces the thread's latest snapshot and drops any step the
    engine had scheduled after it.
    """

    def __init__(
        self,
        checkpointer: BaseCheckpointSaver,
        records: RecordBackend,
        *,
        connection: sqlite3.Connection | None = None,
    ) -> None:
        self.checkpointer = checkpointer
        self.records = records
        self._connection = connection
        writer = StateGraph(_WriterState)
        writer.add_node(_WRITER_NODE, _keep)
        writer.add_edge(START, _WRITER_NODE)
        writer.add_edge(_WRITER_NODE, END)
        self._writer = writer.compile(checkpointer=checkpointer)

    def get_record(self, thread_id: str, *, channel: str | None = None) -> CheckpointRecord | None:
        """Load the latest checkpoint of a thread.

        Raises:
            ValidationError: If ``thread_id`` is malformed.
            PersistenceError: If the saver fails or the stored state is invalid.
        """
        namespace = namespace_for(thread_id, channel)
        try:
            saved = self.checkpointer.get_tuple(thread_config(namespace))
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot read checkpoint {namespace}: {exc}") from exc
        if saved is None:
            return None
        values: Mapping[str, Any] = saved.checkpoint.get("channel_values") or {}
        payload = values.get(WORKFLOW_CHANNEL)
        if payload is None:
            return None
        return CheckpointRecord(
            thread_id=thread_id,
            state=state_from_payload(payload, namespace),
            updated_at=datetime.fromisoformat(saved.checkpoint["ts"]),
        )

    def get(self, thread_id: str, *, channel: str | None = None) -> WorkflowState | None:
        record = self.get_record(thread_id, channel=channel)
        return None if record is None else record.state

    def put(self, thread_id: str, state: WorkflowState, *, channel: str | None = None) -> CheckpointRecord:
        namespace = namespace_for(thread_id, channel)
        try:
            self._writer.update_state(
                thread_config(namespace), {WORKFLOW_CHANNEL: state_to_payload(state)}, as_node=_WRITER_NODE
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot write checkpoint {namespace}: {exc}") from exc
        record = self.get_record(thread_id, channel=channel)
        assert record is not None
        return record

    def delete(self, thread_id: str, *, channel: str | None = None) -> None:
        namespace = namespace_for(thread_id, channel)
        try:
            self.checkpointer.delete_thread(namespace)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot delete checkpoint {namespace}: {exc}") from exc

    def list_threads(self, prefix: str = "") -> list[str]:
        """Every thread id (channels included) with at least one checkpoint."""
        try:
            thread_ids = {saved.config["configurable"]["thread_id"] for saved in self.checkpointer.list(None)}
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot list checkpoints: {exc}") from exc
        return sorted(thread_id for thread_id in thread_ids if thread_id.startswith(prefix))

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None


def build_checkpoint_store(settings: RuntimeSettings, repo_root: Path) -> WorkflowCheckpointStore:
    """Construct the configured store. The caller owns it and must ``close()`` it."""
    if settings.checkpoint_backend == "memory":
        return WorkflowCheckpointStore(InMemorySaver(), InMemoryRecordBackend())

    records = FileRecordBackend(settings.checkpoint_root_path(repo_root))
    db_path = settings.checkpoint_db_path(repo_root)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
    except (OSError, sqlite3.Error) as exc:
        raise PersistenceError(f"cannot open checkpoint database {db_path}: {exc}") from exc
    logger.info("Opened checkpoint database %s", db_path)
    return WorkflowCheckpointStore(SqliteSaver(conn), records, connection=conn)

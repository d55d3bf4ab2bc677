from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Protocol, TypeVar

from pydantic import ValidationError

from .models import RESOURCE_TYPES, Resource

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

_CLUSTER_SCOPE_DIR = "_cluster"


class NotFoundError(LookupError):
    """The requested object does not exist."""


class AlreadyExistsError(RuntimeError):
    """An object with the same kind, namespace and name already exists."""


class ConflictError(RuntimeError):
    """An update was based on a stale resource version."""


class ReconcileCancelled(RuntimeError):
    """The caller cancelled the pass or its deadline expired."""


# ---------------------------------------------------------------------------
# Store boundary
# ---------------------------------------------------------------------------


class ObjectStore(Protocol):
    def get(self, resource_type: type[R], name: str, namespace: str | None = None) -> R: ...

    def list(
        self,
        resource_type: type[R],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]: ...

    def create(self, obj: R) -> R: ...

    def update(self, obj: R) -> R: ...

    def delete(self, obj: Resource) -> None: ...


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
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
    """Write *content* to *path* atomically (temp file in the same directory, then ``os.replace``)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
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


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        NotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise NotFoundError(f"{label} not found")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def _matches_labels(obj: Resource, labels: dict[str, str] | None) -> bool:
    if not labels:
        return True
    return all(obj.labels.get(key) == value for key, value in labels.items())


# ---------------------------------------------------------------------------
# FileObjectStore
# ---------------------------------------------------------------------------


class FileObjectStore:
    """Filesystem object store with Kubernetes-style semantics.

    Layout: ``<root>/<kind>/<namespace or _cluster>/<name>.json``.  Every
    write is an atomic temp-file-then-rename under an ``fcntl`` lock on the
    object's sidecar lock file, so independent processes sharing the
    directory can race safely.  Updates carrying a ``resourceVersion`` are
    rejected with ``ConflictError`` when the stored version moved on; an
    empty ``resourceVersion`` means last write wins.  Deleting an object
    cascades to every object whose owner references point at its uid.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _kind_dir(self, resource_type: type[Resource]) -> Path:
        return self.root / resource_type.kind.lower()

    def _path(self, resource_type: type[Resource], name: str, namespace: str | None) -> Path:
        if resource_type.namespaced and not namespace:
            raise ValueError(f"{resource_type.kind} is namespaced; a namespace is required")
        if not resource_type.namespaced and namespace:
            raise ValueError(f"{resource_type.kind} is cluster-scoped; got namespace {namespace!r}")
        scope = namespace if resource_type.namespaced else _CLUSTER_SCOPE_DIR
        path = self._kind_dir(resource_type) / str(scope) / f"{name}.json"
        if not path.resolve().is_relative_to(self.root.resolve()):
            raise ValueError(f"{self._label(resource_type, name, namespace)} resolves outside store root {self.root}")
        return path

    @staticmethod
    def _label(resource_type: type[Resource], name: str, namespace: str | None) -> str:
        return f"{resource_type.kind} {namespace}/{name}" if namespace else f"{resource_type.kind} {name}"

    def _read(self, resource_type: type[R], path: Path, label: str) -> R:
        text = _safe_read_json(path, label)
        try:
            return resource_type.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"{label} at {path} failed validation: {exc}") from exc

    @staticmethod
    def _write(path: Path, obj: Resource) -> None:
        _atomic_write_text(path, obj.model_dump_json(by_alias=True, exclude_none=True, indent=2))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, resource_type: type[R], name: str, namespace: str | None = None) -> R:
        path = self._path(resource_type, name, namespace)
        return self._read(resource_type, path, self._label(resource_type, name, namespace))

    def list(
        self,
        resource_type: type[R],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]:
        """Return objects of a kind, optionally narrowed to a namespace and a label subset.

        A ``None`` namespace lists namespaced kinds across every namespace.
        Objects deleted between the directory scan and the read are skipped.
        """
        kind_dir = self._kind_dir(resource_type)
        if resource_type.namespaced and namespace:
            paths = sorted((kind_dir / namespace).glob("*.json"))
        else:
            paths = sorted(kind_dir.glob("*/*.json"))
        found: list[R] = []
        for path in paths:
            try:
                obj = self._read(resource_type, path, f"{resource_type.kind} {path.stem}")
            except NotFoundError:
                continue
            if _matches_labels(obj, labels):
                found.append(obj)
        return found

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, obj: R) -> R:
        """Persist a new object, assigning uid, resource version and creation time.

        Raises:
            AlreadyExistsError: If the object already exists.
        """
        resource_type = type(obj)
        path = self._path(resource_type, obj.name, obj.namespace)
        with _locked_file(path):
            if path.exists():
                raise AlreadyExistsError(f"{obj.describe()} already exists")
            if not obj.metadata.uid:
                obj.metadata.uid = str(uuid.uuid4())
            obj.metadata.resource_version = "1"
            obj.metadata.creation_timestamp = datetime.now(UTC)
            self._write(path, obj)
        logger.debug("Created %s", obj.describe())
        return obj

    def update(self, obj: R) -> R:
        """Replace a stored object.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If ``obj`` was read at an older resource version.
        """
        resource_type = type(obj)
        path = self._path(resource_type, obj.name, obj.namespace)
        with _locked_file(path):
            current = self._read(resource_type, path, obj.describe())
            if obj.metadata.resource_version and obj.metadata.resource_version != current.metadata.resource_version:
                raise ConflictError(
                    f"{obj.describe()} was modified: resourceVersion "
                    f"{obj.metadata.resource_version} != {current.metadata.resource_version}"
                )
            obj.metadata.uid = current.metadata.uid
            obj.metadata.creation_timestamp = current.metadata.creation_timestamp
            obj.metadata.resource_version = str(int(current.metadata.resource_version or "0") + 1)
            self._write(path, obj)
        logger.debug("Updated %s to resourceVersion %s", obj.describe(), obj.metadata.resource_version)
        return obj

    def delete(self, obj: Resource) -> None:
        """Delete an object and, transitively, everything it owns.

        Raises:
            NotFoundError: If the object does not exist.
        """
        resource_type = type(obj)
        path = self._path(resource_type, obj.name, obj.namespace)
        with _locked_file(path):
            current = self._read(resource_type, path, obj.describe())
            path.unlink()
        logger.debug("Deleted %s", obj.describe())
        if current.uid:
            self._delete_dependents(current.uid)

    def _delete_dependents(self, owner_uid: str) -> None:
        for resource_type in RESOURCE_TYPES.values():
            for dependent in self.list(resource_type):
                if any(ref.uid == owner_uid for ref in dependent.metadata.owner_references):
                    try:
                        self.delete(dependent)
                    except NotFoundError:
                        continue


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancelToken:
    """Cancellation signal with an optional deadline, checked before each store call."""

    def __init__(self, *, timeout: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def check(self) -> None:
        if self.cancelled:
            raise ReconcileCancelled("reconcile pass cancelled")


class CancellableStore:
    """Delegating store that honours a ``CancelToken`` at every boundary call."""

    def __init__(self, store: ObjectStore, token: CancelToken) -> None:
        self.store = store
        self.token = token

    def get(self, resource_type: type[R], name: str, namespace: str | None = None) -> R:
        self.token.check()
        return self.store.get(resource_type, name, namespace)

    def list(
        self,
        resource_type: type[R],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]:
        self.token.check()
        return self.store.list(resource_type, namespace, labels)

    def create(self, obj: R) -> R:
        self.token.check()
        return self.store.create(obj)

    def update(self, obj: R) -> R:
        self.token.check()
        return self.store.update(obj)

    def delete(self, obj: Resource) -> None:
        self.token.check()
        self.store.delete(obj)


# ---------------------------------------------------------------------------
# Create-or-update
# ---------------------------------------------------------------------------


class OperationResult(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def create_or_update(store: ObjectStore, obj: R, mutate: Callable[[R], None]) -> OperationResult:
    """Fetch *obj* by key, apply *mutate*, and write only if something changed.

    When the object does not exist yet, *mutate* is applied to *obj* itself
    and the result is created.
    """
    try:
        existing = store.get(type(obj), obj.name, obj.namespace)
    except NotFoundError:
        mutate(obj)
        store.create(obj)
        return OperationResult.CREATED

    before = existing.model_dump()
    mutate(existing)
    if existing.model_dump() == before:
        return OperationResult.UNCHANGED
    store.update(existing)
    return OperationResult.UPDATED

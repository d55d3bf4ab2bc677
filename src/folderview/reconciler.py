from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import ClassVar, Protocol

from .canonical import canonical_digest
from .claims import claim_children
from .hierarchy import IndexLookup, LiveTraversal, Resolver
from .loops import rectify_loop
from .models import ClusterRole, Folder, FolderIndex, FolderIndexStatus, Resource, Role
from .settings import RuntimeSettings
from .store import CancellableStore, CancelToken, NotFoundError, ObjectStore
from .synthesis import SynthesisResult, collect_garbage, synthesize_cluster_bindings, synthesize_namespaced_grants
from .taxonomy import CLUSTER, NAMESPACED, Taxonomy
from .validation import IndexValidationError, validate_folder_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Request:
    """Identifies the object a reconcile pass works on."""

    kind: str
    name: str
    namespace: str | None = None

    def describe(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}" if self.namespace else f"{self.kind} {self.name}"


@dataclass(frozen=True)
class Result:
    requeue_after: float | None = None


class Reconciler(Protocol):
    kind: ClassVar[str]

    def reconcile(self, request: Request, token: CancelToken | None = None) -> Result: ...

    def requests_for(self, obj: Resource, *, deleted: bool = False) -> list[Request]: ...

    def list_requests(self) -> list[Request]: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def index_spec_hash(index: FolderIndex) -> str:
    """SHA-256 of the canonical JSON form of the index spec."""
    return canonical_digest(index.spec)


# ---------------------------------------------------------------------------
# Folder reconcilers
# ---------------------------------------------------------------------------


class FolderReconciler:
    """One pass over one folder: claim, resolve, synthesize, collect garbage.

    Nothing is cached between passes; every pass re-reads the folder and its
    subtree.  A cycle found while resolving is broken by orphaning its most
    recent claim, and the pass asks to be retried after
    ``loop_requeue_seconds`` instead of deriving anything.
    """

    taxonomy: ClassVar[Taxonomy]
    kind: ClassVar[str]

    def __init__(
        self,
        store: ObjectStore,
        settings: RuntimeSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or RuntimeSettings()
        self.clock = clock

    def reconcile(self, request: Request, token: CancelToken | None = None) -> Result:
        store: ObjectStore = CancellableStore(self.store, token) if token is not None else self.store
        try:
            folder = store.get(self.taxonomy.folder_type, request.name, request.namespace)
        except NotFoundError:
            logger.debug("%s no longer exists", request.describe())
            return Result()

        logger.info("Reconciling %s", folder.describe())
        claim_children(store, self.taxonomy, folder, self.clock())

        resolution = self._resolver(store).resolve(folder)
        if resolution.revisited is not None:
            try:
                looped = store.get(self.taxonomy.folder_type, resolution.revisited.name, resolution.revisited.namespace)
            except NotFoundError:
                looped = None
            if looped is not None:
                rectify_loop(store, self.taxonomy, looped)
            logger.info(
                "Loop detected at %s while reconciling %s, requeuing in %ss",
                resolution.revisited.name,
                folder.describe(),
                self.settings.loop_requeue_seconds,
            )
            return Result(requeue_after=self.settings.loop_requeue_seconds)

        result = self.synthesize(store, folder, resolution.leaves)
        collect_garbage(store, self.taxonomy, folder, result)
        return Result()

    def synthesize(self, store: ObjectStore, folder: Folder, leaves: list[str]) -> SynthesisResult:
        raise NotImplementedError

    def _resolver(self, store: ObjectStore) -> Resolver:
        if self.settings.resolver == "index":
            index = self._validated_index(store)
            if index is not None:
                return IndexLookup(index, store, self.taxonomy)
        return LiveTraversal(store, self.taxonomy)

    def _validated_index(self, store: ObjectStore) -> FolderIndex | None:
        try:
            index = store.get(FolderIndex, self.settings.index_name)
        except NotFoundError:
            logger.debug("FolderIndex %s not found; using live traversal", self.settings.index_name)
            return None
        if index.status.validated_hash != index_spec_hash(index):
            logger.info("FolderIndex %s is not validated; using live traversal", index.name)
            return None
        return index

    # ------------------------------------------------------------------
    # Watch mapping
    # ------------------------------------------------------------------

    def list_requests(self) -> list[Request]:
        return [self._request(folder) for folder in self.store.list(self.taxonomy.folder_type)]

    def _request(self, folder: Folder) -> Request:
        return Request(self.kind, folder.name, folder.namespace)

    def requests_for(self, obj: Resource, *, deleted: bool = False) -> list[Request]:
        """Map a changed object to the folders that need a pass.

        A folder always maps to itself.  A child folder or leaf that nobody
        has claimed yet maps to every folder declaring it; a claimed one that
        was deleted maps to its owner so stale grants are collected.
        """
        taxonomy = self.taxonomy
        requests: list[Request] = []
        if isinstance(obj, taxonomy.folder_type) and not deleted:
            requests.append(self._request(obj))

        if isinstance(obj, FolderIndex):
            if self.settings.resolver == "index" and obj.name == self.settings.index_name:
                requests.extend(self.list_requests())
            return requests

        is_child = isinstance(obj, taxonomy.folder_type)
        if not is_child and not isinstance(obj, taxonomy.leaf_type):
            return requests

        owner = obj.labels.get(taxonomy.owner_name_label)
        if owner:
            if deleted:
                requests.append(Request(self.kind, owner, obj.namespace if taxonomy.folder_type.namespaced else None))
            return requests

        for parent in self.store.list(taxonomy.folder_type, obj.namespace if taxonomy.folder_type.namespaced else None):
            declared = parent.children if is_child else parent.leaves
            if obj.name in declared:
                logger.info("Queueing %s, which has not claimed %s", parent.describe(), obj.describe())
                requests.append(self._request(parent))
        return requests


class ClusterFolderReconciler(FolderReconciler):
    taxonomy = CLUSTER
    kind = CLUSTER.folder_type.kind

    def synthesize(self, store: ObjectStore, folder: Folder, leaves: list[str]) -> SynthesisResult:
        return synthesize_cluster_bindings(store, self.taxonomy, folder, leaves)


class NamespacedFolderReconciler(FolderReconciler):
    taxonomy = NAMESPACED
    kind = NAMESPACED.folder_type.kind

    def synthesize(self, store: ObjectStore, folder: Folder, leaves: list[str]) -> SynthesisResult:
        return synthesize_namespaced_grants(
            store,
            self.taxonomy,
            folder,
            leaves,
            api_groups=self.settings.managed_api_groups,
            resources=self.settings.managed_resources,
        )

    def requests_for(self, obj: Resource, *, deleted: bool = False) -> list[Request]:
        if isinstance(obj, (Role, ClusterRole)):
            return self._folders_referencing(obj)
        return super().requests_for(obj, deleted=deleted)

    def _folders_referencing(self, role: Resource) -> list[Request]:
        # Derived roles carry the owner label and never feed back into synthesis.
        if self.taxonomy.owner_uid_label in role.labels:
            return []
        namespace = role.namespace if isinstance(role, Role) else None
        requests: list[Request] = []
        for folder in self.store.list(self.taxonomy.folder_type, namespace):
            if any(
                ref.kind == role.kind and ref.name == role.name
                for permission in folder.permissions
                for ref in permission.role_refs
            ):
                requests.append(self._request(folder))
        return requests


# ---------------------------------------------------------------------------
# Folder index
# ---------------------------------------------------------------------------


class FolderIndexReconciler:
    """Validates the stored index and records the result in its status.

    ``status.validatedHash`` is the hash of the spec that passed validation;
    folder reconcilers in index mode only trust an index whose current spec
    hashes to that value.  The status is written only when it changes.
    """

    kind: ClassVar[str] = FolderIndex.kind

    def __init__(self, store: ObjectStore, settings: RuntimeSettings | None = None) -> None:
        self.store = store
        self.settings = settings or RuntimeSettings()

    def reconcile(self, request: Request, token: CancelToken | None = None) -> Result:
        store: ObjectStore = CancellableStore(self.store, token) if token is not None else self.store
        try:
            index = store.get(FolderIndex, request.name)
        except NotFoundError:
            return Result()

        try:
            validate_folder_index(index)
        except IndexValidationError as exc:
            status = FolderIndexStatus(validated_hash=None, message=str(exc))
            logger.warning("FolderIndex %s failed validation: %s", index.name, exc)
        else:
            status = FolderIndexStatus(validated_hash=index_spec_hash(index), message=None)

        if status == index.status:
            return Result()
        index.status = status
        store.update(index)
        logger.info("Updated status of FolderIndex %s", index.name)
        return Result()

    def requests_for(self, obj: Resource, *, deleted: bool = False) -> list[Request]:
        if isinstance(obj, FolderIndex) and not deleted:
            return [Request(self.kind, obj.name)]
        return []

    def list_requests(self) -> list[Request]:
        return [Request(self.kind, index.name) for index in self.store.list(FolderIndex)]

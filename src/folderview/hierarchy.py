from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Protocol

from .models import Folder, FolderIndex, Resource, qualify
from .store import NotFoundError, ObjectStore
from .taxonomy import NodeKind, Taxonomy

logger = logging.getLogger(__name__)


class Node(NamedTuple):
    """A traversal node tagged with its kind, so folders and leaves never collide."""

    kind: NodeKind
    name: str
    namespace: str | None = None


@dataclass
class Resolution:
    """Transitive leaves of a folder plus the folder that closed a cycle, if any."""

    leaves: list[str] = field(default_factory=list)
    revisited: Node | None = None

    @property
    def looped(self) -> bool:
        return self.revisited is not None


class Resolver(Protocol):
    def resolve(self, folder: Folder) -> Resolution: ...


class LiveTraversal:
    """Resolves a folder's leaves by reading every child folder from the store.

    Depth-first pre-order over an explicit stack.  A folder's declared leaves
    are collected before its child folders, and children are visited in the
    order they are declared.  Dangling references are skipped.  Reaching a
    folder a second time stops the walk and reports it as the revisited node.
    """

    def __init__(self, store: ObjectStore, taxonomy: Taxonomy) -> None:
        self.store = store
        self.taxonomy = taxonomy

    def resolve(self, folder: Folder) -> Resolution:
        scope = self.taxonomy.scope(folder)
        resolution = Resolution()
        visited: set[Node] = {Node(self.taxonomy.folder_node, folder.name, scope)}
        stack: list[Folder] = [folder]

        while stack:
            current = stack.pop()
            for leaf_name in current.leaves:
                leaf = Node(self.taxonomy.leaf_node, leaf_name, scope)
                if leaf in visited:
                    continue
                try:
                    self.store.get(self.taxonomy.leaf_type, leaf_name, scope)
                except NotFoundError:
                    logger.debug("Skipping missing %s %s", self.taxonomy.leaf_type.kind, leaf_name)
                    continue
                visited.add(leaf)
                resolution.leaves.append(leaf_name)

            fetched: list[Folder] = []
            for child_name in current.children:
                child = Node(self.taxonomy.folder_node, child_name, scope)
                if child in visited:
                    resolution.revisited = child
                    return resolution
                try:
                    child_folder = self.store.get(self.taxonomy.folder_type, child_name, scope)
                except NotFoundError:
                    logger.debug("Skipping missing %s %s", self.taxonomy.folder_type.kind, child_name)
                    continue
                visited.add(child)
                fetched.append(child_folder)
            # Reverse so the first declared child is popped first.
            stack.extend(reversed(fetched))

        return resolution


class IndexLookup:
    """Resolves a folder's leaves from a validated ``FolderIndex``.

    Same accumulation as ``LiveTraversal`` but the hierarchy comes from index
    entries; a folder without an entry contributes nothing.  Leaves and child
    folders that no longer exist in the store are skipped exactly as the live
    walk skips them, so both strategies agree on any acyclic forest.  The
    index is assumed acyclic; a revisit is still reported rather than looping
    forever.
    """

    def __init__(self, index: FolderIndex, store: ObjectStore, taxonomy: Taxonomy) -> None:
        self.index = index
        self.store = store
        self.taxonomy = taxonomy

    def _exists(self, resource_type: type[Resource], name: str, scope: str | None) -> bool:
        try:
            self.store.get(resource_type, name, scope)
        except NotFoundError:
            logger.debug("Skipping missing %s %s", resource_type.kind, name)
            return False
        return True

    def _entry(self, name: str, scope: str | None) -> tuple[list[str], list[str]] | None:
        if scope is None:
            cluster_entry = self.index.spec.cluster_folder_entries.get(name)
            if cluster_entry is None:
                return None
            return cluster_entry.child_folders, cluster_entry.namespaces
        namespaced_entry = self.index.spec.namespaced_folder_entries.get(qualify(scope, name))
        if namespaced_entry is None:
            return None
        return namespaced_entry.child_folders, namespaced_entry.virtual_machines

    def resolve(self, folder: Folder) -> Resolution:
        scope = self.taxonomy.scope(folder)
        resolution = Resolution()
        visited: set[Node] = {Node(self.taxonomy.folder_node, folder.name, scope)}
        stack: list[str] = [folder.name]

        while stack:
            entry = self._entry(stack.pop(), scope)
            if entry is None:
                continue
            children, leaves = entry
            for leaf_name in leaves:
                leaf = Node(self.taxonomy.leaf_node, leaf_name, scope)
                if leaf in visited or not self._exists(self.taxonomy.leaf_type, leaf_name, scope):
                    continue
                visited.add(leaf)
                resolution.leaves.append(leaf_name)

            pending: list[str] = []
            for child_name in children:
                if scope is not None:
                    child_scope, child_name = qualify(scope, child_name).split("/", 1)
                    if child_scope != scope:
                        continue
                child = Node(self.taxonomy.folder_node, child_name, scope)
                if child in visited:
                    resolution.revisited = child
                    return resolution
                if not self._exists(self.taxonomy.folder_type, child_name, scope):
                    continue
                visited.add(child)
                pending.append(child_name)
            stack.extend(reversed(pending))

        return resolution

from __future__ import annotations

from collections.abc import Callable, Iterator

from .models import FolderIndex, qualify, split_qualified


class IndexValidationError(ValueError):
    """The flattened index is not a single-parent, acyclic forest."""


# (child folder keys, leaf names) for one index entry
_Entry = tuple[list[str], list[str]]


def _check_forest(
    entries: dict[str, _Entry],
    child_key: Callable[[str, str], str],
    leaf_key: Callable[[str, str], str],
    leaf_conflict: Callable[[str, str, str], str],
) -> None:
    """Iterative depth-first check that every node has one parent and no folder is its own ancestor.

    ``visited`` keeps the walk linear in the number of edges; ``on_path``
    holds the folders of the current descent only, so reaching one of them
    again is a cycle.  References to folders without an entry are leaves of
    the traversal.
    """
    visited: set[str] = set()
    on_path: set[str] = set()
    leaf_parent: dict[str, str] = {}
    folder_parent: dict[str, str] = {}

    def enter(folder: str) -> Iterator[str] | None:
        if folder in on_path:
            raise IndexValidationError(
                f"folder loop detected. folder [{folder}] cannot be both a parent and child "
                "within the same filesystem hierarchy"
            )
        if folder in visited:
            return None
        visited.add(folder)
        entry = entries.get(folder)
        if entry is None:
            return None
        on_path.add(folder)
        children, leaves = entry
        for leaf in leaves:
            key = leaf_key(folder, leaf)
            previous = leaf_parent.get(key)
            if previous is not None:
                raise IndexValidationError(leaf_conflict(leaf, previous, folder))
            leaf_parent[key] = folder
        return iter(children)

    for root in sorted(entries):
        if root in visited:
            continue
        root_children = enter(root)
        if root_children is None:
            continue
        stack: list[tuple[str, Iterator[str]]] = [(root, root_children)]
        while stack:
            folder, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                on_path.discard(folder)
                continue
            key = child_key(folder, child)
            previous = folder_parent.get(key)
            if previous is not None:
                raise IndexValidationError(
                    f"child folder [{key}] is the child of both folder [{previous}] and folder [{folder}]"
                )
            folder_parent[key] = folder
            grandchildren = enter(key)
            if grandchildren is not None:
                stack.append((key, grandchildren))


def validate_cluster_entries(index: FolderIndex) -> None:
    """Raise ``IndexValidationError`` unless the cluster folder entries form a forest."""
    entries = {
        name: (entry.child_folders, entry.namespaces)
        for name, entry in index.spec.cluster_folder_entries.items()
    }
    _check_forest(
        entries,
        child_key=lambda _parent, child: child,
        leaf_key=lambda _parent, namespace: namespace,
        leaf_conflict=lambda namespace, first, second: (
            f"namespace [{namespace}] is the child of both folder [{first}] and folder [{second}]"
        ),
    )


def validate_namespaced_entries(index: FolderIndex) -> None:
    """Raise ``IndexValidationError`` unless the namespaced folder entries form a forest.

    Entry keys are ``<namespace>/<folder>``; bare child names are qualified
    with the parent's namespace.
    """
    entries = {
        key: (entry.child_folders, entry.virtual_machines)
        for key, entry in index.spec.namespaced_folder_entries.items()
    }

    def vm_conflict(vm: str, first: str, second: str) -> str:
        namespace, _ = split_qualified(second)
        return f"vm [{vm}] in namespace [{namespace}] is the child of both folder [{first}] and folder [{second}]"

    _check_forest(
        entries,
        child_key=lambda parent, child: qualify(split_qualified(parent)[0], child),
        leaf_key=lambda parent, vm: qualify(split_qualified(parent)[0], vm),
        leaf_conflict=vm_conflict,
    )


def validate_folder_index(index: FolderIndex) -> None:
    validate_cluster_entries(index)
    validate_namespaced_entries(index)

from __future__ import annotations

from .models import FolderIndex, qualify, split_qualified

_INDENT = "  "


def _namespaced_roots(index: FolderIndex) -> dict[str, list[str]]:
    """Top-level namespaced folder keys grouped by namespace."""
    entries = index.spec.namespaced_folder_entries
    children: set[str] = set()
    for key, entry in entries.items():
        namespace, _ = split_qualified(key)
        children.update(qualify(namespace, child) for child in entry.child_folders)
    roots: dict[str, list[str]] = {}
    for key in sorted(entries):
        if key not in children:
            namespace, _ = split_qualified(key)
            roots.setdefault(namespace, []).append(key)
    return roots


def render_tree(index: FolderIndex) -> list[str]:
    """Render the index as an indented outline, one line per node.

    Top-level cluster folders come first; namespaces that hold namespaced
    folders but belong to no cluster folder follow them.  Nodes already
    printed are not expanded again, so an index with a cycle still renders.
    """
    cluster_entries = index.spec.cluster_folder_entries
    namespaced_entries = index.spec.namespaced_folder_entries
    namespaced_roots = _namespaced_roots(index)
    cluster_children = {child for entry in cluster_entries.values() for child in entry.child_folders}
    lines: list[str] = []
    shown: set[str] = set()
    placed_namespaces: set[str] = set()

    def namespaced_folder(key: str, indent: str) -> None:
        lines.append(f"{indent}* NamespacedFolder: [{key}]")
        if key in shown:
            return
        shown.add(key)
        entry = namespaced_entries.get(key)
        if entry is None:
            return
        namespace, _ = split_qualified(key)
        for vm in entry.virtual_machines:
            lines.append(f"{indent}{_INDENT}* VM: [{vm}]")
        for child in entry.child_folders:
            namespaced_folder(qualify(namespace, child), indent + _INDENT)

    def namespace(name: str, indent: str) -> None:
        lines.append(f"{indent}* Namespace: [{name}]")
        placed_namespaces.add(name)
        for key in namespaced_roots.get(name, []):
            namespaced_folder(key, indent + _INDENT)

    def cluster_folder(name: str, indent: str) -> None:
        lines.append(f"{indent}* ClusterFolder: [{name}]")
        if name in shown:
            return
        shown.add(name)
        entry = cluster_entries.get(name)
        if entry is None:
            return
        for ns in entry.namespaces:
            namespace(ns, indent + _INDENT)
        for child in entry.child_folders:
            cluster_folder(child, indent + _INDENT)

    for name in sorted(cluster_entries):
        if name not in cluster_children:
            cluster_folder(name, "")
    for ns in sorted(namespaced_roots):
        if ns not in placed_namespaces:
            namespace(ns, "")
    return lines

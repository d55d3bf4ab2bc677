from datetime import datetime, timedelta

import pytest

from folderview.models import (
    ClusterFolder,
    ClusterFolderEntry,
    ClusterFolderSpec,
    ClusterRole,
    FolderIndex,
    FolderIndexSpec,
    FolderPermission,
    Namespace,
    NamespacedFolder,
    NamespacedFolderSpec,
    ObjectMeta,
    PolicyRule,
    Resource,
    Role,
    RoleBinding,
    RoleRef,
    Subject,
    VirtualMachine,
)
from folderview.naming import role_binding_name
from folderview.reconciler import (
    ClusterFolderReconciler,
    FolderIndexReconciler,
    NamespacedFolderReconciler,
    Request,
    Result,
    index_spec_hash,
)
from folderview.settings import RuntimeSettings
from folderview.store import CancelToken, FileObjectStore, ReconcileCancelled
from folderview.taxonomy import CLUSTER

ALICE = Subject(kind="User", name="alice")
VIEW = RoleRef(kind="ClusterRole", name="view")


class SteppingClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def _request(folder: ClusterFolder) -> Request:
    return Request(ClusterFolderReconciler.kind, folder.name)


def _versions(store: FileObjectStore) -> dict[str, str]:
    kinds: tuple[type[Resource], ...] = (ClusterFolder, Namespace, RoleBinding, NamespacedFolder, VirtualMachine, Role)
    return {obj.describe(): obj.metadata.resource_version for kind in kinds for obj in store.list(kind)}


def test_end_to_end_grant_creates_and_removes_binding(store: FileObjectStore, now: datetime) -> None:
    store.create(Namespace(metadata=ObjectMeta(name="ns-1")))
    folder = store.create(
        ClusterFolder(
            metadata=ObjectMeta(name="team-a"),
            spec=ClusterFolderSpec(
                namespaces=["ns-1"],
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[VIEW])],
            ),
        )
    )
    reconciler = ClusterFolderReconciler(store, clock=lambda: now)

    assert reconciler.reconcile(_request(folder)) == Result()

    (binding,) = store.list(RoleBinding)
    assert binding.name == role_binding_name(folder.uid, "ns-1", ALICE, VIEW)
    assert binding.namespace == "ns-1"
    assert store.get(Namespace, "ns-1").labels[CLUSTER.owner_name_label] == "team-a"

    folder = store.get(ClusterFolder, "team-a")
    folder.spec.folder_permissions = []
    store.update(folder)
    reconciler.reconcile(_request(folder))

    assert store.list(RoleBinding) == []


def test_second_pass_writes_nothing(store: FileObjectStore, now: datetime) -> None:
    store.create(Namespace(metadata=ObjectMeta(name="ns-1")))
    store.create(Namespace(metadata=ObjectMeta(name="ns-2")))
    store.create(ClusterFolder(metadata=ObjectMeta(name="child"), spec=ClusterFolderSpec(namespaces=["ns-2"])))
    folder = store.create(
        ClusterFolder(
            metadata=ObjectMeta(name="team-a"),
            spec=ClusterFolderSpec(
                child_cluster_folders=["child"],
                namespaces=["ns-1"],
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[VIEW])],
            ),
        )
    )
    reconciler = ClusterFolderReconciler(store, clock=SteppingClock(now))
    reconciler.reconcile(_request(folder))
    before = _versions(store)

    reconciler.reconcile(_request(folder))

    assert _versions(store) == before
    assert len(store.list(RoleBinding)) == 2


def test_reparenting_moves_grants(store: FileObjectStore, now: datetime) -> None:
    store.create(Namespace(metadata=ObjectMeta(name="ns-1")))
    for name in ("p1", "p2"):
        store.create(
            ClusterFolder(
                metadata=ObjectMeta(name=name),
                spec=ClusterFolderSpec(
                    namespaces=["ns-1"],
                    folder_permissions=[FolderPermission(subject=Subject(kind="User", name=f"{name}-user"), role_refs=[VIEW])],
                ),
            )
        )
    reconciler = ClusterFolderReconciler(store, clock=SteppingClock(now))
    p1 = store.get(ClusterFolder, "p1")
    reconciler.reconcile(_request(p1))
    reconciler.reconcile(Request(ClusterFolderReconciler.kind, "p2"))
    reconciler.reconcile(_request(p1))

    assert store.get(ClusterFolder, "p1").spec.namespaces == []
    assert store.get(Namespace, "ns-1").labels[CLUSTER.owner_name_label] == "p2"
    assert [rb.subjects[0].name for rb in store.list(RoleBinding, "ns-1")] == ["p2-user"]


def test_loop_is_rectified_and_requeued(store: FileObjectStore, now: datetime) -> None:
    store.create(ClusterFolder(metadata=ObjectMeta(name="a"), spec=ClusterFolderSpec(child_cluster_folders=["b"])))
    store.create(ClusterFolder(metadata=ObjectMeta(name="b"), spec=ClusterFolderSpec(child_cluster_folders=["a"])))
    settings = RuntimeSettings(loop_requeue_seconds=7)
    reconciler = ClusterFolderReconciler(store, settings, clock=SteppingClock(now))

    first = reconciler.reconcile(Request(ClusterFolderReconciler.kind, "a"))
    second = reconciler.reconcile(Request(ClusterFolderReconciler.kind, "b"))

    assert first.requeue_after == 7
    assert second.requeue_after == 7
    # b claimed a last, so that claim is dropped
    assert store.get(ClusterFolder, "b").spec.child_cluster_folders == []
    assert store.get(ClusterFolder, "a").spec.child_cluster_folders == ["b"]
    assert reconciler.reconcile(Request(ClusterFolderReconciler.kind, "a")) == Result()


def test_missing_folder_is_a_noop(store: FileObjectStore) -> None:
    assert ClusterFolderReconciler(store).reconcile(Request(ClusterFolderReconciler.kind, "ghost")) == Result()


def test_cancelled_pass_raises(store: FileObjectStore) -> None:
    folder = store.create(ClusterFolder(metadata=ObjectMeta(name="team-a")))
    token = CancelToken()
    token.cancel()
    with pytest.raises(ReconcileCancelled):
        ClusterFolderReconciler(store).reconcile(_request(folder), token)


def test_namespaced_folder_end_to_end(store: FileObjectStore, now: datetime) -> None:
    store.create(
        ClusterRole(
            metadata=ObjectMeta(name="vm-user"),
            rules=[PolicyRule(verbs=["get"], api_groups=["kubevirt.io"], resources=["virtualmachines"])],
        )
    )
    for vm in ("vm-1", "vm-2"):
        store.create(VirtualMachine(metadata=ObjectMeta(name=vm, namespace="ns-1")))
    store.create(
        NamespacedFolder(metadata=ObjectMeta(name="child", namespace="ns-1"), spec=NamespacedFolderSpec(virtual_machines=["vm-2"]))
    )
    store.create(
        NamespacedFolder(
            metadata=ObjectMeta(name="parent", namespace="ns-1"),
            spec=NamespacedFolderSpec(
                child_namespaced_folders=["child"],
                virtual_machines=["vm-1"],
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[RoleRef(kind="ClusterRole", name="vm-user")])],
            ),
        )
    )
    reconciler = NamespacedFolderReconciler(store, clock=lambda: now)

    reconciler.reconcile(Request(NamespacedFolderReconciler.kind, "parent", "ns-1"))

    (role,) = store.list(Role, "ns-1")
    assert role.rules[0].resource_names == ["vm-1", "vm-2"]
    (binding,) = store.list(RoleBinding, "ns-1")
    assert binding.role_ref == RoleRef(kind="Role", name=role.name)


def test_index_reconciler_records_validated_hash(store: FileObjectStore) -> None:
    store.create(
        FolderIndex(
            metadata=ObjectMeta(name="root"),
            spec=FolderIndexSpec(cluster_folder_entries={"a": ClusterFolderEntry(namespaces=["ns-1"])}),
        )
    )
    reconciler = FolderIndexReconciler(store)

    reconciler.reconcile(Request(FolderIndex.kind, "root"))
    index = store.get(FolderIndex, "root")
    assert index.status.validated_hash == index_spec_hash(index)
    assert index.status.message is None

    reconciler.reconcile(Request(FolderIndex.kind, "root"))
    assert store.get(FolderIndex, "root").metadata.resource_version == index.metadata.resource_version


def test_index_reconciler_reports_invalid_index(store: FileObjectStore) -> None:
    store.create(
        FolderIndex(
            metadata=ObjectMeta(name="root"),
            spec=FolderIndexSpec(cluster_folder_entries={"a": ClusterFolderEntry(child_folders=["a"])}),
        )
    )

    FolderIndexReconciler(store).reconcile(Request(FolderIndex.kind, "root"))

    status = store.get(FolderIndex, "root").status
    assert status.validated_hash is None
    assert status.message is not None and "folder loop detected" in status.message


def test_index_resolver_uses_only_validated_index(store: FileObjectStore, now: datetime) -> None:
    store.create(Namespace(metadata=ObjectMeta(name="ns-live")))
    store.create(Namespace(metadata=ObjectMeta(name="ns-indexed")))
    store.create(
        ClusterFolder(
            metadata=ObjectMeta(name="team-a"),
            spec=ClusterFolderSpec(
                namespaces=["ns-live"],
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[VIEW])],
            ),
        )
    )
    store.create(
        FolderIndex(
            metadata=ObjectMeta(name="root"),
            spec=FolderIndexSpec(cluster_folder_entries={"team-a": ClusterFolderEntry(namespaces=["ns-indexed"])}),
        )
    )
    reconciler = ClusterFolderReconciler(store, RuntimeSettings(resolver="index"), clock=lambda: now)
    request = Request(ClusterFolderReconciler.kind, "team-a")

    reconciler.reconcile(request)
    assert [rb.namespace for rb in store.list(RoleBinding)] == ["ns-live"]

    FolderIndexReconciler(store).reconcile(Request(FolderIndex.kind, "root"))
    reconciler.reconcile(request)
    assert [rb.namespace for rb in store.list(RoleBinding)] == ["ns-indexed"]


def test_index_resolver_skips_namespaces_missing_from_store(store: FileObjectStore, now: datetime) -> None:
    store.create(Namespace(metadata=ObjectMeta(name="ns-a")))
    store.create(
        ClusterFolder(
            metadata=ObjectMeta(name="root"),
            spec=ClusterFolderSpec(
                namespaces=["ns-a", "ns-gone"],
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[VIEW])],
            ),
        )
    )
    store.create(
        FolderIndex(
            metadata=ObjectMeta(name="root"),
            spec=FolderIndexSpec(cluster_folder_entries={"root": ClusterFolderEntry(namespaces=["ns-a", "ns-gone"])}),
        )
    )
    FolderIndexReconciler(store).reconcile(Request(FolderIndex.kind, "root"))

    ClusterFolderReconciler(store, RuntimeSettings(resolver="index"), clock=lambda: now).reconcile(
        Request(ClusterFolderReconciler.kind, "root")
    )

    assert [rb.namespace for rb in store.list(RoleBinding)] == ["ns-a"]


def test_requests_for_unclaimed_leaf_targets_declaring_folders(store: FileObjectStore) -> None:
    store.create(ClusterFolder(metadata=ObjectMeta(name="p1"), spec=ClusterFolderSpec(namespaces=["ns-1"])))
    store.create(ClusterFolder(metadata=ObjectMeta(name="p2"), spec=ClusterFolderSpec(namespaces=["ns-2"])))
    reconciler = ClusterFolderReconciler(store)

    unclaimed = Namespace(metadata=ObjectMeta(name="ns-1"))
    claimed = Namespace(metadata=ObjectMeta(name="ns-1", labels={CLUSTER.owner_name_label: "p1"}))

    assert reconciler.requests_for(unclaimed) == [Request("ClusterFolder", "p1")]
    assert reconciler.requests_for(claimed) == []
    assert reconciler.requests_for(claimed, deleted=True) == [Request("ClusterFolder", "p1")]
    assert reconciler.requests_for(VirtualMachine(metadata=ObjectMeta(name="vm", namespace="ns-1"))) == []


def test_namespaced_requests_for_role_changes(store: FileObjectStore) -> None:
    store.create(
        NamespacedFolder(
            metadata=ObjectMeta(name="apps", namespace="ns-1"),
            spec=NamespacedFolderSpec(
                folder_permissions=[FolderPermission(subject=ALICE, role_refs=[RoleRef(kind="Role", name="local")])]
            ),
        )
    )
    reconciler = NamespacedFolderReconciler(store)

    assert reconciler.requests_for(Role(metadata=ObjectMeta(name="local", namespace="ns-1"))) == [
        Request("NamespacedFolder", "apps", "ns-1")
    ]
    assert reconciler.requests_for(Role(metadata=ObjectMeta(name="local", namespace="ns-2"))) == []

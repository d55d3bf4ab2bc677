import pytest

from folderview.admission import AdmissionDenied, FolderIndexValidator, admit_and_store
from folderview.models import ClusterFolderEntry, FolderIndex, FolderIndexSpec, NamespacedFolderEntry, ObjectMeta
from folderview.store import FileObjectStore, NotFoundError, OperationResult
from folderview.validation import (
    IndexValidationError,
    validate_cluster_entries,
    validate_folder_index,
    validate_namespaced_entries,
)


def _index(
    cluster: dict[str, ClusterFolderEntry] | None = None,
    namespaced: dict[str, NamespacedFolderEntry] | None = None,
) -> FolderIndex:
    return FolderIndex(
        metadata=ObjectMeta(name="root"),
        spec=FolderIndexSpec(cluster_folder_entries=cluster or {}, namespaced_folder_entries=namespaced or {}),
    )


def test_valid_forest_passes() -> None:
    index = _index(
        cluster={
            "p": ClusterFolderEntry(child_folders=["c1", "c2"], namespaces=["ns-1"]),
            "c1": ClusterFolderEntry(namespaces=["ns-2"]),
            "c2": ClusterFolderEntry(child_folders=["dangling"]),
            "other": ClusterFolderEntry(namespaces=["ns-3"]),
        },
        namespaced={
            "ns-1/top": NamespacedFolderEntry(child_folders=["sub"], virtual_machines=["vm-1"]),
            "ns-1/sub": NamespacedFolderEntry(virtual_machines=["vm-2"]),
            "ns-2/top": NamespacedFolderEntry(virtual_machines=["vm-1"]),
        },
    )
    validate_folder_index(index)


def test_two_folder_loop_rejected() -> None:
    index = _index(
        cluster={
            "a": ClusterFolderEntry(child_folders=["b"]),
            "b": ClusterFolderEntry(child_folders=["a"]),
        }
    )
    with pytest.raises(IndexValidationError, match=r"folder loop detected. folder \[a\]"):
        validate_cluster_entries(index)


def test_self_loop_rejected() -> None:
    index = _index(cluster={"a": ClusterFolderEntry(child_folders=["a"])})
    with pytest.raises(IndexValidationError, match="folder loop detected"):
        validate_cluster_entries(index)


def test_namespace_with_two_parents_rejected() -> None:
    index = _index(
        cluster={
            "p1": ClusterFolderEntry(namespaces=["ns1"]),
            "p2": ClusterFolderEntry(namespaces=["ns1"]),
        }
    )
    with pytest.raises(
        IndexValidationError, match=r"namespace \[ns1\] is the child of both folder \[p1\] and folder \[p2\]"
    ):
        validate_cluster_entries(index)


def test_child_folder_with_two_parents_rejected() -> None:
    index = _index(
        cluster={
            "p1": ClusterFolderEntry(child_folders=["c"]),
            "p2": ClusterFolderEntry(child_folders=["c"]),
        }
    )
    with pytest.raises(IndexValidationError, match=r"child folder \[c\] is the child of both folder \[p1\] and folder \[p2\]"):
        validate_cluster_entries(index)


def test_diamond_is_a_dual_parent_not_a_loop() -> None:
    index = _index(
        cluster={
            "top": ClusterFolderEntry(child_folders=["left", "right"]),
            "left": ClusterFolderEntry(child_folders=["bottom"]),
            "right": ClusterFolderEntry(child_folders=["bottom"]),
        }
    )
    with pytest.raises(IndexValidationError, match="child of both folder"):
        validate_cluster_entries(index)


def test_namespaced_vm_with_two_parents_rejected() -> None:
    index = _index(
        namespaced={
            "ns-1/a": NamespacedFolderEntry(virtual_machines=["vm-1"]),
            "ns-1/b": NamespacedFolderEntry(virtual_machines=["vm-1"]),
        }
    )
    with pytest.raises(
        IndexValidationError,
        match=r"vm \[vm-1\] in namespace \[ns-1\] is the child of both folder \[ns-1/a\] and folder \[ns-1/b\]",
    ):
        validate_namespaced_entries(index)


def test_namespaced_loop_through_bare_child_names_rejected() -> None:
    index = _index(
        namespaced={
            "ns-1/a": NamespacedFolderEntry(child_folders=["b"]),
            "ns-1/b": NamespacedFolderEntry(child_folders=["ns-1/a"]),
        }
    )
    with pytest.raises(IndexValidationError, match=r"folder \[ns-1/a\]"):
        validate_namespaced_entries(index)


def test_same_names_in_different_namespaces_are_independent() -> None:
    index = _index(
        namespaced={
            "ns-1/a": NamespacedFolderEntry(child_folders=["b"], virtual_machines=["vm"]),
            "ns-2/a": NamespacedFolderEntry(child_folders=["b"], virtual_machines=["vm"]),
        }
    )
    validate_namespaced_entries(index)


def test_validator_is_fail_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    from folderview import admission

    def broken(_index: FolderIndex) -> None:
        raise RuntimeError("validator crashed")

    monkeypatch.setattr(admission, "validate_folder_index", broken)
    response = FolderIndexValidator().validate_create(_index())

    assert not response.allowed
    assert response.reason == "validator crashed"


def test_validator_create_update_delete() -> None:
    validator = FolderIndexValidator()
    good = _index(cluster={"a": ClusterFolderEntry(namespaces=["ns-1"])})
    bad = _index(cluster={"a": ClusterFolderEntry(child_folders=["a"])})

    assert validator.validate_create(good).allowed
    assert not validator.validate_update(good, bad).allowed
    assert validator.validate_update(bad, good).allowed
    assert validator.validate_delete(bad).allowed


def test_admit_and_store_persists_only_admitted_indices(store: FileObjectStore) -> None:
    good = _index(cluster={"a": ClusterFolderEntry(namespaces=["ns-1"])})
    assert admit_and_store(store, good) is OperationResult.CREATED

    bad = _index(
        cluster={
            "p1": ClusterFolderEntry(namespaces=["ns1"]),
            "p2": ClusterFolderEntry(namespaces=["ns1"]),
        }
    )
    with pytest.raises(AdmissionDenied, match="ns1"):
        admit_and_store(store, bad)

    stored = store.get(FolderIndex, "root")
    assert list(stored.spec.cluster_folder_entries) == ["a"]


def test_rejected_create_stores_nothing(store: FileObjectStore) -> None:
    with pytest.raises(AdmissionDenied):
        admit_and_store(store, _index(cluster={"a": ClusterFolderEntry(child_folders=["a"])}))
    with pytest.raises(NotFoundError):
        store.get(FolderIndex, "root")


def test_unqualified_namespaced_key_rejected_by_model() -> None:
    with pytest.raises(ValueError, match="namespace"):
        FolderIndexSpec(namespaced_folder_entries={"plain": NamespacedFolderEntry()})

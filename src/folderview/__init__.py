from importlib.metadata import PackageNotFoundError, version

from .admission import AdmissionDenied, AdmissionResponse, FolderIndexValidator, admit_and_store
from .claims import claim_children, release_child
from .hierarchy import IndexLookup, LiveTraversal, Node, Resolution
from .loops import loop_chain_winner, more_recent_claim, rectify_loop
from .manager import Manager, ReconcileQueue
from .models import (
    ClusterFolder,
    ClusterRole,
    FolderIndex,
    FolderPermission,
    Namespace,
    NamespacedFolder,
    ObjectMeta,
    PolicyRule,
    Role,
    RoleBinding,
    RoleRef,
    Subject,
    VirtualMachine,
)
from .naming import NameSerializationError, role_binding_name, role_name
from .reconciler import (
    ClusterFolderReconciler,
    FolderIndexReconciler,
    NamespacedFolderReconciler,
    Request,
    Result,
)
from .settings import RuntimeSettings
from .store import (
    AlreadyExistsError,
    CancellableStore,
    CancelToken,
    ConflictError,
    FileObjectStore,
    NotFoundError,
    ObjectStore,
    ReconcileCancelled,
)
from .taxonomy import CLUSTER, NAMESPACED, NodeKind, Taxonomy
from .tree import render_tree
from .validation import IndexValidationError, validate_cluster_entries, validate_folder_index, validate_namespaced_entries


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AdmissionDenied",
    "AdmissionResponse",
    "AlreadyExistsError",
    "CancelToken",
    "CancellableStore",
    "ClusterFolder",
    "ClusterFolderReconciler",
    "ClusterRole",
    "ConflictError",
    "FileObjectStore",
    "FolderIndex",
    "FolderIndexReconciler",
    "FolderIndexValidator",
    "FolderPermission",
    "IndexLookup",
    "IndexValidationError",
    "LiveTraversal",
    "Manager",
    "NameSerializationError",
    "Namespace",
    "NamespacedFolder",
    "NamespacedFolderReconciler",
    "Node",
    "NodeKind",
    "NotFoundError",
    "ObjectMeta",
    "ObjectStore",
    "PolicyRule",
    "ReconcileCancelled",
    "ReconcileQueue",
    "Request",
    "Resolution",
    "Result",
    "Role",
    "RoleBinding",
    "RoleRef",
    "RuntimeSettings",
    "Subject",
    "Taxonomy",
    "VirtualMachine",
    "CLUSTER",
    "NAMESPACED",
    "admit_and_store",
    "claim_children",
    "get_version",
    "loop_chain_winner",
    "more_recent_claim",
    "rectify_loop",
    "release_child",
    "render_tree",
    "role_binding_name",
    "role_name",
    "validate_cluster_entries",
    "validate_folder_index",
    "validate_namespaced_entries",
]

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import ClusterFolder, Folder, Namespace, NamespacedFolder, Resource, Role, RoleBinding, VirtualMachine

LABEL_DOMAIN = "folderview.kubevirt.io"


class NodeKind(str, Enum):
    CLUSTER_FOLDER = "cluster_folder"
    NAMESPACE = "namespace"
    NAMESPACED_FOLDER = "namespaced_folder"
    VIRTUAL_MACHINE = "virtual_machine"


@dataclass(frozen=True)
class Taxonomy:
    """Describes one of the two folder forests.

    Everything the claim protocol, the aggregator and the rectifier need to
    know about a forest lives here: which types hold folders and leaves, how
    traversal nodes are tagged, and which labels record claims and ownership
    of derived objects.
    """

    folder_type: type[Folder]
    leaf_type: type[Resource]
    folder_node: NodeKind
    leaf_node: NodeKind
    owner_name_label: str
    claim_timestamp_label: str
    owner_uid_label: str
    derived_types: tuple[type[Resource], ...]

    def scope(self, folder: Folder) -> str | None:
        """Namespace holding the folder's children and leaves (``None`` when cluster-scoped)."""
        return folder.namespace if self.folder_type.namespaced else None


CLUSTER = Taxonomy(
    folder_type=ClusterFolder,
    leaf_type=Namespace,
    folder_node=NodeKind.CLUSTER_FOLDER,
    leaf_node=NodeKind.NAMESPACE,
    owner_name_label=f"cluster-owner-name.{LABEL_DOMAIN}",
    claim_timestamp_label=f"cluster-owner-claim-timestamp.{LABEL_DOMAIN}",
    owner_uid_label=f"cluster-owner-uid.{LABEL_DOMAIN}",
    derived_types=(RoleBinding,),
)

NAMESPACED = Taxonomy(
    folder_type=NamespacedFolder,
    leaf_type=VirtualMachine,
    folder_node=NodeKind.NAMESPACED_FOLDER,
    leaf_node=NodeKind.VIRTUAL_MACHINE,
    owner_name_label=f"namespaced-owner-name.{LABEL_DOMAIN}",
    claim_timestamp_label=f"namespaced-owner-claim-timestamp.{LABEL_DOMAIN}",
    owner_uid_label=f"namespaced-owner-uid.{LABEL_DOMAIN}",
    derived_types=(RoleBinding, Role),
)

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

RBAC_API_GROUP = "rbac.authorization.k8s.io"
FOLDERVIEW_API_VERSION = "kubevirtfolderview.kubevirt.io.github.com/v1alpha1"

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


class _Model(BaseModel):
    """Base for every API type: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_name(value: str, what: str) -> str:
    if len(value) > 253 or not _NAME_RE.match(value):
        raise ValueError(f"invalid {what}: {value!r}")
    return value


def _check_qualified_name(value: str, what: str) -> str:
    """Accept a bare name or a ``<namespace>/<name>`` pair of valid names."""
    namespace, sep, name = value.partition("/")
    if sep:
        _check_name(namespace, what)
        _check_name(name, what)
    else:
        _check_name(value, what)
    return value


def _check_name_list(values: list[str], field_name: str) -> list[str]:
    seen: set[str] = set()
    for value in values:
        _check_name(value, f"{field_name} entry")
        if value in seen:
            raise ValueError(f"{field_name} contains duplicate entry {value!r}")
        seen.add(value)
    return values


def qualify(namespace: str, name: str) -> str:
    """Return the ``<namespace>/<name>`` key used for namespaced index entries."""
    if "/" in name:
        return name
    return f"{namespace}/{name}"


def split_qualified(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    if not name:
        raise ValueError(f"namespaced folder key must be <namespace>/<name>, got: {key!r}")
    return namespace, name


# ---------------------------------------------------------------------------
# Object metadata
# ---------------------------------------------------------------------------


class OwnerReference(_Model):
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True


class ObjectMeta(_Model):
    name: str
    namespace: str | None = None
    uid: str = ""
    resource_version: str = ""
    creation_timestamp: datetime | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _check_name(value, "object name")

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_name(value, "namespace")


class Resource(_Model):
    """A stored object: metadata plus a kind-specific body."""

    kind: ClassVar[str] = ""
    api_version: ClassVar[str] = "v1"
    namespaced: ClassVar[bool] = False

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace

    @property
    def uid(self) -> str:
        return self.metadata.uid

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(api_version=self.api_version, kind=self.kind, name=self.name, uid=self.uid)

    def manifest(self) -> dict[str, Any]:
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return {"apiVersion": self.api_version, "kind": self.kind, **body}

    def describe(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


# ---------------------------------------------------------------------------
# RBAC types
# ---------------------------------------------------------------------------


class Subject(_Model):
    kind: str
    name: str
    api_group: str = RBAC_API_GROUP
    namespace: str | None = None


class RoleRef(_Model):
    api_group: str = RBAC_API_GROUP
    kind: str
    name: str


class PolicyRule(_Model):
    verbs: list[str] = Field(default_factory=list)
    api_groups: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    resource_names: list[str] = Field(default_factory=list)


class RoleBinding(Resource):
    kind: ClassVar[str] = "RoleBinding"
    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"
    namespaced: ClassVar[bool] = True

    subjects: list[Subject] = Field(default_factory=list)
    role_ref: RoleRef


class Role(Resource):
    kind: ClassVar[str] = "Role"
    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"
    namespaced: ClassVar[bool] = True

    rules: list[PolicyRule] = Field(default_factory=list)


class ClusterRole(Resource):
    kind: ClassVar[str] = "ClusterRole"
    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"

    rules: list[PolicyRule] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Leaf resources
# ---------------------------------------------------------------------------


class Namespace(Resource):
    kind: ClassVar[str] = "Namespace"


class VirtualMachine(Resource):
    kind: ClassVar[str] = "VirtualMachine"
    api_version: ClassVar[str] = "kubevirt.io/v1"
    namespaced: ClassVar[bool] = True


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------


class FolderPermission(_Model):
    """Roles applied to a subject so that it can access everything in the folder."""

    subject: Subject
    role_refs: list[RoleRef] = Field(default_factory=list)


class ClusterFolderSpec(_Model):
    child_cluster_folders: list[str] = Field(default_factory=list)
    namespaces: list[str] = Field(default_factory=list)
    folder_permissions: list[FolderPermission] = Field(default_factory=list)

    @field_validator("child_cluster_folders", "namespaces")
    @classmethod
    def _unique(cls, values: list[str], info: ValidationInfo) -> list[str]:
        return _check_name_list(values, info.field_name)


class NamespacedFolderSpec(_Model):
    child_namespaced_folders: list[str] = Field(default_factory=list)
    virtual_machines: list[str] = Field(default_factory=list)
    folder_permissions: list[FolderPermission] = Field(default_factory=list)

    @field_validator("child_namespaced_folders", "virtual_machines")
    @classmethod
    def _unique(cls, values: list[str], info: ValidationInfo) -> list[str]:
        return _check_name_list(values, info.field_name)


class Folder(Resource):
    """Common surface of both folder kinds.

    ``children`` are folder names of the same kind and scope, ``leaves`` are the
    directly contained resources (namespaces or virtual machines).
    """

    @property
    def children(self) -> list[str]:
        raise NotImplementedError

    @property
    def leaves(self) -> list[str]:
        raise NotImplementedError

    @property
    def permissions(self) -> list[FolderPermission]:
        raise NotImplementedError

    def drop_child(self, name: str) -> bool:
        raise NotImplementedError

    def drop_leaf(self, name: str) -> bool:
        raise NotImplementedError

    @model_validator(mode="after")
    def _reject_self_reference(self) -> "Folder":
        if type(self) is not Folder and self.name in self.children:
            raise ValueError(f"{self.kind} {self.name!r} cannot list itself as a child")
        return self


class ClusterFolder(Folder):
    kind: ClassVar[str] = "ClusterFolder"
    api_version: ClassVar[str] = FOLDERVIEW_API_VERSION

    spec: ClusterFolderSpec = Field(default_factory=ClusterFolderSpec)

    @property
    def children(self) -> list[str]:
        return self.spec.child_cluster_folders

    @property
    def leaves(self) -> list[str]:
        return self.spec.namespaces

    @property
    def permissions(self) -> list[FolderPermission]:
        return self.spec.folder_permissions

    def drop_child(self, name: str) -> bool:
        remaining = [child for child in self.spec.child_cluster_folders if child != name]
        modified = len(remaining) != len(self.spec.child_cluster_folders)
        self.spec.child_cluster_folders = remaining
        return modified

    def drop_leaf(self, name: str) -> bool:
        remaining = [ns for ns in self.spec.namespaces if ns != name]
        modified = len(remaining) != len(self.spec.namespaces)
        self.spec.namespaces = remaining
        return modified


class NamespacedFolder(Folder):
    kind: ClassVar[str] = "NamespacedFolder"
    api_version: ClassVar[str] = FOLDERVIEW_API_VERSION
    namespaced: ClassVar[bool] = True

    spec: NamespacedFolderSpec = Field(default_factory=NamespacedFolderSpec)

    @property
    def children(self) -> list[str]:
        return self.spec.child_namespaced_folders

    @property
    def leaves(self) -> list[str]:
        return self.spec.virtual_machines

    @property
    def permissions(self) -> list[FolderPermission]:
        return self.spec.folder_permissions

    def drop_child(self, name: str) -> bool:
        remaining = [child for child in self.spec.child_namespaced_folders if child != name]
        modified = len(remaining) != len(self.spec.child_namespaced_folders)
        self.spec.child_namespaced_folders = remaining
        return modified

    def drop_leaf(self, name: str) -> bool:
        remaining = [vm for vm in self.spec.virtual_machines if vm != name]
        modified = len(remaining) != len(self.spec.virtual_machines)
        self.spec.virtual_machines = remaining
        return modified


# ---------------------------------------------------------------------------
# Flattened index
# ---------------------------------------------------------------------------


class ClusterFolderEntry(_Model):
    child_folders: list[str] = Field(default_factory=list)
    namespaces: list[str] = Field(default_factory=list)

    @field_validator("child_folders", "namespaces")
    @classmethod
    def _valid_names(cls, values: list[str], info: ValidationInfo) -> list[str]:
        return [_check_name(value, f"{info.field_name} entry") for value in values]


class NamespacedFolderEntry(_Model):
    child_folders: list[str] = Field(default_factory=list)
    virtual_machines: list[str] = Field(default_factory=list)

    @field_validator("child_folders")
    @classmethod
    def _valid_children(cls, values: list[str]) -> list[str]:
        return [_check_qualified_name(value, "child_folders entry") for value in values]

    @field_validator("virtual_machines")
    @classmethod
    def _valid_vms(cls, values: list[str]) -> list[str]:
        return [_check_name(value, "virtual_machines entry") for value in values]


class FolderIndexSpec(_Model):
    cluster_folder_entries: dict[str, ClusterFolderEntry] = Field(default_factory=dict)
    namespaced_folder_entries: dict[str, NamespacedFolderEntry] = Field(default_factory=dict)

    @field_validator("cluster_folder_entries")
    @classmethod
    def _valid_keys(cls, entries: dict[str, ClusterFolderEntry]) -> dict[str, ClusterFolderEntry]:
        for key in entries:
            _check_name(key, "cluster folder entry")
        return entries

    @field_validator("namespaced_folder_entries")
    @classmethod
    def _qualified_keys(cls, entries: dict[str, NamespacedFolderEntry]) -> dict[str, NamespacedFolderEntry]:
        for key in entries:
            split_qualified(key)
            _check_qualified_name(key, "namespaced folder entry")
        return entries


class FolderIndexStatus(_Model):
    validated_hash: str | None = None
    message: str | None = None


class FolderIndex(Resource):
    """Precomputed single-object view of the whole folder forest."""

    kind: ClassVar[str] = "FolderIndex"
    api_version: ClassVar[str] = FOLDERVIEW_API_VERSION

    spec: FolderIndexSpec = Field(default_factory=FolderIndexSpec)
    status: FolderIndexStatus = Field(default_factory=FolderIndexStatus)


RESOURCE_TYPES: dict[str, type[Resource]] = {
    cls.kind: cls
    for cls in (
        ClusterFolder,
        NamespacedFolder,
        FolderIndex,
        Namespace,
        VirtualMachine,
        Role,
        ClusterRole,
        RoleBinding,
    )
}


def parse_manifest(payload: dict[str, Any]) -> Resource:
    """Build a typed resource from a ``{"kind": ..., "metadata": ...}`` manifest.

    Raises:
        ValueError: If the kind is missing or unknown.
        pydantic.ValidationError: If the body does not match the kind's schema.
    """
    kind = payload.get("kind")
    if not isinstance(kind, str) or kind not in RESOURCE_TYPES:
        raise ValueError(f"unsupported manifest kind: {kind!r}")
    body = {key: value for key, value in payload.items() if key not in {"kind", "apiVersion"}}
    return RESOURCE_TYPES[kind].model_validate(body)

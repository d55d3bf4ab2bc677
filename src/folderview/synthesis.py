from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .models import (
    RBAC_API_GROUP,
    ClusterRole,
    Folder,
    ObjectMeta,
    PolicyRule,
    Resource,
    Role,
    RoleBinding,
    RoleRef,
    Subject,
)
from .naming import NameSerializationError, role_binding_name, role_name
from .settings import DEFAULT_MANAGED_API_GROUPS, DEFAULT_MANAGED_RESOURCES
from .store import NotFoundError, ObjectStore, OperationResult, create_or_update
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)

ObjectKey = tuple[str, str]


@dataclass
class SynthesisResult:
    """Derived objects a pass expects to exist, keyed by (namespace, name) per kind."""

    expected: dict[str, set[ObjectKey]] = field(default_factory=dict)
    written: int = 0
    skipped: int = 0

    def expect(self, kind: str, namespace: str, name: str) -> None:
        self.expected.setdefault(kind, set()).add((namespace, name))

    def record(self, outcome: OperationResult) -> None:
        if outcome is not OperationResult.UNCHANGED:
            self.written += 1

    def names(self, kind: str) -> list[str]:
        return sorted(name for _, name in self.expected.get(kind, set()))


def _claim_ownership(obj: Resource, folder: Folder, taxonomy: Taxonomy) -> None:
    obj.metadata.labels[taxonomy.owner_uid_label] = folder.uid
    if not any(ref.uid == folder.uid for ref in obj.metadata.owner_references):
        obj.metadata.owner_references.append(folder.owner_reference())


def _apply_binding(
    store: ObjectStore,
    taxonomy: Taxonomy,
    folder: Folder,
    namespace: str,
    name: str,
    subject: Subject,
    role_ref: RoleRef,
) -> OperationResult:
    desired = RoleBinding(
        metadata=ObjectMeta(name=name, namespace=namespace),
        subjects=[subject],
        role_ref=role_ref,
    )

    def mutate(binding: RoleBinding) -> None:
        _claim_ownership(binding, folder, taxonomy)
        binding.subjects = [subject.model_copy(deep=True)]
        binding.role_ref = role_ref.model_copy(deep=True)

    outcome = create_or_update(store, desired, mutate)
    if outcome is not OperationResult.UNCHANGED:
        logger.info("RoleBinding %s/%s %s for %s", namespace, name, outcome.value, folder.describe())
    return outcome


# ---------------------------------------------------------------------------
# Cluster folders
# ---------------------------------------------------------------------------


def synthesize_cluster_bindings(
    store: ObjectStore,
    taxonomy: Taxonomy,
    folder: Folder,
    namespaces: Sequence[str],
) -> SynthesisResult:
    """Create or update one role binding per (grant, role ref, namespace).

    Args:
        store: Object store receiving the bindings.
        taxonomy: Folder taxonomy that names the owner labels.
        folder: Folder whose permissions are granted.
        namespaces: Resolved namespaces the folder transitively contains.

    Returns:
        The expected bindings plus write and skip counts, for garbage collection.
    """
    result = SynthesisResult()
    for permission in folder.permissions:
        for role_ref in permission.role_refs:
            for namespace in namespaces:
                try:
                    name = role_binding_name(folder.uid, namespace, permission.subject, role_ref)
                except NameSerializationError:
                    logger.warning(
                        "Skipping grant of %s to %s in %s: name could not be derived",
                        role_ref.name,
                        permission.subject.name,
                        namespace,
                        exc_info=True,
                    )
                    result.skipped += 1
                    continue
                result.expect(RoleBinding.kind, namespace, name)
                result.record(_apply_binding(store, taxonomy, folder, namespace, name, permission.subject, role_ref))
    return result


# ---------------------------------------------------------------------------
# Namespaced folders
# ---------------------------------------------------------------------------


def _matches_resource(resource: str, managed_resources: Iterable[str]) -> bool:
    if resource == "*":
        return True
    return resource.split("/", 1)[0] in managed_resources


def filter_managed_rules(
    rules: Iterable[PolicyRule],
    resource_names: Sequence[str],
    api_groups: Sequence[str] = DEFAULT_MANAGED_API_GROUPS,
    resources: Sequence[str] = DEFAULT_MANAGED_RESOURCES,
) -> list[PolicyRule]:
    """Narrow *rules* to the managed kind and pin them to *resource_names*.

    Rules that already name resources are dropped.  Sub-resources such as
    ``virtualmachines/console`` match on their base resource.
    """
    narrowed: list[PolicyRule] = []
    for rule in rules:
        if rule.resource_names:
            continue
        groups = [group for group in rule.api_groups if group in api_groups]
        kept = [resource for resource in rule.resources if _matches_resource(resource, resources)]
        if not groups or not kept:
            continue
        narrowed.append(
            PolicyRule(
                verbs=list(rule.verbs),
                api_groups=groups,
                resources=kept,
                resource_names=list(resource_names),
            )
        )
    return narrowed


def _referenced_rules(store: ObjectStore, namespace: str, role_ref: RoleRef) -> list[PolicyRule] | None:
    try:
        if role_ref.kind == Role.kind:
            return store.get(Role, role_ref.name, namespace).rules
        if role_ref.kind == ClusterRole.kind:
            return store.get(ClusterRole, role_ref.name).rules
    except NotFoundError:
        logger.warning("Referenced %s %s not found", role_ref.kind, role_ref.name)
        return None
    logger.warning("Ignoring role ref %s with unsupported kind %s", role_ref.name, role_ref.kind)
    return None


def synthesize_namespaced_grants(
    store: ObjectStore,
    taxonomy: Taxonomy,
    folder: Folder,
    virtual_machines: Sequence[str],
    api_groups: Sequence[str] = DEFAULT_MANAGED_API_GROUPS,
    resources: Sequence[str] = DEFAULT_MANAGED_RESOURCES,
) -> SynthesisResult:
    """Derive a narrowed role plus a binding for each (grant, role ref) of a namespaced folder.

    The derived role copies the referenced role's virtual-machine rules with
    ``resourceNames`` set to the folder's resolved machines.  With no machines
    nothing is derived: an empty ``resourceNames`` would grant every machine
    in the namespace.

    Args:
        store: Object store holding the referenced roles and receiving the derived objects.
        taxonomy: Folder taxonomy that names the owner labels.
        folder: Namespaced folder whose permissions are granted.
        virtual_machines: Resolved machines the folder transitively contains.
        api_groups: API groups whose rules are kept.
        resources: Resource names whose rules are kept.

    Returns:
        The expected roles and bindings plus write and skip counts.
    """
    result = SynthesisResult()
    namespace = folder.namespace
    if namespace is None:
        raise ValueError(f"{folder.describe()} has no namespace")
    leaves = sorted(set(virtual_machines))
    if not leaves:
        return result

    for permission in folder.permissions:
        for role_ref in permission.role_refs:
            source_rules = _referenced_rules(store, namespace, role_ref)
            if source_rules is None:
                continue
            rules = filter_managed_rules(source_rules, leaves, api_groups, resources)
            if not rules:
                logger.debug("%s %s has no virtual machine rules", role_ref.kind, role_ref.name)
                continue
            try:
                derived_role = role_name(folder.uid, namespace, rules)
                derived_ref = RoleRef(api_group=RBAC_API_GROUP, kind=Role.kind, name=derived_role)
                binding = role_binding_name(folder.uid, namespace, permission.subject, derived_ref)
            except NameSerializationError:
                logger.warning(
                    "Skipping grant of %s to %s: name could not be derived",
                    role_ref.name,
                    permission.subject.name,
                    exc_info=True,
                )
                result.skipped += 1
                continue

            result.expect(Role.kind, namespace, derived_role)
            result.record(_apply_role(store, taxonomy, folder, namespace, derived_role, rules))
            result.expect(RoleBinding.kind, namespace, binding)
            result.record(_apply_binding(store, taxonomy, folder, namespace, binding, permission.subject, derived_ref))
    return result


def _apply_role(
    store: ObjectStore,
    taxonomy: Taxonomy,
    folder: Folder,
    namespace: str,
    name: str,
    rules: list[PolicyRule],
) -> OperationResult:
    desired = Role(metadata=ObjectMeta(name=name, namespace=namespace), rules=rules)

    def mutate(role: Role) -> None:
        _claim_ownership(role, folder, taxonomy)
        role.rules = [rule.model_copy(deep=True) for rule in rules]

    outcome = create_or_update(store, desired, mutate)
    if outcome is not OperationResult.UNCHANGED:
        logger.info("Role %s/%s %s for %s", namespace, name, outcome.value, folder.describe())
    return outcome


# ---------------------------------------------------------------------------
# Garbage collection
# ---------------------------------------------------------------------------


def collect_garbage(store: ObjectStore, taxonomy: Taxonomy, folder: Folder, result: SynthesisResult) -> int:
    """Delete derived objects labelled with the folder's uid that this pass did not produce.

    Objects already gone are ignored.

    Args:
        store: Object store holding the derived objects.
        taxonomy: Folder taxonomy listing the derived kinds and owner-uid label.
        folder: Folder whose derived objects are collected.
        result: What the synthesis step just produced.

    Returns:
        The number of objects deleted.
    """
    deleted = 0
    selector = {taxonomy.owner_uid_label: folder.uid}
    for derived_type in taxonomy.derived_types:
        keep = result.expected.get(derived_type.kind, set())
        for obj in store.list(derived_type, labels=selector):
            if (obj.namespace or "", obj.name) in keep:
                continue
            try:
                store.delete(obj)
            except NotFoundError:
                continue
            deleted += 1
            logger.info("Deleted stale %s owned by %s", obj.describe(), folder.describe())
    return deleted

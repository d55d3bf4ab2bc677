from __future__ import annotations

import logging
from datetime import datetime

from .models import Folder, Resource
from .store import NotFoundError, ObjectStore
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)


def claim_timestamp(now: datetime) -> str:
    """Claim time as a unix-seconds string, the format stored in claim labels."""
    return str(int(now.timestamp()))


def claim_children(store: ObjectStore, taxonomy: Taxonomy, folder: Folder, now: datetime) -> int:
    """Stamp the folder's claim on every declared child folder, then every declared leaf.

    A child claimed by another folder is first removed from that folder's
    declared set, so the most recent claimant becomes the only parent.
    Missing children are skipped.

    Args:
        store: Object store holding the folder's children and leaves.
        taxonomy: Folder taxonomy that names the claim labels and child kinds.
        folder: The claiming folder; its uid must already be assigned.
        now: Claim time stamped on newly claimed children.

    Returns:
        The number of objects written, zero when every claim was current.

    Raises:
        ConflictError: If a child changed between read and write.
    """
    scope = taxonomy.scope(folder)
    stamp = claim_timestamp(now)
    written = 0

    for child_name in folder.children:
        try:
            child = store.get(taxonomy.folder_type, child_name, scope)
        except NotFoundError:
            continue
        if _claim(store, taxonomy, folder, child, stamp, is_leaf=False):
            written += 1

    for leaf_name in folder.leaves:
        try:
            leaf = store.get(taxonomy.leaf_type, leaf_name, scope)
        except NotFoundError:
            continue
        if _claim(store, taxonomy, folder, leaf, stamp, is_leaf=True):
            written += 1

    return written


def _claim(
    store: ObjectStore,
    taxonomy: Taxonomy,
    folder: Folder,
    target: Resource,
    stamp: str,
    *,
    is_leaf: bool,
) -> bool:
    labels = target.metadata.labels
    owner = labels.get(taxonomy.owner_name_label)
    if owner == folder.name and labels.get(taxonomy.claim_timestamp_label):
        return False

    if owner and owner != folder.name:
        logger.info("%s claims %s from %s", folder.describe(), target.describe(), owner)
        if is_leaf:
            release_child(store, taxonomy, owner, folder.namespace, leaf=target.name)
        else:
            release_child(store, taxonomy, owner, folder.namespace, child=target.name)
    else:
        logger.info("%s claims %s", folder.describe(), target.describe())

    labels[taxonomy.owner_name_label] = folder.name
    labels[taxonomy.claim_timestamp_label] = stamp
    store.update(target)
    return True


def release_child(
    store: ObjectStore,
    taxonomy: Taxonomy,
    owner_name: str,
    namespace: str | None,
    *,
    child: str | None = None,
    leaf: str | None = None,
) -> bool:
    """Remove *child* (a folder) or *leaf* from *owner_name*'s declared set.

    Returns ``True`` when the owner was rewritten.  A missing owner, or one
    that no longer declares the entry, is left alone.
    """
    if (child is None) == (leaf is None):
        raise ValueError("exactly one of child or leaf must be given")
    scope = namespace if taxonomy.folder_type.namespaced else None
    try:
        owner = store.get(taxonomy.folder_type, owner_name, scope)
    except NotFoundError:
        return False

    modified = owner.drop_child(child) if child is not None else owner.drop_leaf(leaf)  # type: ignore[arg-type]
    if not modified:
        return False
    store.update(owner)
    logger.info("Removed %s from %s", child if child is not None else leaf, owner.describe())
    return True

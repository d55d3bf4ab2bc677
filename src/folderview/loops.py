from __future__ import annotations

import logging

from .claims import release_child
from .models import Folder
from .store import NotFoundError, ObjectStore
from .taxonomy import Taxonomy

logger = logging.getLogger(__name__)


def _parse_timestamp(folder: Folder, taxonomy: Taxonomy) -> int | None:
    raw = folder.labels.get(taxonomy.claim_timestamp_label)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def more_recent_claim(winner: Folder, child: Folder, taxonomy: Taxonomy) -> Folder:
    """Pick whichever of two folders was claimed most recently.

    A winner with no timestamp, or one that does not parse, keeps winning.
    After that the same holds for the child.  Ties go to the child.
    """
    if winner.labels.get(taxonomy.claim_timestamp_label) is None:
        return winner
    if child.labels.get(taxonomy.claim_timestamp_label) is None:
        return child
    winner_ts = _parse_timestamp(winner, taxonomy)
    if winner_ts is None:
        return winner
    child_ts = _parse_timestamp(child, taxonomy)
    if child_ts is None:
        return child
    return winner if winner_ts > child_ts else child


def loop_chain_winner(
    store: ObjectStore,
    taxonomy: Taxonomy,
    looped: Folder,
    current: Folder,
    seen: set[str] | None = None,
) -> Folder | None:
    """Return the most recently claimed folder on the cycle through *looped*.

    Walks down from *current*; the edge back into *looped* provides the first
    candidate and every folder on the way back up competes with it.  Returns
    ``None`` when no path from *current* reaches *looped*.
    """
    if seen is None:
        seen = set()
    seen.add(current.name)
    scope = taxonomy.scope(looped)

    for child_name in current.children:
        try:
            child = store.get(taxonomy.folder_type, child_name, scope)
        except NotFoundError:
            continue
        if child.name == looped.name:
            return child
        if child.name in seen:
            continue
        winner = loop_chain_winner(store, taxonomy, looped, child, seen)
        if winner is None:
            continue
        return more_recent_claim(winner, child, taxonomy)

    return None


def rectify_loop(store: ObjectStore, taxonomy: Taxonomy, looped: Folder) -> Folder | None:
    """Break the cycle through *looped* by orphaning its most recent claim.

    The winner is removed from the child set of the folder its owner label
    names.

    Args:
        store: Object store the cycle is read from and written to.
        taxonomy: Folder taxonomy of the looped folder.
        looped: The folder a traversal reached a second time.

    Returns:
        The orphaned folder, or ``None`` when no cycle or claim was found.

    Raises:
        ConflictError: If the owner changed while it was being rewritten.
    """
    winner = loop_chain_winner(store, taxonomy, looped, looped)
    if winner is None:
        logger.info("No cycle found through %s; nothing to rectify", looped.describe())
        return None
    owner_name = winner.labels.get(taxonomy.owner_name_label)
    if not owner_name:
        logger.info("Loop winner %s carries no claim; nothing to rectify", winner.describe())
        return None
    logger.info("Breaking folder loop: removing %s from %s", winner.describe(), owner_name)
    release_child(store, taxonomy, owner_name, taxonomy.scope(looped), child=winner.name)
    return winner

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .admission import admit_and_store
from .models import FolderIndex, Resource, parse_manifest
from .store import ObjectStore, OperationResult, create_or_update

logger = logging.getLogger(__name__)

# Fields the store or the controllers own; applying a manifest never overwrites them.
_MANAGED_FIELDS = frozenset({"metadata", "status"})


def load_manifests(path: Path) -> list[Resource]:
    """Load typed resources from a JSON file.

    The file holds one manifest, a list of manifests, or a ``{"items": [...]}``
    wrapper.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the JSON is malformed or a manifest is invalid.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Manifest file does not exist: {path}")
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Manifest file {path} is not valid JSON: {exc}") from exc

    if isinstance(payload, dict) and "items" in payload and "kind" not in payload:
        payload = payload["items"]
    documents = payload if isinstance(payload, list) else [payload]

    resources: list[Resource] = []
    for position, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ValueError(f"Manifest #{position} in {path} must be a JSON object")
        try:
            resources.append(parse_manifest(document))
        except ValidationError as exc:
            raise ValueError(f"Manifest #{position} in {path} failed validation: {exc}") from exc
    return resources


def apply_resource(store: ObjectStore, resource: Resource) -> OperationResult:
    """Create *resource* or bring the stored copy's body in line with it.

    Labels from the manifest are merged into the stored labels so claim
    labels written by the controllers survive a re-apply.  ``FolderIndex``
    objects go through admission first.
    """
    if isinstance(resource, FolderIndex):
        return admit_and_store(store, resource)

    body = {name: getattr(resource, name) for name in type(resource).model_fields if name not in _MANAGED_FIELDS}

    def mutate(current: Resource) -> None:
        for name, value in body.items():
            setattr(current, name, copy.deepcopy(value))
        current.metadata.labels.update(resource.metadata.labels)

    outcome = create_or_update(store, resource, mutate)
    logger.info("%s %s", resource.describe(), outcome.value)
    return outcome

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import FolderIndex
from .store import NotFoundError, ObjectStore, OperationResult, create_or_update
from .validation import validate_folder_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResponse:
    allowed: bool
    reason: str = ""


class AdmissionDenied(ValueError):
    """An object was rejected by its admission validator."""


class FolderIndexValidator:
    """Admission checks for ``FolderIndex`` objects.

    Fail-closed: any exception raised while validating becomes a rejection
    carrying the exception text.
    """

    def _check(self, index: FolderIndex, operation: str) -> AdmissionResponse:
        logger.info("Validating FolderIndex %s on %s", index.name, operation)
        try:
            validate_folder_index(index)
        except Exception as exc:
            logger.info("Rejected FolderIndex %s: %s", index.name, exc)
            return AdmissionResponse(allowed=False, reason=str(exc))
        return AdmissionResponse(allowed=True)

    def validate_create(self, index: FolderIndex) -> AdmissionResponse:
        return self._check(index, "create")

    def validate_update(self, old: FolderIndex, new: FolderIndex) -> AdmissionResponse:
        return self._check(new, "update")

    def validate_delete(self, index: FolderIndex) -> AdmissionResponse:
        logger.info("Validating FolderIndex %s on delete", index.name)
        return AdmissionResponse(allowed=True)


def admit_and_store(store: ObjectStore, index: FolderIndex, validator: FolderIndexValidator | None = None) -> OperationResult:
    """Persist *index* (create, or replace the stored spec) only if admission allows it.

    The stored status is left alone; the index reconciler owns it.

    Raises:
        AdmissionDenied: If the validator rejects the index.
    """
    validator = validator or FolderIndexValidator()
    existing: FolderIndex | None
    try:
        existing = store.get(FolderIndex, index.name)
    except NotFoundError:
        existing = None

    response = validator.validate_create(index) if existing is None else validator.validate_update(existing, index)
    if not response.allowed:
        raise AdmissionDenied(f"FolderIndex {index.name} denied: {response.reason}")

    spec = index.spec.model_copy(deep=True)

    def mutate(stored: FolderIndex) -> None:
        stored.spec = spec
        stored.metadata.labels.update(index.metadata.labels)

    outcome = create_or_update(store, index, mutate)
    logger.info("FolderIndex %s %s", index.name, outcome.value)
    return outcome

from __future__ import annotations

from collections.abc import Sequence

import rfc8785

from .canonical import canonical_digest
from .models import PolicyRule, RoleRef, Subject


class NameSerializationError(ValueError):
    """A derived-object payload could not be serialized into a name."""


def _digest(payload: dict[str, object]) -> str:
    try:
        return canonical_digest(payload)
    except (TypeError, rfc8785.CanonicalizationError) as exc:
        raise NameSerializationError(f"cannot derive object name: {exc}") from exc


def role_binding_name(folder_uid: str, namespace: str, subject: Subject, role_ref: RoleRef) -> str:
    """Deterministic role binding name for one (folder, namespace, subject, role) grant.

    The payload is hashed as RFC 8785 canonical JSON, so field order and
    whitespace never influence the result, while any change to the owner uid,
    namespace, subject or role reference yields a different name.
    """
    return _digest(
        {
            "owner": folder_uid,
            "namespace": namespace,
            "subject": subject,
            "roleRef": role_ref,
        }
    )


def role_name(folder_uid: str, namespace: str, rules: Sequence[PolicyRule]) -> str:
    """Deterministic name for a derived role holding *rules* in *namespace*."""
    return _digest(
        {
            "owner": folder_uid,
            "namespace": namespace,
            "rules": list(rules),
        }
    )

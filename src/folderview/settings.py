from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

RESOLVER_CHOICES = frozenset({"live", "index"})

DEFAULT_MANAGED_API_GROUPS = ("kubevirt.io", "subresources.kubevirt.io")
DEFAULT_MANAGED_RESOURCES = ("virtualmachines", "virtualmachineinstances")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "folderview_store"
    loop_requeue_seconds: int = 5
    error_backoff_base_seconds: int = 1
    error_backoff_max_seconds: int = 300
    max_passes: int = 1_000
    resolver: str = "live"
    index_name: str = "root"
    managed_api_groups: tuple[str, ...] = DEFAULT_MANAGED_API_GROUPS
    managed_resources: tuple[str, ...] = DEFAULT_MANAGED_RESOURCES

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_root=os.getenv("FOLDERVIEW_STORE_ROOT", "folderview_store"),
            loop_requeue_seconds=_get_env_int("FOLDERVIEW_LOOP_REQUEUE_SECONDS", default=5, minimum=0, maximum=3_600),
            error_backoff_base_seconds=_get_env_int("FOLDERVIEW_ERROR_BACKOFF_BASE_SECONDS", default=1, minimum=0),
            error_backoff_max_seconds=_get_env_int("FOLDERVIEW_ERROR_BACKOFF_MAX_SECONDS", default=300, minimum=0),
            max_passes=_get_env_int("FOLDERVIEW_MAX_PASSES", default=1_000, minimum=1),
            resolver=os.getenv("FOLDERVIEW_RESOLVER", "live"),
            index_name=os.getenv("FOLDERVIEW_INDEX_NAME", "root"),
            managed_api_groups=_get_env_list("FOLDERVIEW_MANAGED_API_GROUPS", DEFAULT_MANAGED_API_GROUPS),
            managed_resources=_get_env_list("FOLDERVIEW_MANAGED_RESOURCES", DEFAULT_MANAGED_RESOURCES),
        ).normalized()

    @property
    def store_path(self) -> Path:
        return Path(self.store_root)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.store_root.strip():
            raise ValueError("FOLDERVIEW_STORE_ROOT must be non-empty")
        index_name = self.index_name.strip()
        if not index_name:
            raise ValueError("FOLDERVIEW_INDEX_NAME must be non-empty")

        resolver = self.resolver.strip().lower()
        if resolver not in RESOLVER_CHOICES:
            raise ValueError(f"FOLDERVIEW_RESOLVER must be one of: {', '.join(sorted(RESOLVER_CHOICES))}")

        # Backoff cap never sits below the first retry delay.
        backoff_max = max(self.error_backoff_max_seconds, self.error_backoff_base_seconds)

        groups = tuple(group.strip() for group in self.managed_api_groups if group.strip())
        if not groups:
            raise ValueError("FOLDERVIEW_MANAGED_API_GROUPS must name at least one API group")
        resources = tuple(resource.strip() for resource in self.managed_resources if resource.strip())
        if not resources:
            raise ValueError("FOLDERVIEW_MANAGED_RESOURCES must name at least one resource")

        return RuntimeSettings(
            store_root=self.store_root,
            loop_requeue_seconds=self.loop_requeue_seconds,
            error_backoff_base_seconds=self.error_backoff_base_seconds,
            error_backoff_max_seconds=backoff_max,
            max_passes=self.max_passes,
            resolver=resolver,
            index_name=index_name,
            managed_api_groups=groups,
            managed_resources=resources,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def load_env_file(path: Path | None = None) -> bool:
    """Load ``FOLDERVIEW_*`` overrides from a ``.env`` file.

    Looks for ``.env`` in the current directory when *path* is not given.
    Variables already present in the environment win over the file.

    Returns:
        True if a file was found and loaded.
    """
    env_path = path if path is not None else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    load_dotenv(env_path)
    return True

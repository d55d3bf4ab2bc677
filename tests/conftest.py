from datetime import UTC, datetime
from pathlib import Path

import pytest

from folderview.store import FileObjectStore


@pytest.fixture
def store(tmp_path: Path) -> FileObjectStore:
    return FileObjectStore(tmp_path / "store")


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

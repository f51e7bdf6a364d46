import json
from pathlib import Path

import pytest

from contract_indexer.storage import Storage

from solc_fakes import FakeInvoker, FakeResolver, write_fake_solc


@pytest.fixture
def storage(tmp_path):
    """A Storage on a fresh DuckDB file, closed after the test."""
    db = Storage(str(tmp_path / "db" / "contracts.duckdb"))
    yield db
    db.close()


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def fake_solc(tmp_path, monkeypatch):
    """Path of an executable fake solc; behaviour is driven by env vars."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("FAKE_SOLC_MODE", "ok")
    monkeypatch.setenv("FAKE_SOLC_MARKER", str(tmp_path / "crashed-once"))
    return write_fake_solc(bin_dir)


def write_bulk_entry(root: Path, folder: str, metadata: dict, files: dict) -> Path:
    """Create one bulk-dataset folder (``metadata.json`` + files)."""
    entry = root / folder
    entry.mkdir(parents=True, exist_ok=True)
    (entry / "metadata.json").write_text(json.dumps(metadata))
    for name, content in files.items():
        (entry / name).write_text(content if isinstance(content, str) else json.dumps(content))
    return entry


@pytest.fixture
def bulk_entry():
    return write_bulk_entry

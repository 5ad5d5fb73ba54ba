"""
Integration test fixtures — a full vault on disk (SQLite metadata DB,
local blob store, audit log directory) driven through VaultRuntime.

Mark with @pytest.mark.integration to skip in unit-only runs.

Run: pytest tests/integration/ -v -m integration
"""

from __future__ import annotations

import pytest

from docvault.engine.config import load_config
from docvault.engine.runtime import VaultRuntime


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: exercises the full runtime against disk")


@pytest.fixture
def vault_project(tmp_path):
    """Create a project directory with docvault.yaml and its data dirs."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "docvault.yaml").write_text(
        "vault:\n"
        "  name: IntegrationVault\n"
        "  environment: dev\n"
        "database:\n"
        f"  url: sqlite:///{root / 'vault.db'}\n"
        "blob_store:\n"
        "  backend: local\n"
        f"  root: {root / 'blobs'}\n"
        "  signing_key: integration-key\n"
        "  base_url: http://vault.test/blobs\n"
        "logging:\n"
        f"  directory: {root / 'logs'}\n"
        "  async_queue:\n"
        "    flush_interval_ms: 10\n"
        "quota:\n"
        "  default_storage_limit: 1000\n"
        "maintenance:\n"
        "  orphan_grace_seconds: 0\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture
def vault_runtime(vault_project):
    """A started runtime built from the project's docvault.yaml."""
    config = load_config(str(vault_project / "docvault.yaml"))
    runtime = VaultRuntime(config)
    runtime.startup(create_tables=True)
    yield runtime
    runtime.shutdown()

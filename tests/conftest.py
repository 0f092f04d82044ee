"""
Shared pytest fixtures for the vaultkeeper test suite.

Autouse fixtures below isolate tests from the live user data:
  - Audit logger   -> temp directory  (prevents test events in ./audit_logs)
  - Environment    -> VAULTKEEPER_* variables removed, cwd moved to tmp_path
                      (no stray .env or real vault directory is picked up)

Vaults are created with the minimum KDF iteration count to keep the suite fast.
"""

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from vaultkeeper.vault import MIN_ITERATIONS, VaultManager
from vaultkeeper.vault.editor import BaseEditor

MASTER_PASSWORD = "correct-horse"
TEST_ITERATIONS = MIN_ITERATIONS


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import vaultkeeper.core.audit_log as audit_mod

    # Reset the singleton so the next call to get_audit_logger() creates
    # a fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path_factory, monkeypatch):
    for var in (
        "VAULTKEEPER_DIR",
        "VAULTKEEPER_LOG_DIR",
        "VAULTKEEPER_EDITOR",
        "VAULTKEEPER_KDF_ITERATIONS",
    ):
        monkeypatch.delenv(var, raising=False)
    work = tmp_path_factory.mktemp("cwd")
    monkeypatch.chdir(work)


class FakeEditor(BaseEditor):
    """Editor capability for tests: applies ``transform`` to the file's bytes.

    Records every path it was launched on so tests can check the
    workspace was cleaned up afterwards.
    """

    def __init__(
        self,
        transform: Optional[Callable[[bytes], bytes]] = None,
        exit_code: int = 0,
        raise_exc: Optional[BaseException] = None,
    ):
        self.transform = transform
        self.exit_code = exit_code
        self.raise_exc = raise_exc
        self.launched: List[Path] = []
        self.seen: List[bytes] = []

    def launch(self, path: Path) -> int:
        self.launched.append(Path(path))
        self.seen.append(Path(path).read_bytes())
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.transform is not None:
            Path(path).write_bytes(self.transform(Path(path).read_bytes()))
        return self.exit_code


@pytest.fixture
def fake_editor_cls():
    return FakeEditor


@pytest.fixture
def master_password():
    return MASTER_PASSWORD


@pytest.fixture
def vault_dir(tmp_path):
    return tmp_path / "vault"


@pytest.fixture
def new_vault(vault_dir):
    """A created (but locked) vault."""
    manager = VaultManager(vault_dir)
    manager.create(MASTER_PASSWORD, iterations=TEST_ITERATIONS)
    return manager


@pytest.fixture
def vault(new_vault):
    """A created and unlocked vault; locked again on teardown."""
    new_vault.unlock(MASTER_PASSWORD)
    yield new_vault
    new_vault.lock()

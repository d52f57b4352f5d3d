"""
Setup tests: repository layout, logging configuration and the error catalogue.
"""
import logging

from src.shared.errors import (
    AppErrors,
    ReconciliationWarning,
    RollbackFailure,
    StorageError,
    format_storage_error,
)
from src.shared.logging_config import configure_logging, resolve_level


def test_repo_structure():
    """Verify basic repository structure exists."""
    from pathlib import Path

    repo_root = Path(__file__).parent.parent

    assert (repo_root / "pyproject.toml").exists()
    assert (repo_root / "run.py").exists()
    assert (repo_root / "src" / "invoicing" / "storage").is_dir()
    assert (repo_root / "src" / "shared").is_dir()
    assert (repo_root / "src" / "web" / "routers").is_dir()


class TestLogging:
    def test_resolve_level_from_name(self):
        assert resolve_level("debug") == logging.DEBUG
        assert resolve_level("nonsense") == logging.INFO

    def test_resolve_level_from_env(self, monkeypatch):
        monkeypatch.setenv("CATERING_LOG_LEVEL", "warning")
        assert resolve_level() == logging.WARNING

    def test_configure_logging_quiets_noisy_loggers(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        configure_logging(logging.DEBUG)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        root.handlers[:] = handlers
        root.setLevel(level)


class TestErrors:
    def test_storage_error_carries_context(self):
        e = StorageError("disk full", operation="update", invoice_id="inv-1")
        assert str(e) == "disk full"
        assert e.operation == "update"
        assert e.invoice_id == "inv-1"

    def test_rollback_failure_is_storage_error(self):
        assert issubclass(RollbackFailure, StorageError)

    def test_reconciliation_warning_is_a_warning(self):
        w = ReconciliationWarning("inv-1", RuntimeError("timeout"))
        assert isinstance(w, UserWarning)
        assert "inv-1" in str(w)
        assert "timeout" in str(w)

    def test_format_storage_error(self):
        msg = format_storage_error(StorageError("locked", operation="update_notes"))
        assert msg.startswith(AppErrors.SAVE_FAILED)
        assert "update_notes: locked" in msg

    def test_format_rollback_failure(self):
        assert format_storage_error(RollbackFailure("boom")).startswith(AppErrors.UPDATE_REVERTED)

    def test_format_unexpected_error(self):
        assert format_storage_error(RuntimeError("x")) == "Unexpected error: x"

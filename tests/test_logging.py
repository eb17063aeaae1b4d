"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from sitectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_one_record(tmp_path: Path) -> None:
    """A completed scope appends exactly one JSON line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "deploy",
        args={"environment": "prod"},
        target={"kind": "site", "domain": "example.com"},
    ) as op:
        op.add_step("repository.sync", detail="revision=abc123")
        op.success("deploy completed.", changed=3, context={"path": tmp_path})

    records = _records(logger)
    assert len(records) == 1
    record = records[0]
    assert record["command"] == "deploy"
    assert record["args"] == {"environment": "prod"}
    assert record["target"] == {"kind": "site", "domain": "example.com"}
    assert record["steps"] == [
        {"name": "repository.sync", "status": "success", "detail": "revision=abc123"}
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 3
    assert result["context"] == {"path": str(tmp_path)}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="boom"):
        with logger.operation("restart"):
            raise ValueError("boom")

    result = _records(logger)[0]["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1
    assert "boom" in str(result["message"])


def test_error_result_defaults_errors_to_message(tmp_path: Path) -> None:
    """``error`` without explicit errors records the message."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("verify") as op:
        op.error("probe failed")

    result = _records(logger)[0]["result"]
    assert isinstance(result, dict)
    assert result["errors"] == ["probe failed"]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("status", args={"json": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so later writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("deploy") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("deploy") as op:
        op.success("done", changed=0)

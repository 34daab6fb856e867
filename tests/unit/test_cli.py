"""Unit tests for the command-line entrypoint."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from local_workflow_engine.engine.config import EngineSettings
from local_workflow_engine.engine.main import (
    EXIT_CONFIG,
    EXIT_FAILED,
    EXIT_OK,
    build_parser,
    main,
)
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.workflow.models import Workflow


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


@pytest.fixture
def stored(settings: EngineSettings) -> AutomationService:
    """A service over the same state directory the CLI will open."""
    return AutomationService(settings, inline_runs=True)


def _save(service: AutomationService, workflow: Workflow) -> Workflow:
    saved = service.save_workflow(workflow, user_id=workflow.created_by)
    assert saved.value is not None, saved.message
    return saved.value.workflow


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_bad_log_level_is_a_config_error(
    settings: EngineSettings, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "bogus")

    assert main(["list-workflows", "--user", "alice"]) == EXIT_CONFIG
    assert "Configuration error" in capsys.readouterr().err


def test_list_and_run_workflow(
    stored: AutomationService,
    make_workflow: Callable[..., Workflow],
    capsys: pytest.CaptureFixture[str],
) -> None:
    workflow = _save(stored, make_workflow())

    assert main(["list-workflows", "--user", "alice"]) == EXIT_OK
    assert f"{workflow.id}  Morning digest  (enabled, owner=alice)" in capsys.readouterr().out

    code = main(
        ["run-workflow", "--user", "alice", "--workflow-id", workflow.id, "--var", "who=ann"]
    )

    assert code == EXIT_OK
    assert "succeeded - Workflow completed successfully" in capsys.readouterr().out
    [record] = stored.history.for_workflow(workflow.id)
    assert record.variables["who"] == "ann"


def test_failed_run_exits_nonzero(
    stored: AutomationService,
    make_workflow: Callable[..., Workflow],
    capsys: pytest.CaptureFixture[str],
) -> None:
    # No chat adapter is configured without a bot token.
    workflow = _save(
        stored, make_workflow(actions=[{"type": "send_chat", "chatId": "1", "text": "hi"}])
    )

    code = main(["run-workflow", "--user", "alice", "--workflow-id", workflow.id])

    assert code == EXIT_FAILED
    assert "failed - Action 1 (send_chat) failed" in capsys.readouterr().out


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        (["run-workflow", "--user", "alice", "--workflow-id", "wf", "--var", "novalue"], 2),
        (["run-workflow", "--user", "alice", "--workflow-id", "missing"], 3),
        (["approve", "--user", "bob", "missing"], 3),
    ],
)
def test_error_exit_codes(settings: EngineSettings, argv: list[str], expected: int) -> None:
    assert main(argv) == expected


def test_export_and_import_files(
    stored: AutomationService,
    make_workflow: Callable[..., Workflow],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _save(stored, make_workflow())
    target = tmp_path / "digest.workflow.json"

    assert main(["export", "--user", "alice", "--output", str(target)]) == EXIT_OK
    assert f"Exported 1 workflows to {target}" in capsys.readouterr().out
    assert json.loads(target.read_text(encoding="utf-8"))["exportedBy"] == "alice"

    assert main(["import", "--user", "bob", str(target)]) == EXIT_OK
    assert "Imported 1, skipped 0" in capsys.readouterr().out
    assert [w.name for w in stored.workflows.owned_by("bob")] == ["Morning digest"]


def test_template_commands(
    stored: AutomationService, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["list-templates", "--category", "customer support"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "support-escalation  Support Escalation  (Customer Support, needs 1 target(s))" in out
    assert "urgent-email-chat" not in out

    argv = ["create-from-template", "email-subject-keyword", "--user", "alice"]
    assert main(argv) == EXIT_FAILED
    assert "requires parameter 'keyword'" in capsys.readouterr().err

    assert main([*argv, "--target", "bob", "--param", "keyword=invoice"]) == EXIT_OK
    assert "Email Subject: invoice" in capsys.readouterr().out
    [workflow] = stored.workflows.owned_by("alice")
    assert workflow.name == "Email Subject: invoice"


def test_task_commands(settings: EngineSettings, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["enqueue-task", "Plan my week", "--priority", "urgent"]) == EXIT_OK
    out = capsys.readouterr().out
    task_id = out.split("Queued task ", 1)[1].split()[0]

    assert main(["list-tasks", "--status", "pending"]) == EXIT_OK
    assert f"{task_id}  chat_generation  p0  pending" in capsys.readouterr().out

    assert main(["cancel-task", task_id]) == EXIT_OK
    assert main(["cancel-task", task_id]) == EXIT_FAILED
    assert "Error (concurrency)" in capsys.readouterr().err


def test_sweep_prints_counts(settings: EngineSettings, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["sweep"]) == EXIT_OK
    last = capsys.readouterr().out.strip().splitlines()[-1]
    assert json.loads(last) == {"processedEvents": 0, "executions": 0, "approvals": 0, "tasks": 0}

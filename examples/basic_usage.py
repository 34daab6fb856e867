#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the engine components directly:

* load settings from `.env`
* save a workflow with a manual run in mind
* run it once and print the execution history

State is persisted under `WORKFLOW_STATE_PATH` (default: `workflow_state/`).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from local_workflow_engine.engine.config import EngineSettings
from local_workflow_engine.engine.logging import configure_logging
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.workflow.models import Workflow


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Save and run a workflow (programmatic example).")
    parser.add_argument("--user", default="demo", help="Acting user id")
    parser.add_argument("--name", default="Hello workflow", help="Workflow name")
    parser.add_argument("--who", default="world", help="Value for the {{who}} variable")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)
    service = AutomationService.from_settings(settings)

    workflow = Workflow.model_validate(
        {
            "name": args.name,
            "createdBy": args.user,
            "variables": {"who": args.who},
            "triggers": [{"type": "time_schedule", "scheduleType": "daily", "timeOfDay": "08:00"}],
            "actions": [
                {"type": "log", "message": "Hello {{who}} from {{workflow_name}}"},
                {
                    "type": "conditional",
                    "condition": "who == world",
                    "trueAction": {"type": "log", "message": "Greeting everyone"},
                },
            ],
        }
    )

    saved = service.save_workflow(workflow, user_id=args.user)
    if not saved.ok or saved.value is None:
        print(f"Could not save workflow: {saved.message}")
        return 1
    for warning in saved.value.validation.warnings:
        print(f"Warning: {warning.message}")

    ran = service.run_workflow(saved.value.workflow.id, user_id=args.user)
    if not ran.ok or ran.value is None:
        print(f"Could not run workflow: {ran.message}")
        return 1

    print(f"Execution {ran.value.execution_id}: {ran.value.status.value}")
    print(f"Persisted to: {settings.state_path}")
    return 0 if ran.value.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())

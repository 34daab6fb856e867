"""CLI entrypoint for the local workflow engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from local_workflow_engine import __version__
from local_workflow_engine.engine.config import EngineSettings
from local_workflow_engine.engine.logging import configure_logging
from local_workflow_engine.engine.results import Outcome
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.tasks.models import (
    PRIORITY_NAMES,
    BackgroundTask,
    TaskStatus,
    TaskType,
)
from local_workflow_engine.engine.workflow.import_export import (
    WORKFLOW_FILE_EXTENSION,
    export_to_string,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_FAILED = 3


def _parse_vars(values: list[str] | None) -> dict[str, str]:
    variables: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {item!r}")
        variables[key.strip()] = value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="local-workflow-engine",
        description="Local-first workflow automation engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"local-workflow-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run trigger evaluation and the task consumer until Ctrl+C")

    serve = subparsers.add_parser("serve", help="Serve the REST API (engine loops included)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")

    list_workflows = subparsers.add_parser(
        "list-workflows", help="List workflows visible to a user"
    )
    list_workflows.add_argument("--user", required=True, help="Acting user id")

    run_workflow = subparsers.add_parser("run-workflow", help="Run a workflow once, now")
    run_workflow.add_argument("--user", required=True, help="Acting user id")
    run_workflow.add_argument("--workflow-id", required=True, help="Workflow to run")
    run_workflow.add_argument(
        "--var",
        action="append",
        default=None,
        help="Extra context variable as KEY=VALUE (repeatable)",
    )

    export = subparsers.add_parser("export", help="Export workflows to a .workflow.json file")
    export.add_argument("--user", required=True, help="Acting user id")
    export.add_argument(
        "--workflow-id",
        action="append",
        default=None,
        help="Workflow to export (repeatable; default: every workflow the user can view)",
    )
    export.add_argument(
        "--output",
        default=None,
        help=f"Output file (default: stdout). Conventionally ends in {WORKFLOW_FILE_EXTENSION}",
    )

    import_ = subparsers.add_parser("import", help="Import workflows from a .workflow.json file")
    import_.add_argument("--user", required=True, help="Acting user id")
    import_.add_argument("path", help="Workflow file to import")
    import_.add_argument(
        "--overwrite-existing",
        action="store_true",
        help="Import name clashes as '<name> (Imported)' instead of skipping them",
    )

    list_templates = subparsers.add_parser("list-templates", help="List workflow templates")
    list_templates.add_argument("--category", default=None, help="Only this category")

    from_template = subparsers.add_parser(
        "create-from-template", help="Create a workflow from a template"
    )
    from_template.add_argument("template_id", help="Template id (see list-templates)")
    from_template.add_argument("--user", required=True, help="Owner of the new workflow")
    from_template.add_argument(
        "--target", action="append", default=None, help="Target user id (repeatable)"
    )
    from_template.add_argument(
        "--param",
        action="append",
        default=None,
        help="Template parameter as KEY=VALUE (repeatable)",
    )

    for name, help_text in (("approve", "Approve a pending action"), ("deny", "Deny it")):
        decide = subparsers.add_parser(name, help=help_text)
        decide.add_argument("--user", required=True, help="Approver user id")
        decide.add_argument("approval_id", help="Approval id from the notification")

    enqueue = subparsers.add_parser("enqueue-task", help="Queue a background inference task")
    enqueue.add_argument("prompt", help="Prompt text")
    enqueue.add_argument(
        "--type",
        dest="task_type",
        choices=[t.value for t in TaskType],
        default=TaskType.CHAT_GENERATION.value,
        help="Task type",
    )
    enqueue.add_argument(
        "--priority",
        choices=sorted(PRIORITY_NAMES),
        default="normal",
        help="Priority level",
    )
    enqueue.add_argument(
        "--image", action="append", default=None, help="Image file path (repeatable)"
    )
    enqueue.add_argument("--max-retries", type=int, default=3, help="Retry budget")

    list_tasks = subparsers.add_parser("list-tasks", help="List background tasks")
    list_tasks.add_argument(
        "--status", choices=[s.value for s in TaskStatus], default=None, help="Filter by status"
    )

    cancel = subparsers.add_parser("cancel-task", help="Cancel a background task")
    cancel.add_argument("task_id", help="Task id")

    subparsers.add_parser("sweep", help="Apply retention to history and processed events")

    return parser


def _report_failure(outcome: Outcome[Any]) -> int:
    print(f"Error ({outcome.error_kind}): {outcome.message}", file=sys.stderr)
    return EXIT_FAILED


def _run_forever(service: AutomationService) -> int:
    service.start()
    print("Workflow engine running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("Stopping...")
    finally:
        service.stop()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    if args.command == "serve":
        # Imported lazily: the server stack is only needed for this command.
        import uvicorn

        from local_workflow_engine.server.app import create_app

        uvicorn.run(create_app(), host=args.host, port=args.port)
        return EXIT_OK

    try:
        service = AutomationService.from_settings(settings)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        if args.command == "run":
            return _run_forever(service)

        if args.command == "list-workflows":
            listed = service.list_workflows(user_id=args.user)
            if not listed.ok or listed.value is None:
                return _report_failure(listed)
            for workflow in listed.value:
                state = "enabled" if workflow.is_enabled else "disabled"
                print(f"{workflow.id}  {workflow.name}  ({state}, owner={workflow.created_by})")
            return EXIT_OK

        if args.command == "run-workflow":
            try:
                variables = _parse_vars(args.var)
            except argparse.ArgumentTypeError as e:
                print(str(e), file=sys.stderr)
                return EXIT_CONFIG
            ran = service.run_workflow(args.workflow_id, user_id=args.user, variables=variables)
            if not ran.ok or ran.value is None:
                return _report_failure(ran)
            run = ran.value
            print(f"Execution {run.execution_id}: {run.status.value} - {run.message}")
            return EXIT_OK if run.ok else EXIT_FAILED

        if args.command == "export":
            exported = service.export_workflows(args.workflow_id, user_id=args.user)
            if not exported.ok or exported.value is None:
                return _report_failure(exported)
            text = export_to_string(exported.value)
            if args.output:
                Path(args.output).write_text(text + "\n", encoding="utf-8")
                print(f"Exported {len(exported.value.workflows)} workflows to {args.output}")
            else:
                print(text)
            return EXIT_OK

        if args.command == "import":
            text = Path(args.path).read_text(encoding="utf-8")
            imported = service.import_workflows(
                text, user_id=args.user, overwrite_existing=args.overwrite_existing
            )
            if not imported.ok or imported.value is None:
                return _report_failure(imported)
            result = imported.value
            print(f"Imported {result.imported_count}, skipped {result.skipped_count}")
            for error in result.errors:
                print(f"  {error}", file=sys.stderr)
            return EXIT_OK if result.success else EXIT_FAILED

        if args.command == "list-templates":
            templates = service.list_templates(category=args.category)
            if not templates.ok or templates.value is None:
                return _report_failure(templates)
            for template in templates.value:
                needs = f", needs {template.required_users} target(s)"
                extra = needs if template.required_users else ""
                print(f"{template.id}  {template.name}  ({template.category}{extra})")
            return EXIT_OK

        if args.command == "create-from-template":
            try:
                params = _parse_vars(args.param)
            except argparse.ArgumentTypeError as e:
                print(str(e), file=sys.stderr)
                return EXIT_CONFIG
            created = service.create_from_template(
                args.template_id,
                user_id=args.user,
                target_user_ids=args.target,
                params=params,
            )
            if not created.ok or created.value is None:
                return _report_failure(created)
            workflow = created.value.workflow
            print(f"Created workflow {workflow.id}  {workflow.name}")
            for warning in created.value.validation.warnings:
                print(f"  warning: {warning.message}", file=sys.stderr)
            return EXIT_OK

        if args.command in {"approve", "deny"}:
            if args.command == "approve":
                decided = service.approve(args.approval_id, user_id=args.user)
            else:
                decided = service.deny(args.approval_id, user_id=args.user)
            if not decided.ok or decided.value is None:
                return _report_failure(decided)
            print(f"Execution {decided.value.execution_id}: {decided.value.status.value}")
            return EXIT_OK

        if args.command == "enqueue-task":
            task = BackgroundTask(
                type=TaskType(args.task_type),
                prompt=args.prompt,
                images=list(args.image or []),
                priority=PRIORITY_NAMES[args.priority],
                max_retries=args.max_retries,
            )
            queued = service.enqueue_task(task)
            if not queued.ok or queued.value is None:
                return _report_failure(queued)
            print(f"Queued task {queued.value.id}")
            return EXIT_OK

        if args.command == "list-tasks":
            status = TaskStatus(args.status) if args.status else None
            tasks = service.list_tasks(status=status)
            if not tasks.ok or tasks.value is None:
                return _report_failure(tasks)
            for t in tasks.value:
                print(f"{t.id}  {t.type.value}  p{t.priority}  {t.status.value}")
            return EXIT_OK

        if args.command == "cancel-task":
            cancelled = service.cancel_task(args.task_id)
            if not cancelled.ok:
                return _report_failure(cancelled)
            print(f"Cancelled task {args.task_id}")
            return EXIT_OK

        if args.command == "sweep":
            swept = service.sweep()
            if not swept.ok or swept.value is None:
                return _report_failure(swept)
            summary = {
                "processedEvents": swept.value.processed_events,
                "executions": swept.value.executions,
                "approvals": swept.value.approvals,
                "tasks": swept.value.tasks,
            }
            print(json.dumps(summary))
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except Exception:
        logger.exception("Command failed")
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    raise SystemExit(main())

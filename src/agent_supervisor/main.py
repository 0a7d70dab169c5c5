"""CLI entrypoint for agent-supervisor."""

import logging
import sys
from pathlib import Path

import rich_click as click

from agent_supervisor import __version__
from agent_supervisor.execution.controllers import (
    AuditShowCommand,
    RunTaskCommand,
    SaveDeliverableCommand,
    SupervisorCliController,
)
from agent_supervisor.execution.errors import SupervisorError

click.rich_click.USE_MARKDOWN = True
SUPERVISOR_CONTROLLER = SupervisorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-supervisor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for supervisor progress output (stderr).",
)
def agent_supervisor(log_level: str) -> None:
    """Supervise external AI agent runs with git checkpoints, retries and an audit trail."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@agent_supervisor.command("run")
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    required=True,
    help="Workspace directory the agent edits. Checkpointed with git.",
)
@click.option("--prompt", default=None, help="Task prompt text.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Read the task prompt from a file instead of --prompt.",
)
@click.option(
    "--context-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Optional context prepended to the prompt.",
)
@click.option("--task-id", default=None, help="Task id for the audit trail. Random if omitted.")
@click.option(
    "--description",
    default="agent task",
    show_default=True,
    help="Human-readable task label used in commits and logs.",
)
@click.option("--agent-kind", default=None, help="Agent kind used to select a validator.")
@click.option(
    "--require-deliverable",
    "required_deliverables",
    multiple=True,
    help="Deliverable file that must exist under <workspace>/deliverables/. Can be repeated.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt budget. If omitted, AGENT_SUPERVISOR_MAX_ATTEMPTS is used.",
)
@click.option(
    "--audit-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help=(
        "Audit trail root directory, outside the workspace. "
        "Defaults to AGENT_SUPERVISOR_AUDIT_ROOT or ~/.agent_supervisor/audit."
    ),
)
@click.option(
    "--tool-servers",
    "tool_servers_file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="JSON file with tool server definitions exposed to the agent.",
)
def run(  # noqa: PLR0913
    workspace_dir: Path,
    prompt: str | None,
    prompt_file: Path | None,
    context_file: Path | None,
    task_id: str | None,
    description: str,
    agent_kind: str | None,
    required_deliverables: tuple[str, ...],
    max_attempts: int | None,
    audit_root: Path | None,
    tool_servers_file: Path | None,
) -> None:
    """Run one agent task with checkpoints, validation and retries."""

    if (prompt is None) == (prompt_file is None):
        raise click.UsageError("Provide exactly one of --prompt or --prompt-file.")
    prompt_text = prompt if prompt is not None else prompt_file.read_text("utf-8")  # type: ignore[union-attr]
    context = context_file.read_text("utf-8") if context_file is not None else ""

    try:
        result = SUPERVISOR_CONTROLLER.run(
            RunTaskCommand(
                workspace_dir=workspace_dir,
                prompt=prompt_text,
                task_id=task_id,
                description=description,
                agent_kind=agent_kind,
                context=context,
                required_deliverables=required_deliverables,
                max_attempts=max_attempts,
                audit_root=audit_root,
                tool_servers_file=tool_servers_file,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Supervised agent run failed.")


@agent_supervisor.command("audit")
@click.option("--task-id", required=True, help="Task id to show.")
@click.option(
    "--audit-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Audit trail root directory.",
)
def audit(task_id: str, audit_root: Path | None) -> None:
    """Show the audit trail of one task."""

    _emit_lines(
        SUPERVISOR_CONTROLLER.audit(
            AuditShowCommand(
                task_id=task_id,
                audit_root=audit_root,
            ),
        ),
    )


@agent_supervisor.command("save-deliverable")
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Workspace directory; the file lands in <workspace>/deliverables/.",
)
@click.option("--filename", required=True, help="Plain file name, no directories.")
@click.option(
    "--content",
    default=None,
    help="File content. If omitted, content is read from stdin.",
)
def save_deliverable_command(workspace_dir: Path, filename: str, content: str | None) -> None:
    """Atomically write one deliverable file."""

    if content is None:
        content = click.get_text_stream("stdin").read()
    try:
        lines = SUPERVISOR_CONTROLLER.save_deliverable(
            SaveDeliverableCommand(
                workspace_dir=workspace_dir,
                filename=filename,
                content=content,
            ),
        )
    except (ValueError, SupervisorError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_supervisor()

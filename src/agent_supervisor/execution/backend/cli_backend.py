"""Subprocess-based execution backend for stream-json CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from agent_supervisor.config import DEFAULT_COMMAND_TEMPLATE
from agent_supervisor.execution.backend.base import ExecutionRequest
from agent_supervisor.execution.errors import BackendRunError
from agent_supervisor.execution.events import StreamEvent, parse_event_line

logger = logging.getLogger(__name__)

TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)
_STDERR_TAIL_CHARS = 2_000


class CliStreamBackend:
    """Run the agent CLI in the workspace and stream its JSON events from stdout."""

    def __init__(self, command_template: str = DEFAULT_COMMAND_TEMPLATE) -> None:
        self.command_template = command_template

    def stream(self, request: ExecutionRequest) -> CliEventStream:
        scratch_dir = Path(tempfile.mkdtemp(prefix="agent-supervisor-"))
        prompt_file = scratch_dir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        tool_config = scratch_dir / "tool_servers.json"
        tool_config.write_text(
            json.dumps({"mcpServers": request.tool_servers}, ensure_ascii=False, indent=2),
            "utf-8",
        )

        try:
            run_args = _build_run_args(
                command_template=self.command_template,
                values={
                    "model": request.model_id,
                    "prompt": request.prompt,
                    "prompt_file": str(prompt_file),
                    "max_turns": str(request.max_turns),
                    "permission_mode": request.permission_mode,
                    "tool_config": str(tool_config),
                },
            )
        except BackendRunError:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise

        env = os.environ.copy()
        env["AGENT_SUPERVISOR_MODEL"] = request.model_id
        env["AGENT_SUPERVISOR_WORKSPACE"] = str(request.working_directory)

        stderr_handle = tempfile.TemporaryFile(mode="w+", encoding="utf-8")  # noqa: SIM115
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.working_directory,
                env=env,
                stdout=subprocess.PIPE,
                stderr=stderr_handle,
                text=True,
                encoding="utf-8",
            )
        except FileNotFoundError as error:
            stderr_handle.close()
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise BackendRunError(
                f"Execution service command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            stderr_handle.close()
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise BackendRunError(
                f"Execution service failed to start: {error}",
                transient=True,
            ) from error

        logger.debug("Started execution service pid=%s: %s", process.pid, run_args[0])
        return CliEventStream(process, stderr_handle=stderr_handle, scratch_dir=scratch_dir)


class CliEventStream:
    """Event stream bound to one running agent process."""

    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        stderr_handle: IO[str],
        scratch_dir: Path,
    ) -> None:
        self._process = process
        self._stderr_handle = stderr_handle
        self._scratch_dir = scratch_dir
        self._closed = False
        self._released = False

    def __iter__(self) -> Iterator[StreamEvent]:
        stdout = self._process.stdout
        if stdout is None:
            raise BackendRunError("Execution service stdout is not available.", transient=False)
        for line in stdout:
            event = parse_event_line(line)
            if event is not None:
                yield event
        returncode = self._process.wait()
        if returncode != 0 and not self._closed:
            stderr_tail = self._stderr_tail()
            self._release()
            raise BackendRunError(
                f"Execution service exited with code {returncode}: {stderr_tail}",
                transient=returncode in TRANSIENT_EXIT_CODES,
            )
        self._release()

    def close(self) -> None:
        self._closed = True
        if self._process.poll() is None:
            _terminate_process(self._process)
        self._release()

    def _stderr_tail(self) -> str:
        try:
            self._stderr_handle.seek(0)
            text = self._stderr_handle.read()
        except (OSError, ValueError):
            return ""
        return text.strip()[-_STDERR_TAIL_CHARS:]

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._process.stdout is not None:
            self._process.stdout.close()
        self._stderr_handle.close()
        shutil.rmtree(self._scratch_dir, ignore_errors=True)


def _build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Execution command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Execution command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Execution command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

"""Deliverable file writer used by agents through the helper tool."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from agent_supervisor.execution.errors import DeliverableWriteError

logger = logging.getLogger(__name__)

DELIVERABLES_DIRNAME = "deliverables"


def save_deliverable(target_dir: Path | str, filename: str, content: str) -> Path:
    """Write ``content`` to ``<target_dir>/deliverables/<filename>`` atomically.

    The target directory is passed explicitly so concurrent tasks never
    resolve to a shared working directory. Returns the absolute path written.
    """

    if not filename or Path(filename).name != filename or filename in {".", ".."}:
        raise ValueError(f"Deliverable filename must be a plain file name: {filename!r}")

    deliverables_dir = Path(target_dir).resolve() / DELIVERABLES_DIRNAME
    filepath = deliverables_dir / filename
    logger.debug(
        "Saving deliverable to %s (uid=%s gid=%s)",
        filepath,
        _process_uid(),
        _process_gid(),
    )

    try:
        deliverables_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.error("Failed to create deliverables directory %s: %s", deliverables_dir, error)
        raise DeliverableWriteError(
            f"Cannot create deliverables directory: {error}. "
            f"Check volume permissions and ownership (process uid={_process_uid()}, "
            f"gid={_process_gid()}).",
        ) from error

    temp_path: str | None = None
    try:
        fd, temp_path = tempfile.mkstemp(prefix=f".{filename}.", dir=deliverables_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(temp_path, 0o644)  # noqa: S103
        os.replace(temp_path, filepath)
        temp_path = None
    except OSError as error:
        logger.error("Failed to write deliverable %s: %s", filepath, error)
        raise DeliverableWriteError(
            f"Cannot write deliverable file: {error}. "
            f"Check volume permissions (UID mismatch? process uid={_process_uid()}, "
            f"gid={_process_gid()}).",
        ) from error
    finally:
        if temp_path is not None and os.path.exists(temp_path):
            os.unlink(temp_path)

    logger.info("Wrote %d chars to deliverable %s", len(content), filename)
    return filepath


def _process_uid() -> str:
    getuid = getattr(os, "getuid", None)
    return str(getuid()) if getuid is not None else "n/a"


def _process_gid() -> str:
    getgid = getattr(os, "getgid", None)
    return str(getgid()) if getgid is not None else "n/a"

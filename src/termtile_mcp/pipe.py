"""Raw pane output files written by ``tmux pipe-pane``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .fence import count_close_tags
from .tmux.utils import sanitize_workspace_name

logger = logging.getLogger(__name__)

PIPE_FILE_GLOB = "termtile-pipe-*.raw"


def pipe_file_path(directory: Path, workspace: str, slot: int) -> Path:
    return Path(directory) / f"termtile-pipe-{sanitize_workspace_name(workspace)}-{slot}.raw"


def pipe_file_size(path: Path | str) -> int:
    """Return the size of ``path`` in bytes, or 0 when it cannot be read."""

    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def count_close_tags_in_pipe_file(path: Path | str) -> tuple[int, int]:
    """Count close markers in the raw stream; returns ``(count, size)``.

    The stream keeps its escape sequences, so a marker the TUI drew one
    character at a time never matches. Raises ``OSError`` when the file is missing.
    """

    data = Path(path).read_bytes()
    return count_close_tags(data.decode("utf-8", errors="replace")), len(data)


def create_pipe_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")


def remove_pipe_file(path: Path | str) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove pipe file", extra={"path": str(path), "error": str(exc)})


def clean_stale_pipe_files(directory: Path, keep: Iterable[Path | str]) -> list[Path]:
    """Delete pipe files in ``directory`` that are not in ``keep``; returns the removed paths."""

    active = {str(Path(path)) for path in keep}
    removed: list[Path] = []
    for path in sorted(Path(directory).glob(PIPE_FILE_GLOB)):
        if str(path) in active:
            continue
        remove_pipe_file(path)
        removed.append(path)
    return removed


__all__ = [
    "clean_stale_pipe_files",
    "count_close_tags_in_pipe_file",
    "create_pipe_file",
    "pipe_file_path",
    "pipe_file_size",
    "remove_pipe_file",
]

"""Selecting files to send and placing received files on disk."""

import logging
import os
from pathlib import Path, PurePosixPath

from securexfer.transfer.models import LocalFile

logger = logging.getLogger(__name__)


def collect_files(paths: list[str]) -> list[LocalFile]:
    """
    Expand the selection into individual files.

    Plain files are sent under their own name. Directories are walked
    recursively and their files keep their path relative to the directory's
    parent, so the receiver recreates the folder. Missing paths are skipped.
    """
    files: list[LocalFile] = []
    for raw in paths:
        path = Path(raw)
        if path.is_file():
            files.append(_local_file(path, PurePosixPath(path.name)))
        elif path.is_dir():
            base = path.parent
            for root, dirs, names in os.walk(path):
                dirs.sort()
                for name in sorted(names):
                    full = Path(root) / name
                    if full.is_file():
                        rel = PurePosixPath(full.relative_to(base).as_posix())
                        files.append(_local_file(full, rel))
        else:
            logger.warning(f"Skipping invalid file path: {raw}")
    return files


def _local_file(path: Path, relative: PurePosixPath) -> LocalFile:
    return LocalFile(
        path=str(path),
        name=path.name,
        size=path.stat().st_size,
        relative_path=str(relative),
    )


def describe_selection(files: list[LocalFile]) -> str:
    """Display name for a transfer: the file name, or "<n> items"."""
    if len(files) == 1:
        return files[0].name
    return f"{len(files)} items"


def resolve_save_path(save_dir: str, filename: str) -> Path:
    """
    Map an uploaded file name (possibly with sub-directories) into save_dir.

    Raises:
        ValueError: if the name is empty, absolute or escapes save_dir.
    """
    if not filename or filename.startswith(("/", "\\")):
        raise ValueError(f"Invalid file name: {filename!r}")
    parts = PurePosixPath(filename.replace("\\", "/")).parts
    if not parts or any(part in ("", ".", "..") for part in parts) or ":" in parts[0]:
        raise ValueError(f"Invalid file name: {filename!r}")

    root = Path(save_dir).resolve()
    target = root.joinpath(*parts).resolve()
    if not target.is_relative_to(root) or target == root:
        raise ValueError(f"File name escapes the save directory: {filename!r}")
    return target

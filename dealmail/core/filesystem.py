"""Output directory and JSON file helpers."""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Union

from .errors import FilesystemError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_directory(dir_path: PathLike) -> Path:
    """
    Resolve an output directory, creating it (and parents) if missing.

    Raises:
        FilesystemError: if the path exists but is not a directory, or
            cannot be created
    """
    path = Path(dir_path).expanduser().resolve()
    if path.exists():
        if not path.is_dir():
            raise FilesystemError(f"Path exists but is not a directory: {path}", path=str(path))
        return path

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Failed to create directory {path}", cause=e, path=str(path)) from e

    logger.info(f"Created output directory {path}")
    return path


def validate_input_files(paths: Iterable[PathLike]) -> List[Path]:
    """
    Resolve input paths, failing on the first one that does not exist.

    Raises:
        FilesystemError: if a path is missing or is not a file
    """
    resolved = []
    for raw in paths:
        path = Path(raw).expanduser().resolve()
        if not path.exists():
            raise FilesystemError(f"Path doesn't exist: {path}", path=str(path))
        if not path.is_file():
            raise FilesystemError(f"Path is not a file: {path}", path=str(path))
        resolved.append(path)
    return resolved


def read_json_file(file_path: PathLike) -> Any:
    """
    Read and parse a JSON file.

    Raises:
        FilesystemError: on read or parse failure
    """
    path = Path(file_path)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FilesystemError(f"Failed to read file {path}", cause=e, path=str(path)) from e

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise FilesystemError(f"Failed to parse JSON in {path}", cause=e, path=str(path)) from e


def write_json_file(file_path: PathLike, data: Any) -> Path:
    """
    Write data as indented UTF-8 JSON.

    Raises:
        FilesystemError: on write failure
    """
    path = Path(file_path)
    try:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    except (OSError, TypeError) as e:
        raise FilesystemError(f"Failed to write file {path}", cause=e, path=str(path)) from e
    return path


def read_bytes(file_path: PathLike) -> bytes:
    """
    Read a binary file.

    Raises:
        FilesystemError: on read failure
    """
    path = Path(file_path)
    try:
        return path.read_bytes()
    except OSError as e:
        raise FilesystemError(f"Failed to read file {path}", cause=e, path=str(path)) from e

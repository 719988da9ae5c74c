"""Atomic file writes and JSON reads for the cache and config files.

A write lands in a hidden temp file beside its target and is renamed over
it, so readers (including other runs sharing the cache) see either the
old file or the new one, never a torn one.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from wordclip.errors import CacheError

ModelT = TypeVar("ModelT", bound=BaseModel)


def atomic_write(path: Path, data: str, encoding: str = "utf-8") -> None:
    """Replace `path` with `data` in one rename.

    Raises:
        CacheError: If the directory or the file cannot be written
    """
    temp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding=encoding,
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_name = handle.name
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except OSError as e:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)
        raise CacheError(f"Failed to write {path}: {e}", context={"path": str(path)}) from e


def atomic_write_json(path: Path, data: Any, indent: int | None = 2, sort_keys: bool = False) -> None:
    """Serialize `data` as JSON and write it atomically.

    Paths, datetimes and other non-JSON values are written as strings.
    ``sort_keys`` makes the bytes independent of dict insertion order.
    """
    atomic_write(path, json.dumps(data, indent=indent, sort_keys=sort_keys, default=str))


def read_json(path: Path) -> Any:
    """Parse a JSON file.

    Raises:
        CacheError: If the file is missing, unreadable or not valid JSON
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise CacheError(f"File not found: {path}", context={"path": str(path)}) from e
    except (OSError, UnicodeDecodeError) as e:
        raise CacheError(f"Cannot read {path}: {e}", context={"path": str(path)}) from e

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise CacheError(f"Invalid JSON in {path}: {e}", context={"path": str(path)}) from e


def load_model(path: Path, model_class: type[ModelT]) -> ModelT:
    """Read a JSON file into a pydantic model.

    Raises:
        CacheError: If the file cannot be read or does not match the model
    """
    data = read_json(path)
    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        raise CacheError(
            f"{path.name} is not a valid {model_class.__name__}: {e.error_count()} error(s)",
            context={"path": str(path)},
        ) from e

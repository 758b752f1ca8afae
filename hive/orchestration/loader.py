"""Load batch definitions from JSON files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from hive.orchestration.models import Batch


class BatchFileError(ValueError):
    """A batch file could not be read or does not describe a batch."""


def parse_batch(data: Any, source: str = "<data>") -> Batch:
    """Build a Batch from decoded JSON.

    Accepts either ``{"batch_id"?, "description"?, "tasks": [...]}`` or a bare
    list of task objects.
    """
    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise BatchFileError(f"{source}: expected a JSON object or list of tasks")
    if "tasks" not in data:
        raise BatchFileError(f"{source}: missing 'tasks'")
    try:
        return Batch.model_validate(data)
    except ValidationError as exc:
        raise BatchFileError(f"{source}: {exc}") from exc


def load_batch(path: Path | str) -> Batch:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise BatchFileError(f"{path}: {exc.strerror or exc}") from exc
    except json.JSONDecodeError as exc:
        raise BatchFileError(f"{path}: invalid JSON ({exc.msg} at line {exc.lineno})") from exc
    return parse_batch(data, source=str(path))

"""JSON-lines primitives shared by the session store and the append logs.

Appends go straight to the end of the file. Bulk rewrites go through a
temporary sibling file that is fsynced and then renamed over the original,
so a reader sees either the old file or the new one.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read every well-formed JSON object from a JSONL file.

    A missing file reads as empty. Malformed lines are skipped with a warning,
    which covers a trailing line that is still being written.
    """
    if not path.exists():
        return []

    records: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as file:
        for line_number, raw_line in enumerate(file, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line %d in %s", line_number, path)
                continue
            if isinstance(record, dict):
                records.append(record)
    return records


def append_jsonl(path: Path, record: dict[str, Any] | str) -> None:
    """Append one record as a single line, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = record if isinstance(record, str) else json.dumps(record, default=str)
    with path.open("a", encoding="utf-8") as file:
        file.write(line + "\n")
        file.flush()
        os.fsync(file.fileno())


def write_text_atomic(path: Path, content: str) -> None:
    """Replace `path` with `content` via temp file, fsync and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as file:
            file.write(content)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_jsonl_atomic(path: Path, records: Iterable[dict[str, Any] | str]) -> None:
    lines = [
        record if isinstance(record, str) else json.dumps(record, default=str)
        for record in records
    ]
    write_text_atomic(path, "".join(f"{line}\n" for line in lines))

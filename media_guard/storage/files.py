"""
JSON document persistence.

One JSON document per file; writes replace the whole document atomically.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON document.

    Args:
        path: File to read

    Returns:
        Decoded document, or None if the file does not exist

    Raises:
        OSError: If the file exists but cannot be read
        ValueError: If the file is not valid JSON
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def write_json(path: Path, document: Any) -> None:
    """Write a JSON document, replacing any existing file in one step.

    The document is written to a temporary file in the same directory and
    moved into place, so readers never observe a partial write.

    Raises:
        OSError: If the directory cannot be created or written
        TypeError: If the document is not JSON-serializable
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def remove_file(path: Path) -> None:
    """Delete a file if present."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass

"""JSON file helpers shared by the file-backed stores.

Unlike a best-effort cache, these helpers never hide I/O failures: unreadable
or undecodable files raise ``StorageUnavailable`` so callers can retry.
Writes go to a temporary file in the same directory and are moved into place
with ``os.replace``, so a record is either fully replaced or untouched.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from anontrust.errors import StorageUnavailable


def ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageUnavailable(f"Cannot create {path}: {exc}") from exc
    return path


def read_json(path: Path, default: Any = None) -> Any:
    """Return the decoded contents of ``path`` or ``default`` if it is absent."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        raise StorageUnavailable(f"Cannot read {path.name}: {exc}") from exc


def write_json(path: Path, data: Any) -> None:
    """Atomically replace ``path`` with ``data`` encoded as JSON."""
    ensure_dir(path.parent)
    tmp_name = ""
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
        ) as tmp:
            tmp_name = tmp.name
            json.dump(data, tmp, indent=2, default=str, ensure_ascii=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise StorageUnavailable(f"Cannot write {path.name}: {exc}") from exc


def remove(path: Path) -> bool:
    """Delete ``path`` if present. Returns True if something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise StorageUnavailable(f"Cannot remove {path.name}: {exc}") from exc

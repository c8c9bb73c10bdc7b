"""
State file persistence: atomic read/write for RuntimeSnapshot.

The snapshot is stored as JSON in ``<data>/state/runtime.json``.
Writes are atomic (write to temp file, then rename) so a crash
mid-write never leaves a half-written file for ``infra status`` or
for the generated Caddyfile and identity files that share the helper.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from infra.core.models.config import RuntimeConfig
from infra.core.models.state import RuntimeSnapshot

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "runtime.json"


def default_state_path(config: RuntimeConfig) -> Path:
    """Get the runtime snapshot path for a config."""
    return config.state_dir / DEFAULT_STATE_FILE


def write_atomic(path: Path, content: str, mode: int | None = None) -> None:
    """Write ``content`` to ``path`` via temp file + rename.

    Args:
        path: Target file.  Parent directories are created.
        content: Text to write.
        mode: Optional permission bits applied before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}_",
        suffix=".tmp",
    )
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        if mode is not None:
            tmp.chmod(mode)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def load_snapshot(path: Path) -> RuntimeSnapshot | None:
    """Load a runtime snapshot.

    Returns:
        The snapshot, or None if the file is missing or unreadable.
    """
    if not path.is_file():
        logger.info("No runtime snapshot at %s", path)
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        snapshot = RuntimeSnapshot.model_validate(data)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt runtime snapshot %s: %s", path, e)
        return None
    except (OSError, ValueError) as e:
        logger.warning("Cannot load runtime snapshot from %s: %s", path, e)
        return None

    logger.debug("Loaded snapshot from %s (updated_at=%s)", path, snapshot.updated_at)
    return snapshot


def save_snapshot(snapshot: RuntimeSnapshot, path: Path) -> None:
    """Save a runtime snapshot (atomic write)."""
    data = snapshot.model_dump(mode="json")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    try:
        write_atomic(path, content)
    except OSError as e:
        logger.error("Failed to save runtime snapshot to %s: %s", path, e)
        raise
    logger.debug("Snapshot saved to %s", path)

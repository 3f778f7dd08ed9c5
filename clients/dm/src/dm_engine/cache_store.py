"""On-disk copy of an engine snapshot so a restart does not refetch everything.

The snapshot holds events exactly as received (still encrypted) plus read
markers and conversations marked as known; plaintext never touches disk.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path.home() / ".dm_engine" / "cache.json"


def save_snapshot(snapshot: Dict[str, Any], path: Path | str = DEFAULT_CACHE_PATH) -> None:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(snapshot, handle, separators=(",", ":"), sort_keys=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)
    logger.debug("saved %d cached events to %s", len(snapshot.get("events", [])), target)


def load_snapshot(path: Path | str = DEFAULT_CACHE_PATH) -> Optional[Dict[str, Any]]:
    """Return the stored snapshot, or ``None`` when there is none or it is unreadable."""

    target = Path(path).expanduser()
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except json.JSONDecodeError:
        logger.warning("cache file %s is corrupt; ignoring it", target)
        return None
    if not isinstance(data, dict):
        logger.warning("cache file %s has an unexpected shape; ignoring it", target)
        return None
    return data


def clear_snapshot(path: Path | str = DEFAULT_CACHE_PATH) -> None:
    Path(path).expanduser().unlink(missing_ok=True)

"""Engine tunables and their JSON settings file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping

from .codec import WRAP_JITTER_SECONDS
from .protocol import Protocol, parse_protocol

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path.home() / ".dm_engine" / "settings.json"


@dataclass
class EngineConfig:
    messages_per_page: int = 25
    initial_page_size: int = 100
    scan_batch_size: int = 1000
    scan_total_limit: int = 20000
    discovery_batch_size: int = 20
    discovery_probe_timeout_s: float = 2.0
    discovery_batch_delay_s: float = 0.1
    query_timeout_s: float = 15.0
    sealed_query_timeout_s: float = 30.0
    subscription_overlap_s: int = 60
    optimistic_match_window_s: int = 30
    wrap_jitter_s: int = WRAP_JITTER_SECONDS
    sealed_enabled: bool = True
    broad_scan_enabled: bool = True
    default_protocol: Protocol = Protocol.LEGACY
    verify_signatures: bool = False

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from a settings mapping, keeping defaults for bad values."""

        config = cls()
        for entry in fields(cls):
            if entry.name not in settings:
                continue
            raw = settings[entry.name]
            current = getattr(config, entry.name)
            try:
                if isinstance(current, Protocol):
                    value: Any = parse_protocol(raw)
                elif isinstance(current, bool):
                    if not isinstance(raw, bool):
                        raise ValueError("expected a boolean")
                    value = raw
                elif isinstance(current, int):
                    if isinstance(raw, bool):
                        raise ValueError("expected an integer")
                    value = int(raw)
                    if value < 0:
                        raise ValueError("must be non-negative")
                elif isinstance(current, float):
                    value = float(raw)
                    if value < 0:
                        raise ValueError("must be non-negative")
                else:
                    value = raw
            except (TypeError, ValueError) as exc:
                logger.warning("ignoring setting %s=%r: %s", entry.name, raw, exc)
                continue
            setattr(config, entry.name, value)
        return config

    def to_settings(self) -> Dict[str, Any]:
        data = asdict(self)
        data["default_protocol"] = self.default_protocol.value
        return data


def _atomic_write(path: Path | str, content: str) -> None:
    """Write content atomically to ``path`` using fsync + rename."""

    path = Path(path).expanduser()
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    tmp_path.replace(path)


def load_settings(path: Path | str = DEFAULT_SETTINGS_FILE) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        logger.warning("settings file %s is not valid JSON; using defaults", path)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def load_config(path: Path | str = DEFAULT_SETTINGS_FILE) -> EngineConfig:
    return EngineConfig.from_settings(load_settings(path))


def persist_config(config: EngineConfig, path: Path | str = DEFAULT_SETTINGS_FILE) -> None:
    payload = json.dumps(config.to_settings(), indent=2, sort_keys=True)
    _atomic_write(path, payload)

"""Local identity storage for the reference signer."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from .crypto import NaclSigner

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_PATH = Path.home() / ".dm_engine" / "identity.json"


@dataclass(frozen=True)
class IdentityRecord:
    seed_hex: str
    pubkey: str

    def signer(self) -> NaclSigner:
        return NaclSigner.from_seed_hex(self.seed_hex)


def _generate_identity() -> IdentityRecord:
    signer = NaclSigner.generate()
    return IdentityRecord(seed_hex=signer.seed_hex, pubkey=signer.pubkey)


def _atomic_write_json(path: Path, record: IdentityRecord) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(asdict(record), indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_identity(path: Path) -> IdentityRecord:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("identity payload must be a JSON object")
    seed_hex = str(data["seed_hex"])
    # the stored pubkey is informational; the seed is authoritative
    pubkey = NaclSigner.from_seed_hex(seed_hex).pubkey
    if data.get("pubkey") not in (None, pubkey):
        logger.warning("identity file %s has a stale pubkey; rewriting", path)
    return IdentityRecord(seed_hex=seed_hex, pubkey=pubkey)


def load_identity(path: Path | str = DEFAULT_IDENTITY_PATH) -> IdentityRecord:
    return _load_identity(Path(path).expanduser())


def save_identity(record: IdentityRecord, path: Path | str = DEFAULT_IDENTITY_PATH) -> None:
    _atomic_write_json(Path(path), record)


def load_or_create_identity(path: Path | str = DEFAULT_IDENTITY_PATH) -> IdentityRecord:
    target_path = Path(path).expanduser()
    try:
        record = _load_identity(target_path)
    except FileNotFoundError:
        record = _generate_identity()
        logger.info("created identity %s at %s", record.pubkey, target_path)
    except (ValueError, KeyError, json.JSONDecodeError) as exc:
        raise ValueError(f"identity file {target_path} is unreadable: {exc}") from exc
    _atomic_write_json(target_path, record)
    return record

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol
from urllib.parse import quote

from .errors import DecodeError, NotFoundError, StorageError


class IdentityStore(Protocol):
    """Durable key/value store holding the cached remote-agent identity."""

    def has(self, key: str) -> bool: ...

    def read(self, key: str) -> bytes: ...

    def write(self, key: str, value: bytes) -> None: ...

    def erase(self, key: str) -> None: ...


@dataclass(frozen=True)
class DeviceIdentity:
    machine_id: str
    agent_id: str
    agent_token: str
    agent_name: str


class DiskStore:
    """Directory-backed store: one file per key.

    Keys are percent-encoded into file names so machine ids containing path
    separators cannot escape the base directory.
    """

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        if not key:
            raise StorageError("store key must be non-empty")
        return self.base_path / quote(key, safe="")

    def has(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except (OSError, StorageError):
            return False

    def read(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"key {key!r} not found in {self.base_path}") from exc
        except OSError as exc:
            raise StorageError(f"could not read {path}: {exc}") from exc

    def write(self, key: str, value: bytes) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(path)
            _fsync_dir(self.base_path)
        except OSError as exc:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise StorageError(f"could not write {path}: {exc}") from exc

    def erase(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"could not erase {path}: {exc}") from exc


def _fsync_dir(path: Path) -> None:
    # Persists the rename itself. Windows cannot open directories.
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def encode_identity(identity: DeviceIdentity) -> bytes:
    blob = {
        "agentID": identity.agent_id,
        "agentToken": identity.agent_token,
        "agentName": identity.agent_name,
    }
    return json.dumps(blob, sort_keys=True).encode("utf-8")


def _require_str(obj: Mapping[str, Any], key: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str) or not v:
        raise DecodeError(f"persisted identity '{key}' must be a non-empty string")
    return v


def decode_identity(machine_id: str, raw: bytes) -> DeviceIdentity:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"could not decode persisted identity: {exc}") from exc

    if not isinstance(data, Mapping):
        raise DecodeError("persisted identity was not a JSON object")

    # An empty name is tolerated; id and token are not.
    name = data.get("agentName")
    return DeviceIdentity(
        machine_id=machine_id,
        agent_id=_require_str(data, "agentID"),
        agent_token=_require_str(data, "agentToken"),
        agent_name=name if isinstance(name, str) else "",
    )

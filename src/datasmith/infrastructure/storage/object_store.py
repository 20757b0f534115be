from __future__ import annotations

import threading
from pathlib import Path, PurePosixPath
from typing import Protocol

from datasmith.core.errors import ObjectNotFoundError, StorageError
from datasmith.core.files import ensure_directory, write_bytes_atomic


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str = "") -> list[str]: ...


def validate_key(key: str) -> str:
    normalized = str(key or "").strip()
    if not normalized:
        raise StorageError("Object key must not be empty.")
    parts = PurePosixPath(normalized).parts
    if normalized.startswith("/") or any(part in {"", ".", ".."} for part in parts):
        raise StorageError(f"Invalid object key: {key}")
    return normalized


class LocalObjectStore:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def ensure_layout(self) -> None:
        ensure_directory(self.base_dir)

    def path_for_key(self, key: str) -> Path:
        return self.base_dir.joinpath(*PurePosixPath(validate_key(key)).parts)

    def put(self, key: str, data: bytes) -> None:
        path = self.path_for_key(key)
        try:
            write_bytes_atomic(path, data)
        except OSError as exc:
            raise StorageError(f"Failed to write object {key}: {exc}") from exc

    def get(self, key: str) -> bytes:
        path = self.path_for_key(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(f"Object not found: {key}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read object {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self.path_for_key(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete object {key}: {exc}") from exc

    def list(self, prefix: str = "") -> list[str]:
        if not self.base_dir.exists():
            return []
        keys: list[str] = []
        for path in self.base_dir.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.base_dir).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class InMemoryObjectStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[validate_key(key)] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[validate_key(key)]
            except KeyError as exc:
                raise ObjectNotFoundError(f"Object not found: {key}") from exc

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(validate_key(key), None)

    def list(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

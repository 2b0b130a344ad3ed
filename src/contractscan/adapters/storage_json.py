from __future__ import annotations
import asyncio
import json
import logging
import os
import shutil
from typing import Any

from ..domain.errors import StorageWriteError
from ..ports.storage import RecordStore

log = logging.getLogger(__name__)

_TMP = ".tmp"
_BACKUP = ".backup"


class JsonFileStore(RecordStore):
    """
    Flat directory of JSON records.

    Every write goes to `<key>.tmp`, is fsynced and re-parsed, the current
    primary is copied to `<key>.backup`, and only then does `os.replace` swap the
    temp file in. A crash at any point leaves either the old primary or the new
    one on disk, never a truncated file. Writers to the same key are serialized.
    """

    def __init__(self, data_dir: str | os.PathLike[str]) -> None:
        self.data_dir = os.path.abspath(os.fspath(data_dir))
        os.makedirs(self.data_dir, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, key: str) -> str:
        if not key or os.sep in key or (os.altsep and os.altsep in key) or key.startswith("."):
            raise ValueError(f"Invalid record key: {key!r}")
        return os.path.join(self.data_dir, key)

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def write_json(self, key: str, data: Any) -> None:
        path = self._path(key)
        async with self._lock(key):
            try:
                body = json.dumps(data, indent=2, default=_json_default)
                await asyncio.to_thread(self._write_atomic, path, body)
            except (OSError, ValueError, TypeError) as e:
                log.error("write of %s failed, previous version kept: %s", key, e)
                raise StorageWriteError(key, e) from e

    @staticmethod
    def _write_atomic(path: str, body: str) -> None:
        tmp = path + _TMP
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(body); f.flush(); os.fsync(f.fileno())
            with open(tmp, "r", encoding="utf-8") as f:
                json.load(f)
            if os.path.exists(path):
                bak_tmp = path + _BACKUP + _TMP
                shutil.copyfile(path, bak_tmp)
                os.replace(bak_tmp, path + _BACKUP)
            os.replace(tmp, path)
        except BaseException:
            for leftover in (tmp, path + _BACKUP + _TMP):
                if os.path.exists(leftover):
                    os.remove(leftover)
            raise
        _fsync_dir(os.path.dirname(path))

    async def read_json(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            return await asyncio.to_thread(_load, path)
        except FileNotFoundError:
            pass
        except ValueError as e:
            log.warning("primary record %s is unreadable (%s), falling back to backup", key, e)
        try:
            return await asyncio.to_thread(_load, path + _BACKUP)
        except FileNotFoundError:
            return None

    async def read_backup(self, key: str) -> Any | None:
        try:
            return await asyncio.to_thread(_load, self._path(key) + _BACKUP)
        except FileNotFoundError:
            return None

    async def list_files(self, prefix: str = "") -> list[str]:
        names = await asyncio.to_thread(os.listdir, self.data_dir)
        return sorted(
            n for n in names
            if n.startswith(prefix) and not n.endswith(_TMP) and not n.endswith(_BACKUP)
        )

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        async with self._lock(key):
            removed = False
            for p in (path, path + _BACKUP):
                if os.path.exists(p):
                    os.remove(p)
                    removed = True
            return removed

    async def check_health(self) -> dict[str, Any]:
        try:
            writable = os.access(self.data_dir, os.R_OK | os.W_OK)
            usage = shutil.disk_usage(self.data_dir)
        except OSError as e:
            return {"healthy": False, "error": str(e)}
        free_pct = 100.0 * usage.free / usage.total if usage.total else 0.0
        return {
            "healthy": writable and free_pct > 10,
            "free_space_percent": round(free_pct, 2),
            "warning": "Low disk space" if free_pct < 10 else None,
        }


def _load(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _fsync_dir(dirpath: str) -> None:
    try:
        fd = os.open(dirpath, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _json_default(o: Any) -> Any:
    if isinstance(o, (set, frozenset, tuple)):
        return sorted(o) if isinstance(o, (set, frozenset)) else list(o)
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

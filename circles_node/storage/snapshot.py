from __future__ import annotations

"""
Atomic JSON snapshot files for document collections.

- Atomic write: temp file in the same directory + fsync + os.replace
- Rolling backups (.bak1, .bak2, ...) rotated before each write
- Load fallback: primary -> bak1 -> bak2 -> ...

Used when config persistence.driver == "json". One file per collection.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import StoreUnavailable

log = logging.getLogger(__name__)

JsonDict = Dict[str, Any]
PathLike = Union[str, Path]


def _fsync_dir(dir_path: Path) -> None:
    try:
        fd = os.open(str(dir_path), os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        log.debug("directory fsync not supported for %s", dir_path)
    finally:
        os.close(fd)


def _json_dumps(obj: JsonDict) -> bytes:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def read_json(path: Path) -> Optional[JsonDict]:
    if not path.exists():
        return None
    try:
        obj = json.loads(path.read_bytes().decode("utf-8"))
    except (OSError, ValueError):
        log.warning("unreadable snapshot %s", path, exc_info=True)
        return None
    return obj if isinstance(obj, dict) else None


class SnapshotFile:
    """
    Usage:
        snap = SnapshotFile(Path("data"), "proposals.json")
        snap.save({"docs": {...}})
        state = snap.load() or {}
    """

    def __init__(self, data_dir: PathLike, filename: str, *, keep_backups: int = 2) -> None:
        self.data_dir = Path(data_dir)
        self.filename = filename
        self.keep_backups = int(keep_backups)

    @property
    def path(self) -> Path:
        return self.data_dir / self.filename

    def _backup(self, i: int) -> Path:
        return self.path.with_suffix(self.path.suffix + f".bak{i}")

    def _rotate_backups(self) -> None:
        if self.keep_backups <= 0:
            return
        for i in range(self.keep_backups, 1, -1):
            src = self._backup(i - 1)
            if src.exists():
                os.replace(str(src), str(self._backup(i)))
        if self.path.exists():
            os.replace(str(self.path), str(self._backup(1)))

    def load(self) -> Optional[JsonDict]:
        for p in [self.path] + [self._backup(i) for i in range(1, max(1, self.keep_backups) + 1)]:
            obj = read_json(p)
            if obj is not None:
                if p != self.path:
                    log.warning("loaded %s from backup %s", self.filename, p.name)
                return obj
        return None

    def save(self, state: JsonDict) -> None:
        data = _json_dumps(state)
        try:
            self._rotate_backups()
            atomic_write_bytes(self.path, data)
        except OSError as e:
            raise StoreUnavailable(f"could not write snapshot {self.path}: {e}") from e

"""Storage for DOM snapshots referenced by healing events."""

import re
import abc
import asyncio
import threading
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from ..core.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)

LOCAL_SCHEME = "local://"
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def snapshot_name(run_id: str, test_name: str) -> str:
    """File name for the snapshot of one failed test in one run."""
    slug = _UNSAFE_NAME.sub("_", test_name).strip("_")[:80] or "test"
    return f"{run_id}-{slug}.html"


def _to_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


class SnapshotStore(abc.ABC):
    """Saves snapshots and hands back opaque ``local://`` references."""

    @abc.abstractmethod
    async def save(self, name: str, content: Union[str, bytes]) -> str:
        ...

    @abc.abstractmethod
    async def load(self, ref: str) -> Optional[bytes]:
        ...

    def _name_from_ref(self, ref: str) -> Optional[str]:
        if not ref or not ref.startswith(LOCAL_SCHEME):
            return None
        name = ref[len(LOCAL_SCHEME):]
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            return None
        return name


class InMemorySnapshotStore(SnapshotStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, bytes] = {}

    async def save(self, name: str, content: Union[str, bytes]) -> str:
        with self._lock:
            self._snapshots[name] = _to_bytes(content)
        return f"{LOCAL_SCHEME}{name}"

    async def load(self, ref: str) -> Optional[bytes]:
        name = self._name_from_ref(ref)
        if name is None:
            return None
        with self._lock:
            return self._snapshots.get(name)


class FileSnapshotStore(SnapshotStore):
    """Writes snapshots as files under a directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    async def save(self, name: str, content: Union[str, bytes]) -> str:
        return await asyncio.to_thread(self._save, name, _to_bytes(content))

    def _save(self, name: str, content: bytes) -> str:
        try:
            (self.directory / name).write_bytes(content)
        except OSError as e:
            logger.error(f"Failed to write snapshot {name}: {e}")
            raise PersistenceFailure(f"Could not store snapshot {name}: {e}") from e
        return f"{LOCAL_SCHEME}{name}"

    async def load(self, ref: str) -> Optional[bytes]:
        name = self._name_from_ref(ref)
        if name is None:
            return None
        path = self.directory / name
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_bytes)

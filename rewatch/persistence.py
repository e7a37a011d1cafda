import copy
import fcntl
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote, unquote

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueBackend:
    """Durable per-key storage. Every key is persisted independently."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def items(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        for key in list((await self.items()).keys()):
            await self.remove(key)


class MemoryBackend(KeyValueBackend):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        value = self.data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def items(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)

    async def clear(self) -> None:
        self.data.clear()


class JsonDirectoryBackend(KeyValueBackend):
    """One JSON file per key, written with the temp-file + rename pattern."""

    SUFFIX = ".json"

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)

    def _file_for(self, key: str) -> Path:
        return self.path / (quote(key, safe="") + self.SUFFIX)

    def _key_for(self, file: Path) -> str:
        return unquote(file.name[: -len(self.SUFFIX)])

    def _read(self, file: Path) -> Optional[Any]:
        try:
            with open(file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise PersistenceError(self._key_for(file), str(e)) from e

    async def get(self, key: str) -> Optional[Any]:
        return self._read(self._file_for(key))

    async def items(self) -> Dict[str, Any]:
        result = {}
        for file in sorted(self.path.glob("*" + self.SUFFIX)):
            try:
                value = self._read(file)
            except PersistenceError as e:
                # A corrupt entry must not hide its siblings
                logger.error(f"Skipping unreadable entry {file.name}: {e}")
                continue
            if value is not None:
                result[self._key_for(file)] = value
        return result

    async def set(self, key: str, value: Any) -> None:
        file = self._file_for(key)
        tmp_path = file.with_suffix(".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError as e:
                    raise PersistenceError(key, "entry is locked by another writer") from e
                try:
                    json.dump(value, f)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
            os.replace(tmp_path, file)
        except OSError as e:
            raise PersistenceError(key, str(e)) from e

    async def remove(self, key: str) -> None:
        try:
            self._file_for(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(key, str(e)) from e

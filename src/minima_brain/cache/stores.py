"""
Durable Key-Value Stores for the Prefix Cache

A store holds a single opaque blob. FileStore persists it across process
restarts; MemoryStore is used by tests and by deployments without a cache
directory.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from ..errors import PersistenceFailure

logger = logging.getLogger(__name__)


class DurableStore(ABC):
    """Single-blob persistence capability."""

    @abstractmethod
    def save(self, data: bytes) -> None:
        pass

    @abstractmethod
    def load(self) -> Optional[bytes]:
        """Return the stored blob, or None if nothing is stored."""
        pass

    @abstractmethod
    def delete(self) -> None:
        pass


class MemoryStore(DurableStore):
    """In-process store; contents are lost with the process."""

    def __init__(self, data: Optional[bytes] = None):
        self._data = data

    def save(self, data: bytes) -> None:
        self._data = bytes(data)

    def load(self) -> Optional[bytes]:
        return self._data

    def delete(self) -> None:
        self._data = None


class FileStore(DurableStore):
    """Blob stored in a single file, written atomically via rename."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def save(self, data: bytes) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}."
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceFailure(f"Failed to write {self.path}: {e}") from e
        logger.debug(f"Wrote {len(data)} bytes to {self.path}")

    def load(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceFailure(f"Failed to read {self.path}: {e}") from e

    def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"Failed to delete {self.path}: {e}") from e

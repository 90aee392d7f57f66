"""
Locked, atomic JSON document persistence shared by the triage stores.

Each store owns one JSON file holding a single object with one top-level
array field. Every operation performs a full read-modify-write cycle under
the store's lock:

1. Read and decode the document (missing or malformed -> empty document)
2. Let the caller inspect or mutate the list
3. Write the result to a temporary file and atomically replace the target

A failure while writing leaves the previous file untouched.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store cannot read or persist its backing file."""
    pass


class JsonDocumentStore:
    """
    A JSON file with one top-level list, guarded by a per-instance lock.

    Args:
        path: Backing file path (directory is created if missing)
        field_name: Name of the top-level array field (e.g. "domains")
    """

    def __init__(self, path, field_name: str):
        self.path = Path(path)
        self.field_name = field_name
        self._lock = threading.Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write_items([])
                logger.info(f"Created empty store: {self.path}")
        except OSError as e:
            raise StoreError(f"Cannot initialize store {self.path}: {e}") from e

    def _read_items(self) -> List[Dict[str, Any]]:
        """
        Read the array field, treating missing or corrupt files as empty.

        Raises:
            StoreError: If the file exists but cannot be read (permissions, I/O)
        """
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e

        if not raw.strip():
            return []

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Malformed JSON in {self.path}, treating as empty: {e}")
            return []

        if not isinstance(document, dict):
            logger.warning(f"Unexpected document type in {self.path}, treating as empty")
            return []

        items = document.get(self.field_name, [])
        if not isinstance(items, list):
            logger.warning(f"Field '{self.field_name}' in {self.path} is not a list, treating as empty")
            return []

        return [item for item in items if isinstance(item, dict)]

    def _write_items(self, items: List[Dict[str, Any]]) -> None:
        """
        Atomically replace the backing file with the given items.

        Raises:
            StoreError: If the temporary file cannot be written or renamed
        """
        payload = json.dumps({self.field_name: items}, indent=2, ensure_ascii=False)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                suffix='.tmp'
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            logger.error(f"Failed to write store {self.path}: {e}")
            raise StoreError(f"Failed to write {self.path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def load(self) -> List[Dict[str, Any]]:
        """Return a snapshot of the stored items."""
        with self._lock:
            return self._read_items()

    @contextmanager
    def transaction(self) -> Iterator[List[Dict[str, Any]]]:
        """
        Hold the lock for one read-modify-write cycle.

        The caller mutates the yielded list in place. The document is written
        back only when the block exits normally; an exception inside the block
        leaves the file as it was.

        Example:
            >>> with store.transaction() as items:
            ...     items.append({'domain': 'SPAM.COM'})
        """
        with self._lock:
            items = self._read_items()
            snapshot = copy.deepcopy(items)
            yield items
            if items != snapshot:
                self._write_items(items)

    def replace_all(self, items: List[Dict[str, Any]]) -> None:
        """Overwrite the whole document (used by clear operations)."""
        with self._lock:
            self._write_items(list(items))

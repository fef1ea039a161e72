from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from micropost.logging import get_logger
from micropost.service.errors import DatabaseError

# Arrays owned by the auth subsystem; anything else in the document is
# carried through untouched.
COLLECTIONS = ("users", "refreshTokens", "tokenBlacklist", "passwordResetTokens")

# Errors a hand-edited or truncated row raises when decoded into a record
_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError)

T = TypeVar("T")


class JsonFileDatabase:
    """Whole-document JSON store shared by every repository in the process.

    Each operation loads the full file, works on an in-memory copy and, for
    writes, saves the full file back through a temp file and ``os.replace``.
    A single re-entrant lock serializes all of it, so concurrent callers in
    one process never lose each other's updates. Separate processes sharing
    the file are not coordinated.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()

    @staticmethod
    def _empty_document() -> Dict[str, Any]:
        return {name: [] for name in COLLECTIONS}

    def _load(self) -> Dict[str, Any]:
        # try/except rather than exists() to avoid a check-then-read race
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            data = self._empty_document()
            self._save(data)
            return data
        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("database root must be a JSON object")
        for name in COLLECTIONS:
            data.setdefault(name, [])
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def read(self, operation: str) -> Dict[str, Any]:
        """Return a private snapshot of the whole document."""
        with self._data_lock:
            try:
                return copy.deepcopy(self._load())
            except (OSError, ValueError) as exc:
                self.logger.error(
                    "database_read_failed",
                    operation=operation,
                    path=str(self.path),
                    error=str(exc),
                )
                raise DatabaseError(operation) from exc

    def decode_records(
        self,
        operation: str,
        rows: Iterable[dict],
        deserialize: Callable[[dict], T],
        where: Optional[Callable[[dict], bool]] = None,
    ) -> List[T]:
        """Decode the rows matching ``where``; a malformed row becomes ``DatabaseError``."""
        try:
            return [deserialize(row) for row in rows if where is None or where(row)]
        except _RECORD_ERRORS as exc:
            self.logger.error(
                "database_record_malformed", operation=operation, error=repr(exc)
            )
            raise DatabaseError(operation) from exc

    def read_records(
        self,
        operation: str,
        collection: str,
        deserialize: Callable[[dict], T],
        where: Optional[Callable[[dict], bool]] = None,
    ) -> List[T]:
        return self.decode_records(
            operation, self.read(operation)[collection], deserialize, where
        )

    @contextmanager
    def update(self, operation: str) -> Iterator[Dict[str, Any]]:
        """Yield the mutable document and persist it when the block exits cleanly.

        Nothing is written if the block raises. Domain errors raised inside the
        block propagate unchanged; storage failures become ``DatabaseError``.
        """
        with self._data_lock:
            try:
                data = self._load()
            except (OSError, ValueError) as exc:
                self.logger.error(
                    "database_load_failed",
                    operation=operation,
                    path=str(self.path),
                    error=str(exc),
                )
                raise DatabaseError(operation) from exc
            try:
                yield data
            except _RECORD_ERRORS as exc:
                # malformed records in the file surface as lookup/type errors
                self.logger.error(
                    "database_record_malformed", operation=operation, error=str(exc)
                )
                raise DatabaseError(operation) from exc
            try:
                self._save(data)
            except (OSError, TypeError, ValueError) as exc:
                self.logger.error(
                    "database_write_failed",
                    operation=operation,
                    path=str(self.path),
                    error=str(exc),
                )
                raise DatabaseError(operation) from exc


def next_id(records: list[dict]) -> int:
    """Max-existing id plus one; ids are never reused while the max row exists."""
    return max((int(record.get("id", 0)) for record in records), default=0) + 1


__all__ = ["COLLECTIONS", "JsonFileDatabase", "next_id"]

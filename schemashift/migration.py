"""A single migration step read from a source and run against a database."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import IO, AnyStr, Generic, Optional

__all__ = ["DEFAULT_BUFFER_SIZE", "Migration"]

#: Number of bytes pre-read into memory for every prefetched migration.
DEFAULT_BUFFER_SIZE = 100_000


class Migration(Generic[AnyStr]):
    """A migration from ``version`` to ``target_version``.

    ``body`` is a readable file-like object holding the migration, or ``None``
    for a migration without a body. ``target_version`` may be -1, meaning no
    version is set once the migration has been applied.
    """

    def __init__(
        self,
        body: Optional[IO[AnyStr]],
        identifier: str,
        version: int,
        target_version: int,
    ) -> None:
        if version < 0:
            raise ValueError(f"version must be >= 0, got {version}")
        now = datetime.now()
        self.identifier = identifier
        self.version = version
        self.target_version = target_version
        self.body = body
        self.buffer_size = DEFAULT_BUFFER_SIZE if body is not None else 0
        self.scheduled = now
        self.started_buffering: Optional[datetime] = None
        self.finished_buffering: Optional[datetime] = None
        self.finished_reading: Optional[datetime] = None
        self.bytes_read = 0

        self._lock = threading.Lock()
        self._done = False
        self._data: Optional[AnyStr] = None
        self._error: Optional[BaseException] = None

        if body is None:
            if not identifier:
                self.identifier = "<empty>"
            self.started_buffering = now
            self.finished_buffering = now
            self.finished_reading = now
            self._done = True

    def __str__(self) -> str:
        return f"{self.identifier} [{self.version}=>{self.target_version}]"

    def __repr__(self) -> str:
        return f"Migration({self})"

    @property
    def is_up(self) -> bool:
        """True if applying this migration moves the version up or keeps it."""
        return self.target_version >= self.version

    def log_string(self) -> str:
        """Describe the migration for humans, e.g. ``"3/u create_users"``."""
        direction = "u" if self.is_up else "d"
        return f"{self.version}/{direction} {self.identifier}"

    def buffer(self) -> None:
        """Read the whole body into memory and close it.

        Safe to call from several threads and more than once; the body is read
        only the first time. A failure while reading is raised again on every
        later call.
        """
        with self._lock:
            if not self._done:
                try:
                    self._read_all()
                except BaseException as exc:
                    self._error = exc
                    raise
                finally:
                    self._done = True
            elif self._error is not None:
                raise self._error

    def read_body(self) -> Optional[AnyStr]:
        """Return the buffered body, buffering it first if needed.

        Returns ``None`` for a migration without a body.
        """
        if self.body is None:
            return None
        self.buffer()
        return self._data

    def _read_all(self) -> None:
        body = self.body
        if body is None:
            return
        self.started_buffering = datetime.now()
        head = body.read(self.buffer_size)
        self.finished_buffering = datetime.now()
        rest = body.read()
        data = head + rest if rest else head
        self.finished_reading = datetime.now()
        self.bytes_read = len(data)
        self._data = data
        body.close()
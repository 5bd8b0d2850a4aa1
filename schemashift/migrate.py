"""Read migrations from a source and apply them to a database."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import (
    IO,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)

from .migration import Migration
from .urlscheme import scheme_from_url

__all__ = [
    "DEFAULT_LOCK_TIMEOUT",
    "DEFAULT_PREFETCH_MIGRATIONS",
    "NIL_VERSION",
    "DatabaseDriver",
    "DirtyError",
    "InvalidVersionError",
    "LockTimeoutError",
    "LockedError",
    "Logger",
    "Migrate",
    "MigrateError",
    "MigrationNotFoundError",
    "NilVersionError",
    "NoChangeError",
    "ShortLimitError",
    "SourceDriver",
    "database_drivers",
    "register_database_driver",
    "register_source_driver",
    "source_drivers",
]

#: Number of migrations read ahead of the one being applied.
DEFAULT_PREFETCH_MIGRATIONS = 10

#: Seconds a database driver has to acquire its lock.
DEFAULT_LOCK_TIMEOUT = 15.0

#: Version reported by a database on which no migration was applied.
NIL_VERSION = -1


@runtime_checkable
class Logger(Protocol):
    """Receives progress messages from :class:`Migrate`."""

    def printf(self, fmt: str, *args: Any) -> None:
        """Write ``fmt % args``."""

    def verbose(self) -> bool:
        """Return True when verbose output is wanted."""


class SourceDriver(ABC):
    """Where migrations are read from.

    Methods signal a missing version or migration by raising
    :class:`FileNotFoundError`.
    """

    @abstractmethod
    def close(self) -> None:
        """Release the source."""

    @abstractmethod
    def first(self) -> int:
        """Return the lowest version."""

    @abstractmethod
    def prev(self, version: int) -> int:
        """Return the version before ``version``."""

    @abstractmethod
    def next(self, version: int) -> int:
        """Return the version after ``version``."""

    @abstractmethod
    def read_up(self, version: int) -> Tuple[IO[Any], str]:
        """Return the body and identifier of the up migration."""

    @abstractmethod
    def read_down(self, version: int) -> Tuple[IO[Any], str]:
        """Return the body and identifier of the down migration."""


class DatabaseDriver(ABC):
    """Where migrations are applied."""

    @abstractmethod
    def close(self) -> None:
        """Release the database connection."""

    @abstractmethod
    def lock(self) -> None:
        """Take the migration lock."""

    @abstractmethod
    def unlock(self) -> None:
        """Release the migration lock."""

    @abstractmethod
    def run(self, body: Union[str, bytes]) -> None:
        """Execute a migration body."""

    @abstractmethod
    def set_version(self, version: int, dirty: bool) -> None:
        """Record the current version and dirty flag."""

    @abstractmethod
    def version(self) -> Tuple[int, bool]:
        """Return the current version (``NIL_VERSION`` if none) and dirty flag."""

    @abstractmethod
    def drop(self) -> None:
        """Delete everything in the database."""


class MigrateError(Exception):
    """Base class of migration errors."""


class NoChangeError(MigrateError):
    def __init__(self) -> None:
        super().__init__("no change")


class NilVersionError(MigrateError):
    def __init__(self) -> None:
        super().__init__("no migration")


class InvalidVersionError(MigrateError, ValueError):
    def __init__(self) -> None:
        super().__init__("version must be >= -1")


class LockedError(MigrateError):
    def __init__(self) -> None:
        super().__init__("database locked")


class LockTimeoutError(MigrateError, TimeoutError):
    def __init__(self) -> None:
        super().__init__("timeout: can't acquire database lock")


class ShortLimitError(MigrateError):
    """Fewer migrations were available than requested."""

    def __init__(self, short: int) -> None:
        super().__init__(f"limit {short} short")
        self.short = short


class DirtyError(MigrateError):
    """The database was left in a dirty state by a failed migration."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Dirty database version {version}. Fix and force version.")
        self.version = version


class MigrationNotFoundError(MigrateError, FileNotFoundError):
    """No migration exists for a requested version."""


SourceFactory = Callable[[str], SourceDriver]
DatabaseFactory = Callable[[str], DatabaseDriver]

_registry_lock = threading.Lock()
_source_factories: Dict[str, SourceFactory] = {}
_database_factories: Dict[str, DatabaseFactory] = {}


def register_source_driver(name: str, factory: SourceFactory) -> None:
    """Make ``factory(url)`` open sources whose URL scheme is ``name``."""
    with _registry_lock:
        if name in _source_factories:
            raise ValueError(f"source driver {name!r} already registered")
        _source_factories[name] = factory


def register_database_driver(name: str, factory: DatabaseFactory) -> None:
    """Make ``factory(url)`` open databases whose URL scheme is ``name``."""
    with _registry_lock:
        if name in _database_factories:
            raise ValueError(f"database driver {name!r} already registered")
        _database_factories[name] = factory


def source_drivers() -> List[str]:
    """Return the registered source driver names, sorted."""
    with _registry_lock:
        return sorted(_source_factories)


def database_drivers() -> List[str]:
    """Return the registered database driver names, sorted."""
    with _registry_lock:
        return sorted(_database_factories)


def _open(registry: Dict[str, Callable[[str], Any]], url: str) -> Tuple[str, Any]:
    scheme = scheme_from_url(url)
    with _registry_lock:
        factory = registry.get(scheme)
    if factory is None:
        raise MigrateError(f"unknown driver {scheme} (forgotten import?)")
    return scheme, factory(url)


_END = object()


class Migrate:
    """Runs migrations from a source driver against a database driver."""

    def __init__(
        self,
        source_name: str,
        source: SourceDriver,
        database_name: str,
        database: DatabaseDriver,
    ) -> None:
        self.source_name = source_name
        self.source = source
        self.database_name = database_name
        self.database = database
        self.log: Optional[Logger] = None
        self.prefetch_migrations = DEFAULT_PREFETCH_MIGRATIONS
        self.lock_timeout = DEFAULT_LOCK_TIMEOUT
        self._stop_event = threading.Event()
        self._locked_mutex = threading.Lock()
        self._is_locked = False

    @classmethod
    def from_urls(cls, source_url: str, database_url: str) -> "Migrate":
        """Open both drivers from their URLs."""
        scheme_from_url(source_url)
        scheme_from_url(database_url)
        source_name, source = _open(_source_factories, source_url)
        database_name, database = _open(_database_factories, database_url)
        return cls(source_name, source, database_name, database)

    @classmethod
    def from_source_url(
        cls, source_url: str, database_name: str, database: DatabaseDriver
    ) -> "Migrate":
        """Open the source from a URL and use an existing database driver."""
        source_name, source = _open(_source_factories, source_url)
        return cls(source_name, source, database_name, database)

    @classmethod
    def from_database_url(
        cls, source_name: str, source: SourceDriver, database_url: str
    ) -> "Migrate":
        """Use an existing source driver and open the database from a URL."""
        database_name, database = _open(_database_factories, database_url)
        return cls(source_name, source, database_name, database)

    def __enter__(self) -> "Migrate":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the source and the database."""
        self._log_verbose("Closing source and database\n")
        try:
            self.source.close()
        finally:
            self.database.close()

    def request_stop(self) -> None:
        """Stop at the next safe point between migrations."""
        self._stop_event.set()

    def migrate(self, version: int) -> None:
        """Migrate up or down to ``version``."""
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read(current, version))

    def steps(self, n: int) -> None:
        """Apply ``n`` up migrations if positive, ``-n`` down ones if negative."""
        if n == 0:
            raise NoChangeError()
        with self._locked():
            current = self._clean_version()
            reader = self._read_up(current, n) if n > 0 else self._read_down(current, -n)
            self._run_migrations(reader)

    def up(self) -> None:
        """Apply all up migrations."""
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read_up(current, -1))

    def down(self) -> None:
        """Apply all down migrations."""
        with self._locked():
            current = self._clean_version()
            self._run_migrations(self._read_down(current, -1))

    def drop(self) -> None:
        """Delete everything in the database."""
        with self._locked():
            self.database.drop()

    def run(self, *args: Migration) -> None:
        """Apply the given migrations without consulting the source."""
        if not args:
            raise NoChangeError()
        with self._locked():
            self._clean_version()
            self._run_migrations(self._schedule(args))

    def force(self, version: int) -> None:
        """Set ``version`` and clear the dirty flag without running anything."""
        if version < -1:
            raise InvalidVersionError()
        with self._locked():
            self.database.set_version(version, False)

    def version(self) -> Tuple[int, bool]:
        """Return the current version and dirty flag.

        Raises :class:`NilVersionError` if no migration was applied yet.
        """
        version, dirty = self.database.version()
        if version == NIL_VERSION:
            raise NilVersionError()
        return version, dirty

    # reading

    def _schedule(self, migrations: Iterable[Migration]) -> Iterator[Migration]:
        for migr in migrations:
            self._log_scheduled(migr)
            yield migr

    def _read(self, from_: int, to: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(from_)
        if to >= 0:
            self._version_exists(to)
        if from_ == to:
            raise NoChangeError()

        if from_ < to:
            if from_ == -1:
                first = self.source.first()
                yield self._new_migration(first, first)
                from_ = first
            while from_ < to:
                if self._stopped():
                    return
                nxt = self.source.next(from_)
                yield self._new_migration(nxt, nxt)
                from_ = nxt
        else:
            while from_ > to and from_ >= 0:
                if self._stopped():
                    return
                try:
                    prev = self.source.prev(from_)
                except FileNotFoundError:
                    if to != -1:
                        raise
                    yield self._new_migration(from_, -1)
                    return
                yield self._new_migration(from_, prev)
                from_ = prev

    def _read_up(self, from_: int, limit: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(from_)
        if limit == 0:
            raise NoChangeError()

        count = 0
        while count < limit or limit == -1:
            if self._stopped():
                return
            if from_ == -1:
                first = self.source.first()
                yield self._new_migration(first, first)
                from_ = first
                count += 1
                continue
            try:
                nxt = self.source.next(from_)
            except FileNotFoundError:
                if limit == -1:
                    if count == 0:
                        raise NoChangeError() from None
                    return
                if count == 0:
                    raise
                raise ShortLimitError(limit - count) from None
            yield self._new_migration(nxt, nxt)
            from_ = nxt
            count += 1

    def _read_down(self, from_: int, limit: int) -> Iterator[Migration]:
        if from_ >= 0:
            self._version_exists(from_)
        if limit == 0:
            raise NoChangeError()
        if from_ == -1:
            if limit == -1:
                raise NoChangeError()
            raise MigrationNotFoundError("no migration below the nil version")

        count = 0
        while count < limit or limit == -1:
            if self._stopped():
                return
            try:
                prev = self.source.prev(from_)
            except FileNotFoundError:
                prev = None
            if prev is None:
                if limit == -1 or limit - count > 0:
                    first = self.source.first()
                    yield self._new_migration(first, -1)
                    count += 1
                if count < limit:
                    raise ShortLimitError(limit - count)
                return
            yield self._new_migration(from_, prev)
            from_ = prev
            count += 1

    def _version_exists(self, version: int) -> None:
        for read in (self.source.read_up, self.source.read_down):
            try:
                body, _ = read(version)
            except FileExistsError:
                return
            except FileNotFoundError:
                continue
            body.close()
            return
        err = MigrationNotFoundError(f"no migration found for version {version}")
        self._log_err(err)
        raise err

    def _new_migration(self, version: int, target_version: int) -> Migration:
        read = self.source.read_up if target_version >= version else self.source.read_down
        try:
            body, identifier = read(version)
        except FileNotFoundError:
            migr: Migration = Migration(None, "", version, target_version)
        else:
            migr = Migration(body, identifier, version, target_version)
        self._log_scheduled(migr)
        return migr

    # running

    def _run_migrations(self, reader: Iterator[Migration]) -> None:
        items = self._capture(reader)
        lookahead = max(1, self.prefetch_migrations)
        pending: deque = deque()
        while True:
            while len(pending) < lookahead:
                item = next(items, _END)
                if item is _END:
                    break
                pending.append(item)
                if isinstance(item, Migration) and self.prefetch_migrations > 0:
                    threading.Thread(target=self._buffer, args=(item,), daemon=True).start()
            if not pending:
                return
            item = pending.popleft()
            if self._stopped():
                return
            if isinstance(item, BaseException):
                raise item
            self._apply(item)

    @staticmethod
    def _capture(reader: Iterator[Migration]) -> Iterator[Union[Migration, Exception]]:
        try:
            yield from reader
        except Exception as exc:
            yield exc

    def _buffer(self, migr: Migration) -> None:
        try:
            migr.buffer()
        except Exception as exc:
            self._log_err(exc)

    def _apply(self, migr: Migration) -> None:
        self.database.set_version(migr.target_version, True)
        if migr.body is not None:
            self._log_verbose("Read and execute %s\n", migr.log_string())
            self.database.run(migr.read_body())
        self.database.set_version(migr.target_version, False)

        if self.log is None:
            return
        end = datetime.now()
        finished = migr.finished_reading or end
        started = migr.started_buffering or finished
        read_time = finished - started
        run_time = end - finished
        if self.log.verbose():
            self.log.printf(
                "Finished %s (read %s, ran %s)\n", migr.log_string(), read_time, run_time
            )
        else:
            self.log.printf("%s (%s)\n", migr.log_string(), read_time + run_time)

    def _stopped(self) -> bool:
        return self._stop_event.is_set()

    def _clean_version(self) -> int:
        version, dirty = self.database.version()
        if dirty:
            raise DirtyError(version)
        return version

    # locking

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._lock()
        try:
            yield
        finally:
            self._unlock()

    def _lock(self) -> None:
        with self._locked_mutex:
            if self._is_locked:
                raise LockedError()
            outcome: List[Optional[BaseException]] = []
            done = threading.Event()

            def acquire() -> None:
                try:
                    self.database.lock()
                    outcome.append(None)
                except BaseException as exc:
                    outcome.append(exc)
                finally:
                    done.set()

            threading.Thread(target=acquire, daemon=True).start()
            if not done.wait(self.lock_timeout):
                raise LockTimeoutError()
            if outcome[0] is not None:
                raise outcome[0]
            self._is_locked = True

    def _unlock(self) -> None:
        with self._locked_mutex:
            self.database.unlock()
            self._is_locked = False

    # logging

    def _log_scheduled(self, migr: Migration) -> None:
        if self.prefetch_migrations > 0 and migr.body is not None:
            self._log_verbose("Start buffering %s\n", migr.log_string())
        else:
            self._log_verbose("Scheduled %s\n", migr.log_string())

    def _log_verbose(self, fmt: str, *args: Any) -> None:
        if self.log is not None and self.log.verbose():
            self.log.printf(fmt, *args)

    def _log_err(self, err: BaseException) -> None:
        if self.log is not None:
            self.log.printf("error: %s", err)
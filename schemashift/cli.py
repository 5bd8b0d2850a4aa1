"""The ``migrate`` command line."""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from datetime import datetime, timezone, tzinfo
from typing import Any, List, Optional, Sequence

from .commands import (
    DEFAULT_TIME_FORMAT,
    create_cmd,
    down_cmd,
    drop_cmd,
    force_cmd,
    goto_cmd,
    num_down_migrations_from_args,
    up_cmd,
    version_cmd,
)
from .migrate import Migrate, database_drivers, source_drivers

__all__ = ["CliLog", "VERSION", "main"]

VERSION = "dev"
DEFAULT_TIMEZONE = "UTC"

CREATE_USAGE = """create [-ext E] [-dir D] [-seq] [-digits N] [-format] [-tz] NAME
	   Create a set of timestamped up/down migrations titled NAME, in directory D with extension E.
	   Use -seq option to generate sequential up/down migrations with N digits.
	   Use -format option to specify a time layout string. Note: migrations with the same time cause "duplicate migration version" error.
	   Use -tz option to specify the timezone that will be used when generating non-sequential migrations (defaults: UTC).
"""
GOTO_USAGE = "goto V       Migrate to version V"
UP_USAGE = "up [N]       Apply all or N up migrations"
DOWN_USAGE = """down [N] [-all]    Apply all or N down migrations
	Use -all to apply all down migrations"""
DROP_USAGE = """drop [-f]    Drop everything inside database
	Use -f to bypass confirmation"""
FORCE_USAGE = "force V      Set version V but don't run migration (ignores dirty state)"


class _Exit(Exception):
    def __init__(self, code: int) -> None:
        super().__init__(code)
        self.code = code


class CliLog:
    """Logger writing to standard error, with timestamps when verbose."""

    def __init__(self, verbose: bool = False) -> None:
        self._verbose = verbose

    def _write(self, text: str) -> None:
        if self._verbose:
            text = datetime.now().strftime("%Y/%m/%d %H:%M:%S ") + text
            if not text.endswith("\n"):
                text += "\n"
        sys.stderr.write(text)
        sys.stderr.flush()

    def printf(self, fmt: str, *args: Any) -> None:
        self._write(fmt % args if args else fmt)

    def println(self, *args: Any) -> None:
        self._write(" ".join(str(a) for a in args) + "\n")

    def verbose(self) -> bool:
        return self._verbose

    def fatal(self, *args: Any) -> None:
        self.println(*args)
        raise _Exit(1)

    def fatal_err(self, err: BaseException) -> None:
        self.fatal("error:", err)


def _usage() -> str:
    return (
        "Usage: migrate OPTIONS COMMAND [arg...]\n"
        "       migrate [ -version | -help ]\n\n"
        "Options:\n"
        "  -source          Location of the migrations (driver://url)\n"
        "  -path            Shorthand for -source=file://path\n"
        "  -database        Run migrations against this database (driver://url)\n"
        "  -prefetch N      Number of migrations to load in advance before executing (default 10)\n"
        "  -lock-timeout N  Allow N seconds to acquire database lock (default 15)\n"
        "  -verbose         Print verbose logging\n"
        "  -version         Print version\n"
        "  -help            Print usage\n\n"
        "Commands:\n"
        f"  {CREATE_USAGE}\n  {GOTO_USAGE}\n  {UP_USAGE}\n  {DOWN_USAGE}\n"
        f"  {DROP_USAGE}\n  {FORCE_USAGE}\n"
        "  version      Print current migration version\n\n"
        f"Source drivers: {', '.join(source_drivers())}\n"
        f"Database drivers: {', '.join(database_drivers())}\n"
    )


def _print_usage_and_exit() -> None:
    sys.stderr.write(_usage())
    raise _Exit(2)


def _parser(name: str, usage: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=name, usage=usage, add_help=False)
    parser.add_argument("-help", "--help", action="store_true")
    return parser


def _parse_sub(parser: argparse.ArgumentParser, args: Sequence[str], usage: str) -> argparse.Namespace:
    parser.add_argument("rest", nargs="*")
    ns = parser.parse_args(list(args))
    if ns.help:
        sys.stderr.write(usage + "\n")
        parser.print_help(sys.stderr)
        raise _Exit(0)
    return ns


def _load_zone(name: str) -> tzinfo:
    if name == "UTC":
        return timezone.utc
    if name == "Local":
        local = datetime.now().astimezone().tzinfo
        assert local is not None
        return local
    from zoneinfo import ZoneInfo

    return ZoneInfo(name)


def _confirm(log: CliLog, question: str) -> bool:
    log.println(question)
    try:
        response = input()
    except EOFError:
        response = ""
    return response.strip().lower() == "y"


def _uint(text: str) -> Optional[int]:
    return int(text) if text.isascii() and text.isdigit() else None


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line and return the exit status."""
    try:
        return _main(sys.argv[1:] if argv is None else list(argv))
    except _Exit as exc:
        return exc.code
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 2


def _main(argv: List[str]) -> int:
    parser = argparse.ArgumentParser(prog="migrate", add_help=False)
    parser.add_argument("-help", "--help", action="store_true")
    parser.add_argument("-version", "--version", action="store_true")
    parser.add_argument("-verbose", "--verbose", action="store_true")
    parser.add_argument("-prefetch", "--prefetch", type=int, default=10)
    parser.add_argument("-lock-timeout", "--lock-timeout", dest="lock_timeout", type=int, default=15)
    parser.add_argument("-path", "--path", default="")
    parser.add_argument("-database", "--database", default="")
    parser.add_argument("-source", "--source", default="")
    parser.add_argument("command", nargs="?")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    opts = parser.parse_args(argv)

    log = CliLog(opts.verbose)

    if opts.version:
        sys.stderr.write(VERSION + "\n")
        return 0
    if opts.help:
        sys.stderr.write(_usage())
        return 0

    source = opts.source
    if not source and opts.path:
        source = f"file://{opts.path}"

    migrater: Optional[Migrate] = None
    migrater_err: Optional[Exception] = None
    try:
        migrater = Migrate.from_urls(source, opts.database)
    except Exception as exc:
        migrater_err = exc

    previous_handler: Any = None
    if migrater is not None:
        migrater.log = log
        migrater.prefetch_migrations = opts.prefetch
        migrater.lock_timeout = float(opts.lock_timeout)
        active = migrater

        def on_interrupt(signum: int, frame: Any) -> None:
            log.println("Stopping after this running migration ...")
            active.request_stop()

        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGINT, on_interrupt)

    start = datetime.now(timezone.utc)
    try:
        if opts.command is None:
            _print_usage_and_exit()
        _dispatch(opts.command, opts.args, migrater, migrater_err, log, start)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
        if migrater is not None:
            try:
                migrater.close()
            except Exception as exc:
                log.println(exc)
    return 0


def _need(migrater: Optional[Migrate], err: Optional[Exception], log: CliLog) -> Migrate:
    if migrater is None:
        log.fatal_err(err if err is not None else RuntimeError("no migrater"))
    assert migrater is not None
    return migrater


def _finished(log: CliLog, start: datetime) -> None:
    if log.verbose():
        log.println("Finished after", datetime.now(timezone.utc) - start)


def _dispatch(
    command: str,
    args: List[str],
    migrater: Optional[Migrate],
    migrater_err: Optional[Exception],
    log: CliLog,
    start: datetime,
) -> None:
    if command == "create":
        p = _parser("create", CREATE_USAGE)
        p.add_argument("-ext", "--ext", default="")
        p.add_argument("-dir", "--dir", default="")
        p.add_argument("-format", "--format", default=DEFAULT_TIME_FORMAT)
        p.add_argument("-tz", "--tz", default=DEFAULT_TIMEZONE)
        p.add_argument("-seq", "--seq", action="store_true")
        p.add_argument("-digits", "--digits", type=int, default=6)
        ns = _parse_sub(p, args, CREATE_USAGE)
        if not ns.rest:
            log.fatal("error: please specify name")
        if not ns.ext:
            log.fatal("error: -ext flag must be specified")
        try:
            zone = _load_zone(ns.tz)
        except Exception as exc:
            log.fatal(exc)
        try:
            create_cmd(ns.dir, start.astimezone(zone), ns.format, ns.rest[0],
                       ns.ext, ns.seq, ns.digits, True, log)
        except Exception as exc:
            log.fatal_err(exc)

    elif command == "goto":
        ns = _parse_sub(_parser("goto", GOTO_USAGE), args, GOTO_USAGE)
        m = _need(migrater, migrater_err, log)
        if not ns.rest:
            log.fatal("error: please specify version argument V")
        v = _uint(ns.rest[0])
        if v is None:
            log.fatal("error: can't read version argument V")
        try:
            goto_cmd(m, v, log)
        except Exception as exc:
            log.fatal_err(exc)
        _finished(log, start)

    elif command == "up":
        ns = _parse_sub(_parser("up", UP_USAGE), args, UP_USAGE)
        m = _need(migrater, migrater_err, log)
        limit = -1
        if ns.rest:
            n = _uint(ns.rest[0])
            if n is None:
                log.fatal("error: can't read limit argument N")
            limit = n
        try:
            up_cmd(m, limit, log)
        except Exception as exc:
            log.fatal_err(exc)
        _finished(log, start)

    elif command == "down":
        p = _parser("down", DOWN_USAGE)
        p.add_argument("-all", "--all", dest="apply_all", action="store_true")
        ns = _parse_sub(p, args, DOWN_USAGE)
        m = _need(migrater, migrater_err, log)
        try:
            num, needs_confirm = num_down_migrations_from_args(ns.apply_all, ns.rest)
        except Exception as exc:
            log.fatal_err(exc)
        if needs_confirm:
            if _confirm(log, "Are you sure you want to apply all down migrations? [y/N]"):
                log.println("Applying all down migrations")
            else:
                log.fatal("Not applying all down migrations")
        try:
            down_cmd(m, num, log)
        except Exception as exc:
            log.fatal_err(exc)
        _finished(log, start)

    elif command == "drop":
        p = _parser("drop", DROP_USAGE)
        p.add_argument("-f", dest="force", action="store_true")
        ns = _parse_sub(p, args, DROP_USAGE)
        if not ns.force:
            if _confirm(log, "Are you sure you want to drop the entire database schema? [y/N]"):
                log.println("Dropping the entire database schema")
            else:
                log.fatal("Aborted dropping the entire database schema")
        m = _need(migrater, migrater_err, log)
        try:
            drop_cmd(m)
        except Exception as exc:
            log.fatal_err(exc)
        _finished(log, start)

    elif command == "force":
        ns = _parse_sub(_parser("force", FORCE_USAGE), args, FORCE_USAGE)
        m = _need(migrater, migrater_err, log)
        if not ns.rest:
            log.fatal("error: please specify version argument V")
        try:
            v = int(ns.rest[0])
        except ValueError:
            log.fatal("error: can't read version argument V")
        if v < -1:
            log.fatal("error: argument V must be >= -1")
        try:
            force_cmd(m, v)
        except Exception as exc:
            log.fatal_err(exc)
        _finished(log, start)

    elif command == "version":
        m = _need(migrater, migrater_err, log)
        try:
            version_cmd(m, log)
        except Exception as exc:
            log.fatal_err(exc)

    else:
        _print_usage_and_exit()
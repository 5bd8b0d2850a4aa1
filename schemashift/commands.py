"""Implementations of the command-line subcommands."""

from __future__ import annotations

import glob
import os
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Tuple

from .migrate import Migrate, NoChangeError

__all__ = [
    "DEFAULT_TIME_FORMAT",
    "CommandError",
    "create_cmd",
    "down_cmd",
    "drop_cmd",
    "force_cmd",
    "goto_cmd",
    "next_seq_version",
    "num_down_migrations_from_args",
    "time_version",
    "up_cmd",
    "version_cmd",
]

#: Layout (reference time 2006-01-02 15:04:05) used for timestamped versions.
DEFAULT_TIME_FORMAT = "20060102150405"

_UINT64_MAX = 2**64 - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MONTHS = [
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
]
_WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class CommandError(Exception):
    """A subcommand could not do its work."""


def _parse_uint(text: str) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise CommandError(f'strconv.ParseUint: parsing "{text}": invalid syntax')
    value = int(text)
    if value > _UINT64_MAX:
        raise CommandError(f'strconv.ParseUint: parsing "{text}": value out of range')
    return value


def next_seq_version(matches: Sequence[str], seq_digits: int) -> str:
    """Return the sequence number following the last of ``matches``, zero-padded."""
    if seq_digits <= 0:
        raise CommandError("Digits must be positive")

    next_seq = 1
    if matches:
        filename = matches[-1]
        base = os.path.basename(filename.rstrip("/")) or filename
        idx = base.find("_")
        if idx < 1:
            raise CommandError(f"Malformed migration filename: {filename}")
        next_seq = _parse_uint(base[:idx]) + 1

    version = str(next_seq).zfill(seq_digits)
    if len(version) > seq_digits:
        raise CommandError(
            f"Next sequence number {version} too large. "
            f"At most {seq_digits} digits are allowed"
        )
    return version


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.astimezone()


def _unix_delta(moment: datetime) -> timedelta:
    return _aware(moment) - _EPOCH


def _zone_offset(moment: datetime, sep: str, zulu: bool, with_minutes: bool = True) -> str:
    offset = moment.utcoffset() or timedelta(0)
    if zulu and offset == timedelta(0):
        return "Z"
    total = int(offset.total_seconds()) // 60
    sign = "-" if total < 0 else "+"
    hours, minutes = divmod(abs(total), 60)
    if not with_minutes:
        return f"{sign}{hours:02d}"
    return f"{sign}{hours:02d}{sep}{minutes:02d}"


def _format_layout(moment: datetime, layout: str) -> str:
    """Format ``moment`` with a reference-time layout string."""
    out: List[str] = []
    i = 0
    n = len(layout)
    hour12 = moment.hour % 12 or 12

    def at(token: str) -> bool:
        return layout.startswith(token, i)

    while i < n:
        c = layout[i]
        if at("January"):
            out.append(_MONTHS[moment.month - 1]); i += 7
        elif at("Jan"):
            out.append(_MONTHS[moment.month - 1][:3]); i += 3
        elif at("Monday"):
            out.append(_WEEKDAYS[moment.weekday()]); i += 6
        elif at("Mon"):
            out.append(_WEEKDAYS[moment.weekday()][:3]); i += 3
        elif at("MST"):
            out.append(moment.tzname() or ""); i += 3
        elif at("2006"):
            out.append(f"{moment.year:04d}"); i += 4
        elif c == "0" and i + 1 < n and layout[i + 1] in "123456":
            d = layout[i + 1]
            value = {
                "1": moment.month, "2": moment.day, "3": hour12,
                "4": moment.minute, "5": moment.second, "6": moment.year % 100,
            }[d]
            out.append(f"{value:02d}"); i += 2
        elif at("15"):
            out.append(f"{moment.hour:02d}"); i += 2
        elif c == "1":
            out.append(str(moment.month)); i += 1
        elif at("_2"):
            out.append(f"{moment.day:>2}"); i += 2
        elif c == "2":
            out.append(str(moment.day)); i += 1
        elif c == "3":
            out.append(str(hour12)); i += 1
        elif c == "4":
            out.append(str(moment.minute)); i += 1
        elif c == "5":
            out.append(str(moment.second)); i += 1
        elif at("PM"):
            out.append("PM" if moment.hour >= 12 else "AM"); i += 2
        elif at("pm"):
            out.append("pm" if moment.hour >= 12 else "am"); i += 2
        elif at("Z07:00") or at("-07:00"):
            out.append(_zone_offset(_aware(moment), ":", c == "Z")); i += 6
        elif at("Z0700") or at("-0700"):
            out.append(_zone_offset(_aware(moment), "", c == "Z")); i += 5
        elif at("Z07") or at("-07"):
            out.append(_zone_offset(_aware(moment), "", c == "Z", False)); i += 3
        elif c in ".," and i + 1 < n and layout[i + 1] in "09":
            digit = layout[i + 1]
            j = i + 1
            while j < n and layout[j] == digit:
                j += 1
            if j < n and layout[j].isdigit():
                out.append(c); i += 1
                continue
            width = j - i - 1
            frac = f"{moment.microsecond:06d}000"[:width]
            if digit == "9":
                frac = frac.rstrip("0")
                out.append(c + frac if frac else "")
            else:
                out.append(c + frac)
            i = j
        else:
            out.append(c); i += 1
    return "".join(out)


def time_version(start_time: datetime, fmt: str) -> str:
    """Return a version string for ``start_time`` in layout ``fmt``.

    ``"unix"`` and ``"unixNano"`` give seconds or nanoseconds since the epoch.
    """
    if fmt == "":
        raise CommandError("Time format may not be empty")
    if fmt == "unix":
        return str(_unix_delta(start_time) // timedelta(seconds=1))
    if fmt == "unixNano":
        delta = _unix_delta(start_time)
        return str((delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000)
    return _format_layout(start_time, fmt)


def _create_file(filename: str) -> None:
    with open(filename, "x"):
        pass


def create_cmd(
    directory: str,
    start_time: datetime,
    fmt: str,
    name: str,
    ext: str,
    seq: bool,
    seq_digits: int,
    print_paths: bool,
    log: Any = None,
) -> None:
    """Create an up and a down migration file named ``name`` in ``directory``."""
    if seq and fmt != DEFAULT_TIME_FORMAT:
        raise CommandError("The seq and format options are mutually exclusive")

    directory = os.path.normpath(directory)
    ext = "." + (ext[1:] if ext.startswith(".") else ext)
    escaped = glob.escape(directory)

    if seq:
        matches = sorted(glob.glob(os.path.join(escaped, "*" + glob.escape(ext))))
        version = next_seq_version(matches, seq_digits)
    else:
        version = time_version(start_time, fmt)

    pattern = os.path.join(escaped, glob.escape(version) + "_*" + glob.escape(ext))
    if glob.glob(pattern):
        raise CommandError(f"duplicate migration version: {version}")

    os.makedirs(directory, exist_ok=True)

    for direction in ("up", "down"):
        filename = os.path.join(directory, f"{version}_{name}.{direction}{ext}")
        _create_file(filename)
        if print_paths and log is not None:
            log.println(os.path.abspath(filename))


def goto_cmd(m: Migrate, version: int, log: Any) -> None:
    """Migrate to ``version``; no change is reported, not raised."""
    try:
        m.migrate(version)
    except NoChangeError as exc:
        log.println(exc)


def up_cmd(m: Migrate, limit: int, log: Any) -> None:
    """Apply ``limit`` up migrations, or all of them when ``limit`` is negative."""
    try:
        if limit >= 0:
            m.steps(limit)
        else:
            m.up()
    except NoChangeError as exc:
        log.println(exc)


def down_cmd(m: Migrate, limit: int, log: Any) -> None:
    """Apply ``limit`` down migrations, or all of them when ``limit`` is negative."""
    try:
        if limit >= 0:
            m.steps(-limit)
        else:
            m.down()
    except NoChangeError as exc:
        log.println(exc)


def drop_cmd(m: Migrate) -> None:
    """Delete everything in the database."""
    m.drop()


def force_cmd(m: Migrate, version: int) -> None:
    """Set the version without running a migration."""
    m.force(version)


def version_cmd(m: Migrate, log: Any) -> None:
    """Print the current version."""
    version, dirty = m.version()
    if dirty:
        log.printf("%s (dirty)\n", version)
    else:
        log.println(version)


def num_down_migrations_from_args(
    apply_all: bool, args: Sequence[str]
) -> Tuple[int, bool]:
    """Return the number of down migrations (-1 for all) and whether to confirm."""
    if apply_all:
        if args:
            raise CommandError("-all cannot be used with other arguments")
        return -1, False
    if len(args) == 0:
        return -1, True
    if len(args) == 1:
        try:
            return _parse_uint(args[0]), False
        except CommandError:
            raise CommandError("can't read limit argument N") from None
    raise CommandError("too many arguments")


def _unused(_: Optional[object] = None) -> None:  # pragma: no cover
    return None
import os
from datetime import datetime, timezone

import pytest

from schemashift.commands import (
    DEFAULT_TIME_FORMAT,
    CommandError,
    create_cmd,
    down_cmd,
    goto_cmd,
    next_seq_version,
    num_down_migrations_from_args,
    time_version,
    up_cmd,
    version_cmd,
)
from schemashift.migrate import NoChangeError

TS = datetime(2000, 12, 25, 0, 1, 2, 3456, tzinfo=timezone.utc)
UNIX = "977702462"
UNIX_NANO = "977702462003456000"


class RecLog:
    def __init__(self):
        self.lines = []

    def println(self, *args):
        self.lines.append(" ".join(str(a) for a in args))

    def printf(self, fmt, *args):
        self.lines.append(fmt % args)

    def verbose(self):
        return False


class FakeMigrate:
    def __init__(self, raise_no_change=False, version=(3, False)):
        self.calls = []
        self.raise_no_change = raise_no_change
        self._version = version

    def _call(self, *c):
        self.calls.append(c)
        if self.raise_no_change:
            raise NoChangeError()

    def migrate(self, v):
        self._call("migrate", v)

    def steps(self, n):
        self._call("steps", n)

    def up(self):
        self._call("up")

    def down(self):
        self._call("down")

    def version(self):
        return self._version


@pytest.mark.parametrize(
    "matches,digits,expected",
    [
        ([], 1, "1"),
        (["3_test", "4_test"], 1, "5"),
        ([], 6, "000001"),
        (["000003_test", "000004_test"], 6, "000005"),
        (["/migrationDir/000001_test"], 6, "000002"),
        (["migrationDir/000001_test"], 6, "000002"),
        (["./migrationDir/000001_test"], 6, "000002"),
        (["../migrationDir/000001_test"], 6, "000002"),
        (["000001_test"], 6, "000002"),
    ],
)
def test_next_seq_version(matches, digits, expected):
    assert next_seq_version(matches, digits) == expected


@pytest.mark.parametrize(
    "matches,digits,message",
    [
        ([], 0, "Digits must be positive"),
        (["bad"], 1, "Malformed migration filename: bad"),
        (["bad_bad"], 1, 'strconv.ParseUint: parsing "bad": invalid syntax'),
        (["-5_test"], 1, 'strconv.ParseUint: parsing "-5": invalid syntax'),
        (["9_test"], 1, "Next sequence number 10 too large. At most 1 digits are allowed"),
        (["bad"], 6, "Malformed migration filename: bad"),
        (["bad_bad"], 6, 'strconv.ParseUint: parsing "bad": invalid syntax'),
        (["-000005_test"], 6, 'strconv.ParseUint: parsing "-000005": invalid syntax'),
        (["999999_test"], 6, "Next sequence number 1000000 too large. At most 6 digits are allowed"),
    ],
)
def test_next_seq_version_errors(matches, digits, message):
    with pytest.raises(CommandError) as info:
        next_seq_version(matches, digits)
    assert str(info.value) == message


@pytest.mark.parametrize(
    "fmt,expected",
    [("unix", UNIX), ("unixNano", UNIX_NANO), ("20060102150405", "20001225000102")],
)
def test_time_version(fmt, expected):
    assert time_version(TS, fmt) == expected


def test_time_version_empty_format():
    with pytest.raises(CommandError, match="Time format may not be empty"):
        time_version(TS, "")


def _files(path):
    return sorted(os.listdir(path))


def _real(paths):
    return [os.path.realpath(p) for p in paths]


def _expected_paths(directory):
    return [
        os.path.realpath(directory / "0001_name.up.sql"),
        os.path.realpath(directory / "0001_name.down.sql"),
    ]


def test_create_seq_and_format(tmp_path):
    with pytest.raises(CommandError, match="mutually exclusive"):
        create_cmd(str(tmp_path), TS, "unix", "name", "sql", True, 4, False)
    assert _files(tmp_path) == []


@pytest.mark.parametrize("directory", [".", "./"])
def test_create_seq_init_cwd(tmp_path, monkeypatch, directory):
    monkeypatch.chdir(tmp_path)
    log = RecLog()
    create_cmd(directory, TS, DEFAULT_TIME_FORMAT, "name", "sql", True, 4, True, log)
    assert _real(log.lines) == _expected_paths(tmp_path)
    assert _files(tmp_path) == ["0001_name.down.sql", "0001_name.up.sql"]


@pytest.mark.parametrize("directory", ["..", "../", "..//subdir/./.././/subdir/.."])
def test_create_seq_parent(tmp_path, monkeypatch, directory):
    (tmp_path / "subdir").mkdir()
    monkeypatch.chdir(tmp_path / "subdir")
    log = RecLog()
    create_cmd(directory, TS, DEFAULT_TIME_FORMAT, "name", "sql", True, 4, True, log)
    assert _real(log.lines) == _expected_paths(tmp_path)
    assert (tmp_path / "0001_name.up.sql").exists()
    assert (tmp_path / "0001_name.down.sql").exists()


@pytest.mark.parametrize("directory", ["subdir", "subdir/", "./subdir", "./subdir/"])
def test_create_seq_relative(tmp_path, monkeypatch, directory):
    (tmp_path / "subdir").mkdir()
    monkeypatch.chdir(tmp_path)
    log = RecLog()
    create_cmd(directory, TS, DEFAULT_TIME_FORMAT, "name", "sql", True, 4, True, log)
    assert _real(log.lines) == _expected_paths(tmp_path / "subdir")
    assert _files(tmp_path / "subdir") == ["0001_name.down.sql", "0001_name.up.sql"]


def test_create_seq_absolute(tmp_path):
    create_cmd(str(tmp_path / "subdir") + "/", TS, DEFAULT_TIME_FORMAT, "name", "sql", True, 4, False)
    assert _files(tmp_path / "subdir") == ["0001_name.down.sql", "0001_name.up.sql"]


@pytest.mark.parametrize(
    "existing,digits,message",
    [
        ([], 0, "Digits must be positive"),
        (["bad.sql"], 4, "Malformed migration filename: "),
        (["bad_bad.sql"], 4, 'strconv.ParseUint: parsing "bad": invalid syntax'),
        (["-5_negative.sql"], 4, 'strconv.ParseUint: parsing "-5": invalid syntax'),
        (["9_nine.sql"], 1, "Next sequence number 10 too large. At most 1 digits are allowed"),
    ],
)
def test_create_seq_errors(tmp_path, existing, digits, message):
    for f in existing:
        (tmp_path / f).write_text("")
    with pytest.raises(CommandError) as info:
        create_cmd(str(tmp_path), TS, DEFAULT_TIME_FORMAT, "name", "sql", True, digits, False)
    assert str(info.value).startswith(message)
    assert _files(tmp_path) == sorted(existing)


def test_create_seq_increment(tmp_path):
    (tmp_path / "3_three.sql").write_text("")
    (tmp_path / "4_four.sql").write_text("")
    create_cmd(str(tmp_path), TS, DEFAULT_TIME_FORMAT, "five", ".sql", True, 4, False)
    assert (tmp_path / "0005_five.up.sql").exists()
    assert (tmp_path / "0005_five.down.sql").exists()


@pytest.mark.parametrize(
    "fmt,version",
    [("unix", UNIX), ("unixNano", UNIX_NANO), ("20060102150405", "20001225000102")],
)
def test_create_time(tmp_path, fmt, version):
    create_cmd(str(tmp_path), TS, fmt, "name", "sql", False, 0, False)
    assert _files(tmp_path) == [f"{version}_name.down.sql", f"{version}_name.up.sql"]


def test_create_time_empty_format(tmp_path):
    with pytest.raises(CommandError, match="Time format may not be empty"):
        create_cmd(str(tmp_path), TS, "", "name", "sql", False, 0, False)


def test_create_time_collision(tmp_path):
    (tmp_path / "20001225_name.up.sql").write_text("")
    (tmp_path / "20001225_name.down.sql").write_text("")
    with pytest.raises(CommandError, match="duplicate migration version: 20001225"):
        create_cmd(str(tmp_path), TS, "20060102", "name", "sql", False, 0, False)


def test_create_invalid_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "file").write_text("")
    with pytest.raises((ValueError, OSError)):
        create_cmd("'test: this is invalid dir name'\x00", TS, "unix", "name", "sql", False, 0, False)
    assert _files(tmp_path) == ["file"]


def test_create_prints_paths(tmp_path):
    log = RecLog()
    create_cmd(str(tmp_path), TS, "unix", "name", "sql", False, 0, True, log)
    assert log.lines == [
        str(tmp_path / f"{UNIX}_name.up.sql"),
        str(tmp_path / f"{UNIX}_name.down.sql"),
    ]


@pytest.mark.parametrize(
    "args,apply_all,expected",
    [([], False, (-1, True)), ([], True, (-1, False)), (["5"], False, (5, False))],
)
def test_num_down(args, apply_all, expected):
    assert num_down_migrations_from_args(apply_all, args) == expected


@pytest.mark.parametrize(
    "args,apply_all,message",
    [
        (["N"], False, "can't read limit argument N"),
        (["5"], True, "-all cannot be used with other arguments"),
        (["5", "-all"], False, "too many arguments"),
    ],
)
def test_num_down_errors(args, apply_all, message):
    with pytest.raises(CommandError) as info:
        num_down_migrations_from_args(apply_all, args)
    assert str(info.value) == message


def test_up_down_dispatch():
    m, log = FakeMigrate(), RecLog()
    up_cmd(m, -1, log)
    up_cmd(m, 2, log)
    down_cmd(m, -1, log)
    down_cmd(m, 3, log)
    assert m.calls == [("up",), ("steps", 2), ("down",), ("steps", -3)]


def test_no_change_is_logged():
    m, log = FakeMigrate(raise_no_change=True), RecLog()
    goto_cmd(m, 4, log)
    assert log.lines == ["no change"]


def test_version_cmd_dirty():
    log = RecLog()
    version_cmd(FakeMigrate(version=(7, True)), log)
    version_cmd(FakeMigrate(version=(7, False)), log)
    assert log.lines == ["7 (dirty)\n", "7"]
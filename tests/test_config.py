from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import tail_mirror
from tail_mirror import AppConfig, ColorizingFormatter, build_effective_config, parse_args, validate_config


def test_cli_values_override_saved_config(isolated_config: Path, tmp_path: Path) -> None:
    isolated_config.parent.mkdir(parents=True)
    isolated_config.write_text(
        json.dumps({"replica": "/saved/replica.bin", "log_dir": "/saved/logs", "expected_total_size": 99}),
        encoding="utf-8",
    )

    cfg = build_effective_config(parse_args(["a.bin", "--replica", str(tmp_path / "r.bin"), "--expected-size", "5"]))

    assert cfg.files == [Path("a.bin")]
    assert cfg.replica_path == tmp_path / "r.bin"
    assert cfg.log_dir == Path("/saved/logs")
    assert cfg.expected_total_size == 5


def test_saved_config_fills_missing_values(isolated_config: Path) -> None:
    tail_mirror.save_config_file(Path("/saved/replica.bin"), Path("/saved/logs"), 1024)

    cfg = build_effective_config(parse_args(["a.bin"]))

    assert cfg.replica_path == Path("/saved/replica.bin")
    assert cfg.expected_total_size == 1024


def test_unreadable_saved_config_is_ignored(isolated_config: Path) -> None:
    isolated_config.parent.mkdir(parents=True)
    isolated_config.write_text("{not json", encoding="utf-8")

    assert tail_mirror.load_config_file() == {}


def test_replica_is_prompted_when_unknown(monkeypatch: pytest.MonkeyPatch) -> None:
    answers = iter(["", "/typed/replica.bin"])
    monkeypatch.setattr("builtins.input", lambda _prompt: next(answers))

    cfg = build_effective_config(parse_args(["a.bin"]))

    assert cfg.replica_path == Path("/typed/replica.bin")


def test_validate_rejects_bad_inputs(tmp_path: Path) -> None:
    source = tmp_path / "in.bin"
    source.write_bytes(b"")
    replica = tmp_path / "out.bin"

    with pytest.raises(ValueError, match="at least one file"):
        validate_config(AppConfig([], replica, tmp_path))
    with pytest.raises(ValueError, match="is a directory"):
        validate_config(AppConfig([tmp_path], replica, tmp_path))
    with pytest.raises(ValueError, match="does not exist"):
        validate_config(AppConfig([tmp_path / "nope.bin"], replica, tmp_path))
    with pytest.raises(ValueError, match="replica"):
        validate_config(AppConfig([source], None, tmp_path))
    with pytest.raises(ValueError, match="must not be one of"):
        validate_config(AppConfig([source], source, tmp_path))
    with pytest.raises(ValueError, match="negative"):
        validate_config(AppConfig([source], replica, tmp_path, expected_total_size=-1))


def test_validate_makes_paths_absolute(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    Path("in.bin").write_bytes(b"x")

    cfg = validate_config(AppConfig([Path("in.bin")], Path("out.bin"), tmp_path))

    assert cfg.files == [Path.cwd() / "in.bin"]
    assert cfg.replica_path == Path.cwd() / "out.bin"


def test_main_without_files_prints_usage(capsys: pytest.CaptureFixture) -> None:
    with pytest.raises(SystemExit) as exc:
        tail_mirror.main([])

    assert exc.value.code == 2
    err = capsys.readouterr().err
    assert "usage:" in err
    assert "at least one file" in err


def test_main_rejects_directory(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    with pytest.raises(SystemExit) as exc:
        tail_mirror.main([str(tmp_path), "--replica", str(tmp_path / "r.bin")])

    assert exc.value.code == 2
    assert "is a directory" in capsys.readouterr().err


class FakeObserver:
    def __init__(self) -> None:
        self.scheduled: list[str] = []

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append(path)


def test_each_parent_directory_is_watched_once(tmp_path: Path, records, logger) -> None:
    a = tmp_path / "a.bin"
    b = tmp_path / "b.bin"
    c = tmp_path / "sub" / "c.bin"
    observer = FakeObserver()
    coordinator = tail_mirror.ChangeCoordinator([a, b, c], records, logger)

    dirs = tail_mirror.watch_parents(observer, coordinator, [a, b, c])

    assert dirs == [tmp_path, tmp_path / "sub"]
    assert observer.scheduled == [str(tmp_path), str(tmp_path / "sub")]


def test_colorizing_formatter_paints_action_and_path() -> None:
    formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "APPEND | 4 byte(s) /tmp/out.bin", None, None)
    record.action = "APPEND"
    record.path_text = "/tmp/out.bin"

    text = formatter.format(record)

    assert text.startswith(f"{tail_mirror.Ansi.GREEN}APPEND{tail_mirror.Ansi.RESET}")
    assert f"{tail_mirror.Ansi.WHITE}/tmp/out.bin{tail_mirror.Ansi.RESET}" in text


def test_plain_formatter_leaves_message_alone() -> None:
    formatter = ColorizingFormatter(use_color=False, fmt="%(message)s")
    record = logging.LogRecord("t", logging.ERROR, __file__, 1, "REJECT | bad", None, None)

    assert formatter.format(record) == "REJECT | bad"


class UnwatchableObserver:
    def __init__(self, fail_on: str) -> None:
        self.fail_on = fail_on

    def schedule(self, handler, path, recursive=False):
        if self.fail_on == "schedule":
            raise PermissionError(13, "Permission denied", path)

    def start(self):
        if self.fail_on == "start":
            raise OSError(28, "inotify watch limit reached")


@pytest.mark.parametrize("fail_on", ["schedule", "start"])
def test_main_fails_fast_when_watch_cannot_be_set_up(
    fail_on: str,
    tmp_path: Path,
    isolated_config: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture,
) -> None:
    source = tmp_path / "in.bin"
    source.write_bytes(b"")
    monkeypatch.setattr(tail_mirror, "Observer", lambda: UnwatchableObserver(fail_on))

    with pytest.raises(SystemExit) as exc:
        tail_mirror.main([str(source), "--replica", str(tmp_path / "out.bin"), "--log-dir", str(tmp_path / "logs")])

    assert exc.value.code == 2
    err = capsys.readouterr().err
    assert "usage:" in err
    assert "cannot watch" in err
    # a run that never started watching keeps the previous settings
    assert not isolated_config.exists()

# /tail_mirror.py
"""
Tail Mirror (no UI)
- Watches one or more growing files and mirrors their new bytes into a replica.
- Reacts to change notifications instead of re-reading the whole source:
  every notification becomes a byte range (offset + length) per file.
- Before appending, compares the replica with the already-synced prefix of the
  source and patches any drift it finds (best-effort, contiguous patch).
- Optional final verification once a configured total byte count is reached.
- Remembers replica/log settings across restarts via ~/.tail_mirror/config.json
- Styled console output:
  - APPEND green
  - DRIFT orange
  - PATCH / TRUNCATE light brown
  - rejected records / errors red
  - file paths white
- Log file is always plain (no color codes).

Usage
  pip install watchdog colorama
  python tail_mirror.py data.tiff --replica /mnt/copy/data.tiff
  python tail_mirror.py data.tiff --replica out.tiff --expected-size 10530212
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import queue
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from colorama import init as colorama_init
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

APP_DIR = Path.home() / ".tail_mirror"
CONFIG_PATH = APP_DIR / "config.json"

# Seconds a blocked queue operation waits before re-checking the stop event.
POLL_SLICE_SEC = 0.5

ACCEPTED_KINDS = ("created", "written")


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "APPEND": Ansi.GREEN,
    "DRIFT": Ansi.ORANGE,
    "PATCH": Ansi.LIGHT_BROWN,
    "TRUNCATE": Ansi.LIGHT_BROWN,
    "VERIFY": Ansi.GREEN,
    "REJECT": Ansi.RED,
    "WATCH_ERROR": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action == "VERIFY" and record.levelno >= logging.WARNING:
                action_color = Ansi.ORANGE
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            base = base.replace(path_text, f"{Ansi.WHITE}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "tail_mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger("tail_mirror")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class TailMirrorError(Exception):
    """Base class for tail mirror failures."""


class FatalSyncError(TailMirrorError):
    """Source or replica I/O failed; synchronization cannot continue."""

    def __init__(self, operation: str, path: Path, error: OSError):
        super().__init__(f"{operation} failed for {path}: {error}")
        self.operation = operation
        self.path = path
        self.error = error


class InvalidChangeRecord(TailMirrorError, ValueError):
    """A change record whose byte range does not add up."""


# -------------------------
# Change records
# -------------------------

@dataclass(frozen=True)
class ChangeRecord:
    """
    One byte-range delta observed for a watched file.

    For a well-formed record ``offset + delta_size == file_size`` and
    ``delta_size >= 0``. ``truncated`` marks a file that shrank; such a record
    carries ``offset == file_size`` and no delta.
    """

    path: Path
    timestamp: int
    file_size: int
    delta_size: int
    offset: int
    truncated: bool = False

    def is_well_formed(self) -> bool:
        if self.delta_size < 0 or self.offset < 0:
            return False
        return self.offset + self.delta_size == self.file_size

    def validate(self) -> None:
        if not self.is_well_formed():
            raise InvalidChangeRecord(
                f"bad range for {self.path}: offset={self.offset} delta={self.delta_size} size={self.file_size}"
            )


def find_differences(a: bytes, b: bytes) -> list[int]:
    """Indices where ``a`` and ``b`` disagree, including the unmatched tail."""
    min_len = min(len(a), len(b))
    indices = [i for i in range(min_len) if a[i] != b[i]]
    indices.extend(range(min_len, max(len(a), len(b))))
    return indices


def put_with_stop(records: queue.Queue, item, stop_event: Optional[threading.Event]) -> bool:
    """Blocking put that gives up once ``stop_event`` is set."""
    while True:
        try:
            records.put(item, timeout=POLL_SLICE_SEC)
            return True
        except queue.Full:
            if stop_event is not None and stop_event.is_set():
                return False


# -------------------------
# Change coordinator (watchdog side)
# -------------------------

class ChangeCoordinator(FileSystemEventHandler):
    """
    Turns watchdog notifications for the watched files into ChangeRecords.

    Runs on the observer thread. ``records`` should be a ``queue.Queue`` with
    ``maxsize=1``: emission blocks until the engine has taken the previous
    record.
    """

    def __init__(
        self,
        files: list[Path],
        records: queue.Queue,
        logger: logging.Logger,
        stop_event: Optional[threading.Event] = None,
    ):
        self.files = [Path(f) for f in files]
        self.records = records
        self.logger = logger
        self.stop_event = stop_event
        self._last_sizes: dict[Path, int] = {f: 0 for f in self.files}
        self._sizes_guard = threading.Lock()
        self._closed = False
        self.events_seen = 0

    def snapshot(self) -> dict[Path, int]:
        with self._sizes_guard:
            return dict(self._last_sizes)

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _is_target(self, path: Path) -> bool:
        for f in self.files:
            if f == path:
                return True
        return False

    # watchdog callbacks

    def dispatch(self, event):
        try:
            super().dispatch(event)
        except OSError as e:
            self.report_error(e)

    def on_created(self, event):
        if event.is_directory:
            return
        self.handle_notification(Path(event.src_path), "created")

    def on_modified(self, event):
        if event.is_directory:
            return
        self.handle_notification(Path(event.src_path), "written")

    def on_moved(self, event):
        # Editors save by writing a temp file and renaming it over the target.
        if event.is_directory:
            return
        self.handle_notification(Path(event.dest_path), "created")

    def report_error(self, error: Exception) -> None:
        log_action(self.logger, "WATCH_ERROR", f"{error}", level=logging.ERROR)

    # core

    def handle_notification(self, path: Path, kind: str) -> Optional[ChangeRecord]:
        if self._closed:
            return None
        if kind not in ACCEPTED_KINDS:
            return None
        path = Path(path)
        if not self._is_target(path):
            return None

        try:
            f = path.open("rb")
        except OSError as e:
            # Usually a rename-save in progress; the next notification retries.
            self.logger.debug("dropped %s notification for %s: %s", kind, path, e)
            return None

        size = 0
        modified = 0
        with f:
            try:
                st = os.fstat(f.fileno())
                size = st.st_size
                modified = int(st.st_mtime)
            except OSError as e:
                self.logger.debug("stat failed for %s, assuming size 0: %s", path, e)

        with self._sizes_guard:
            last_size = self._last_sizes.get(path, 0)
            delta = size - last_size
            if delta < 0:
                log_action(
                    self.logger,
                    "TRUNCATE",
                    f"{path} shrank {last_size} -> {size}; resyncing from {size}",
                    path=path,
                    level=logging.WARNING,
                )
                record = ChangeRecord(path, modified, size, 0, size, truncated=True)
            else:
                record = ChangeRecord(path, modified, size, delta, last_size)

        if not put_with_stop(self.records, record, self.stop_event):
            return None
        with self._sizes_guard:
            self._last_sizes[path] = size
            self.events_seen += 1
        return record


# -------------------------
# Replica sync engine (consumer side)
# -------------------------

@dataclass
class SyncResult:
    record: ChangeRecord
    skipped: bool = False
    drift: list[int] = field(default_factory=list)
    patched_bytes: int = 0
    written_bytes: int = 0
    verified: Optional[bool] = None
    verify_differences: list[int] = field(default_factory=list)


def read_range(path: Path, offset: int, size: int) -> bytes:
    """Read up to ``size`` bytes at ``offset``; a short read at EOF is fine."""
    try:
        with path.open("rb") as f:
            f.seek(offset)
            return f.read(size)
    except OSError as e:
        raise FatalSyncError("read", path, e) from e


def read_all(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise FatalSyncError("read", path, e) from e


class ReplicaSyncEngine:
    """
    Applies ChangeRecords to the replica file, one at a time, in queue order.

    ``total_size`` is the running sum of applied deltas. When it reaches
    ``expected_total_size`` the whole source is compared against the replica
    once more and the outcome logged.
    """

    def __init__(
        self,
        replica_path: Path,
        logger: logging.Logger,
        expected_total_size: Optional[int] = None,
    ):
        self.replica_path = Path(replica_path)
        self.logger = logger
        self.expected_total_size = expected_total_size
        self.total_size = 0

    def _open_replica(self):
        try:
            self.replica_path.parent.mkdir(parents=True, exist_ok=True)
            self.replica_path.touch(exist_ok=True)
            return self.replica_path.open("r+b")
        except OSError as e:
            raise FatalSyncError("open", self.replica_path, e) from e

    def _write_at(self, replica, offset: int, data: bytes) -> None:
        try:
            replica.seek(offset)
            replica.write(data)
        except OSError as e:
            raise FatalSyncError("write", self.replica_path, e) from e

    def apply(self, record: ChangeRecord) -> SyncResult:
        record.validate()
        result = SyncResult(record=record)
        log_action(
            self.logger,
            "EVENT",
            f"{record.path} size={record.file_size} mtime={record.timestamp} "
            f"delta={record.delta_size} offset={record.offset}",
            path=record.path,
        )

        if record.truncated:
            self._truncate(record)
            result.skipped = True
            return result

        if record.delta_size == 0:
            self.logger.debug("SKIP | empty delta for %s", record.path)
            result.skipped = True
            return result

        data = read_range(record.path, record.offset, record.delta_size)
        synced = read_range(record.path, 0, self.total_size)

        with self._open_replica() as replica:
            try:
                current = replica.read()
            except OSError as e:
                raise FatalSyncError("read", self.replica_path, e) from e

            if synced != current:
                result.drift = find_differences(current, synced)
                log_action(
                    self.logger,
                    "DRIFT",
                    f"{len(result.drift)} byte(s) differ, first at {result.drift[0]}",
                    path=self.replica_path,
                    level=logging.WARNING,
                )
                # Contiguous patch from the first difference; non-contiguous drift is only partly repaired.
                start = result.drift[0]
                patch = read_range(record.path, start, len(result.drift))
                self._write_at(replica, start, patch)
                result.patched_bytes = len(patch)
                log_action(self.logger, "PATCH", f"{len(patch)} byte(s) at {start}", path=self.replica_path)

            self._write_at(replica, record.offset, data)
            result.written_bytes = len(data)

        self.total_size += record.delta_size
        log_action(
            self.logger,
            "APPEND",
            f"{len(data)} byte(s) at {record.offset} (total {self.total_size})",
            path=self.replica_path,
        )

        if self.expected_total_size is not None and self.total_size == self.expected_total_size:
            result.verify_differences = self.verify(record.path)
            result.verified = not result.verify_differences
        return result

    def verify(self, source: Path) -> list[int]:
        """Compare the whole source with the replica; log, never repair."""
        differences = find_differences(read_all(source), read_all(self.replica_path))
        if differences:
            log_action(
                self.logger,
                "VERIFY",
                f"{len(differences)} byte(s) differ from {source}, indices: {differences}",
                path=self.replica_path,
                level=logging.WARNING,
            )
        else:
            log_action(self.logger, "VERIFY", f"identical to {source} ({self.total_size} bytes)", path=self.replica_path)
        return differences

    def _truncate(self, record: ChangeRecord) -> None:
        with self._open_replica() as replica:
            try:
                replica.truncate(record.file_size)
            except OSError as e:
                raise FatalSyncError("truncate", self.replica_path, e) from e
        self.total_size = record.file_size
        log_action(
            self.logger,
            "TRUNCATE",
            f"replica cut to {record.file_size} byte(s) after {record.path} shrank",
            path=self.replica_path,
            level=logging.WARNING,
        )

    def run(self, records: queue.Queue, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                record = records.get(timeout=POLL_SLICE_SEC)
            except queue.Empty:
                continue
            try:
                self.apply(record)
            except InvalidChangeRecord as e:
                log_action(self.logger, "REJECT", f"{e}", path=record.path, level=logging.ERROR)
            finally:
                records.task_done()


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    files: list[Path]
    replica_path: Optional[Path]
    log_dir: Path
    expected_total_size: Optional[int] = None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Mirror appended bytes of growing files into a replica.")
    p.add_argument("files", nargs="*", help="File(s) to watch (source).")
    p.add_argument("--replica", type=str, default=None, help="Replica file to keep in sync (destination).")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument(
        "--expected-size",
        type=int,
        default=None,
        help="Total synced byte count that triggers a final source/replica comparison.",
    )
    return p


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def prompt_for_path(label: str, default: Optional[Path] = None) -> Path:
    while True:
        hint = f" [{default}]" if default else ""
        raw = input(f"{label}{hint}: ").strip().strip('"')
        if not raw and default:
            return default
        if raw:
            return Path(raw)
        print("Please enter a non-empty path.")


def load_config_file() -> dict:
    if not CONFIG_PATH.exists():
        return {}
    try:
        return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}


def save_config_file(replica: Path, log_dir: Path, expected_total_size: Optional[int]) -> None:
    APP_DIR.mkdir(parents=True, exist_ok=True)
    payload = {
        "replica": str(replica),
        "log_dir": str(log_dir),
        "expected_total_size": expected_total_size,
    }
    CONFIG_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    saved = load_config_file()

    saved_replica = Path(saved["replica"]) if saved.get("replica") else None
    saved_log = Path(saved["log_dir"]) if saved.get("log_dir") else None
    saved_expected = saved.get("expected_total_size")

    replica = Path(args.replica) if args.replica else saved_replica
    log_dir = Path(args.log_dir) if args.log_dir else (saved_log or Path("."))
    expected = args.expected_size if args.expected_size is not None else saved_expected

    if replica is None and args.files:
        replica = prompt_for_path("Replica file", saved_replica)

    return AppConfig(
        files=[Path(f) for f in args.files],
        replica_path=replica,
        log_dir=log_dir,
        expected_total_size=int(expected) if expected is not None else None,
    )


def validate_config(cfg: AppConfig) -> AppConfig:
    if not cfg.files:
        raise ValueError("must specify at least one file to watch")

    files = []
    for f in cfg.files:
        f = f.expanduser().absolute()
        if f.is_dir():
            raise ValueError(f"{str(f)!r} is a directory, not a file")
        if not f.exists():
            raise ValueError(f"{str(f)!r} does not exist")
        files.append(f)

    if cfg.replica_path is None:
        raise ValueError("must specify a replica file (--replica)")
    replica = cfg.replica_path.expanduser().absolute()
    if replica.is_dir():
        raise ValueError(f"replica {str(replica)!r} is a directory, not a file")
    if replica in files:
        raise ValueError("replica must not be one of the watched files")
    if cfg.expected_total_size is not None and cfg.expected_total_size < 0:
        raise ValueError("--expected-size must not be negative")

    return AppConfig(
        files=files,
        replica_path=replica,
        log_dir=cfg.log_dir,
        expected_total_size=cfg.expected_total_size,
    )


def watch_parents(observer, handler: ChangeCoordinator, files: list[Path]) -> list[Path]:
    """Schedule each file's parent directory once; files are matched by the handler."""
    dirs: list[Path] = []
    for f in files:
        if f.parent not in dirs:
            observer.schedule(handler, str(f.parent), recursive=False)
            dirs.append(f.parent)
    return dirs


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = validate_config(build_effective_config(args))
    except ValueError as e:
        parser.error(str(e))

    logger = setup_logger(cfg.log_dir)
    logger.info("Replica: %s", cfg.replica_path)
    for f in cfg.files:
        logger.info("Source : %s", f)

    stop_event = threading.Event()
    records: queue.Queue = queue.Queue(maxsize=1)
    coordinator = ChangeCoordinator(cfg.files, records, logger, stop_event=stop_event)
    engine = ReplicaSyncEngine(cfg.replica_path, logger, expected_total_size=cfg.expected_total_size)

    observer = Observer()
    try:
        for d in watch_parents(observer, coordinator, cfg.files):
            log_action(logger, "WATCH", f"{d}", path=d)
        # Emitters create their OS watches on start, not on schedule.
        observer.start()
    except OSError as e:
        logger.error("Cannot watch: %s", e)
        parser.error(f"cannot watch: {e}")

    try:
        save_config_file(cfg.replica_path, cfg.log_dir.expanduser().resolve(), cfg.expected_total_size)
        logger.info("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    logger.info("Ready; press Ctrl+C to exit")

    code = 0
    try:
        engine.run(records, stop_event)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    except FatalSyncError as e:
        logger.error("Fatal: %s", e)
        code = 1
    finally:
        stop_event.set()
        coordinator.close()
        observer.stop()
        observer.join(timeout=10)
        logger.info("Stopped. %d byte(s) synced from %d notification(s).", engine.total_size, coordinator.events_seen)
    return code


if __name__ == "__main__":
    raise SystemExit(main())

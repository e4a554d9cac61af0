"""Mutual watchdog: an application and a companion process keep each other alive.

Each side pings its partner with SIGUSR1 at a fixed interval and counts the
pings it sent since it last heard back.  When the count exceeds the allowed
threshold the partner is presumed dead and started again.  SIGUSR2 tells a
side to stop watching.
"""

from __future__ import annotations

import hashlib
import heapq
import itertools
import os
import signal
import socket
import struct
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, Sequence

RED = "\033[0;31m"
BOLD_RED = "\033[1;31m"
GREEN = "\033[0;32m"
BOLD_GREEN = "\033[1;32m"
RESET = "\033[0m"
MAG = "\x1b[35m"
BLUE = "\x1b[34m"
PURPLE = "\x1b[35m"
CYAN = "\x1b[36m"
GREY = "\x1b[37m"
YELLOW = "\x1b[33m"

WD_PID_ENV = "WD_PID"
WD_EXE_ENV = "WD_EXE"
CONFIG_ENV = "WD_CONFIG"
SYNC_FD_ENV = "WD_SYNC_FD"
DEFAULT_WD_EXE = "exe/wd_exe"
APP_EXE_NAME_LENGTH = 256


class WDStatus(IntEnum):
    """Outcome codes of watchdog operations."""

    SUCCESS = 0
    INIT_FAIL = 1
    TERMINATION_FAIL = 2
    MEM_ALLOC_FAIL = 3


class WatchdogError(Exception):
    """Base class of watchdog failures."""

    status: WDStatus = WDStatus.INIT_FAIL


class InitError(WatchdogError):
    """The watchdog could not be started."""

    status = WDStatus.INIT_FAIL


class TerminationError(WatchdogError):
    """The watchdog could not be stopped cleanly."""

    status = WDStatus.TERMINATION_FAIL


def _say(color: str, text: str) -> None:
    print(f"{color}{text}{RESET}", flush=True)


def _default_config_path(wd_exe: str) -> str:
    digest = hashlib.sha256(os.path.abspath(wd_exe).encode()).hexdigest()[:16]
    return os.path.join(tempfile.gettempdir(), f"mutualwatch-{digest}.cfg")


@dataclass(frozen=True)
class SharedConfig:
    """Settings both partners share: ping interval, threshold, application path."""

    interval: int
    threshold: int
    app_exe: str

    _LAYOUT = struct.Struct(f"<qQ{APP_EXE_NAME_LENGTH}s")

    def to_bytes(self) -> bytes:
        """Encode to the fixed-size record; the path is cut to 255 bytes."""
        name = os.fsencode(self.app_exe)[: APP_EXE_NAME_LENGTH - 1]
        try:
            return self._LAYOUT.pack(self.interval, self.threshold, name)
        except struct.error as exc:
            raise ValueError(f"cannot encode shared config: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> SharedConfig:
        """Decode a record produced by to_bytes."""
        if len(data) != cls._LAYOUT.size:
            raise ValueError(
                f"shared config must be {cls._LAYOUT.size} bytes, got {len(data)}"
            )
        interval, threshold, raw = cls._LAYOUT.unpack(data)
        return cls(interval, threshold, os.fsdecode(raw.split(b"\0", 1)[0]))


@dataclass(order=True)
class _Task:
    due: float
    seq: int
    action: Callable[[], object] = field(compare=False)
    interval: float = field(compare=False)


class Scheduler:
    """Runs repeating tasks at their due times until stopped or empty.

    A task is rescheduled every interval seconds unless its action returns False.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._queue: list[_Task] = []
        self._cond = threading.Condition()
        self._ids = itertools.count(1)
        self._stopped = False

    def add_task(self, action: Callable[[], object], start_time: float, interval: float) -> int:
        """Schedule action first at start_time, then every interval seconds."""
        if interval <= 0:
            raise ValueError("task interval must be positive")
        task_id = next(self._ids)
        with self._cond:
            heapq.heappush(self._queue, _Task(start_time, task_id, action, interval))
            self._cond.notify_all()
        return task_id

    def _next_due(self) -> _Task | None:
        with self._cond:
            while not self._stopped and self._queue:
                delay = self._queue[0].due - self._clock()
                if delay <= 0:
                    return heapq.heappop(self._queue)
                self._cond.wait(delay)
            return None

    def run(self) -> None:
        """Execute tasks until stop() is called or no task is left."""
        while (task := self._next_due()) is not None:
            keep = task.action()
            if keep is not False:
                with self._cond:
                    task.due += task.interval
                    heapq.heappush(self._queue, task)
        with self._cond:
            self._stopped = False

    def stop(self) -> None:
        """Make run() return as soon as the current task finishes."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()


class Watchdog:
    """One side of a pair of processes that watch each other."""

    def __init__(self, wd_exe: str | None = None, config_path: str | None = None) -> None:
        self.wd_exe = wd_exe or os.environ.get(WD_EXE_ENV, DEFAULT_WD_EXE)
        self.config_path = os.path.abspath(
            config_path
            or os.environ.get(CONFIG_ENV)
            or _default_config_path(self.wd_exe)
        )
        self.partner_pid = 0
        self._lock = threading.Lock()
        self._missed = 0
        self._config: SharedConfig | None = None
        self._scheduler: Scheduler | None = None
        self._thread: threading.Thread | None = None
        self._partner: subprocess.Popen | None = None
        self._sync_sock: socket.socket | None = None
        self._owns_config = False
        self._started = threading.Event()
        self._start_error: InitError | None = None

    @property
    def running(self) -> bool:
        """True while the watching thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_in_sec: int, intervals_per_check: int, argv: Sequence[str]) -> None:
        """Start watching; argv[0] is the path of the calling program."""
        if self.running:
            raise InitError("watchdog is already running")
        if self._thread is not None:
            self._release()
        argv = list(argv)
        if not argv:
            raise InitError("argv must hold the program path")

        self._install_signals()
        self._init_partner(interval_in_sec, intervals_per_check, argv)
        try:
            self._scheduler = self._make_scheduler(argv)
        except ValueError as exc:
            self._release()
            raise InitError(f"cannot schedule watchdog tasks: {exc}") from exc

        self._started.clear()
        self._start_error = None
        self._thread = threading.Thread(target=self._serve, name="watchdog", daemon=True)
        try:
            self._thread.start()
        except RuntimeError as exc:
            self._release()
            raise InitError(f"cannot start watchdog thread: {exc}") from exc

        self._started.wait()
        if self._start_error is not None:
            error = self._start_error
            self._thread.join()
            self._release()
            raise error

    def stop(self) -> None:
        """Stop this side and ask the partner to stop too."""
        if self._thread is None or self._scheduler is None:
            raise TerminationError("watchdog is not running")
        problems = []
        try:
            os.kill(self.partner_pid, signal.SIGUSR2)
        except OSError as exc:
            problems.append(f"cannot signal partner {self.partner_pid}: {exc}")
        self._scheduler.stop()
        self._thread.join()
        self._release()
        if problems:
            raise TerminationError("; ".join(problems))

    def _install_signals(self) -> None:
        try:
            signal.signal(signal.SIGUSR1, self._on_ping)
            signal.signal(signal.SIGUSR2, self._on_stop)
        except ValueError as exc:
            raise InitError(f"cannot install signal handlers: {exc}") from exc

    def _on_ping(self, signum, frame) -> None:
        with self._lock:
            self._missed = 0

    def _on_stop(self, signum, frame) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def _is_watchdog(self, argv: Sequence[str]) -> bool:
        return os.path.abspath(argv[0]) == os.path.abspath(self.wd_exe)

    def _init_partner(self, interval: int, threshold: int, argv: list[str]) -> None:
        if WD_PID_ENV not in os.environ:
            self._config = SharedConfig(int(interval), int(threshold), argv[0])
            try:
                Path(self.config_path).write_bytes(self._config.to_bytes())
            except (OSError, ValueError) as exc:
                raise InitError(f"cannot write shared config: {exc}") from exc
            self._owns_config = True
            try:
                self._revive(argv)
            except InitError:
                self._release()
                raise
            return

        # A revived process: the survivor that started it is its parent.
        self.partner_pid = os.getppid()
        try:
            self._config = SharedConfig.from_bytes(Path(self.config_path).read_bytes())
        except (OSError, ValueError) as exc:
            raise InitError(f"cannot read shared config: {exc}") from exc
        fd = os.environ.get(SYNC_FD_ENV)
        if fd is None:
            raise InitError(f"{SYNC_FD_ENV} is not set")
        try:
            self._sync_sock = socket.socket(fileno=int(fd))
        except (OSError, ValueError) as exc:
            raise InitError(f"cannot open sync channel: {exc}") from exc

    def _revive(self, argv: list[str]) -> None:
        assert self._config is not None
        partner_exe = self._config.app_exe if self._is_watchdog(argv) else self.wd_exe
        if self._partner is not None:
            self._partner.poll()
        ours, theirs = socket.socketpair()
        env = {
            **os.environ,
            WD_PID_ENV: "alive",
            WD_EXE_ENV: self.wd_exe,
            CONFIG_ENV: self.config_path,
            SYNC_FD_ENV: str(theirs.fileno()),
        }
        try:
            proc = subprocess.Popen(
                [partner_exe, *argv[1:]], env=env, pass_fds=(theirs.fileno(),)
            )
        except OSError as exc:
            ours.close()
            raise InitError(f"cannot start {partner_exe}: {exc}") from exc
        finally:
            theirs.close()
        if self._sync_sock is not None:
            self._sync_sock.close()
        self._sync_sock = ours
        self._partner = proc
        self.partner_pid = proc.pid
        _say(GREY, f"New Process's PID: {proc.pid}")

    def _sync(self) -> None:
        if self._sync_sock is None:
            raise InitError("no sync channel to partner")
        try:
            self._sync_sock.sendall(b"\x01")
            reply = self._sync_sock.recv(1)
        except OSError as exc:
            raise InitError(f"sync with partner failed: {exc}") from exc
        if not reply:
            raise InitError("partner closed the sync channel")

    def _make_scheduler(self, argv: list[str]) -> Scheduler:
        assert self._config is not None
        scheduler = Scheduler()
        now = time.time()
        interval = self._config.interval
        scheduler.add_task(lambda: self._are_you_alive(argv), now + 2, interval + 1)
        scheduler.add_task(self._im_alive, now + 1, interval)
        return scheduler

    def _im_alive(self) -> bool:
        _say(YELLOW, f"Im Alive: PID: {os.getpid()} Sending signal to {self.partner_pid}")
        with self._lock:
            self._missed += 1
            try:
                os.kill(self.partner_pid, signal.SIGUSR1)
            except OSError as exc:
                _say(RED, f"Failed to send SIGUSR1 to partner: {exc}")
        return True

    def _are_you_alive(self, argv: list[str]) -> bool:
        assert self._config is not None
        with self._lock:
            _say(MAG, f"AreYouAlive - in PID {os.getpid()} | missed_signals: {self._missed}")
            if self._missed > self._config.threshold:
                _say(BLUE, f"partner ({self.partner_pid}) is dead")
                try:
                    self._revive(argv)
                except InitError as exc:
                    _say(RED, str(exc))
                else:
                    self._missed = 0
                    try:
                        self._sync()
                    except InitError as exc:
                        _say(RED, str(exc))
        return True

    def _serve(self) -> None:
        assert self._scheduler is not None
        try:
            self._sync()
        except InitError as exc:
            self._start_error = exc
            self._started.set()
            return
        self._started.set()
        self._scheduler.run()

    def _release(self) -> None:
        self._thread = None
        self._scheduler = None
        if self._sync_sock is not None:
            self._sync_sock.close()
            self._sync_sock = None
        if self._owns_config:
            Path(self.config_path).unlink(missing_ok=True)
            self._owns_config = False


_default: Watchdog | None = None


def start(interval_in_sec: int, intervals_per_check: int, argv: Sequence[str]) -> Watchdog:
    """Start the process-wide watchdog and return it."""
    global _default
    if _default is not None and _default.running:
        raise InitError("watchdog is already running")
    dog = Watchdog()
    dog.start(interval_in_sec, intervals_per_check, argv)
    _default = dog
    return dog


def stop() -> None:
    """Stop the process-wide watchdog."""
    if _default is None:
        raise TerminationError("watchdog is not running")
    _default.stop()
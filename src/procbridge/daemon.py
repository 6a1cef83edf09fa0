from __future__ import annotations

import json
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

RUNTIME_DIRNAME = ".procbridge"


@dataclass(frozen=True)
class RuntimeFiles:
    """Pid and log file of one background service, kept in `.procbridge/` beside its config."""

    pid_file: Path
    log_file: Path

    @classmethod
    def for_config(cls, config_path: Path) -> "RuntimeFiles":
        config_path = Path(config_path).expanduser()
        runtime = config_path.parent / RUNTIME_DIRNAME
        return cls(
            pid_file=runtime / f"{config_path.name}.pid",
            log_file=runtime / f"{config_path.name}.log",
        )


def _read_proc_cmdline(pid: int) -> Optional[tuple[str, ...]]:
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return None
    parts = tuple(p.decode("utf-8", errors="replace") for p in raw.split(b"\x00") if p)
    return parts or None


def _read_proc_start_time(pid: int) -> Optional[str]:
    try:
        raw = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except OSError:
        return None
    # starttime is field 22; the comm field may itself contain spaces or parens.
    fields = raw[raw.rfind(")") + 2 :].split()
    return fields[19] if len(fields) > 19 else None


def is_pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        # Exists, owned by someone else (the service usually runs as root).
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class PidRecord:
    """What `start_detached` knows about the service it launched."""

    pid: int
    argv: tuple[str, ...]
    start_time: Optional[str] = None

    def dumps(self) -> str:
        return json.dumps({"pid": self.pid, "argv": list(self.argv), "start_time": self.start_time}) + "\n"

    @classmethod
    def loads(cls, text: str) -> Optional["PidRecord"]:
        try:
            obj = json.loads(text)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None
        pid = obj.get("pid")
        argv = obj.get("argv")
        start_time = obj.get("start_time")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return None
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv):
            return None
        return cls(
            pid=pid,
            argv=tuple(argv),
            start_time=start_time if isinstance(start_time, str) else None,
        )

    def is_live(self) -> bool:
        """
        True if the pid is running and is still the process that was recorded.

        Pids get reused, so the live command line must equal the recorded argv,
        and the /proc start time must match when both sides have one. A process
        whose command line cannot be read counts as someone else's.
        """

        if not is_pid_running(self.pid):
            return False
        if _read_proc_cmdline(self.pid) != self.argv:
            return False
        if self.start_time is None:
            return True
        current = _read_proc_start_time(self.pid)
        return current is None or current == self.start_time


def read_pid_record(pid_file: Path) -> Optional[PidRecord]:
    try:
        text = pid_file.read_text(encoding="utf-8")
    except OSError:
        return None
    return PidRecord.loads(text)


def read_pid(pid_file: Path) -> Optional[int]:
    rec = read_pid_record(pid_file)
    return rec.pid if rec is not None else None


def pid_file_matches_running_process(pid_file: Path) -> bool:
    record = read_pid_record(pid_file)
    return record is not None and record.is_live()


def start_detached(
    argv: Sequence[str],
    *,
    pid_file: Path,
    log_file: Path,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> int:
    """
    Spawn the service in its own session and record it in `pid_file`.

    stdout and stderr both go to `log_file`; `env` is added to ours.
    """

    pid_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    with log_file.open("a", encoding="utf-8") as logf:
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=logf,
            stderr=subprocess.STDOUT,
            env={**os.environ, **env} if env is not None else None,
            cwd=cwd,
            start_new_session=True,
            close_fds=True,
        )
    pid = int(proc.pid)
    record = PidRecord(pid=pid, argv=tuple(argv), start_time=_read_proc_start_time(pid))
    pid_file.write_text(record.dumps(), encoding="utf-8")
    return pid


def _signal_until_gone(pid: int, sig: int, timeout_seconds: float) -> bool:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return True
    deadline = time.monotonic() + max(0.0, float(timeout_seconds))
    while is_pid_running(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.1)
    return True


def stop(pid_file: Path, *, timeout_seconds: float = 10.0) -> bool:
    """
    Stop the service recorded in `pid_file`: SIGTERM, then SIGKILL if it lingers.

    Returns True once the process is gone and the pid file removed; False if
    nothing was running, the pid belongs to some other process, or it could
    not be signalled.
    """

    record = read_pid_record(pid_file)
    if record is None:
        return False
    if not record.is_live():
        pid_file.unlink(missing_ok=True)
        return False

    try:
        gone = _signal_until_gone(record.pid, signal.SIGTERM, timeout_seconds) or _signal_until_gone(
            record.pid, signal.SIGKILL, 1.0
        )
    except PermissionError:
        return False
    if gone:
        pid_file.unlink(missing_ok=True)
    return gone

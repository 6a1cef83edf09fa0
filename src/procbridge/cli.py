from __future__ import annotations

import signal
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import BinaryIO, Optional


def _require(mod: str) -> None:
    try:
        __import__(mod)
    except Exception as exc:  # pragma: no cover
        raise SystemExit(
            f"Missing dependency '{mod}'. Install project deps first (see README.md)."
        ) from exc


_require("typer")

import typer  # noqa: E402

from procbridge import daemon  # noqa: E402
from procbridge.bridge.contract import EXIT_UNAVAILABLE, TransportError  # noqa: E402
from procbridge.config import (  # noqa: E402
    Config,
    ConfigError,
    default_config,
    load_config,
    validate_config,
)
from procbridge.constants import BUFFER_SIZE  # noqa: E402
from procbridge.process.base import ProcessHandle  # noqa: E402

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _load_checked(config: Path) -> Config:
    try:
        cfg = load_config(config)
    except ConfigError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(2)
    errors = validate_config(cfg)
    if errors:
        for e in errors:
            typer.echo(f"ERROR: {e}")
        raise typer.Exit(2)
    return cfg


def _resolve_config(config: Optional[Path], socket_path: Optional[str]) -> Config:
    cfg = _load_checked(config) if config is not None else default_config()
    if socket_path is not None:
        cfg = replace(cfg, service=replace(cfg.service, socket_path=socket_path))
    return cfg


def _tail_text(path: Path, *, max_lines: int = 40) -> str:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return ""
    return "\n".join(lines[-max_lines:])


def _parse_env(pairs: list[str]) -> Optional[dict[str, str]]:
    if not pairs:
        return None
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got: {pair!r}")
        env[key] = value
    return env


def _copy(src: Optional[BinaryIO], dst: Optional[BinaryIO], *, close_dst: bool) -> None:
    if src is None:
        if close_dst and dst is not None:
            dst.close()
        return
    try:
        while True:
            read1 = getattr(src, "read1", None)
            chunk = read1(BUFFER_SIZE) if read1 is not None else src.read(BUFFER_SIZE)
            if not chunk:
                break
            if dst is not None:
                dst.write(chunk)
                dst.flush()
    except (BrokenPipeError, ValueError):
        pass
    finally:
        if close_dst and dst is not None:
            try:
                dst.close()
            except BrokenPipeError:
                pass


def _relay(proc: ProcessHandle, *, forward_stdin: bool) -> int:
    """Stream the process's output to ours until it exits; return its exit code."""
    pumps = [
        threading.Thread(
            target=_copy, args=(proc.stdout, sys.stdout.buffer), kwargs={"close_dst": False}, daemon=True
        ),
        threading.Thread(
            target=_copy, args=(proc.stderr, sys.stderr.buffer), kwargs={"close_dst": False}, daemon=True
        ),
    ]
    for t in pumps:
        t.start()
    stdin = proc.stdin
    if forward_stdin:
        threading.Thread(
            target=_copy, args=(sys.stdin.buffer, stdin), kwargs={"close_dst": True}, daemon=True
        ).start()
    elif stdin is not None:
        stdin.close()
    try:
        rc = proc.wait()
    except KeyboardInterrupt:
        proc.destroy()
        rc = proc.wait()
    for t in pumps:
        t.join(timeout=5.0)
    return rc


@app.command("validate-config")
def validate_config_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
) -> None:
    _load_checked(config)
    typer.echo("OK")


@app.command("serve")
def serve_cmd(
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False),
    socket_path: Optional[str] = typer.Option(None, "--socket"),
) -> None:
    """
    Run the service in the foreground until SIGTERM or Ctrl-C.
    """

    from procbridge.service import ProcessService

    cfg = _resolve_config(config, socket_path)
    service = ProcessService(cfg)

    def _on_term(_signum: int, _frame: object) -> None:
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _on_term)
    try:
        service.start()
    except OSError as exc:
        typer.echo(f"ERROR: cannot listen on {cfg.service.socket_path}: {exc}")
        raise typer.Exit(1)
    try:
        service.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        service.close()


@app.command("exec", context_settings={"allow_interspersed_args": False})
def exec_cmd(
    command: list[str] = typer.Argument(..., help="Command and arguments to run."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False),
    socket_path: Optional[str] = typer.Option(None, "--socket"),
    cwd: Optional[str] = typer.Option(None, "--cwd"),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE; replaces the environment."),
    forward_stdin: bool = typer.Option(False, "--stdin/--no-stdin"),
    local: bool = typer.Option(False, "--local", help="Run as a child of this process instead."),
) -> None:
    """
    Run a command through the service, relaying its output and exit code.
    """

    env_map = _parse_env(env)

    if local:
        from procbridge.process.local import LocalProcess, spawn

        try:
            popen = spawn(command, env=env_map, cwd=cwd)
        except OSError as exc:
            typer.echo(f"ERROR: cannot start {command[0]!r}: {exc}", err=True)
            raise typer.Exit(127)
        with LocalProcess(popen) as proc:
            rc = _relay(proc, forward_stdin=forward_stdin)
        raise typer.Exit(rc if rc >= 0 else 128 - rc)

    from procbridge.client import ServiceClient

    cfg = _resolve_config(config, socket_path)
    with ServiceClient(cfg.service.resolved_socket_path) as client:
        try:
            remote = client.exec(command, env=env_map, cwd=cwd)
        except TransportError as exc:
            typer.echo(f"ERROR: service unavailable: {exc}", err=True)
            raise typer.Exit(1)
        if remote is None:
            typer.echo(f"ERROR: service could not start {command[0]!r}", err=True)
            raise typer.Exit(127)
        with remote:
            rc = _relay(remote, forward_stdin=forward_stdin)
        if rc == EXIT_UNAVAILABLE and not client.connected:
            # Not a SIGHUP: the service went away before reporting an exit status.
            typer.echo("ERROR: lost connection to service", err=True)
            raise typer.Exit(1)
    # Signal deaths come back negative; report them shell-style.
    raise typer.Exit(rc if rc >= 0 else 128 - rc)


@app.command("start")
def start_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    pid_file: Optional[Path] = typer.Option(None, "--pid-file", dir_okay=False),
    log_file: Optional[Path] = typer.Option(None, "--log-file", dir_okay=False),
) -> None:
    """
    Start the service in the background, writing PID and logs next to the config.
    """

    _load_checked(config)

    files = daemon.RuntimeFiles.for_config(config)
    pf = pid_file or files.pid_file
    lf = log_file or files.log_file

    existing = daemon.read_pid(pf)
    if existing is not None and daemon.pid_file_matches_running_process(pf):
        typer.echo(f"Already running (pid={existing}).")
        raise typer.Exit(1)

    cfg_path = Path(config).expanduser().resolve()
    argv = [sys.executable, "-m", "procbridge.cli", "serve", "--config", str(cfg_path)]
    pid = daemon.start_detached(
        argv,
        pid_file=pf,
        log_file=lf,
        env={"PYTHONUNBUFFERED": "1"},
        cwd=str(cfg_path.parent),
    )
    # Catch immediate startup failures (bad socket path, socket in use) before reporting success.
    deadline = time.monotonic() + 1.0
    healthy = False
    while time.monotonic() < deadline:
        healthy = daemon.pid_file_matches_running_process(pf)
        if not healthy:
            break
        time.sleep(0.05)
    if not healthy:
        try:
            pf.unlink()
        except OSError:
            pass
        typer.echo("ERROR: Start failed; process exited immediately.")
        typer.echo(f"Log file: {lf}")
        tail = _tail_text(lf)
        if tail:
            typer.echo("--- log tail ---")
            typer.echo(tail)
        raise typer.Exit(1)
    typer.echo(f"Started (pid={pid}).")
    typer.echo(f"PID file: {pf}")
    typer.echo(f"Log file: {lf}")


@app.command("stop")
def stop_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    pid_file: Optional[Path] = typer.Option(None, "--pid-file", dir_okay=False),
    timeout_seconds: float = typer.Option(10.0, "--timeout-seconds", min=0.0),
) -> None:
    """
    Stop a previously started background service.
    """

    pf = pid_file or daemon.RuntimeFiles.for_config(config).pid_file
    if not daemon.stop(pf, timeout_seconds=float(timeout_seconds)):
        pid = daemon.read_pid(pf)
        if pid is None:
            typer.echo("Not running (no pid file).")
        else:
            typer.echo(f"Failed to stop (pid={pid}). Try killing it manually.")
        raise typer.Exit(1)
    typer.echo("Stopped.")


@app.command("status")
def status_cmd(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False),
    pid_file: Optional[Path] = typer.Option(None, "--pid-file", dir_okay=False),
) -> None:
    """
    Show background service status based on the pid file.
    """

    pf = pid_file or daemon.RuntimeFiles.for_config(config).pid_file
    pid = daemon.read_pid(pf)
    if pid is None:
        typer.echo("Not running.")
        raise typer.Exit(1)
    if daemon.pid_file_matches_running_process(pf):
        typer.echo(f"Running (pid={pid}).")
        return
    typer.echo(f"Not running (stale pid file: {pf}).")
    try:
        pf.unlink()
    except OSError:
        pass
    raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    # `python -m procbridge.cli ...`, used by `procbridge start`.
    app()

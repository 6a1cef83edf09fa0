from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from procbridge.constants import BUFFER_SIZE, DEFAULT_SOCKET_MODE, DEFAULT_SOCKET_PATH


class ConfigError(ValueError):
    pass


def _require_yaml() -> Any:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise ConfigError(
            "PyYAML is required to load config. Install project deps (see README.md)."
        ) from exc
    return yaml


def _as_dict(value: Any, *, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    raise ConfigError(f"Expected mapping at {where}, got {type(value).__name__}")


def _as_list(value: Any, *, where: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise ConfigError(f"Expected list at {where}, got {type(value).__name__}")


def _as_str(value: Any, *, where: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected string at {where}, got {type(value).__name__}")


def _as_int(value: Any, *, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected int at {where}, got bool")
    if isinstance(value, int):
        return value
    raise ConfigError(f"Expected int at {where}, got {type(value).__name__}")


def _as_opt_str(value: Any, *, where: str) -> Optional[str]:
    if value is None:
        return None
    return _as_str(value, where=where)


@dataclass(frozen=True)
class ServiceConfig:
    socket_path: str
    socket_mode: int
    allowed_uids: tuple[int, ...]

    @property
    def resolved_socket_path(self) -> Path:
        return Path(self.socket_path).expanduser()

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ServiceConfig":
        socket_path = _as_str(d.get("socket_path", DEFAULT_SOCKET_PATH), where="service.socket_path")
        socket_mode = _as_int(d.get("socket_mode", DEFAULT_SOCKET_MODE), where="service.socket_mode")
        uids_raw = _as_list(d.get("allowed_uids"), where="service.allowed_uids")
        allowed_uids = tuple(_as_int(x, where="service.allowed_uids[]") for x in uids_raw)
        return ServiceConfig(
            socket_path=socket_path,
            socket_mode=socket_mode,
            allowed_uids=allowed_uids,
        )


@dataclass(frozen=True)
class ExecConfig:
    default_cwd: Optional[str]
    allowed_commands: tuple[str, ...]

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ExecConfig":
        default_cwd = _as_opt_str(d.get("default_cwd"), where="exec.default_cwd")
        cmds_raw = _as_list(d.get("allowed_commands"), where="exec.allowed_commands")
        allowed_commands = tuple(_as_str(x, where="exec.allowed_commands[]") for x in cmds_raw)
        return ExecConfig(default_cwd=default_cwd, allowed_commands=allowed_commands)


@dataclass(frozen=True)
class TransferConfig:
    buffer_size: int

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "TransferConfig":
        return TransferConfig(
            buffer_size=_as_int(d.get("buffer_size", BUFFER_SIZE), where="transfer.buffer_size"),
        )


@dataclass(frozen=True)
class Config:
    service: ServiceConfig
    exec: ExecConfig
    transfer: TransferConfig


def default_config() -> Config:
    return Config(
        service=ServiceConfig.from_dict({}),
        exec=ExecConfig.from_dict({}),
        transfer=TransferConfig.from_dict({}),
    )


def load_config(path: Path) -> Config:
    yaml = _require_yaml()
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raise ConfigError("Config file is empty")
    if not isinstance(raw, dict):
        raise ConfigError("Top-level config must be a mapping")

    return Config(
        service=ServiceConfig.from_dict(_as_dict(raw.get("service"), where="service")),
        exec=ExecConfig.from_dict(_as_dict(raw.get("exec"), where="exec")),
        transfer=TransferConfig.from_dict(_as_dict(raw.get("transfer"), where="transfer")),
    )


def validate_config(cfg: Config) -> list[str]:
    errors: list[str] = []

    sp = cfg.service.socket_path
    if not (Path(sp).is_absolute() or sp.startswith("~")):
        errors.append(f"service.socket_path must be absolute (or ~): {sp!r}")
    if not 0 <= cfg.service.socket_mode <= 0o777:
        errors.append("service.socket_mode must be between 0 and 0o777")
    for uid in cfg.service.allowed_uids:
        if uid < 0:
            errors.append(f"service.allowed_uids entries must be >= 0: {uid}")

    if cfg.exec.default_cwd is not None:
        cwd = Path(cfg.exec.default_cwd).expanduser()
        if not cwd.is_dir():
            errors.append(f"exec.default_cwd is not a directory: {cfg.exec.default_cwd!r}")
    for cmd in cfg.exec.allowed_commands:
        if not cmd.strip():
            errors.append("exec.allowed_commands entries cannot be empty")

    if cfg.transfer.buffer_size < 1:
        errors.append("transfer.buffer_size must be >= 1")

    return errors


def command_allowed(cfg: Config, argv: list[str]) -> bool:
    """
    Empty allow-list means any command; otherwise argv[0] must match an entry exactly.
    """

    if not cfg.exec.allowed_commands:
        return True
    if not argv:
        return False
    return argv[0] in cfg.exec.allowed_commands

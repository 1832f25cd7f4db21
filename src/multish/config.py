"""Run configuration and the optional YAML defaults file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import EnvironmentPreconditionError, UsageError

DEFAULT_CONFIG_PATH = Path("~/.config/multish/config.yaml")
CONFIG_ENV_VAR = "MULTISH_CONFIG"


class Mode(Enum):
    """How hosts are scheduled."""

    SERIAL = "serial"
    PARALLEL = "parallel"


class HeaderMode(Enum):
    """How a host's identity is shown around its output."""

    AUTO = "auto"
    MULTILINE = "multiline"
    INLINE = "inline"
    NONE = "none"


class Transport(Enum):
    """Which SSH implementation carries the commands."""

    OPENSSH = "openssh"
    ASYNCSSH = "asyncssh"


@dataclass(frozen=True)
class SSHOptions:
    """Connection options handed to the SSH transport."""

    user: str | None = None
    port: int | None = None
    ssh_key: Path | None = None
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecutionConfig:
    """Resolved parameters for one run."""

    mode: Mode = Mode.PARALLEL
    fanout: int = 20
    connect_timeout: int = 10
    header_mode: HeaderMode = HeaderMode.AUTO
    interactive: bool = False
    output_to_files: bool = False
    verbose: bool = False
    dry_run: bool = False
    detached_windows: bool = False
    transport: Transport = Transport.OPENSSH
    terminal: str = "xterm"
    ssh: SSHOptions = field(default_factory=SSHOptions)

    def __post_init__(self) -> None:
        if self.fanout < 1:
            raise UsageError(f"fanout must be a positive integer, got {self.fanout}")
        if self.connect_timeout < 0:
            raise UsageError(
                f"connect timeout must be zero or more seconds, got {self.connect_timeout}"
            )
        if self.transport is Transport.ASYNCSSH:
            if self.interactive:
                raise UsageError("interactive mode requires the openssh transport")
            if self.detached_windows:
                raise UsageError("detached windows require the openssh transport")

    @property
    def global_interrupts(self) -> bool:
        """True when an interrupt aborts the whole run instead of asking per host."""
        return self.mode is Mode.PARALLEL or self.detached_windows

    def resolved(self) -> ExecutionConfig:
        """Return a copy whose header mode is concrete."""
        return replace(self, header_mode=resolve_header_mode(self))


def resolve_header_mode(config: ExecutionConfig) -> HeaderMode:
    """Pick the concrete header mode for a run.

    File output always gets no headers since each file already belongs to
    exactly one host. Otherwise ``auto`` means inline prefixes when output from
    several hosts interleaves (parallel) and a bracketing header in serial mode.
    """
    if config.output_to_files:
        return HeaderMode.NONE
    if config.header_mode is not HeaderMode.AUTO:
        return config.header_mode
    if config.mode is Mode.PARALLEL:
        return HeaderMode.INLINE
    return HeaderMode.MULTILINE


@dataclass
class Defaults:
    """Values from the config file that command-line flags may override."""

    mode: Mode = Mode.PARALLEL
    fanout: int = 20
    connect_timeout: int = 10
    header_mode: HeaderMode = HeaderMode.AUTO
    transport: Transport = Transport.OPENSSH
    terminal: str = "xterm"
    user: str | None = None
    port: int | None = None
    ssh_key: Path | None = None
    ssh_options: list[str] = field(default_factory=list)


@dataclass
class FileConfig:
    """Contents of the YAML config file."""

    defaults: Defaults = field(default_factory=Defaults)
    host_groups: dict[str, list[str]] = field(default_factory=dict)
    source_path: Path | None = None


def find_config_path(explicit: str | Path | None = None) -> Path | None:
    """Locate the config file: explicit path, then the environment, then the default."""
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser()
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.exists():
        return default
    return None


def load_config(config_path: str | Path | None) -> FileConfig:
    """Load defaults and host groups; a missing optional file yields empty config."""
    if config_path is None:
        return FileConfig()

    config_path = Path(config_path).resolve()
    if not config_path.exists():
        raise EnvironmentPreconditionError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise EnvironmentPreconditionError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise UsageError(f"Invalid YAML in {config_path}: {e}") from e

    config = _parse_config(raw or {})
    config.source_path = config_path
    return config


def _parse_config(raw: Any) -> FileConfig:
    """Parse raw YAML data into a FileConfig."""
    if not isinstance(raw, dict):
        raise UsageError("Config file must contain a mapping")

    defaults = _parse_defaults(raw.get("defaults") or {})

    groups_raw = raw.get("host_groups") or {}
    if not isinstance(groups_raw, dict):
        raise UsageError("'host_groups' must be a mapping of group name to host list")

    host_groups: dict[str, list[str]] = {}
    for name, hosts in groups_raw.items():
        if not hosts or not isinstance(hosts, list):
            raise UsageError(f"Host group '{name}' must be a non-empty list")
        host_groups[str(name)] = [str(host) for host in hosts]

    return FileConfig(defaults=defaults, host_groups=host_groups)


def _parse_defaults(defaults_raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    if not isinstance(defaults_raw, dict):
        raise UsageError("'defaults' must be a mapping")

    ssh_key = _parse_str(defaults_raw, "ssh_key")
    return Defaults(
        mode=_parse_enum(Mode, defaults_raw.get("mode", "parallel"), "mode"),
        fanout=_parse_int(defaults_raw, "fanout", 20),
        connect_timeout=_parse_int(defaults_raw, "connect_timeout", 10),
        header_mode=_parse_enum(HeaderMode, defaults_raw.get("header", "auto"), "header"),
        transport=_parse_enum(Transport, defaults_raw.get("transport", "openssh"), "transport"),
        terminal=_parse_str(defaults_raw, "terminal", "xterm"),
        user=_parse_str(defaults_raw, "user"),
        port=_parse_int(defaults_raw, "port"),
        ssh_key=Path(ssh_key).expanduser() if ssh_key else None,
        ssh_options=_parse_str_list(defaults_raw, "ssh_options"),
    )


def _parse_int(raw: dict[str, Any], key: str, default: int | None = None) -> int | None:
    value = raw.get(key)
    if value is None:
        return default
    # bool is an int subclass but "fanout: yes" is still a mistake
    if isinstance(value, bool) or not isinstance(value, int):
        raise UsageError(f"'{key}' must be an integer, got {value!r}")
    return value


def _parse_str(raw: dict[str, Any], key: str, default: str | None = None) -> str | None:
    value = raw.get(key, default)
    if value is not None and not isinstance(value, str):
        raise UsageError(f"'{key}' must be a string, got {value!r}")
    return value


def _parse_str_list(raw: dict[str, Any], key: str) -> list[str]:
    value = raw.get(key) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise UsageError(f"'{key}' must be a list of strings, got {value!r}")
    return list(value)


def _parse_enum(enum_cls: type[Enum], value: Any, key: str) -> Any:
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise UsageError(f"Invalid {key} '{value}' (choose from {choices})") from None


def expand_hosts(hosts: list[str], host_groups: dict[str, list[str]]) -> list[str]:
    """Resolve ``@group`` references to the hosts they name."""
    expanded = []

    for host in hosts:
        if host.startswith("@"):
            group = host[1:]
            if group not in host_groups:
                raise UsageError(f"Unknown host group: {group}")
            expanded.extend(host_groups[group])
        else:
            expanded.append(host)

    return expanded

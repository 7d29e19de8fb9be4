"""Configuration for the mount process, loaded from a YAML file."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .duration import parse_duration

__all__ = [
    "ConfigError",
    "ExecConfig",
    "DataConfig",
    "FUSEConfig",
    "HTTPConfig",
    "ProxyConfig",
    "ConsulConfig",
    "LeaseConfig",
    "BackupConfig",
    "LogConfig",
    "TracingConfig",
    "Config",
    "new_config",
    "unmarshal_config",
    "expand_env",
    "split_args",
    "parse_config_path",
    "config_search_paths",
]

DEFAULT_DATA_DIR = "/var/lib/litefs"
DEFAULT_FUSE_DIR = "/litefs"
DEFAULT_HTTP_ADDR = ":20202"

DEFAULT_RETENTION = 600.0
DEFAULT_RETENTION_MONITOR_INTERVAL = 60.0
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_DEMOTE_DELAY = 10.0
DEFAULT_BACKUP_DELAY = 1.0
DEFAULT_BACKUP_FULL_SYNC_INTERVAL = 10.0

DEFAULT_MAX_LAG = 10.0
DEFAULT_PRIMARY_REDIRECT_TIMEOUT = 5.0
DEFAULT_READ_TIMEOUT = 0.0
DEFAULT_READ_HEADER_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 0.0
DEFAULT_IDLE_TIMEOUT = 30.0

DEFAULT_TRACING_MAX_SIZE = 64  # MB
DEFAULT_TRACING_MAX_COUNT = 8
DEFAULT_TRACING_COMPRESS = True

# Marker for a YAML key derived from the field name ("a_b" -> "a-b").
_DERIVED = object()
_STR = "str"
_EMPTY = ""


class ConfigError(ValueError):
    """Raised when a configuration cannot be read or decoded."""


def _opt(key: Any, kind: Any, default: Any = None, factory: Any = None):
    metadata = {"yaml": key, "kind": kind}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _yaml_key(spec: Any) -> str | None:
    key = spec.metadata.get("yaml")
    if key is _DERIVED:
        return spec.name.replace("_", "-")
    return key


@dataclass
class ExecConfig:
    """A single command to execute once the mount is ready."""

    cmd: str = _opt("cmd", "str", "")
    if_candidate: bool = _opt("if-candidate", "bool", False)


@dataclass
class DataConfig:
    """Location and retention of database and transaction files."""

    dir: str = _opt("dir", "str", DEFAULT_DATA_DIR)
    compress: bool = _opt("compress", "bool", True)
    retention: float = _opt("retention", "duration", DEFAULT_RETENTION)
    retention_monitor_interval: float = _opt(
        "retention-monitor-interval", "duration", DEFAULT_RETENTION_MONITOR_INTERVAL
    )


@dataclass
class FUSEConfig:
    """Settings for the FUSE file system."""

    dir: str = _opt("dir", "str", DEFAULT_FUSE_DIR)
    allow_other: bool = _opt("allow-other", "bool", False)
    debug: bool = _opt("debug", "bool", False)


@dataclass
class HTTPConfig:
    """Settings for the API server."""

    addr: str = _opt("addr", "str", DEFAULT_HTTP_ADDR)
    snapshot_timeout: float = _opt("snapshot-timeout", "duration", 0.0)


@dataclass
class ProxyConfig:
    """Settings for the HTTP proxy server."""

    addr: str = _opt("addr", "str", "")
    target: str = _opt("target", "str", "")
    db: str = _opt("db", "str", "")
    max_lag: float = _opt("max-lag", "duration", DEFAULT_MAX_LAG)
    debug: bool = _opt("debug", "bool", False)
    passthrough: list[str] = _opt("passthrough", "strlist", factory=list)
    always_forward: list[str] = _opt("always-forward", "strlist", factory=list)
    primary_redirect_timeout: float = _opt(
        "primary-redirect-timeout", "duration", DEFAULT_PRIMARY_REDIRECT_TIMEOUT
    )
    read_timeout: float = _opt("read-timeout", "duration", DEFAULT_READ_TIMEOUT)
    read_header_timeout: float = _opt(
        "read-header-timeout", "duration", DEFAULT_READ_HEADER_TIMEOUT
    )
    write_timeout: float = _opt("write-timeout", "duration", DEFAULT_WRITE_TIMEOUT)
    idle_timeout: float = _opt("idle-timeout", "duration", DEFAULT_IDLE_TIMEOUT)


@dataclass
class ConsulConfig:
    """Settings for Consul-based leasing."""

    url: str = _opt("url", "str", "")
    key: str = _opt("key", "str", "")
    ttl: float = _opt("ttl", "duration", 0.0)
    lock_delay: float = _opt("lock-delay", "duration", 0.0)


@dataclass
class LeaseConfig:
    """Settings shared by all lease types ("consul" or "static")."""

    type: str = _opt("type", "str", "")
    hostname: str = _opt("hostname", "str", "")
    advertise_url: str = _opt("advertise-url", "str", "")
    candidate: bool = _opt("candidate", "bool", True)
    promote: bool = _opt("promote", "bool", False)
    reconnect_delay: float = _opt("reconnect-delay", "duration", DEFAULT_RECONNECT_DELAY)
    demote_delay: float = _opt("demote-delay", "duration", DEFAULT_DEMOTE_DELAY)
    databases: list[str] = _opt("databases", "strlist", factory=list)
    consul: ConsulConfig = _opt("consul", "struct", factory=ConsulConfig)


@dataclass
class BackupConfig:
    """Settings for the backup service."""

    type: str = _opt("type", "str", "")
    path: str = _opt("path", "str", "")
    url: str = _opt("url", "str", "")
    cluster: str = _opt("cluster", "str", "")
    auth_token: str = _opt(_DERIVED, _STR, _EMPTY)
    delay: float = _opt(None, "duration", DEFAULT_BACKUP_DELAY)
    full_sync_interval: float = _opt(None, "duration", DEFAULT_BACKUP_FULL_SYNC_INTERVAL)


@dataclass
class LogConfig:
    """Settings for log output."""

    format: str = _opt("format", "str", "text")
    timestamp: bool = _opt("timestamp", "bool", False)
    debug: bool = _opt("debug", "bool", False)


@dataclass
class TracingConfig:
    """Settings for the on-disk trace log."""

    enabled: bool = _opt("enabled", "bool", True)
    path: str = _opt("path", "str", "")
    max_size: int = _opt("max-size", "int", DEFAULT_TRACING_MAX_SIZE)
    max_count: int = _opt("max-count", "int", DEFAULT_TRACING_MAX_COUNT)
    compress: bool = _opt("compress", "bool", DEFAULT_TRACING_COMPRESS)


@dataclass
class Config:
    """Full configuration of the mount process."""

    exit_on_error: bool = _opt("exit-on-error", "bool", True)
    skip_sync: bool = _opt("skip-sync", "bool", False)
    strict_verify: bool = _opt("strict-verify", "bool", False)
    exec: list[ExecConfig] = _opt("exec", "exec", factory=list)
    data: DataConfig = _opt("data", "struct", factory=DataConfig)
    fuse: FUSEConfig = _opt("fuse", "struct", factory=FUSEConfig)
    http: HTTPConfig = _opt("http", "struct", factory=HTTPConfig)
    proxy: ProxyConfig = _opt("proxy", "struct", factory=ProxyConfig)
    lease: LeaseConfig = _opt("lease", "struct", factory=LeaseConfig)
    backup: BackupConfig = _opt("backup", "struct", factory=BackupConfig)
    log: LogConfig = _opt("log", "struct", factory=LogConfig)
    tracing: TracingConfig = _opt("tracing", "struct", factory=TracingConfig)


def new_config() -> Config:
    """Return a configuration with every default set."""
    return Config()


# ---------------------------------------------------------------------------
# YAML decoding

_TAG_PREFIX = "tag:yaml.org,2002:"
_CONSTRUCTOR = yaml.constructor.SafeConstructor()


def _line(node: yaml.Node) -> int:
    return node.start_mark.line + 1


def _tag(node: yaml.Node) -> str:
    tag = node.tag or ""
    return "!!" + tag[len(_TAG_PREFIX):] if tag.startswith(_TAG_PREFIX) else tag


def _is_null(node: yaml.Node) -> bool:
    return isinstance(node, yaml.ScalarNode) and _tag(node) == "!!null"


def _mismatch(node: yaml.Node, target: str) -> str:
    if isinstance(node, yaml.ScalarNode):
        return f"line {_line(node)}: cannot unmarshal {_tag(node)} `{node.value}` into {target}"
    return f"line {_line(node)}: cannot unmarshal {_tag(node)} into {target}"


def _decode_bool(node, current, errors):
    if _is_null(node):
        return current
    if isinstance(node, yaml.ScalarNode) and _tag(node) == "!!bool":
        return _CONSTRUCTOR.construct_yaml_bool(node)
    errors.append(_mismatch(node, "bool"))
    return current


def _decode_int(node, current, errors):
    if _is_null(node):
        return current
    if isinstance(node, yaml.ScalarNode) and _tag(node) == "!!int":
        return _CONSTRUCTOR.construct_yaml_int(node)
    errors.append(_mismatch(node, "int"))
    return current


def _decode_str(node, current, errors):
    if _is_null(node):
        return current
    if isinstance(node, yaml.ScalarNode):
        return node.value
    errors.append(_mismatch(node, "string"))
    return current


def _decode_duration(node, current, errors):
    if _is_null(node):
        return current
    if isinstance(node, yaml.ScalarNode) and _tag(node) == "!!str":
        try:
            return parse_duration(node.value)
        except ValueError as exc:
            errors.append(f"line {_line(node)}: {exc}")
            return current
    errors.append(_mismatch(node, "duration"))
    return current


def _decode_strlist(node, current, errors):
    if _is_null(node):
        return []
    if not isinstance(node, yaml.SequenceNode):
        errors.append(_mismatch(node, "[]string"))
        return current
    values = []
    for item in node.value:
        if isinstance(item, yaml.ScalarNode) and not _is_null(item):
            values.append(item.value)
        elif not _is_null(item):
            errors.append(_mismatch(item, "string"))
    return values


def _decode_exec(node, current, errors):
    if _is_null(node):
        return []
    if isinstance(node, yaml.ScalarNode) and _tag(node) == "!!str":
        return [ExecConfig(cmd=node.value)]
    if isinstance(node, yaml.SequenceNode):
        commands = []
        for item in node.value:
            command = ExecConfig()
            _decode_struct(command, item, errors)
            commands.append(command)
        return commands
    raise ConfigError("invalid exec config format")


_DECODERS = {
    "bool": _decode_bool,
    "int": _decode_int,
    "str": _decode_str,
    "duration": _decode_duration,
    "strlist": _decode_strlist,
    "exec": _decode_exec,
}


def _decode_struct(obj: Any, node: yaml.Node, errors: list[str]) -> None:
    if _is_null(node):
        return
    type_name = type(obj).__name__
    if not isinstance(node, yaml.MappingNode):
        errors.append(_mismatch(node, type_name))
        return

    by_key = {_yaml_key(f): f for f in fields(obj) if _yaml_key(f)}
    for key_node, value_node in node.value:
        key = key_node.value if isinstance(key_node, yaml.ScalarNode) else None
        spec = by_key.get(key)
        if spec is None:
            errors.append(f"line {_line(key_node)}: field {key} not found in type {type_name}")
            continue
        kind = spec.metadata["kind"]
        if kind == "struct":
            _decode_struct(getattr(obj, spec.name), value_node, errors)
        else:
            value = _DECODERS[kind](value_node, getattr(obj, spec.name), errors)
            setattr(obj, spec.name, value)


def unmarshal_config(config: Config, data: bytes | str, expand_env: bool) -> Config:
    """Decode YAML ``data`` into ``config`` in place and return it.

    Unknown fields are rejected. If ``expand_env`` is true, environment
    variables are expanded in the text first.
    """
    text = data.decode() if isinstance(data, (bytes, bytearray)) else data
    if expand_env:
        text = globals_expand(text)

    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"yaml: {exc}") from exc
    if root is None:
        return config

    errors: list[str] = []
    _decode_struct(config, root, errors)
    if errors:
        raise ConfigError("yaml: unmarshal errors:\n  " + "\n  ".join(errors))
    return config


# ---------------------------------------------------------------------------
# Environment expansion

_VARIABLE = re.compile(r"\$(?:\{([^}]*)\}|\{|([*#$@!?\-0-9])|([A-Za-z0-9_]+))")
_EXPR_SINGLE_QUOTE = re.compile(r"(\w+)\s*(==|!=)\s*'(.*)'", re.ASCII)
_EXPR_DOUBLE_QUOTE = re.compile(r'(\w+)\s*(==|!=)\s*"(.*)"', re.ASCII)
_EXPR_VAR = re.compile(r"(\w+)\s*(==|!=)\s*(\w+)", re.ASCII)


def _compare(operator: str, left: str, right: str) -> str:
    equal = left == right
    return "true" if (equal if operator == "==" else not equal) else "false"


def _resolve(name: str) -> str:
    name = name.strip()
    for pattern in (_EXPR_SINGLE_QUOTE, _EXPR_DOUBLE_QUOTE):
        match = pattern.fullmatch(name)
        if match:
            variable, operator, literal = match.groups()
            return _compare(operator, os.environ.get(variable, ""), literal)
    match = _EXPR_VAR.fullmatch(name)
    if match:
        left, operator, right = match.groups()
        return _compare(operator, os.environ.get(left, ""), os.environ.get(right, ""))
    return os.environ.get(name, "")


def expand_env(text: str) -> str:
    """Replace ``$VAR`` and ``${VAR}`` with environment values.

    Inside ``${...}`` an equality test is also allowed, evaluating to
    ``true`` or ``false``: ``${VAR == 'x'}``, ``${VAR != "x"}`` or
    ``${VAR == OTHER}``.
    """

    def replace(match: re.Match) -> str:
        braced, special, plain = match.groups()
        if braced is not None:
            return _resolve(braced) if braced else ""
        name = special or plain
        return _resolve(name) if name else ""

    return _VARIABLE.sub(replace, text)


globals_expand = expand_env


# ---------------------------------------------------------------------------
# Argument and file helpers


def split_args(args: list[str]) -> tuple[list[str], list[str] | None]:
    """Split ``args`` at the first ``--``.

    The second item is ``None`` when no ``--`` is present.
    """
    args = list(args)
    if "--" in args:
        index = args.index("--")
        return args[:index], args[index + 1:]
    return args, None


def config_search_paths() -> list[str]:
    """Return the paths searched for a configuration file, in order."""
    paths = ["litefs.yml"]
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        home = None
    if home is not None and str(home):
        paths.append(str(home / "litefs.yml"))
    paths.append("/etc/litefs.yml")
    return paths


def parse_config_path(config_path: str, expand_env: bool, config: Config) -> str:
    """Load ``config`` from ``config_path``, or from the first search path found.

    Returns the path that was read. Raises ``ConfigError`` if no file is found.
    """
    if config_path:
        data = Path(config_path).read_bytes()
        unmarshal_config(config, data, expand_env)
        return config_path

    for candidate in config_search_paths():
        path = os.path.abspath(candidate)
        try:
            data = Path(path).read_bytes()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise ConfigError(f"cannot read config file at {path}: {exc}") from exc

        try:
            unmarshal_config(config, data, expand_env)
        except ConfigError as exc:
            raise ConfigError(f"cannot unmarshal config file at {path}: {exc}") from exc

        print(f"config file read from {path}")
        return path

    raise ConfigError("config file not found")
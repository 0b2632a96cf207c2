"""Typed configuration loaded from TOML."""

from __future__ import annotations

import enum
import ipaddress
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping


class BlockMode(enum.Enum):
    """How blocked names are answered."""

    NX_DOMAIN = "nx_domain"
    SINKHOLE = "sinkhole"


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server settings; ``bind`` is an ``(ip, port)`` pair."""

    bind: tuple[str, int] = ("0.0.0.0", 8053)


@dataclass(frozen=True)
class ResolverConfig:
    """Recursive and forwarding resolver settings."""

    root_hints_path: Path = Path("config/root.hints")
    forward_upstreams: list[str] = field(default_factory=list)
    trust_anchor_path: Path | None = None
    ns_cache_size: int = 2048
    record_cache_size: int = 1_048_576
    recursion_limit: int = 16
    ns_recursion_limit: int = 16
    resolve_timeout_ms: int = 3500
    nameserver_allow_cidrs: list[str] = field(default_factory=list)
    nameserver_deny_cidrs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FilterConfig:
    """Allow/block rules applied before resolution."""

    exact_allow: list[str] = field(default_factory=list)
    exact_block: list[str] = field(default_factory=list)
    suffix_allow: list[str] = field(default_factory=list)
    suffix_block: list[str] = field(default_factory=list)
    block_mode: BlockMode = BlockMode.NX_DOMAIN
    sinkhole_ipv4: str = "0.0.0.0"
    sinkhole_ipv6: str = "::"
    sinkhole_ttl: int = 60


@dataclass(frozen=True)
class LimitsConfig:
    """Request size, concurrency and time limits."""

    max_post_body_bytes: int = 4096
    max_get_dns_param_bytes: int = 8192
    max_dns_wire_bytes: int = 4096
    max_json_name_bytes: int = 255
    max_concurrent_requests: int = 10_000
    http_request_timeout_ms: int = 5000


@dataclass(frozen=True)
class ReadinessConfig:
    """Startup self-check settings."""

    startup_self_check: bool = True
    self_check_name: str = "."


@dataclass(frozen=True)
class LoggingConfig:
    """Log output settings."""

    json: bool = False
    filter: str = "info,polaris=info"


def _uint(bits: int) -> Callable[[Any], int]:
    limit = 1 << bits

    def parse(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected an integer, got {value!r}")
        if not 0 <= value < limit:
            raise ValueError(f"integer {value} out of range for u{bits}")
        return value

    return parse


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected a boolean, got {value!r}")
    return value


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"expected an array of strings, got {value!r}")
    return [_string(item) for item in value]


def _path(value: Any) -> Path:
    return Path(_string(value))


def _block_mode(value: Any) -> BlockMode:
    try:
        return BlockMode(_string(value))
    except ValueError as exc:
        choices = ", ".join(mode.value for mode in BlockMode)
        raise ValueError(f"unknown block mode {value!r}, expected one of: {choices}") from exc


def _socket_addr(value: Any) -> tuple[str, int]:
    text = _string(value)
    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
        if not sep:
            raise ValueError(f"invalid socket address: {text}")
        try:
            ip: ipaddress.IPv4Address | ipaddress.IPv6Address = ipaddress.IPv6Address(host)
        except ValueError as exc:
            raise ValueError(f"invalid socket address: {text}") from exc
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            raise ValueError(f"invalid socket address: {text}")
        try:
            ip = ipaddress.IPv4Address(host)
        except ValueError as exc:
            raise ValueError(f"invalid socket address: {text}") from exc
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 0xFFFF:
        raise ValueError(f"invalid port in socket address: {text}")
    return str(ip), int(port_text)


_USIZE = _uint(64)

_PARSERS: dict[type, dict[str, Callable[[Any], Any]]] = {
    ServerConfig: {"bind": _socket_addr},
    ResolverConfig: {
        "root_hints_path": _path,
        "forward_upstreams": _string_list,
        "trust_anchor_path": _path,
        "ns_cache_size": _USIZE,
        "record_cache_size": _USIZE,
        "recursion_limit": _uint(8),
        "ns_recursion_limit": _uint(8),
        "resolve_timeout_ms": _uint(64),
        "nameserver_allow_cidrs": _string_list,
        "nameserver_deny_cidrs": _string_list,
    },
    FilterConfig: {
        "exact_allow": _string_list,
        "exact_block": _string_list,
        "suffix_allow": _string_list,
        "suffix_block": _string_list,
        "block_mode": _block_mode,
        "sinkhole_ipv4": _string,
        "sinkhole_ipv6": _string,
        "sinkhole_ttl": _uint(32),
    },
    LimitsConfig: {
        "max_post_body_bytes": _USIZE,
        "max_get_dns_param_bytes": _USIZE,
        "max_dns_wire_bytes": _USIZE,
        "max_json_name_bytes": _USIZE,
        "max_concurrent_requests": _USIZE,
        "http_request_timeout_ms": _uint(64),
    },
    ReadinessConfig: {"startup_self_check": _boolean, "self_check_name": _string},
    LoggingConfig: {"json": _boolean, "filter": _string},
}


def _build_section(cls: type, data: Any, section: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"[{section}] must be a table")
    kwargs = {}
    for key, parse in _PARSERS[cls].items():
        if key in data:
            try:
                kwargs[key] = parse(data[key])
            except ValueError as exc:
                raise ValueError(f"invalid {section}.{key}: {exc}") from exc
    return cls(**kwargs)


_SECTIONS: dict[str, type] = {
    "server": ServerConfig,
    "resolver": ResolverConfig,
    "filter": FilterConfig,
    "limits": LimitsConfig,
    "readiness": ReadinessConfig,
    "logging": LoggingConfig,
}


@dataclass(frozen=True)
class PolarisConfig:
    """Complete service configuration; every section has defaults."""

    server: ServerConfig = field(default_factory=ServerConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PolarisConfig:
        """Builds a configuration from parsed TOML data; unknown keys are ignored."""
        if not isinstance(data, Mapping):
            raise ValueError("configuration must be a table")
        sections = {
            name: _build_section(section_cls, data[name], name)
            for name, section_cls in _SECTIONS.items()
            if name in data
        }
        return cls(**sections)

    @classmethod
    def load(cls, path: str | Path) -> PolarisConfig:
        """Reads and parses a TOML configuration file."""
        path = Path(path)
        content = path.read_text(encoding="utf-8")
        try:
            return cls.from_mapping(tomllib.loads(content))
        except ValueError as exc:
            raise ValueError(f"failed to parse config file: {path}: {exc}") from exc
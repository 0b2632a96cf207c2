"""In-memory domain filter evaluated before resolution."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass

import dns.exception
import dns.name
import idna

from polaris.config import BlockMode, FilterConfig


class InvalidNameError(ValueError):
    """Raised when a domain name cannot be normalized."""


def _to_ascii_label(label: str) -> str:
    if label.isascii():
        return label.lower()
    return idna.encode(label, uts46=True, transitional=False).decode("ascii").lower()


@dataclass(frozen=True)
class NormalizedName:
    """A name in lowercase A-label form together with its absolute DNS name."""

    canonical: str
    fqdn: dns.name.Name

    @classmethod
    def parse(cls, name: str) -> NormalizedName:
        """Normalizes text to lowercase A-labels; an empty or dot-only name is the root."""
        trimmed = name.strip().rstrip(".")
        if not trimmed:
            return cls("", dns.name.root)
        try:
            canonical = ".".join(_to_ascii_label(label) for label in trimmed.split("."))
        except (idna.IDNAError, UnicodeError) as exc:
            raise InvalidNameError(f"invalid idn in name: {name}") from exc
        try:
            fqdn = dns.name.from_text(canonical + ".").canonicalize()
        except dns.exception.DNSException as exc:
            raise InvalidNameError(f"invalid dns name: {name}") from exc
        return cls(canonical, fqdn)

    @classmethod
    def from_wire_name(cls, name: dns.name.Name) -> NormalizedName:
        """Normalizes a name taken from a parsed DNS message."""
        return cls.parse(name.to_text())


class FilterAction(enum.Enum):
    ALLOW = "allow"
    BLOCK_NXDOMAIN = "block_nxdomain"
    BLOCK_SINKHOLE = "block_sinkhole"


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of a filter lookup; sinkhole decisions carry the synthetic answers."""

    action: FilterAction = FilterAction.ALLOW
    ipv4: ipaddress.IPv4Address | None = None
    ipv6: ipaddress.IPv6Address | None = None
    ttl: int | None = None

    def __post_init__(self) -> None:
        if self.action is FilterAction.BLOCK_SINKHOLE and (
            self.ipv4 is None or self.ipv6 is None or self.ttl is None
        ):
            raise ValueError("sinkhole decision needs ipv4, ipv6 and ttl")

    def is_blocked(self) -> bool:
        return self.action is not FilterAction.ALLOW


def _normalize_exact_rule(value: str) -> str:
    if value.strip().startswith("*."):
        raise ValueError(f"exact rule cannot start with '*.': {value}")
    return NormalizedName.parse(value).canonical


def _normalize_suffix_rule(value: str) -> str:
    raw = value.strip()
    if raw.startswith("*."):
        bare = raw[2:]
    elif raw.startswith("."):
        bare = raw[1:]
    else:
        bare = raw
    if not bare:
        raise ValueError(f"suffix rule cannot be empty: {value}")
    canonical = NormalizedName.parse(bare).canonical
    if not canonical:
        raise ValueError(f"suffix rule resolves to root and is not allowed: {value}")
    return canonical


def _suffix_match(name: str, suffix: str) -> bool:
    return name == suffix or name.endswith("." + suffix)


@dataclass(frozen=True)
class FilterSnapshot:
    """An immutable set of normalized rules."""

    exact_allow: frozenset[str]
    exact_block: frozenset[str]
    suffix_allow: tuple[str, ...]
    suffix_block: tuple[str, ...]
    block_mode: BlockMode
    sinkhole_ipv4: ipaddress.IPv4Address
    sinkhole_ipv6: ipaddress.IPv6Address
    sinkhole_ttl: int

    @classmethod
    def from_config(cls, cfg: FilterConfig) -> FilterSnapshot:
        """Normalizes every rule in the configuration; invalid rules raise ValueError."""
        try:
            ipv4 = ipaddress.IPv4Address(cfg.sinkhole_ipv4)
        except ValueError as exc:
            raise ValueError(f"invalid sinkhole_ipv4: {cfg.sinkhole_ipv4}") from exc
        try:
            ipv6 = ipaddress.IPv6Address(cfg.sinkhole_ipv6)
        except ValueError as exc:
            raise ValueError(f"invalid sinkhole_ipv6: {cfg.sinkhole_ipv6}") from exc
        return cls(
            exact_allow=frozenset(map(_normalize_exact_rule, cfg.exact_allow)),
            exact_block=frozenset(map(_normalize_exact_rule, cfg.exact_block)),
            suffix_allow=tuple(map(_normalize_suffix_rule, cfg.suffix_allow)),
            suffix_block=tuple(map(_normalize_suffix_rule, cfg.suffix_block)),
            block_mode=cfg.block_mode,
            sinkhole_ipv4=ipv4,
            sinkhole_ipv6=ipv6,
            sinkhole_ttl=cfg.sinkhole_ttl,
        )

    def evaluate(self, name: NormalizedName) -> FilterDecision:
        """Applies exact allow > exact block > suffix allow > suffix block > allow."""
        key = name.canonical
        if key in self.exact_allow:
            return FilterDecision()
        if key in self.exact_block:
            return self._block_decision()
        if any(_suffix_match(key, suffix) for suffix in self.suffix_allow):
            return FilterDecision()
        if any(_suffix_match(key, suffix) for suffix in self.suffix_block):
            return self._block_decision()
        return FilterDecision()

    def _block_decision(self) -> FilterDecision:
        if self.block_mode is BlockMode.SINKHOLE:
            return FilterDecision(
                FilterAction.BLOCK_SINKHOLE,
                ipv4=self.sinkhole_ipv4,
                ipv6=self.sinkhole_ipv6,
                ttl=self.sinkhole_ttl,
            )
        return FilterDecision(FilterAction.BLOCK_NXDOMAIN)
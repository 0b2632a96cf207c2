"""Resolver generations for recursive and forwarding modes."""

from __future__ import annotations

import asyncio
import ipaddress
import itertools
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

import dns.asyncquery
import dns.asyncresolver
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.nameserver
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.resolver
import dns.rrset

from polaris.config import ResolverConfig

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
TrustAnchor = tuple[dns.name.Name, dns.rdata.Rdata]

_BUILTIN_TRUST_ANCHORS = (
    ". IN DS 20326 8 2 E06D44B80B8F1D39A95C0B0D7C65D08458E880409BBC683457104237C7F8EC8D",
    ". IN DS 38696 8 2 683D2D0ACB8C9B712A1948B27F741219298D0A450D612C483AF444A4C0FB2B16",
)
_BUILTIN_TRUST_SOURCE = "builtin:default"


class ResolveError(Exception):
    """Base class for resolution failures."""


class ResolveTimeout(ResolveError):
    """Resolution did not finish within the allotted time."""


class ResolveServFail(ResolveError):
    """Resolution failed for a reason other than a negative answer."""


@dataclass(frozen=True)
class ResolverBuildInfo:
    """Metadata describing one resolver generation."""

    generation: int
    root_hints_source: str
    root_hints_count: int
    trust_anchor_source: str
    trust_anchor_count: int
    loaded_at: datetime


@dataclass(frozen=True)
class ResolveOutcome:
    """An answer or a negative result; negative results carry an SOA when known."""

    response_code: dns.rcode.Rcode = dns.rcode.NOERROR
    records: tuple[dns.rrset.RRset, ...] = ()
    soa: dns.rrset.RRset | None = None
    authorities: tuple[dns.rrset.RRset, ...] = ()


class _TtlCache:
    """A bounded LRU mapping whose entries expire."""

    def __init__(self, maxsize: int) -> None:
        self._maxsize = max(1, maxsize)
        self._items: OrderedDict[Any, tuple[float, Any]] = OrderedDict()

    def get(self, key: Any) -> Any:
        item = self._items.get(key)
        if item is None:
            return None
        expires, value = item
        if expires < time.monotonic():
            del self._items[key]
            return None
        self._items.move_to_end(key)
        return value

    def put(self, key: Any, value: Any, ttl: int) -> None:
        self._items[key] = (time.monotonic() + ttl, value)
        self._items.move_to_end(key)
        while len(self._items) > self._maxsize:
            self._items.popitem(last=False)


def _soa_of(response: dns.message.Message) -> dns.rrset.RRset | None:
    return next((r for r in response.authority if r.rdtype == dns.rdatatype.SOA), None)


def _negative(code: dns.rcode.Rcode, response: dns.message.Message) -> ResolveOutcome:
    soa = _soa_of(response)
    others = tuple(r for r in response.authority if r is not soa)
    return ResolveOutcome(code, soa=soa, authorities=others)


def _min_ttl(outcome: ResolveOutcome) -> int | None:
    rrsets = [*outcome.records, *outcome.authorities]
    if outcome.soa is not None:
        rrsets.append(outcome.soa)
    return min((r.ttl for r in rrsets), default=None)


class RecursiveBackend:
    """Iterative resolution starting from the root hints."""

    def __init__(
        self,
        roots: list[IpAddress],
        *,
        trust_anchors: tuple[TrustAnchor, ...],
        ns_cache_size: int,
        record_cache_size: int,
        recursion_limit: int,
        ns_recursion_limit: int,
        query_timeout: float,
        allow_nets: list[IpNetwork] | None = None,
        deny_nets: list[IpNetwork] | None = None,
    ) -> None:
        self.roots = [str(ip) for ip in roots]
        self.trust_anchors = trust_anchors
        self._ns_cache = _TtlCache(ns_cache_size)
        self._records = _TtlCache(record_cache_size)
        self._recursion_limit = recursion_limit
        self._ns_recursion_limit = ns_recursion_limit
        self._query_timeout = query_timeout
        self._allow = list(allow_nets or [])
        self._deny = list(deny_nets or [])

    async def resolve(self, query: dns.rrset.RRset, dnssec_ok: bool) -> ResolveOutcome:
        """Resolves a question RRset from the roots down."""
        return await self._lookup(query.name, query.rdtype, dnssec_ok, 0, 0)

    def _permitted(self, ip: str) -> bool:
        addr = ipaddress.ip_address(ip)
        if any(addr in net for net in self._allow):
            return True
        return not any(addr in net for net in self._deny)

    def _closest_servers(self, name: dns.name.Name) -> list[str]:
        current = name
        while True:
            servers = self._ns_cache.get(current)
            if servers:
                return servers
            if current == dns.name.root:
                return [ip for ip in self.roots if self._permitted(ip)]
            current = current.parent()

    async def _lookup(
        self,
        name: dns.name.Name,
        rdtype: dns.rdatatype.RdataType,
        dnssec_ok: bool,
        depth: int,
        ns_depth: int,
    ) -> ResolveOutcome:
        if depth > self._recursion_limit:
            raise ResolveServFail(f"recursion limit exceeded for {name}")
        key = (name, rdtype, dnssec_ok)
        cached = self._records.get(key)
        if cached is not None:
            return cached

        servers = self._closest_servers(name)
        for _ in range(self._recursion_limit + 1):
            response = await self._ask(servers, name, rdtype, dnssec_ok)
            if response.rcode() == dns.rcode.NXDOMAIN:
                return self._store(key, _negative(dns.rcode.NXDOMAIN, response))

            if any(
                r.name == name and (r.rdtype == rdtype or rdtype == dns.rdatatype.ANY)
                for r in response.answer
            ):
                return self._store(key, ResolveOutcome(records=tuple(response.answer)))

            cname = next(
                (r for r in response.answer
                 if r.name == name and r.rdtype == dns.rdatatype.CNAME),
                None,
            )
            if cname is not None and rdtype != dns.rdatatype.CNAME:
                target = cname[0].target
                sub = await self._lookup(target, rdtype, dnssec_ok, depth + 1, ns_depth)
                return ResolveOutcome(
                    sub.response_code, (cname, *sub.records), sub.soa, sub.authorities
                )

            referral = next(
                (r for r in response.authority
                 if r.rdtype == dns.rdatatype.NS and name.is_subdomain(r.name)),
                None,
            )
            if referral is not None and _soa_of(response) is None:
                next_servers = await self._referral_servers(
                    referral, response, depth, ns_depth
                )
                if not next_servers:
                    raise ResolveServFail(f"no usable nameservers for {referral.name}")
                self._ns_cache.put(referral.name, next_servers, referral.ttl)
                servers = next_servers
                continue

            return self._store(key, _negative(dns.rcode.NOERROR, response))
        raise ResolveServFail(f"too many referrals for {name}")

    def _store(self, key: Any, outcome: ResolveOutcome) -> ResolveOutcome:
        ttl = _min_ttl(outcome)
        if ttl:
            self._records.put(key, outcome, ttl)
        return outcome

    async def _referral_servers(
        self,
        referral: dns.rrset.RRset,
        response: dns.message.Message,
        depth: int,
        ns_depth: int,
    ) -> list[str]:
        targets = [rdata.target for rdata in referral]
        glue = [
            rdata.address
            for rrset in response.additional
            if rrset.name in targets
            and rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
            for rdata in rrset
        ]
        permitted = list(dict.fromkeys(ip for ip in glue if self._permitted(ip)))
        if permitted or ns_depth >= self._ns_recursion_limit:
            return permitted
        for target in targets:
            try:
                found = await self._lookup(
                    target, dns.rdatatype.A, False, depth + 1, ns_depth + 1
                )
            except ResolveError:
                continue
            addresses = [
                rdata.address
                for rrset in found.records
                if rrset.rdtype == dns.rdatatype.A
                for rdata in rrset
                if self._permitted(rdata.address)
            ]
            if addresses:
                return list(dict.fromkeys(addresses))
        return []

    async def _ask(
        self,
        servers: list[str],
        name: dns.name.Name,
        rdtype: dns.rdatatype.RdataType,
        dnssec_ok: bool,
    ) -> dns.message.Message:
        query = dns.message.make_query(name, rdtype, use_edns=0, want_dnssec=dnssec_ok)
        query.flags &= ~dns.flags.RD
        for server in servers:
            try:
                response = await dns.asyncquery.udp(
                    query, server, timeout=self._query_timeout, port=53
                )
                if response.flags & dns.flags.TC:
                    response = await dns.asyncquery.tcp(
                        query, server, timeout=self._query_timeout, port=53
                    )
            except (dns.exception.DNSException, OSError):
                continue
            if response.rcode() in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
                return response
        raise ResolveServFail(f"no nameserver answered for {name}")


class ForwardBackend:
    """Sends recursive queries to configured upstream resolvers."""

    def __init__(
        self,
        upstreams: list[tuple[IpAddress, int]],
        *,
        trust_anchors: tuple[TrustAnchor, ...],
        timeout: float,
        cache_size: int,
    ) -> None:
        self.upstreams = list(upstreams)
        self.trust_anchors = trust_anchors
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = [
            dns.nameserver.Do53Nameserver(str(ip), port) for ip, port in upstreams
        ]
        resolver.timeout = timeout
        resolver.lifetime = timeout
        resolver.cache = dns.resolver.LRUCache(max(1, cache_size))
        resolver.use_edns(0, dns.flags.DO, 1232)
        resolver.flags = dns.flags.RD
        self._resolver = resolver

    async def resolve(self, query: dns.rrset.RRset, dnssec_ok: bool) -> ResolveOutcome:
        """Looks the question up through the upstream resolvers."""
        try:
            answer = await self._resolver.resolve(
                query.name, query.rdtype, raise_on_no_answer=False, search=False
            )
        except dns.resolver.NXDOMAIN as exc:
            soa = next(
                (s for s in map(_soa_of, exc.responses().values()) if s is not None), None
            )
            return ResolveOutcome(dns.rcode.NXDOMAIN, soa=soa)
        except dns.exception.DNSException as exc:
            raise ResolveServFail(str(exc)) from exc
        if answer.rrset is None:
            return ResolveOutcome(dns.rcode.NOERROR, soa=_soa_of(answer.response))
        return ResolveOutcome(records=tuple(answer.response.answer))


Backend = Union[RecursiveBackend, ForwardBackend]


@dataclass(frozen=True)
class ResolverGeneration:
    """A resolver backend with its own caches."""

    id: int
    backend: Backend = field(compare=False)
    info: ResolverBuildInfo


class ResolverManager:
    """Holds the active generation; purging swaps in a fresh one."""

    def __init__(self, cfg: ResolverConfig) -> None:
        self._cfg = cfg
        self._ids = itertools.count(2)
        self._lock = threading.Lock()
        self._generation = build_generation(1, cfg)

    def active_info(self) -> ResolverBuildInfo:
        return self._generation.info

    async def resolve(
        self, query: dns.rrset.RRset, dnssec_ok: bool, timeout: float
    ) -> ResolveOutcome:
        """Resolves with the active generation; ``timeout`` is in seconds."""
        generation = self._generation
        try:
            return await asyncio.wait_for(
                generation.backend.resolve(query, dnssec_ok), timeout
            )
        except TimeoutError as exc:
            raise ResolveTimeout(f"resolution of {query.name} timed out") from exc

    def purge_generation(self) -> ResolverBuildInfo:
        """Builds a new generation, dropping all cached data."""
        with self._lock:
            generation = build_generation(next(self._ids), self._cfg)
            self._generation = generation
        return generation.info


def parse_upstream_addr(value: str) -> tuple[IpAddress, int]:
    """Parses ``IP`` or ``IP:PORT`` (``[IPv6]:PORT``); the default port is 53."""
    error = ValueError(f"invalid forward upstream '{value}', expected IP or IP:PORT")
    try:
        return ipaddress.ip_address(value), 53
    except ValueError:
        pass
    if value.startswith("["):
        host, sep, port_text = value[1:].partition("]:")
        parse_ip: Any = ipaddress.IPv6Address
    else:
        host, sep, port_text = value.rpartition(":")
        parse_ip = ipaddress.IPv4Address
    if not sep or not (port_text.isascii() and port_text.isdigit()):
        raise error
    if int(port_text) > 0xFFFF:
        raise error
    try:
        return parse_ip(host), int(port_text)
    except ValueError as exc:
        raise error from exc


def parse_forward_upstreams(values: list[str]) -> list[tuple[IpAddress, int]]:
    """Parses upstream addresses, dropping duplicates but keeping order."""
    if not values:
        raise ValueError(
            "forward_upstreams must not be empty when forwarding mode is enabled"
        )
    parsed = list(dict.fromkeys(parse_upstream_addr(value) for value in values))
    if not parsed:
        raise ValueError("no valid forward upstreams configured")
    return parsed


def _format_addr(addr: tuple[IpAddress, int]) -> str:
    ip, port = addr
    return f"[{ip}]:{port}" if ip.version == 6 else f"{ip}:{port}"


def parse_root_hint_ips(content: str) -> list[IpAddress]:
    """Extracts every IP address token, sorted IPv4 first, without duplicates."""
    found = set()
    for token in content.split():
        try:
            found.add(ipaddress.ip_address(token.strip().rstrip(".")))
        except ValueError:
            continue
    return sorted(found, key=lambda ip: (ip.version, int(ip)))


def load_root_hints(path: str | Path) -> tuple[list[IpAddress], str, int]:
    """Reads root hint addresses; a missing or address-free file is an error."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"root hints file not found: {path}")
    ips = parse_root_hint_ips(path.read_text(encoding="utf-8"))
    if not ips:
        raise ValueError(f"root hints file does not contain any IP addresses: {path}")
    return ips, f"file:{path}", len(ips)


def _parse_anchor_line(line: str) -> TrustAnchor | None:
    tokens = line.split(";", 1)[0].split()
    if not tokens:
        return None
    for index, token in enumerate(tokens):
        if token.upper() in ("DS", "DNSKEY") and index > 0:
            rdtype = dns.rdatatype.from_text(token.upper())
            rdata = dns.rdata.from_text(
                dns.rdataclass.IN, rdtype, " ".join(tokens[index + 1:])
            )
            return dns.name.from_text(tokens[0]), rdata
    raise ValueError(f"not a DS or DNSKEY record: {line.strip()}")


def load_trust_anchor(cfg: ResolverConfig) -> tuple[tuple[TrustAnchor, ...], str, int]:
    """Loads DS/DNSKEY trust anchors from the configured file or the built-in set."""
    if cfg.trust_anchor_path is not None:
        path = Path(cfg.trust_anchor_path)
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
            anchors = tuple(a for a in map(_parse_anchor_line, lines) if a is not None)
        except (OSError, ValueError, dns.exception.DNSException) as exc:
            raise ValueError(f"failed to load trust anchor file: {path}: {exc}") from exc
        source = f"file:{path}"
    else:
        anchors = tuple(
            a for a in map(_parse_anchor_line, _BUILTIN_TRUST_ANCHORS) if a is not None
        )
        source = _BUILTIN_TRUST_SOURCE
    if not anchors:
        raise ValueError("trust anchors are empty")
    return anchors, source, len(anchors)


def _parse_nets(values: list[str], kind: str) -> list[IpNetwork]:
    nets = []
    for value in values:
        try:
            nets.append(ipaddress.ip_network(value, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid {kind} cidr: {value}") from exc
    return nets


def build_generation(generation_id: int, cfg: ResolverConfig) -> ResolverGeneration:
    """Builds a forwarding backend when upstreams are configured, else a recursive one."""
    timeout = cfg.resolve_timeout_ms / 1000
    backend: Backend
    if cfg.forward_upstreams:
        upstreams = parse_forward_upstreams(cfg.forward_upstreams)
        anchors, trust_source, trust_count = load_trust_anchor(cfg)
        backend = ForwardBackend(
            upstreams,
            trust_anchors=anchors,
            timeout=timeout,
            cache_size=cfg.record_cache_size,
        )
        hints_source = "forward:" + ",".join(map(_format_addr, upstreams))
        hints_count = len(upstreams)
    else:
        roots, hints_source, hints_count = load_root_hints(cfg.root_hints_path)
        anchors, trust_source, trust_count = load_trust_anchor(cfg)
        backend = RecursiveBackend(
            roots,
            trust_anchors=anchors,
            ns_cache_size=cfg.ns_cache_size,
            record_cache_size=cfg.record_cache_size,
            recursion_limit=cfg.recursion_limit,
            ns_recursion_limit=cfg.ns_recursion_limit,
            query_timeout=timeout,
            allow_nets=_parse_nets(cfg.nameserver_allow_cidrs, "allow"),
            deny_nets=_parse_nets(cfg.nameserver_deny_cidrs, "deny"),
        )
    info = ResolverBuildInfo(
        generation=generation_id,
        root_hints_source=hints_source,
        root_hints_count=hints_count,
        trust_anchor_source=trust_source,
        trust_anchor_count=trust_count,
        loaded_at=datetime.now(timezone.utc),
    )
    return ResolverGeneration(generation_id, backend, info)
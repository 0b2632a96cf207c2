import asyncio
import ipaddress
from unittest.mock import patch

import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from polaris.config import ResolverConfig
from polaris.resolver import (
    ForwardBackend,
    RecursiveBackend,
    ResolveTimeout,
    ResolverManager,
    build_generation,
    load_root_hints,
    load_trust_anchor,
    parse_forward_upstreams,
    parse_root_hint_ips,
    parse_upstream_addr,
)


@pytest.fixture
def hints(tmp_path):
    path = tmp_path / "root.hints"
    path.write_text(".  3600000 NS A.ROOT-SERVERS.NET.\nA.ROOT-SERVERS.NET. 3600000 A 198.41.0.4\n")
    return path


def question(name, rdtype="A"):
    return dns.rrset.RRset(dns.name.from_text(name), 1, dns.rdatatype.from_text(rdtype))


def test_root_hint_ips_sorted_and_deduplicated():
    text = "x 1 AAAA 2001:db8::1\ny A 192.0.2.2.\nz A 192.0.2.1\nw A 192.0.2.1 NS foo."
    assert parse_root_hint_ips(text) == [
        ipaddress.ip_address("192.0.2.1"),
        ipaddress.ip_address("192.0.2.2"),
        ipaddress.ip_address("2001:db8::1"),
    ]


def test_upstream_addr_forms():
    assert parse_upstream_addr("192.0.2.1") == (ipaddress.ip_address("192.0.2.1"), 53)
    assert parse_upstream_addr("192.0.2.1:5353") == (ipaddress.ip_address("192.0.2.1"), 5353)
    assert parse_upstream_addr("[::1]:853") == (ipaddress.ip_address("::1"), 853)
    assert parse_upstream_addr("::1") == (ipaddress.ip_address("::1"), 53)
    with pytest.raises(ValueError):
        parse_upstream_addr("resolver.example")


def test_forward_upstreams_dedup_and_empty():
    parsed = parse_forward_upstreams(["192.0.2.1", "192.0.2.1:53", "192.0.2.2"])
    assert [str(ip) for ip, _ in parsed] == ["192.0.2.1", "192.0.2.2"]
    with pytest.raises(ValueError):
        parse_forward_upstreams([])


def test_root_hints_errors(tmp_path, hints):
    with pytest.raises(FileNotFoundError):
        load_root_hints(tmp_path / "missing")
    empty = tmp_path / "empty"
    empty.write_text("; nothing\n")
    with pytest.raises(ValueError):
        load_root_hints(empty)
    ips, source, count = load_root_hints(hints)
    assert ips == [ipaddress.ip_address("198.41.0.4")]
    assert source == f"file:{hints}"
    assert count == 1


def test_trust_anchor_builtin_and_file(tmp_path):
    anchors, source, count = load_trust_anchor(ResolverConfig())
    assert count == len(anchors) == 2
    path = tmp_path / "anchors"
    path.write_text(
        ". IN DS 20326 8 2 E06D44B80B8F1D39A95C0B0D7C65D08458E880409BBC683457104237C7F8EC8D\n"
    )
    anchors, source, count = load_trust_anchor(ResolverConfig(trust_anchor_path=path))
    assert (source, count) == (f"file:{path}", 1)
    path.write_text("; empty\n")
    with pytest.raises(ValueError):
        load_trust_anchor(ResolverConfig(trust_anchor_path=path))


def test_forward_generation_info():
    gen = build_generation(4, ResolverConfig(forward_upstreams=["192.0.2.9", "[::1]:53"]))
    assert isinstance(gen.backend, ForwardBackend)
    assert gen.info.generation == 4
    assert gen.info.root_hints_source == "forward:192.0.2.9:53,[::1]:53"
    assert gen.info.root_hints_count == 2


def test_bad_cidr_rejected(hints):
    with pytest.raises(ValueError, match="invalid deny cidr"):
        build_generation(1, ResolverConfig(root_hints_path=hints, nameserver_deny_cidrs=["x"]))


def test_purge_advances_generation(hints):
    manager = ResolverManager(ResolverConfig(root_hints_path=hints))
    assert manager.active_info().generation == 1
    assert isinstance(build_generation(1, ResolverConfig(root_hints_path=hints)).backend, RecursiveBackend)
    assert manager.purge_generation().generation == 2
    assert manager.purge_generation().generation == 3
    assert manager.active_info().generation == 3


@pytest.mark.asyncio
async def test_recursive_follows_referral(hints):
    asked = []

    async def fake_udp(query, where, timeout=None, port=53, **kwargs):
        asked.append(where)
        response = dns.message.make_response(query)
        qname = query.question[0].name
        if where == "198.41.0.4":
            response.authority.append(
                dns.rrset.from_text("example.", 3600, "IN", "NS", "ns.example.")
            )
            response.additional.append(
                dns.rrset.from_text("ns.example.", 3600, "IN", "A", "192.0.2.53")
            )
        else:
            response.answer.append(dns.rrset.from_text(qname, 300, "IN", "A", "192.0.2.80"))
        return response

    manager = ResolverManager(ResolverConfig(root_hints_path=hints))
    with patch("dns.asyncquery.udp", new=fake_udp):
        outcome = await manager.resolve(question("www.example."), False, 2.0)
    assert asked == ["198.41.0.4", "192.0.2.53"]
    assert outcome.response_code == dns.rcode.NOERROR
    assert [r.address for r in outcome.records[0]] == ["192.0.2.80"]


@pytest.mark.asyncio
async def test_recursive_nxdomain(hints):
    async def fake_udp(query, where, timeout=None, port=53, **kwargs):
        response = dns.message.make_response(query)
        response.set_rcode(dns.rcode.NXDOMAIN)
        response.authority.append(
            dns.rrset.from_text(".", 60, "IN", "SOA", "a. b. 1 2 3 4 5")
        )
        return response

    manager = ResolverManager(ResolverConfig(root_hints_path=hints))
    with patch("dns.asyncquery.udp", new=fake_udp):
        outcome = await manager.resolve(question("nope."), False, 2.0)
    assert outcome.response_code == dns.rcode.NXDOMAIN
    assert outcome.soa.rdtype == dns.rdatatype.SOA
    assert outcome.records == ()


@pytest.mark.asyncio
async def test_resolve_timeout(hints):
    async def slow_udp(query, where, timeout=None, port=53, **kwargs):
        await asyncio.sleep(5)

    manager = ResolverManager(ResolverConfig(root_hints_path=hints))
    with patch("dns.asyncquery.udp", new=slow_udp):
        with pytest.raises(ResolveTimeout):
            await manager.resolve(question("slow.example."), False, 0.05)
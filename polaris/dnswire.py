"""DNS wire parsing, request validation and response synthesis."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from polaris.filter import FilterAction, FilterDecision, InvalidNameError, NormalizedName
from polaris.resolver import ResolveOutcome

DOH_WIRE_CONTENT_TYPE = "application/dns-message"


class DnsProtocolError(Exception):
    """A request that must be answered with a DNS error; ``response`` holds the answer."""

    def __init__(self, response: dns.message.Message) -> None:
        super().__init__(dns.rcode.to_text(response.rcode()))
        self.response = response


@dataclass(frozen=True)
class PreparedDnsRequest:
    """A validated single-question query with its normalized name."""

    original_query: dns.rrset.RRset
    recursive_query: dns.rrset.RRset
    normalized_name: NormalizedName
    dnssec_ok: bool
    id: int
    opcode: dns.opcode.Opcode
    recursion_desired: bool
    checking_disabled: bool


def _question(rrset: dns.rrset.RRset) -> dns.rrset.RRset:
    return dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype)


def parse_dns_message(data: bytes, max_dns_wire_bytes: int) -> dns.message.Message:
    """Parses wire bytes, enforcing a non-empty message within the size limit."""
    if not data:
        raise ValueError("empty DNS message")
    if len(data) > max_dns_wire_bytes:
        raise ValueError(
            f"DNS message larger than max limit: {len(data)} > {max_dns_wire_bytes}"
        )
    try:
        return dns.message.from_wire(data)
    except (dns.exception.DNSException, ValueError) as exc:
        raise ValueError("invalid DNS wire message") from exc


def _shell(
    message_id: int,
    opcode: dns.opcode.Opcode,
    rd: bool,
    cd: bool,
    code: dns.rcode.Rcode,
) -> dns.message.Message:
    message = dns.message.Message(id=message_id)
    flags = dns.flags.QR | dns.flags.RA
    if rd:
        flags |= dns.flags.RD
    if cd:
        flags |= dns.flags.CD
    message.flags = flags
    message.set_opcode(opcode)
    message.set_rcode(code)
    return message


def _error_response(request: dns.message.Message, code: dns.rcode.Rcode) -> dns.message.Message:
    message = _shell(
        request.id,
        request.opcode(),
        bool(request.flags & dns.flags.RD),
        bool(request.flags & dns.flags.CD),
        code,
    )
    if request.question:
        message.question.append(_question(request.question[0]))
    return message


def _response_shell(prepared: PreparedDnsRequest, code: dns.rcode.Rcode) -> dns.message.Message:
    message = _shell(
        prepared.id, prepared.opcode, prepared.recursion_desired,
        prepared.checking_disabled, code,
    )
    message.question.append(_question(prepared.original_query))
    return message


def prepare_dns_request(message: dns.message.Message) -> PreparedDnsRequest:
    """Validates a query; raises DnsProtocolError carrying the error response."""
    if message.flags & dns.flags.QR:
        raise DnsProtocolError(_error_response(message, dns.rcode.FORMERR))
    if message.opcode() != dns.opcode.QUERY:
        raise DnsProtocolError(_error_response(message, dns.rcode.NOTIMP))
    if len(message.question) != 1:
        raise DnsProtocolError(_error_response(message, dns.rcode.FORMERR))
    query = message.question[0]
    if query.rdclass != dns.rdataclass.IN:
        raise DnsProtocolError(_error_response(message, dns.rcode.REFUSED))
    try:
        normalized = NormalizedName.from_wire_name(query.name)
    except InvalidNameError as exc:
        raise DnsProtocolError(_error_response(message, dns.rcode.FORMERR)) from exc

    return PreparedDnsRequest(
        original_query=_question(query),
        recursive_query=dns.rrset.RRset(normalized.fqdn, query.rdclass, query.rdtype),
        normalized_name=normalized,
        dnssec_ok=message.edns >= 0 and bool(message.ednsflags & dns.flags.DO),
        id=message.id,
        opcode=message.opcode(),
        recursion_desired=bool(message.flags & dns.flags.RD),
        checking_disabled=bool(message.flags & dns.flags.CD),
    )


def sinkhole_response(
    prepared: PreparedDnsRequest,
    ipv4: ipaddress.IPv4Address,
    ipv6: ipaddress.IPv6Address,
    ttl: int,
) -> dns.message.Message:
    """Answers A/AAAA (or both for ANY) with the sinkhole addresses."""
    response = _response_shell(prepared, dns.rcode.NOERROR)
    qname = prepared.recursive_query.name
    qtype = prepared.recursive_query.rdtype
    if qtype in (dns.rdatatype.A, dns.rdatatype.ANY):
        response.answer.append(dns.rrset.from_text(qname, ttl, "IN", "A", str(ipv4)))
    if qtype in (dns.rdatatype.AAAA, dns.rdatatype.ANY):
        response.answer.append(dns.rrset.from_text(qname, ttl, "IN", "AAAA", str(ipv6)))
    return response


def blocked_response(prepared: PreparedDnsRequest, decision: FilterDecision) -> dns.message.Message:
    """Builds the local answer for a blocked name."""
    if decision.action is FilterAction.BLOCK_NXDOMAIN:
        return _response_shell(prepared, dns.rcode.NXDOMAIN)
    if decision.action is FilterAction.BLOCK_SINKHOLE:
        return sinkhole_response(prepared, decision.ipv4, decision.ipv6, decision.ttl)
    raise ValueError("blocked_response called with allow decision")


def resolved_response(prepared: PreparedDnsRequest, outcome: ResolveOutcome) -> dns.message.Message:
    """Turns a resolver outcome into a response message."""
    response = _response_shell(prepared, outcome.response_code)
    response.answer.extend(outcome.records)
    if outcome.soa is not None:
        response.authority.append(outcome.soa)
    response.authority.extend(outcome.authorities)
    return response


def prepared_error_response(
    prepared: PreparedDnsRequest, code: dns.rcode.Rcode
) -> dns.message.Message:
    """Builds an empty response with the given code for a prepared request."""
    return _response_shell(prepared, code)


def response_to_wire(message: dns.message.Message) -> bytes:
    """Serializes a message to wire format."""
    try:
        return message.to_wire()
    except dns.exception.DNSException as exc:
        raise ValueError("failed to serialize DNS response") from exc
"""HTTP handlers for wire DoH, the JSON query mode and the health probes."""

from __future__ import annotations

import asyncio
import base64
import json
import re
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from typing import Any

import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
from aiohttp import web

from polaris.dnswire import (
    DOH_WIRE_CONTENT_TYPE,
    DnsProtocolError,
    PreparedDnsRequest,
    blocked_response,
    parse_dns_message,
    prepare_dns_request,
    prepared_error_response,
    resolved_response,
    response_to_wire,
)
from polaris.filter import NormalizedName
from polaris.resolver import ResolveError
from polaris.state import AppState

STATE_KEY = web.AppKey("polaris_state", AppState)

_JSON_CONTENT_TYPE = "application/json"
_BASE64URL_BODY = re.compile(r"[A-Za-z0-9_-]*")
_TO_STANDARD_ALPHABET = str.maketrans("-_", "+/")


def parse_record_type(raw: str | None) -> dns.rdatatype.RdataType:
    """Parses a record type mnemonic or number; missing or blank means A."""
    if raw is None:
        return dns.rdatatype.A
    text = raw.strip()
    if not text:
        return dns.rdatatype.A
    if text.isascii() and text.isdigit():
        value = int(text)
        if value <= 0xFFFF:
            return dns.rdatatype.RdataType.make(value)
    if text != text.upper():
        raise ValueError("invalid record type")
    try:
        return dns.rdatatype.from_text(text)
    except (dns.rdatatype.UnknownRdatatype, ValueError) as exc:
        raise ValueError("invalid record type") from exc


def parse_record_type_value(value: Any) -> dns.rdatatype.RdataType:
    """Parses a record type given in JSON as a string or an unsigned 16-bit number."""
    if isinstance(value, str):
        return parse_record_type(value)
    if isinstance(value, bool):
        raise ValueError("invalid record type")
    if isinstance(value, int):
        if 0 <= value <= 0xFFFF:
            return dns.rdatatype.RdataType.make(value)
        raise ValueError("invalid numeric record type")
    if isinstance(value, float):
        raise ValueError("invalid numeric record type")
    raise ValueError("invalid record type")


def parse_boolish(raw: str | None) -> bool | None:
    """Reads 1/0 and true/false spellings; anything else gives None."""
    if raw is None:
        return None
    text = raw.strip()
    if text in ("1", "true", "TRUE", "True"):
        return True
    if text in ("0", "false", "FALSE", "False"):
        return False
    return None


@dataclass(frozen=True)
class JsonQueryRequest:
    """A query given by name and type rather than in wire format."""

    name: str
    record_type: dns.rdatatype.RdataType = dns.rdatatype.A
    cd: bool = False
    dnssec_ok: bool = False

    @classmethod
    def from_get_params(cls, params: Mapping[str, str]) -> JsonQueryRequest:
        """Builds a request from ``name``, ``type``, ``cd`` and ``do`` query parameters."""
        name = params.get("name")
        if name is None:
            raise ValueError("missing 'name' query parameter")
        return cls(
            name=name,
            record_type=parse_record_type(params.get("type")),
            cd=parse_boolish(params.get("cd")) or False,
            dnssec_ok=parse_boolish(params.get("do")) or False,
        )

    @classmethod
    def from_post_body(cls, body: bytes | str) -> JsonQueryRequest:
        """Builds a request from a JSON object body."""
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ValueError("invalid json body") from exc
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError("invalid json body")
        for key in ("cd", "do"):
            flag = data.get(key)
            if flag is not None and not isinstance(flag, bool):
                raise ValueError("invalid json body")
        raw_type = data.get("type")
        record_type = (
            dns.rdatatype.A if raw_type is None else parse_record_type_value(raw_type)
        )
        return cls(
            name=data["name"],
            record_type=record_type,
            cd=bool(data.get("cd")),
            dnssec_ok=bool(data.get("do")),
        )


def _records_to_json(section: list[dns.rrset.RRset]) -> list[dict[str, Any]]:
    return [
        {
            "name": rrset.name.to_text(),
            "type": int(rrset.rdtype),
            "TTL": rrset.ttl,
            "data": rdata.to_text(),
        }
        for rrset in section
        for rdata in rrset
    ]


def json_response_from_message(message: dns.message.Message) -> dict[str, Any]:
    """Renders a DNS message in the JSON DoH form; empty sections are omitted."""
    flags = message.flags
    result: dict[str, Any] = {
        "Status": int(message.rcode()),
        "TC": bool(flags & dns.flags.TC),
        "RD": bool(flags & dns.flags.RD),
        "RA": bool(flags & dns.flags.RA),
        "AD": bool(flags & dns.flags.AD),
        "CD": bool(flags & dns.flags.CD),
        "Question": [
            {"name": question.name.to_text(), "type": int(question.rdtype)}
            for question in message.question
        ],
    }
    for key, section in (
        ("Answer", message.answer),
        ("Authority", message.authority),
        ("Additional", message.additional),
    ):
        records = _records_to_json(section)
        if records:
            result[key] = records
    return result


def _text(status: int, message: str) -> web.Response:
    return web.Response(status=status, text=message)


def _decode_base64url(text: str) -> bytes:
    """Decodes base64url, with or without correct padding."""
    body = text.rstrip("=")
    padding = len(text) - len(body)
    if padding and (padding > 2 or len(text) % 4):
        raise ValueError("bad base64url padding")
    if not _BASE64URL_BODY.fullmatch(body) or len(body) % 4 == 1:
        raise ValueError("bad base64url text")
    padded = body + "=" * (-len(body) % 4)
    return base64.b64decode(padded.translate(_TO_STANDARD_ALPHABET), validate=True)


async def _with_timeout(state: AppState, work: Awaitable[web.Response]) -> web.Response:
    try:
        return await asyncio.wait_for(
            work, state.config.limits.http_request_timeout_ms / 1000
        )
    except TimeoutError:
        return _text(504, "request timeout")


def _wire_response(message: dns.message.Message) -> web.Response:
    try:
        wire = response_to_wire(message)
    except ValueError:
        return _text(500, "failed to encode dns response")
    return web.Response(status=200, body=wire, content_type=DOH_WIRE_CONTENT_TYPE)


async def _execute(state: AppState, prepared: PreparedDnsRequest) -> dns.message.Message:
    # The filter runs first so that blocked names never reach an upstream.
    decision = state.evaluate_filter(prepared.normalized_name)
    if decision.is_blocked():
        return blocked_response(prepared, decision)
    try:
        outcome = await state.resolve(prepared.recursive_query, prepared.dnssec_ok)
    except ResolveError:
        return prepared_error_response(prepared, dns.rcode.SERVFAIL)
    return resolved_response(prepared, outcome)


async def _run_wire_query(state: AppState, payload: bytes) -> web.Response:
    try:
        message = parse_dns_message(payload, state.config.limits.max_dns_wire_bytes)
    except ValueError:
        return _text(400, "invalid DNS wire query")
    try:
        prepared = prepare_dns_request(message)
    except DnsProtocolError as exc:
        return _wire_response(exc.response)
    return _wire_response(await _execute(state, prepared))


async def _run_json_query(state: AppState, query: JsonQueryRequest) -> web.Response:
    if len(query.name.encode("utf-8")) > state.config.limits.max_json_name_bytes:
        return _text(400, "name is too long")
    try:
        normalized = NormalizedName.parse(query.name)
    except ValueError:
        return _text(400, "invalid domain name")
    qname = normalized.fqdn if normalized.canonical else dns.name.root

    message = dns.message.Message(id=0)
    flags = dns.flags.RD
    if query.cd:
        flags |= dns.flags.CD
    message.flags = flags
    message.question.append(dns.rrset.RRset(qname, dns.rdataclass.IN, query.record_type))
    if query.dnssec_ok:
        message.use_edns(0, dns.flags.DO)

    try:
        prepared = prepare_dns_request(message)
    except DnsProtocolError as exc:
        return web.json_response(json_response_from_message(exc.response))
    response = await _execute(state, prepared)
    return web.json_response(json_response_from_message(response))


async def doh_query_get(request: web.Request) -> web.Response:
    """GET /dns-query with either ``dns=`` (wire) or ``name=`` (JSON)."""
    state = request.app[STATE_KEY]
    params = request.query
    dns_param = params.get("dns")
    if dns_param is not None:
        if len(dns_param.encode("utf-8")) > state.config.limits.max_get_dns_param_bytes:
            return _text(414, "dns query parameter too large")
        try:
            payload = _decode_base64url(dns_param)
        except ValueError:
            return _text(400, "invalid base64url dns parameter")
        return await _with_timeout(state, _run_wire_query(state, payload))

    if params.get("name") is None:
        return _text(400, "either 'dns' or 'name' query parameter is required")
    try:
        query = JsonQueryRequest.from_get_params(params)
    except ValueError as exc:
        return _text(400, str(exc))
    return await _with_timeout(state, _run_json_query(state, query))


async def doh_query_post(request: web.Request) -> web.Response:
    """POST /dns-query with a wire or JSON body, chosen by Content-Type."""
    state = request.app[STATE_KEY]
    content_type = (
        request.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
    )
    if content_type == DOH_WIRE_CONTENT_TYPE:
        body = await request.read()
        return await _with_timeout(state, _run_wire_query(state, body))
    if content_type == _JSON_CONTENT_TYPE:
        body = await request.read()
        try:
            query = JsonQueryRequest.from_post_body(body)
        except ValueError as exc:
            return _text(400, str(exc))
        return await _with_timeout(state, _run_json_query(state, query))
    return _text(
        415, "Content-Type must be application/dns-message or application/json"
    )


async def doh_json_get(request: web.Request) -> web.Response:
    """JSON-only GET query by ``name`` and ``type``."""
    state = request.app[STATE_KEY]
    try:
        query = JsonQueryRequest.from_get_params(request.query)
    except ValueError as exc:
        return _text(400, str(exc))
    return await _with_timeout(state, _run_json_query(state, query))


async def doh_json_post(request: web.Request) -> web.Response:
    """JSON-only POST query."""
    state = request.app[STATE_KEY]
    try:
        query = JsonQueryRequest.from_post_body(await request.read())
    except ValueError as exc:
        return _text(400, str(exc))
    return await _with_timeout(state, _run_json_query(state, query))


async def healthz(request: web.Request) -> web.Response:
    """Liveness probe."""
    return web.json_response({"status": "ok", "service": "polaris"})


async def readyz(request: web.Request) -> web.Response:
    """Readiness probe: 200 when ready, 503 otherwise."""
    snapshot = request.app[STATE_KEY].readiness.snapshot()
    return web.json_response(snapshot.to_dict(), status=200 if snapshot.ready else 503)
# polaris

A lightweight DNS-over-HTTPS (RFC 8484) resolver service. Polaris answers
DoH queries either by iterative resolution starting from a root hints file,
or by forwarding to configured upstream resolvers. An in-memory allow/block
filter runs before any lookup, so blocked names are answered locally and
never reach an upstream or an authoritative server.

## Install

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Run

```
polaris --config config/polaris.toml
```

The configuration path may also be given in the `POLARIS_CONFIG`
environment variable; the default is `config/polaris.toml`. If the file does
not exist, built-in defaults are used. `polaris --version` prints the
version. The service runs until it receives SIGINT or SIGTERM.

At startup the resolver is built (a missing or address-free root hints file,
an invalid upstream address, an invalid CIDR or an invalid filter rule stops
startup with an error), then the startup self-check resolves the NS records
of `readiness.self_check_name`.

## Endpoints

- `GET /dns-query?dns=<base64url>`: wire-format query; the parameter may be
  given with or without padding. Answers `application/dns-message`.
- `GET /dns-query?name=example.com&type=AAAA&cd=0&do=1`: JSON mode. `type`
  is an upper-case mnemonic such as `AAAA` or a number (default `A`);
  `cd` and `do` accept `1`/`0`/`true`/`false`.
- `POST /dns-query` with `Content-Type: application/dns-message` (wire body)
  or `application/json` (body such as
  `{"name": "example.com", "type": "A", "cd": false, "do": true}`).
- `GET /healthz`: liveness, always `{"status": "ok", "service": "polaris"}`.
- `GET /readyz`: readiness as JSON; status 503 until the resolver, root hints
  (or upstreams), trust anchors and the startup self-check are all in place.

Error statuses: 400 for malformed input, 413 for a POST body over
`max_post_body_bytes`, 414 for a `dns` parameter over
`max_get_dns_param_bytes`, 415 for another content type, and 504 when a
request exceeds `http_request_timeout_ms`. DNS-level problems (non-query
messages, unsupported opcodes, classes other than IN, failed resolution) are
returned as DNS responses with FORMERR, NOTIMP, REFUSED or SERVFAIL.

## Configuration

```toml
[server]
bind = "0.0.0.0:8053"

[resolver]
root_hints_path = "config/root.hints"
# Setting upstreams switches from iterative resolution to forwarding.
# forward_upstreams = ["192.0.2.53", "[2001:db8::53]:53"]
# trust_anchor_path = "config/anchors.txt"
ns_cache_size = 2048
record_cache_size = 1048576
recursion_limit = 16
ns_recursion_limit = 16
resolve_timeout_ms = 3500
nameserver_allow_cidrs = []
nameserver_deny_cidrs = []

[filter]
exact_allow = ["allow.blocked.example"]
exact_block = ["x.example"]
suffix_allow = ["*.safe.example"]
suffix_block = ["*.example"]
block_mode = "nx_domain"   # or "sinkhole"
sinkhole_ipv4 = "0.0.0.0"
sinkhole_ipv6 = "::"
sinkhole_ttl = 60

[limits]
max_post_body_bytes = 4096
max_get_dns_param_bytes = 8192
max_dns_wire_bytes = 4096
max_json_name_bytes = 255
max_concurrent_requests = 10000
http_request_timeout_ms = 5000

[readiness]
startup_self_check = true
self_check_name = "."

[logging]
json = false
filter = "info,polaris=info"
```

Filter precedence is: exact allow, exact block, suffix allow, suffix block,
then allow. Names are normalized to lowercase A-labels (IDN) before matching.
A suffix rule such as `*.example` or `.example` matches `example` itself and
every name below it. In `sinkhole` mode, blocked A/AAAA (and ANY) queries are
answered with the sinkhole addresses; other types get an empty answer.

The logging filter takes comma-separated directives: a bare level
(`trace`, `debug`, `info`, `warn`, `error`, `off`) for everything, or
`target=level` for one logger. An invalid filter falls back to
`info,polaris=info`. With `json = true` each log line is a JSON object.

## Library use

```python
from polaris.config import PolarisConfig
from polaris.filter import FilterSnapshot, NormalizedName

cfg = PolarisConfig.from_mapping({"filter": {"suffix_block": ["*.example"]}})
snapshot = FilterSnapshot.from_config(cfg.filter)
decision = snapshot.evaluate(NormalizedName.parse("www.example"))
print(decision.is_blocked())  # True
```

`polaris.dnswire` parses and validates wire messages
(`parse_dns_message`, `prepare_dns_request`) and builds responses
(`blocked_response`, `resolved_response`, `prepared_error_response`,
`response_to_wire`). `polaris.state.AppState` ties the filter, the
`polaris.resolver.ResolverManager` and the readiness state together, and
`polaris.app.build_app` returns the aiohttp application for it.

## What it does not do

- It serves plain HTTP only; TLS must be terminated in front of it.
- Trust anchors are loaded, counted and reported by `/readyz`, but answers
  are not DNSSEC-validated locally: the AD flag is never set by Polaris, and
  in forwarding mode the upstream's answer is returned as received.
- Filter rules are read once at startup; there is no reload. Cache purging
  exists as `AppState.purge_cache_generation()` but no HTTP endpoint or
  signal triggers it.
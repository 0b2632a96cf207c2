from pathlib import Path

import pytest

from polaris.config import (
    BlockMode,
    FilterConfig,
    LimitsConfig,
    PolarisConfig,
    ResolverConfig,
)


def test_defaults_match_documented_values():
    cfg = PolarisConfig()
    assert cfg.server.bind == ("0.0.0.0", 8053)
    assert cfg.resolver.root_hints_path == Path("config/root.hints")
    assert cfg.resolver.forward_upstreams == []
    assert cfg.resolver.trust_anchor_path is None
    assert cfg.resolver.ns_cache_size == 2048
    assert cfg.resolver.record_cache_size == 1_048_576
    assert cfg.resolver.recursion_limit == 16
    assert cfg.resolver.ns_recursion_limit == 16
    assert cfg.resolver.resolve_timeout_ms == 3500
    assert cfg.filter.block_mode is BlockMode.NX_DOMAIN
    assert cfg.filter.sinkhole_ipv4 == "0.0.0.0"
    assert cfg.filter.sinkhole_ipv6 == "::"
    assert cfg.filter.sinkhole_ttl == 60
    assert cfg.limits.max_post_body_bytes == 4096
    assert cfg.limits.max_get_dns_param_bytes == 8192
    assert cfg.limits.max_dns_wire_bytes == 4096
    assert cfg.limits.max_json_name_bytes == 255
    assert cfg.limits.max_concurrent_requests == 10_000
    assert cfg.limits.http_request_timeout_ms == 5000
    assert cfg.readiness.startup_self_check is True
    assert cfg.readiness.self_check_name == "."
    assert cfg.logging.json is False
    assert cfg.logging.filter == "info,polaris=info"


def test_empty_mapping_equals_defaults():
    assert PolarisConfig.from_mapping({}) == PolarisConfig()


def test_partial_section_keeps_other_defaults():
    cfg = PolarisConfig.from_mapping(
        {"resolver": {"forward_upstreams": ["9.9.9.9"], "recursion_limit": 8}}
    )
    assert cfg.resolver.forward_upstreams == ["9.9.9.9"]
    assert cfg.resolver.recursion_limit == 8
    assert cfg.resolver.ns_recursion_limit == ResolverConfig().ns_recursion_limit
    assert cfg.limits == LimitsConfig()


def test_block_mode_sinkhole():
    cfg = PolarisConfig.from_mapping({"filter": {"block_mode": "sinkhole"}})
    assert cfg.filter.block_mode is BlockMode.SINKHOLE
    assert cfg.filter.sinkhole_ttl == FilterConfig().sinkhole_ttl


def test_invalid_block_mode_rejected():
    with pytest.raises(ValueError):
        PolarisConfig.from_mapping({"filter": {"block_mode": "refuse"}})


def test_ipv6_bind_address():
    cfg = PolarisConfig.from_mapping({"server": {"bind": "[::1]:9053"}})
    assert cfg.server.bind == ("::1", 9053)


def test_ipv4_bind_address():
    cfg = PolarisConfig.from_mapping({"server": {"bind": "127.0.0.1:8080"}})
    assert cfg.server.bind == ("127.0.0.1", 8080)


@pytest.mark.parametrize(
    "bind", ["localhost:80", "0.0.0.0", "0.0.0.0:70000", "[::1]9000", "::1:53", "1.2.3.4:x"]
)
def test_invalid_bind_rejected(bind):
    with pytest.raises(ValueError):
        PolarisConfig.from_mapping({"server": {"bind": bind}})


@pytest.mark.parametrize("value", [256, -1, True, "16", 1.5])
def test_recursion_limit_must_be_u8(value):
    with pytest.raises(ValueError):
        PolarisConfig.from_mapping({"resolver": {"recursion_limit": value}})


def test_string_list_with_non_string_rejected():
    with pytest.raises(ValueError):
        PolarisConfig.from_mapping({"filter": {"exact_block": ["a.example", 3]}})


def test_section_must_be_table():
    with pytest.raises(ValueError):
        PolarisConfig.from_mapping({"limits": 5})


def test_unknown_keys_are_ignored():
    cfg = PolarisConfig.from_mapping({"extra": {"x": 1}, "logging": {"json": True, "other": 2}})
    assert cfg.logging.json is True
    assert cfg.logging.filter == "info,polaris=info"


def test_trust_anchor_path_is_path():
    cfg = PolarisConfig.from_mapping({"resolver": {"trust_anchor_path": "anchors/root.key"}})
    assert cfg.resolver.trust_anchor_path == Path("anchors/root.key")


def test_load_from_file(tmp_path):
    path = tmp_path / "polaris.toml"
    path.write_text(
        "[server]\n"
        'bind = "127.0.0.1:8053"\n'
        "[filter]\n"
        'suffix_block = ["*.ads.example"]\n'
        'block_mode = "sinkhole"\n'
        "[readiness]\n"
        "startup_self_check = false\n",
        encoding="utf-8",
    )
    cfg = PolarisConfig.load(path)
    assert cfg.server.bind == ("127.0.0.1", 8053)
    assert cfg.filter.suffix_block == ["*.ads.example"]
    assert cfg.filter.block_mode is BlockMode.SINKHOLE
    assert cfg.readiness.startup_self_check is False


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        PolarisConfig.load(tmp_path / "absent.toml")


def test_load_invalid_toml_raises(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("[server\nbind = ", encoding="utf-8")
    with pytest.raises(ValueError, match="failed to parse config file"):
        PolarisConfig.load(path)


def test_load_wrong_type_raises(tmp_path):
    path = tmp_path / "typed.toml"
    path.write_text("[limits]\nmax_post_body_bytes = \"big\"\n", encoding="utf-8")
    with pytest.raises(ValueError, match="max_post_body_bytes"):
        PolarisConfig.load(path)
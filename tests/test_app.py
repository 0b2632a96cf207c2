import json
import logging

import dns.message
import dns.rcode
import pytest
from aiohttp import test_utils

from polaris.app import build_app, init_logging, load_config, main
from polaris.config import (
    FilterConfig,
    LimitsConfig,
    LoggingConfig,
    PolarisConfig,
    ReadinessConfig,
    ResolverConfig,
)
from polaris.state import AppState


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_level = root.level
    saved_handlers = list(root.handlers)
    polaris_logger = logging.getLogger("polaris")
    saved_polaris = polaris_logger.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    polaris_logger.setLevel(saved_polaris)


def _make_state(tmp_path, limits=None):
    hints = tmp_path / "root.hints"
    hints.write_text("a.root-servers.net. 3600000 A 192.0.2.1\n")
    config = PolarisConfig(
        resolver=ResolverConfig(root_hints_path=hints, resolve_timeout_ms=50),
        filter=FilterConfig(exact_block=["blocked.example"]),
        limits=limits or LimitsConfig(),
        readiness=ReadinessConfig(startup_self_check=False),
    )
    return AppState(config)


def _levels_after_init(config):
    """Run init_logging and report the resulting root and polaris levels."""
    init_logging(config)
    return logging.getLogger().level, logging.getLogger("polaris").level


def _json_entry_after_init(config):
    """Run init_logging and format a sample record with the installed handler."""
    init_logging(config)
    handler = logging.getLogger().handlers[0]
    record = logging.LogRecord("polaris", logging.INFO, __file__, 1, "hello %s", ("there",), None)
    return json.loads(handler.format(record))


@pytest.mark.asyncio
async def test_routes(tmp_path):
    app = build_app(_make_state(tmp_path))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.get("/healthz")
        assert (await resp.json())["service"] == "polaris"
        resp = await client.get("/readyz")
        assert resp.status == 503
        resp = await client.get("/nowhere")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_wire_query_through_app(tmp_path):
    query = dns.message.make_query("blocked.example.", "A")
    app = build_app(_make_state(tmp_path))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(
            "/dns-query",
            data=query.to_wire(),
            headers={"Content-Type": "application/dns-message"},
        )
        answer = dns.message.from_wire(await resp.read())
        assert answer.rcode() == dns.rcode.NXDOMAIN
        assert answer.id == query.id


@pytest.mark.asyncio
async def test_post_body_limit(tmp_path):
    app = build_app(_make_state(tmp_path, limits=LimitsConfig(max_post_body_bytes=16)))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(
            "/dns-query",
            data=b"x" * 64,
            headers={"Content-Type": "application/dns-message"},
        )
        assert resp.status == 413


def test_load_config_missing_file_gives_defaults(tmp_path):
    assert load_config(tmp_path / "absent.toml") == PolarisConfig()


def test_load_config_reads_file(tmp_path):
    path = tmp_path / "polaris.toml"
    path.write_text('[server]\nbind = "127.0.0.1:9000"\n')
    assert load_config(path).server.bind == ("127.0.0.1", 9000)


def test_init_logging_levels(restore_logging):
    levels = _levels_after_init(PolarisConfig(logging=LoggingConfig(filter="debug,polaris=warn")))
    assert levels == (logging.DEBUG, logging.WARNING)


def test_init_logging_bad_filter_falls_back(restore_logging):
    levels = _levels_after_init(PolarisConfig(logging=LoggingConfig(filter="polaris=loud")))
    assert levels == (logging.INFO, logging.INFO)


def test_init_logging_json(restore_logging):
    entry = _json_entry_after_init(PolarisConfig(logging=LoggingConfig(json=True)))
    assert entry["message"] == "hello there"
    assert entry["target"] == "polaris"
    assert entry["level"] == "INFO"


def test_main_fails_without_root_hints(tmp_path, monkeypatch, restore_logging, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["--config", str(tmp_path / "absent.toml")]) == 1
    assert "failed to initialize app state" in capsys.readouterr().err


def test_main_fails_on_bad_config(tmp_path, restore_logging, capsys):
    path = tmp_path / "polaris.toml"
    path.write_text("[server\n")
    assert main(["--config", str(path)]) == 1
    assert "failed to parse config file" in capsys.readouterr().err


def test_main_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out.startswith("polaris ")
"""Application wiring and the service command."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import signal
import sys
import time
from pathlib import Path
from typing import Any

from aiohttp import web

from polaris.config import PolarisConfig
from polaris.handlers import STATE_KEY, doh_query_get, doh_query_post, healthz, readyz
from polaris.state import AppState

logger = logging.getLogger("polaris")

_VERSION = "0.1.0"
_DEFAULT_CONFIG = "config/polaris.toml"
_DEFAULT_LOG_FILTER = "info,polaris=info"
_TRACE = 5
_LEVELS = {
    "trace": _TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 10,
}
_TARGET = re.compile(r"[A-Za-z_][\w:.\-]*")


def _concurrency_limit(limit: int) -> Any:
    semaphore = asyncio.Semaphore(limit)

    @web.middleware
    async def middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        async with semaphore:
            return await handler(request)

    return middleware


@web.middleware
async def _trace(request: web.Request, handler: Any) -> web.StreamResponse:
    started = time.perf_counter()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as exc:
        status = exc.status
        raise
    finally:
        logger.info(
            "%s %s -> %d in %.1f ms",
            request.method,
            request.path,
            status,
            (time.perf_counter() - started) * 1000,
        )


def build_app(state: AppState) -> web.Application:
    """Builds the HTTP application with its routes and limits."""
    limits = state.config.limits
    app = web.Application(
        client_max_size=limits.max_post_body_bytes,
        middlewares=[_trace, _concurrency_limit(limits.max_concurrent_requests)],
    )
    app[STATE_KEY] = state
    app.router.add_get("/dns-query", doh_query_get)
    app.router.add_post("/dns-query", doh_query_post)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/readyz", readyz)
    return app


def load_config(path: str | Path) -> PolarisConfig:
    """Loads the configuration file, or the defaults when it does not exist."""
    path = Path(path)
    if path.exists():
        return PolarisConfig.load(path)
    return PolarisConfig()


def _parse_log_filter(text: str) -> tuple[int, dict[str, int]]:
    root = logging.ERROR
    targets: dict[str, int] = {}
    for raw in text.split(","):
        directive = raw.strip()
        if not directive:
            continue
        target, sep, level = directive.partition("=")
        if sep:
            level = level.strip().lower()
            target = target.strip()
            if level not in _LEVELS or not _TARGET.fullmatch(target):
                raise ValueError(f"invalid log directive: {directive}")
            targets[target.replace("::", ".")] = _LEVELS[level]
        elif directive.lower() in _LEVELS:
            root = _LEVELS[directive.lower()]
        elif _TARGET.fullmatch(directive):
            targets[directive.replace("::", ".")] = _TRACE
        else:
            raise ValueError(f"invalid log directive: {directive}")
    return root, targets


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "target": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def init_logging(config: PolarisConfig) -> None:
    """Configures logging levels and format from the logging section."""
    logging.addLevelName(_TRACE, "TRACE")
    try:
        root_level, targets = _parse_log_filter(config.logging.filter)
    except ValueError:
        root_level, targets = _parse_log_filter(_DEFAULT_LOG_FILTER)

    handler = logging.StreamHandler(sys.stderr)
    if config.logging.json:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(root_level)
    for target, level in targets.items():
        logging.getLogger(target).setLevel(level)


async def _wait_for_shutdown() -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    installed = []
    for name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            logger.error("%s handler failed: %s", name, exc)
            continue
        installed.append(sig)
    try:
        await stop.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _serve(state: AppState) -> None:
    await state.run_startup_self_check()
    host, port = state.config.server.bind
    bind = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
    runner = web.AppRunner(build_app(state))
    await runner.setup()
    try:
        site = web.TCPSite(runner, host, port)
        try:
            await site.start()
        except OSError as exc:
            raise OSError(f"failed to bind {bind}: {exc}") from exc
        logger.info("polaris starting on %s", bind)
        await _wait_for_shutdown()
    finally:
        await runner.cleanup()
    logger.info("polaris stopped")


def main(argv: list[str] | None = None) -> int:
    """Runs the DoH service until interrupted."""
    parser = argparse.ArgumentParser(
        prog="polaris", description="Polaris: lightweight DoH resolver"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("POLARIS_CONFIG", _DEFAULT_CONFIG)),
        help="path to the TOML configuration file",
    )
    parser.add_argument("--version", action="version", version=f"polaris {_VERSION}")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        init_logging(config)
        try:
            state = AppState(config)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"failed to initialize app state: {exc}") from exc
        asyncio.run(_serve(state))
    except KeyboardInterrupt:
        logger.info("polaris stopped")
    except (OSError, ValueError, RuntimeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0
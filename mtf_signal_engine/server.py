from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from aiohttp import web

from .config import PRESETS, Config, default_config
from .cooldown import CooldownGate, InMemoryCooldownStore
from .pipeline import SignalPipeline

log = logging.getLogger("server")

PIPELINES_KEY = web.AppKey("pipelines", dict)
CONFIG_KEY = web.AppKey("config", Config)


def _error(status: int, message: str, detail: Optional[str] = None) -> web.Response:
    body: Dict[str, str] = {"error": message}
    if detail is not None:
        body["detail"] = detail
    return web.json_response(body, status=status)


def build_pipelines(cfg: Config) -> Dict[str, SignalPipeline]:
    """One pipeline per preset; all of them share a single cooldown store."""
    gate = None
    if cfg.cooldown.enabled:
        gate = CooldownGate(InMemoryCooldownStore(), window_s=cfg.cooldown.window_s)
    return {name: SignalPipeline(cfg.strategy(name), gate) for name in PRESETS}


async def analyze(request: web.Request) -> web.Response:
    if request.method != "POST":
        return _error(405, "Only POST allowed")

    cfg = request.app[CONFIG_KEY]
    preset = request.match_info.get("preset") or cfg.server.default_preset
    pipeline = request.app[PIPELINES_KEY].get(preset)
    if pipeline is None:
        return _error(404, f"unknown preset {preset}")

    try:
        payload = await request.json()
    except ValueError:
        return _error(400, "invalid JSON body")
    if not isinstance(payload, dict):
        return _error(400, "body must be a JSON object")

    try:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, pipeline.analyze, payload)
    except Exception as e:
        log.exception("analyze_failed preset=%s symbol=%s err=%s", preset, payload.get("symbol"), e)
        return _error(500, "internal error", str(e))
    return web.json_response(result)


async def health(request: web.Request) -> web.Response:
    cfg = request.app[CONFIG_KEY]
    return web.json_response({
        "status": "ok",
        "name": cfg.app.name,
        "presets": sorted(request.app[PIPELINES_KEY]),
        "default_preset": cfg.server.default_preset,
    })


def create_app(cfg: Optional[Config] = None) -> web.Application:
    cfg = cfg or default_config()
    app = web.Application()
    app[CONFIG_KEY] = cfg
    app[PIPELINES_KEY] = build_pipelines(cfg)
    app.router.add_route("*", "/analyze", analyze)
    app.router.add_route("*", "/analyze/{preset}", analyze)
    app.router.add_get("/health", health)
    return app


def run(cfg: Config) -> None:
    app = create_app(cfg)
    log.info("serving host=%s port=%s default_preset=%s", cfg.server.host, cfg.server.port, cfg.server.default_preset)
    web.run_app(app, host=cfg.server.host, port=cfg.server.port, print=None)

from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import PRESETS, load_config, log_strategy_signature
from .cooldown import CooldownGate
from .pipeline import SignalPipeline


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _setup_logging(level: str) -> None:
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logging.basicConfig(level=lvl, format=LOG_FORMAT)
    # request access lines only at WARNING and above
    logging.getLogger("aiohttp.access").setLevel(max(lvl, logging.WARNING))


def _analyze_file(cfg, preset: str, path: str) -> int:
    strategy = cfg.strategy(preset)
    log_strategy_signature(strategy)
    gate = CooldownGate(window_s=cfg.cooldown.window_s) if cfg.cooldown.enabled else None
    pipeline = SignalPipeline(strategy, gate)

    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    payloads = payload if isinstance(payload, list) else [payload]
    for p in payloads:
        result = pipeline.analyze(p)
        sys.stdout.write(json.dumps(result, indent=2, default=str) + "\n")
    return 0


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="MTF Signal Engine - multi-timeframe signal decisions")
    p.add_argument("--config", default=None, help="Path to YAML config")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP server")

    an = sub.add_parser("analyze", help="Analyze a JSON payload file (object or list of objects)")
    an.add_argument("--input", required=True, help="Path to JSON payload")
    an.add_argument("--preset", default=None, choices=sorted(PRESETS), help="Strategy preset")

    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, TypeError) as e:
        _setup_logging("INFO")
        logging.getLogger("main").error("config_invalid path=%s err=%s", args.config, e)
        return 2
    _setup_logging(cfg.app.log_level)

    try:
        if args.command == "analyze":
            return _analyze_file(cfg, args.preset or cfg.server.default_preset, args.input)
        from .server import run

        run(cfg)
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

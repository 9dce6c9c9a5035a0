from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import time
from dataclasses import asdict

import structlog

from pulsewatch.config import EngineConfig, load_config
from pulsewatch.engine import Engine, MonitorNotFoundError, WebhookNotConfiguredError, seed_monitors
from pulsewatch.store import SqliteStore
from pulsewatch.webhook import WebhookTemplateError


logger = structlog.get_logger("pulsewatch")


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Webhook URLs often embed secrets; keep request lines out of the logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_loop(engine: Engine, config: EngineConfig, *, once: bool) -> int:
    interval = max(1, int(config.interval_seconds))
    while True:
        started = time.monotonic()
        await engine.run_tick()
        if once:
            return 0
        sleep_for = max(0.0, interval - (time.monotonic() - started))
        logger.debug("Sleeping until next tick", seconds=round(sleep_for, 3))
        await asyncio.sleep(sleep_for)


async def _run(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SqliteStore(config.db_path)
    try:
        seeded = seed_monitors(store, config)
        if seeded:
            logger.info("Seeded monitors from config", count=seeded)
        engine = Engine(store, config)

        if args.check:
            result = await engine.check_one(args.check)
            print(json.dumps(result.to_dict(), ensure_ascii=False))
            return 0
        if args.test_webhook:
            delivered = await engine.test_webhook(args.test_webhook)
            print(json.dumps({"success": delivered}))
            return 0 if delivered else 1
        if args.stats:
            print(json.dumps(asdict(engine.stats(args.stats))))
            return 0

        return await run_loop(engine, config, once=bool(args.once))
    except (MonitorNotFoundError, WebhookNotConfiguredError, WebhookTemplateError) as e:
        logger.error("Request failed", error=str(e))
        return 1
    finally:
        store.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Pulsewatch uptime check engine")
    parser.add_argument(
        "--config",
        default=os.getenv("PULSEWATCH_CONFIG", "config/pulsewatch.yaml"),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--check", metavar="MONITOR_ID", help="Check a single monitor now and print the result")
    parser.add_argument("--test-webhook", metavar="MONITOR_ID", help="Send a test down notification")
    parser.add_argument("--stats", metavar="MONITOR_ID", help="Print uptime statistics for a monitor")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(args.log_level or config.log_level)

    return asyncio.run(_run(args, config))


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import logging
import os
import time

from .config import Config, ConfigError, load_config
from .db import connect_db
from .llm.limiter import ConcurrencyLimiter
from .pipeline import build_limiter, build_pipeline, sweep
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("autopress.worker")


def run_once(
    config: Config,
    *,
    limit: int | None = None,
    limiter: ConcurrencyLimiter | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    """One bounded tick: due discovery, one processing batch, housekeeping."""
    logger = logger or _setup_logging()
    conn = connect_db(config.paths.state_db)
    try:
        pipeline = build_pipeline(config, conn, limiter=limiter)
        discovery = pipeline.discovery.discover_all()
        processing = pipeline.processor.process_batch(limit)
        housekeeping = sweep(pipeline)
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "worker_tick",
        campaigns=discovery["total"],
        items_added=discovery["items_added"],
        processed=processing["processed"],
        failed=processing["failed"],
        reclaimed=housekeeping["reclaimed"],
    )
    return {"discovery": discovery, "processing": processing, "sweep": housekeeping}


def run_loop(config: Config, sleep_seconds: int, limit: int | None = None) -> int:
    logger = _setup_logging()
    limiter = build_limiter(config)
    while True:
        try:
            run_once(config, limit=limit, limiter=limiter, logger=logger)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "worker_tick_failed", error=f"{type(exc).__name__}: {exc}")
        time.sleep(sleep_seconds)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autopress-worker")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument(
        "--sleep",
        type=int,
        default=int(os.environ.get("AP_WORKER_SLEEP", "60")),
        help="Sleep seconds between ticks",
    )
    parser.add_argument("--limit", type=int, default=None, help="Queue items per tick")
    parser.add_argument("--config", default=None, help="Path to config.yml")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        run_once(config, limit=args.limit, logger=logger)
        return 0
    return run_loop(config, args.sleep, args.limit)


if __name__ == "__main__":
    raise SystemExit(main())

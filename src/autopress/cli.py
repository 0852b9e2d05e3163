from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

import yaml

from .config import Config, ConfigError, load_config
from .db import connect_db
from .errors import PipelineError
from .models import DiscoveryFailed, DiscoverySuccess
from .pipeline import Pipeline, build_pipeline, sweep
from .services import campaign_service
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("autopress.cli")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _run_with_pipeline(args: argparse.Namespace, logger: logging.Logger, action) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        return action(build_pipeline(config, conn), args, logger)
    except PipelineError as exc:
        log_event(logger, logging.ERROR, "command_failed", command=args.command, error=exc.describe())
        return 1
    finally:
        conn.close()


def _load_campaign_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"campaign file not found: {path}") from exc
    if isinstance(loaded, dict):
        loaded = loaded.get("campaigns")
    if not isinstance(loaded, list) or not all(isinstance(item, dict) for item in loaded):
        raise ConfigError(f"{path} must contain a list of campaigns")
    return loaded


def _cmd_campaigns_import(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        campaigns = _load_campaign_file(args.path)
    except (ConfigError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "campaigns_import_error", error=str(exc))
        return 1
    for payload in campaigns:
        try:
            campaign = campaign_service.upsert_campaign(pipeline.conn, payload)
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "campaigns_import_error",
                campaign_id=payload.get("id"),
                error=str(exc),
            )
            return 1
        log_event(logger, logging.INFO, "campaign_imported", campaign_id=campaign.id, name=campaign.name)
    log_event(logger, logging.INFO, "campaigns_imported", count=len(campaigns))
    return 0


def _cmd_campaigns_list(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    campaigns = campaign_service.list_campaigns(pipeline.conn, args.status)
    for campaign in campaigns:
        log_event(
            logger,
            logging.INFO,
            "campaign",
            campaign_id=campaign.id,
            name=campaign.name,
            type=campaign.campaign_type,
            status=campaign.status,
            sources=len(campaign.sources),
            consecutive_errors=campaign.consecutive_errors,
            last_status=campaign.last_status,
        )
    log_event(logger, logging.INFO, "campaigns_listed", count=len(campaigns))
    return 0


def _cmd_discover(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    if not args.campaign:
        totals = pipeline.discovery.discover_all()
        log_event(logger, logging.INFO, "discovery_summary", **totals)
        return 0
    if args.force:
        outcome = pipeline.discovery.force_discover(args.campaign)
    else:
        outcome = pipeline.discovery.discover(campaign_service.require_campaign(pipeline.conn, args.campaign))
    if isinstance(outcome, DiscoverySuccess):
        log_event(
            logger,
            logging.INFO,
            "discovery_summary",
            campaign_id=outcome.campaign_id,
            items_found=outcome.items_found,
            items_added=outcome.items_added,
            items_skipped=outcome.items_skipped,
        )
        return 0
    if isinstance(outcome, DiscoveryFailed):
        log_event(
            logger,
            logging.ERROR,
            "discovery_summary",
            campaign_id=outcome.campaign_id,
            code=outcome.code,
            paused=outcome.paused,
            error=outcome.reason,
        )
        return 1
    log_event(logger, logging.INFO, "discovery_skipped", campaign_id=outcome.campaign_id, reason=outcome.reason)
    return 0


def _cmd_process(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    summary = pipeline.processor.process_batch(args.limit, args.campaign)
    for error in summary["errors"]:
        log_event(logger, logging.WARNING, "item_failed", **error)
    log_event(
        logger,
        logging.INFO,
        "process_summary",
        processed=summary["processed"],
        succeeded=summary["succeeded"],
        failed=summary["failed"],
        skipped=summary["skipped"],
        posts_created=summary["posts_created"],
    )
    return 0 if not summary["failed"] else 2


def _cmd_queue_stats(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "queue_stats", campaign_id=args.campaign or "all", **pipeline.queue.stats(args.campaign))
    return 0


def _cmd_queue_reclaim(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    minutes = args.minutes if args.minutes is not None else pipeline.config.queue.stuck_minutes
    count = pipeline.queue.reclaim_stuck(minutes * 60)
    log_event(logger, logging.INFO, "queue_reclaimed", count=count, minutes=minutes)
    return 0


def _cmd_queue_purge(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    days = args.days if args.days is not None else pipeline.config.queue.retention_days
    count = pipeline.queue.purge_completed(days * 86400)
    log_event(logger, logging.INFO, "queue_purged", count=count, days=days)
    return 0


def _cmd_queue_retry(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    pipeline.queue.get(args.item_id)
    if not pipeline.queue.requeue_failed(args.item_id):
        log_event(logger, logging.ERROR, "queue_retry_refused", item_id=args.item_id, reason="not_failed")
        return 1
    log_event(logger, logging.INFO, "queue_item_requeued", item_id=args.item_id)
    return 0


def _cmd_keys_add(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    secret = args.secret
    if secret is None:
        secret = sys.stdin.readline().strip()
    key = pipeline.keys.add_key(
        args.provider,
        secret,
        label=args.label or "",
        daily_quota=args.daily_quota,
        monthly_quota=args.monthly_quota,
    )
    log_event(logger, logging.INFO, "key_added", key_id=key.id, provider=key.provider, last4=key.secret_last4)
    return 0


def _cmd_keys_list(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    keys = pipeline.keys.list_keys(args.provider)
    for key in keys:
        log_event(
            logger,
            logging.INFO,
            "key",
            key_id=key.id,
            provider=key.provider,
            label=key.label,
            last4=key.secret_last4,
            status=key.status,
            requests_today=key.requests_today,
            daily_quota=key.daily_quota,
            requests_month=key.requests_month,
            monthly_quota=key.monthly_quota,
            tokens_used=key.tokens_used,
        )
    log_event(logger, logging.INFO, "keys_listed", count=len(keys))
    return 0


def _cmd_keys_delete(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    pipeline.keys.delete_key(args.key_id)
    return 0


def _cmd_keys_reset_counters(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    if args.monthly:
        pipeline.keys.reset_monthly_counters()
    else:
        pipeline.keys.reset_daily_counters()
    return 0


def _cmd_sweep(pipeline: Pipeline, args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "sweep_completed", **sweep(pipeline))
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    connect_db(config.paths.state_db).close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _with_pipeline(action):
    def run(args: argparse.Namespace, logger: logging.Logger) -> int:
        return _run_with_pipeline(args, logger, action)

    return run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autopress", description="autopress content pipeline")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to AP_CONFIG_PATH or ./config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    campaigns_parser = subparsers.add_parser("campaigns", help="Campaign definitions")
    campaigns_subparsers = campaigns_parser.add_subparsers(dest="campaigns_command", required=True)
    campaigns_import = campaigns_subparsers.add_parser("import", help="Import campaigns from YAML")
    campaigns_import.add_argument("path", help="YAML file with a campaigns list")
    campaigns_import.set_defaults(func=_with_pipeline(_cmd_campaigns_import))
    campaigns_list = campaigns_subparsers.add_parser("list", help="List campaigns")
    campaigns_list.add_argument("--status", default=None, help="Only campaigns with this status")
    campaigns_list.set_defaults(func=_with_pipeline(_cmd_campaigns_list))

    discover_parser = subparsers.add_parser("discover", help="Run discovery for due campaigns")
    discover_parser.add_argument("--campaign", default=None, help="Only this campaign")
    discover_parser.add_argument("--force", action="store_true", help="Ignore the discovery interval")
    discover_parser.set_defaults(func=_with_pipeline(_cmd_discover))

    process_parser = subparsers.add_parser("process", help="Process a batch of queued items")
    process_parser.add_argument("--limit", type=int, default=None, help="Items to process")
    process_parser.add_argument("--campaign", default=None, help="Only this campaign")
    process_parser.set_defaults(func=_with_pipeline(_cmd_process))

    queue_parser = subparsers.add_parser("queue", help="Queue maintenance")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_stats = queue_subparsers.add_parser("stats", help="Counts per status")
    queue_stats.add_argument("--campaign", default=None)
    queue_stats.set_defaults(func=_with_pipeline(_cmd_queue_stats))
    queue_reclaim = queue_subparsers.add_parser("reclaim", help="Return stuck items to pending")
    queue_reclaim.add_argument("--minutes", type=int, default=None)
    queue_reclaim.set_defaults(func=_with_pipeline(_cmd_queue_reclaim))
    queue_purge = queue_subparsers.add_parser("purge", help="Delete old finished items")
    queue_purge.add_argument("--days", type=int, default=None)
    queue_purge.set_defaults(func=_with_pipeline(_cmd_queue_purge))
    queue_retry = queue_subparsers.add_parser("retry", help="Requeue a failed item")
    queue_retry.add_argument("item_id", type=int)
    queue_retry.set_defaults(func=_with_pipeline(_cmd_queue_retry))

    keys_parser = subparsers.add_parser("keys", help="Provider credentials")
    keys_subparsers = keys_parser.add_subparsers(dest="keys_command", required=True)
    keys_add = keys_subparsers.add_parser("add", help="Store a credential (secret read from stdin if omitted)")
    keys_add.add_argument("provider")
    keys_add.add_argument("--secret", default=None)
    keys_add.add_argument("--label", default=None)
    keys_add.add_argument("--daily-quota", type=int, default=0)
    keys_add.add_argument("--monthly-quota", type=int, default=0)
    keys_add.set_defaults(func=_with_pipeline(_cmd_keys_add))
    keys_list = keys_subparsers.add_parser("list", help="List credentials")
    keys_list.add_argument("--provider", default=None)
    keys_list.set_defaults(func=_with_pipeline(_cmd_keys_list))
    keys_delete = keys_subparsers.add_parser("delete", help="Delete a credential")
    keys_delete.add_argument("key_id", type=int)
    keys_delete.set_defaults(func=_with_pipeline(_cmd_keys_delete))
    keys_reset = keys_subparsers.add_parser("reset-counters", help="Zero request counters")
    keys_reset.add_argument("--monthly", action="store_true", help="Reset monthly instead of daily")
    keys_reset.set_defaults(func=_with_pipeline(_cmd_keys_reset_counters))

    sweep_parser = subparsers.add_parser("sweep", help="Reclaim stuck work and purge old data")
    sweep_parser.set_defaults(func=_with_pipeline(_cmd_sweep))

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())

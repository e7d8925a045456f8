from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time

from .config import load_config
from .errors import SubscriptionExists
from .rules.resolver import parse_watch_payload
from .runner import RunOnceReport, build_runner
from .state.sqlite_store import SqliteStateStore


logger = logging.getLogger("domalert")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="domalert", description="Domain marketplace alert sentinel (polling)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env DOMALERT_LOG_LEVEL or INFO",
    )
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run poll cycles")
    mode = run.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Run one poll cycle, print its status payload and exit")
    mode.add_argument("--daemon", action="store_true", help="Run forever with poll interval")

    subscribe = sub.add_parser("subscribe", help="Subscribe a chat to alerts for a domain")
    subscribe.add_argument("subscriber_id", help="Telegram chat id")
    subscribe.add_argument("domain", nargs="?", default=None, help="Domain name, e.g. crypto.ai")
    subscribe.add_argument("--payload", default=None, help="Deep-link payload, e.g. watch_crypto_ai_alice")

    unsubscribe = sub.add_parser("unsubscribe", help="Remove a subscription")
    unsubscribe.add_argument("subscriber_id")
    unsubscribe.add_argument("domain")

    listing = sub.add_parser("subscriptions", help="List subscriptions")
    listing.add_argument("--domain", default=None, help="Only show subscribers of this domain")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def exit_code_for(report: RunOnceReport) -> int:
    return 1 if report.status == "failed" else 0


def _log_report(report: RunOnceReport, *, prefix: str) -> None:
    logger.info(
        "%s: status=%s duration_ms=%d cursor=%d->%d fetched=%d new=%d alertable=%d ignored=%d malformed=%d failed=%d "
        "notify_attempts=%d notify_failures=%d resolution_failures=%d",
        prefix,
        report.status,
        report.duration_ms,
        report.cursor_before,
        report.cursor_after,
        report.events_fetched,
        report.events_new,
        report.events_alertable,
        report.events_ignored,
        report.events_malformed,
        report.events_failed,
        report.notify_attempts,
        report.notify_failures,
        report.resolution_failures,
    )


def _cmd_run(args: argparse.Namespace, config) -> int:  # noqa: ANN001
    runner = build_runner(config)
    mode = "daemon" if args.daemon else "once"
    logger.info(
        "domalert start: mode=%s feed=%s limit=%d cursor_key=%s sqlite_path=%s cursor_policy=%s dry_run=%s",
        mode,
        config.feed.url,
        config.feed.limit,
        config.feed.cursor_key,
        config.sqlite_path,
        config.delivery.cursor_policy,
        config.delivery.dry_run,
    )
    if not config.resolve_env(config.feed.api_key_env):
        logger.warning("feed api key is empty: env=%s", config.feed.api_key_env)

    if not args.daemon:
        report = runner.run_once()
        _log_report(report, prefix="once done")
        print(json.dumps(report.to_json_dict(), ensure_ascii=False))
        return exit_code_for(report)

    cycle_id = 0
    while True:
        cycle_id += 1
        try:
            report = runner.run_once()
            _log_report(report, prefix=f"cycle {cycle_id}")
        except Exception:  # noqa: BLE001
            logger.exception("cycle crashed: id=%d", cycle_id)
        time.sleep(max(1, config.poll_interval_seconds))


def _cmd_subscribe(args: argparse.Namespace, store: SqliteStateStore) -> int:
    domain = args.domain
    if args.payload:
        domain, username = parse_watch_payload(args.payload)
        logger.info("parsed watch payload: username=%s domain=%s", username, domain)
    if not domain:
        logger.error("a domain or --payload is required")
        return 2
    try:
        sub = store.create(args.subscriber_id, domain)
    except SubscriptionExists as e:
        logger.warning("%s", e)
        return 0
    print(json.dumps({"subscriber_id": sub.subscriber_id, "domain": sub.domain}, ensure_ascii=False))
    return 0


def _cmd_unsubscribe(args: argparse.Namespace, store: SqliteStateStore) -> int:
    removed = store.delete(args.subscriber_id, args.domain)
    if not removed:
        logger.warning("subscription not found: subscriber_id=%s domain=%s", args.subscriber_id, args.domain)
    return 0


def _cmd_subscriptions(args: argparse.Namespace, store: SqliteStateStore) -> int:
    rows = store.find_by_domain(args.domain) if args.domain else store.list_subscriptions()
    for row in rows:
        print(f"{row.domain}\t{row.subscriber_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("DOMALERT_LOG_LEVEL")
    logging.basicConfig(
        level=_resolve_log_level(args.log_level or env_log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    config = load_config(args.config)
    if args.command == "run":
        return _cmd_run(args, config)

    store = SqliteStateStore(config.sqlite_path)
    store.ensure_schema()
    if args.command == "subscribe":
        return _cmd_subscribe(args, store)
    if args.command == "unsubscribe":
        return _cmd_unsubscribe(args, store)
    return _cmd_subscriptions(args, store)


if __name__ == "__main__":
    raise SystemExit(main())

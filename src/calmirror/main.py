from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

from .calendar_google import GoogleCalendarSource
from .calendar_ics import IcsFeedSource
from .config import AppConfig, load_config
from .errors import ConfigError, SourceAuthError
from .mirror_caldav import CalDavMirror
from .sync import EventSource, SyncDriver

CONFIG_PATH_DEFAULT = "/etc/calmirror/config.yaml"

logger = logging.getLogger(__name__)


def build_source(cfg: AppConfig) -> EventSource:
    if cfg.source.type == "ics":
        return IcsFeedSource(cfg.source.url, timeout=cfg.request_timeout_seconds)

    creds_path = os.environ.get("GOOGLE_CREDENTIALS_JSON", "")
    token_path = os.environ.get("GOOGLE_TOKEN_JSON", "")
    if not creds_path or not token_path:
        raise ConfigError("GOOGLE_CREDENTIALS_JSON and GOOGLE_TOKEN_JSON must be set for a google source")
    source = GoogleCalendarSource(
        cfg.source.calendar_id,
        credentials_path=creds_path,
        token_path=token_path,
        timeout=cfg.request_timeout_seconds,
    )
    source.connect()
    return source


def build_mirror(cfg: AppConfig) -> CalDavMirror:
    user = os.environ.get("MIRROR_USERNAME", "")
    pw = os.environ.get("MIRROR_PASSWORD", "")
    auth = (user, pw) if user else None
    return CalDavMirror(
        cfg.mirror.base_url,
        auth=auth,
        timeout=cfg.request_timeout_seconds,
        id_length=cfg.mirror.id_length,
    )


def build_driver(cfg: AppConfig, dry_run: bool = False) -> SyncDriver:
    return SyncDriver(
        source=build_source(cfg),
        mirror=build_mirror(cfg),
        window=timedelta(days=cfg.window_days),
        interval_seconds=cfg.poll_interval_seconds,
        allow_empty_source=cfg.allow_empty_source,
        fetch_timeout=cfg.request_timeout_seconds * 4,
        dry_run=dry_run,
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame):
        logger.info("Received %s; finishing current cycle then stopping", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(config_path: str = CONFIG_PATH_DEFAULT, once: bool = False, dry_run: bool = False) -> int:
    load_dotenv()
    try:
        cfg = load_config(config_path)
        driver = build_driver(cfg, dry_run=dry_run)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except SourceAuthError as exc:
        logger.error("Source credentials unavailable: %s", exc)
        return 2

    if once:
        report = driver.tick()
        return 0 if report.ok else 1

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    driver.run_forever(stop_event)
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    import argparse

    ap = argparse.ArgumentParser(description="Keep a CalDAV mirror in sync with a source calendar")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--once", action="store_true", help="run a single cycle and exit")
    ap.add_argument("--dry-run", action="store_true", help="log the plan without writing to the mirror")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run(config_path=args.config, once=args.once, dry_run=args.dry_run))


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .app import _get_version, run
from .config import AppConfig, ConfigError, get_user_data_dir, load_config, load_config_from_env
from . import __release_date__

LOGGER = logging.getLogger(__name__)


def _default_config_path() -> Path:
    return get_user_data_dir() / "config.yaml"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailwatch",
        description="Watch an IMAP mailbox and relay alert mails to Telegram.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the YAML config (default: <data dir>/config.yaml).",
    )
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="Read EMAIL_ADDRESS, EMAIL_PASSWORD, IMAP_HOST, IMAP_PORT, "
        "BOT_TOKEN and CHRONOS_CHAT_ID from the environment instead of a file.",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"mailwatch {_get_version()} ({__release_date__})",
    )
    return parser


def _load(args: argparse.Namespace) -> AppConfig:
    if args.from_env:
        return load_config_from_env()
    path = args.config or _default_config_path()
    return load_config(str(path))


def _describe(config: AppConfig) -> str:
    subscribers = config.subscribers
    target = (
        "fixed chat"
        if subscribers.mode == "fixed"
        else f"allow-list of {len(subscribers.allow_list)}"
    )
    return (
        "Configuration OK.\n"
        f"IMAP: {config.imap.host}:{config.imap.port} "
        f"(tls={'on' if config.imap.use_tls else 'off'})\n"
        f"Mailbox: {config.mailbox}\n"
        f"Subscribers: {target}\n"
        f"Poll interval: {config.poll_interval_seconds}s\n"
        f"Log file: {config.log_file}\n"
    )


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        config = _load(args)
    except ConfigError as exc:
        sys.stderr.write(f"Configuration error: {exc}\n")
        return 2

    if args.check_config:
        sys.stdout.write(_describe(config))
        return 0

    run(config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

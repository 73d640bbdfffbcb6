"""Command-line interface for the rss_relay bot."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import pprint
import time
from pathlib import Path
from typing import List, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .commands import CommandHandler
from .config import load_secrets, parse_app_config, parse_env_config, parse_feeds_config
from .exceptions import SendFailure
from .oauth import OAuthSettings, TokenManager
from .reddit import RedditClient
from .scheduler import DeliveryScheduler, SchedulerConfig, make_fetcher
from .subscriptions import SubscriptionRegistry
from .telegram import TelegramClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Relay new items from RSS and Reddit feeds to Telegram chats."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit instead of starting the bot.",
    )
    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Route log records to stderr and, when given, to ``log_file``."""
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def poll_updates(
    client: TelegramClient,
    handler: CommandHandler,
    max_polls: Optional[int] = None,
    retry_delay: float = 5.0,
) -> None:
    """Read chat messages and answer commands until interrupted."""
    offset: Optional[int] = None
    polls = 0
    while max_polls is None or polls < max_polls:
        polls += 1
        try:
            updates = client.get_updates(offset=offset)
        except (requests.RequestException, ValueError) as exc:
            logger.error("Polling error: %s", exc)
            time.sleep(retry_delay)
            continue

        for update in updates:
            offset = update["update_id"] + 1
            message = update.get("message") or {}
            chat = message.get("chat") or {}
            if "id" not in chat:
                continue
            chat_id = str(chat["id"])
            try:
                result = handler.dispatch(chat_id, message.get("text", ""))
            except Exception:  # noqa: BLE001 - one bad update must not stop polling
                logger.exception("Error handling update from chat %s", chat_id)
                continue
            if result is None:
                continue
            try:
                client.send_message(chat_id, result.text, html=False)
            except SendFailure as exc:
                logger.error("Error replying to chat %s: %s", chat_id, exc)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            env_vars = parse_env_config(app_config.env_file)
            os.environ.update(env_vars)

        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        config_dict = dataclasses.asdict(app_config)
        config_dict["database"]["connection_string"] = "***MASKED***"
        logger.info("Active Configuration:\n%s", pprint.pformat(config_dict))

        feeds = parse_feeds_config(app_config.feeds_file)
        secrets = load_secrets()
        if not secrets.telegram_bot_token:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set.")

        try:
            engine = db.init_engine(app_config.database.connection_string)
        except SQLAlchemyError as exc:
            raise RuntimeError(f"Could not open the database: {exc}") from exc
        session_factory = db.get_session_factory(engine)
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1

    tokens = TokenManager(
        OAuthSettings(
            client_id=secrets.reddit_client_id,
            client_secret=secrets.reddit_client_secret,
            redirect_uri=app_config.reddit.redirect_uri,
            user_agent=app_config.reddit.user_agent,
            scopes=app_config.reddit.scopes,
        ),
        session_factory,
    )
    reddit = RedditClient(tokens) if tokens.settings.configured else None
    telegram = TelegramClient(secrets.telegram_bot_token)
    registry = SubscriptionRegistry()
    scheduler = DeliveryScheduler(
        feeds,
        session_factory,
        registry,
        fetch=make_fetcher(reddit),
        send=telegram.send_message,
        config=SchedulerConfig(
            interval_seconds=app_config.check_interval_minutes * 60,
            periodic_limit=app_config.limit,
            manual_limit=app_config.manual_limit,
            send_delay=app_config.send_delay,
            concurrency=app_config.concurrency,
        ),
    )

    if args.once:
        scheduler.run_sweep()
        return 0

    handler = CommandHandler(
        feeds,
        registry,
        scheduler,
        tokens=tokens,
        interval_minutes=app_config.check_interval_minutes,
    )

    logger.info("Starting NewsBot with %d feed(s)", len(feeds))
    scheduler.start()
    try:
        poll_updates(telegram, handler)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error while polling for updates.")
        return 1
    finally:
        scheduler.stop()
    return 0

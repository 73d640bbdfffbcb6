"""Configuration loading for feeds, settings and secrets."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from xml.etree import ElementTree as ET

from .models import FeedConfig, RedditFeed, RedditSource, RssFeed

logger = logging.getLogger(__name__)

REDDIT_SORTS = ("hot", "new", "top", "best", "rising", "controversial")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    connection_string: str = "sqlite:///rss_relay.db"


@dataclass
class RedditConfig:
    redirect_uri: str = "http://localhost:8080/reddit/callback"
    user_agent: str = "rss-relay/0.1"
    scopes: str = "identity read history"


@dataclass
class AppConfig:
    feeds_file: str
    env_file: Optional[str]
    check_interval_minutes: float = 5
    limit: int = 10
    manual_limit: int = 5
    send_delay: float = 0.3
    concurrency: int = 4
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    reddit: RedditConfig = field(default_factory=RedditConfig)


@dataclass
class Secrets:
    telegram_bot_token: Optional[str]
    reddit_client_id: Optional[str]
    reddit_client_secret: Optional[str]


def _parse_reddit_outline(name: str, attrs: Dict[str, str]) -> RedditFeed:
    source_value = (attrs.get("source") or "home").strip().lower()
    try:
        source = RedditSource(source_value)
    except ValueError:
        raise ValueError(
            f"Feed '{name}' has unknown Reddit source '{source_value}'."
        ) from None

    sort = (attrs.get("sort") or "").strip().lower() or None
    if sort and sort not in REDDIT_SORTS:
        raise ValueError(f"Feed '{name}' has unknown sort '{sort}'.")

    target = (attrs.get("target") or "").strip() or None
    if source is RedditSource.SUBREDDIT and not target:
        raise ValueError(f"Feed '{name}' needs a 'target' subreddit.")

    return RedditFeed(name=name, source=source, sort=sort, target=target)


def parse_feeds_config(path: str) -> List[FeedConfig]:
    """Parse the OPML feeds file into validated feed definitions."""
    logger.info("Loading feed configuration from %s", path)
    tree = ET.parse(path)
    root = tree.getroot()
    body = root.find("body")
    feeds: List[FeedConfig] = []
    seen = set()

    def walk(outline: ET.Element) -> None:
        title = outline.attrib.get("title") or outline.attrib.get("text")
        outline_type = (outline.attrib.get("type") or "").lower()

        feed: Optional[FeedConfig] = None
        if outline_type == "rss" and outline.attrib.get("xmlUrl"):
            url = outline.attrib["xmlUrl"]
            feed = RssFeed(name=title or url, url=url)
        elif outline_type == "reddit":
            if not title:
                raise ValueError("Reddit feed outlines need a 'text' attribute.")
            feed = _parse_reddit_outline(title, outline.attrib)

        if feed is not None:
            if feed.key in seen:
                raise ValueError(f"Duplicate feed name: {feed.name}")
            seen.add(feed.key)
            feeds.append(feed)
            logger.debug("Registered feed '%s' (%s)", feed.name, type(feed).__name__)
            return

        for child in outline.findall("outline"):
            walk(child)

    if body is None:
        raise ValueError("feeds.xml is missing the <body> section.")

    for outline in body.findall("outline"):
        walk(outline)

    logger.info("Loaded %d feeds from configuration", len(feeds))
    return feeds


def _config_relative(config_path: Path, value: str) -> str:
    path = Path(value.strip()).expanduser()
    return str(path if path.is_absolute() else (config_path.parent / path).resolve())


def parse_env_config(path: str) -> Dict[str, str]:
    """Read ``<variable name="...">`` entries from an environment XML file.

    Blank names and values are dropped so they cannot clear a variable that
    is already set.
    """
    logger.info("Loading environment configuration from %s", path)
    root = ET.parse(path).getroot()
    pairs = (
        ((var.get("name") or "").strip(), (var.text or "").strip())
        for var in root.iter("variable")
    )
    return {name: value for name, value in pairs if name and value}


def load_secrets() -> Secrets:
    """Read secrets from the environment."""
    return Secrets(
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
        reddit_client_id=os.environ.get("REDDIT_CLIENT_ID") or None,
        reddit_client_secret=os.environ.get("REDDIT_CLIENT_SECRET") or None,
    )


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()

    # Feeds
    feeds_node = root.find("feeds")
    if feeds_node is None or not feeds_node.text:
        raise ValueError("Config missing <feeds> path")
    feeds_file = _config_relative(config_path, feeds_node.text)

    # Env
    env_node = root.find("env")
    env_file = (
        _config_relative(config_path, env_node.text)
        if env_node is not None and env_node.text
        else None
    )

    # Simple values
    interval = float(root.findtext("check-interval-minutes", "5"))
    if interval <= 0:
        raise ValueError("<check-interval-minutes> must be positive.")
    limit = int(root.findtext("limit", "10"))
    manual_limit = int(root.findtext("manual-limit", "5"))
    if limit <= 0 or manual_limit <= 0:
        raise ValueError("<limit> and <manual-limit> must be positive.")
    send_delay = float(root.findtext("send-delay", "0.3"))
    concurrency = int(root.findtext("concurrency", "4"))

    # Logging
    log_node = root.find("logging")
    logging_config = LoggingConfig()
    if log_node is not None:
        logging_config.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            logging_config.file = _config_relative(config_path, log_file)

    # Database
    db_node = root.find("database")
    db_config = DatabaseConfig()
    if db_node is not None:
        connection_string = db_node.findtext("connection-string")
        if connection_string:
            db_config.connection_string = connection_string.strip()

    # Reddit
    reddit_node = root.find("reddit")
    reddit_config = RedditConfig()
    if reddit_node is not None:
        reddit_config.redirect_uri = reddit_node.findtext(
            "redirect-uri", reddit_config.redirect_uri
        ).strip()
        reddit_config.user_agent = reddit_node.findtext(
            "user-agent", reddit_config.user_agent
        ).strip()
        reddit_config.scopes = reddit_node.findtext("scopes", reddit_config.scopes).strip()

    return AppConfig(
        feeds_file=feeds_file,
        env_file=env_file,
        check_interval_minutes=interval,
        limit=limit,
        manual_limit=manual_limit,
        send_delay=send_delay,
        concurrency=concurrency,
        logging=logging_config,
        database=db_config,
        reddit=reddit_config,
    )

"""Chat commands exposed to the transport layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .exceptions import AuthFailure, ConfigurationError
from .models import FeedConfig, RedditFeed, RssFeed, normalize_feed_name
from .oauth import TokenManager, TokenState
from .scheduler import DeliveryScheduler
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands:\n"
    "/start - Start receiving news updates from every feed\n"
    "/stop - Stop receiving news updates from every feed\n"
    "/follow <feed> - Receive a single feed\n"
    "/unfollow <feed> - Stop receiving a single feed\n"
    "/status - Check bot status\n"
    "/feeds - List configured feeds\n"
    "/news - Manually check for latest news\n"
    "/reddit_auth - Connect a Reddit account\n"
    "/reddit_code <redirect URL> - Finish connecting Reddit\n"
    "/reddit_status - Show Reddit connection status\n"
    "/reddit_logout - Forget Reddit credentials"
)

STORAGE_ERROR_TEXT = "❌ Could not reach the credential store. Please try again later."


@dataclass
class CommandResult:
    """Reply for the transport layer to render."""

    text: str
    ok: bool = True
    value: Optional[int] = None


class CommandHandler:
    def __init__(
        self,
        feeds: Sequence[FeedConfig],
        registry: SubscriptionRegistry,
        scheduler: DeliveryScheduler,
        tokens: Optional[TokenManager] = None,
        interval_minutes: float = 5,
    ) -> None:
        self._feeds = list(feeds)
        self._registry = registry
        self._scheduler = scheduler
        self._tokens = tokens
        self._interval_minutes = interval_minutes

    def subscribe(self, chat_id: str) -> CommandResult:
        added = self._registry.add_global(chat_id)
        status = (
            "✅ You are now subscribed to news updates!"
            if added
            else "✅ You are already subscribed!"
        )
        return CommandResult(
            "👋 Welcome to NewsBot!\n\n"
            f"{status}\n\n"
            "I will automatically send you the latest news from configured feeds "
            f"every {self._interval_minutes:g} minutes.\n\n" + HELP_TEXT
        )

    def unsubscribe(self, chat_id: str) -> CommandResult:
        self._registry.remove_global(chat_id)
        return CommandResult("You have been unsubscribed from news updates.")

    def _find_feed(self, feed_name: str) -> Optional[FeedConfig]:
        key = normalize_feed_name(feed_name)
        for feed in self._feeds:
            if feed.key == key:
                return feed
        return None

    def follow(self, chat_id: str, feed_name: str) -> CommandResult:
        feed = self._find_feed(feed_name)
        if feed is None:
            return CommandResult(f"Unknown feed: {feed_name.strip()}. Use /feeds to list feeds.", ok=False)
        if not self._registry.follow(feed.key, chat_id):
            return CommandResult(f"You already follow {feed.name}.")
        return CommandResult(f"✅ You now follow {feed.name}.")

    def unfollow(self, chat_id: str, feed_name: str) -> CommandResult:
        feed = self._find_feed(feed_name)
        if feed is None:
            return CommandResult(f"Unknown feed: {feed_name.strip()}.", ok=False)
        if not self._registry.unfollow(feed.key, chat_id):
            return CommandResult(f"You do not follow {feed.name}.")
        return CommandResult(f"You no longer follow {feed.name}.")

    def status(self, chat_id: str) -> CommandResult:
        if self._registry.is_global(chat_id):
            subscription = "✅ Subscribed to all feeds"
        else:
            followed = self._registry.resolve_feeds(chat_id, [f.name for f in self._feeds])
            if followed:
                subscription = "✅ Following: " + ", ".join(followed)
            else:
                subscription = "❌ Not subscribed"
        return CommandResult(
            "Bot Status:\n\n"
            f"Subscription: {subscription}\n"
            f"Feeds: {len(self._feeds)}\n"
            f"Total Subscribers: {self._registry.subscriber_count()}"
        )

    def list_feeds(self, chat_id: str) -> CommandResult:
        if not self._feeds:
            return CommandResult("No feeds configured.")
        lines = ["📡 Configured Feeds:", ""]
        for index, feed in enumerate(self._feeds, start=1):
            where = feed.url if isinstance(feed, RssFeed) else feed.description
            lines.append(f"{index}. {feed.name}\n   {where}\n")
        return CommandResult("\n".join(lines).rstrip())

    def manual_check(self, chat_id: str) -> CommandResult:
        try:
            delivered = self._scheduler.run_manual_check(chat_id)
        except Exception:  # noqa: BLE001 - reported to the user
            logger.exception("Error during manual news check for chat %s", chat_id)
            return CommandResult(
                "❌ Error occurred while fetching news. Please try again later.", ok=False
            )
        if delivered == 0:
            return CommandResult("📭 No new items right now. You're all caught up.", value=0)
        return CommandResult(
            f"✅ Sent {delivered} news item(s) from all feeds "
            f"(up to {self._scheduler.config.manual_limit} per feed).",
            value=delivered,
        )

    def _require_tokens(self) -> TokenManager:
        if self._tokens is None or not self._tokens.settings.configured:
            raise ConfigurationError(
                "Reddit is not configured: set REDDIT_CLIENT_ID and REDDIT_CLIENT_SECRET."
            )
        return self._tokens

    def auth_begin(self, chat_id: str) -> CommandResult:
        try:
            url = self._require_tokens().begin_setup(chat_id)
        except ConfigurationError as exc:
            return CommandResult(f"⚠️ {exc}", ok=False)
        return CommandResult(
            "Open this link to authorize Reddit access, then send "
            f"/reddit_code followed by the full URL you were redirected to:\n\n{url}"
        )

    def auth_complete(self, chat_id: str, redirect_url: str) -> CommandResult:
        try:
            self._require_tokens().complete_setup(chat_id, redirect_url)
        except (ConfigurationError, AuthFailure) as exc:
            logger.warning("Reddit authorization failed for chat %s: %s", chat_id, exc)
            return CommandResult(f"❌ {exc}", ok=False)
        except SQLAlchemyError:
            logger.exception("Could not store Reddit credentials for chat %s", chat_id)
            return CommandResult(STORAGE_ERROR_TEXT, ok=False)
        return CommandResult("✅ Reddit connected.")

    def auth_status(self, chat_id: str) -> CommandResult:
        if self._tokens is None:
            return CommandResult("Reddit: not configured.")
        try:
            summary = self._describe_tokens(self._tokens)
        except SQLAlchemyError:
            logger.exception("Could not read Reddit credentials for chat %s", chat_id)
            return CommandResult(STORAGE_ERROR_TEXT, ok=False)
        reddit_feeds = sum(1 for feed in self._feeds if isinstance(feed, RedditFeed))
        return CommandResult(f"Reddit: {summary}\nReddit feeds: {reddit_feeds}")

    def _describe_tokens(self, tokens: TokenManager) -> str:
        state = tokens.state()
        if state is TokenState.UNCONFIGURED:
            summary = "not configured (missing client credentials)"
        elif state is TokenState.NO_TOKEN:
            summary = "not connected; use /reddit_auth"
        else:
            expires_at = tokens.expires_at()
            when = (
                datetime.fromtimestamp(expires_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
                if expires_at
                else "unknown"
            )
            if state is TokenState.VALID:
                summary = f"connected, token valid until {when}"
            else:
                summary = "connected, token expired (refreshes on next use)"
            username = tokens.cached_username()
            if username:
                summary += f"\nUser: u/{username}"
        return summary

    def auth_logout(self, chat_id: str) -> CommandResult:
        try:
            self._require_tokens().logout()
        except ConfigurationError as exc:
            return CommandResult(f"⚠️ {exc}", ok=False)
        except SQLAlchemyError:
            logger.exception("Could not remove Reddit credentials for chat %s", chat_id)
            return CommandResult(STORAGE_ERROR_TEXT, ok=False)
        return CommandResult("Reddit credentials removed.")

    def dispatch(self, chat_id: str, text: str) -> Optional[CommandResult]:
        """Route a chat message to a command. Unknown input returns None."""
        parts = (text or "").strip().split(maxsplit=1)
        if not parts or not parts[0].startswith("/"):
            return None
        # Telegram appends @botname in group chats.
        command = parts[0].split("@", 1)[0].lower()
        argument = parts[1] if len(parts) > 1 else ""

        if command == "/start":
            return self.subscribe(chat_id)
        if command == "/stop":
            return self.unsubscribe(chat_id)
        if command in ("/follow", "/unfollow"):
            if not argument:
                return CommandResult(f"Usage: {command} <feed name>", ok=False)
            if command == "/follow":
                return self.follow(chat_id, argument)
            return self.unfollow(chat_id, argument)
        if command == "/status":
            return self.status(chat_id)
        if command == "/feeds":
            return self.list_feeds(chat_id)
        if command == "/news":
            return self.manual_check(chat_id)
        if command == "/reddit_auth":
            return self.auth_begin(chat_id)
        if command == "/reddit_code":
            if not argument:
                return CommandResult("Usage: /reddit_code <redirect URL>", ok=False)
            return self.auth_complete(chat_id, argument)
        if command == "/reddit_status":
            return self.auth_status(chat_id)
        if command == "/reddit_logout":
            return self.auth_logout(chat_id)
        if command == "/help":
            return CommandResult(HELP_TEXT)
        return CommandResult("Unknown command.\n\n" + HELP_TEXT, ok=False)

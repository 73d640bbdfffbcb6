"""Rendering of news items into Telegram HTML messages."""

from __future__ import annotations

from .models import RawItem
from .templating import get_environment

SUMMARY_LIMIT = 200


def build_message(feed_name: str, item: RawItem) -> str:
    """Render a single item as a Telegram HTML message."""
    env = get_environment()
    template = env.get_template("message.html.j2")
    summary = (item.summary or "")[:SUMMARY_LIMIT]
    published = item.published.strftime("%Y-%m-%d %H:%M %Z").strip() if item.published else ""
    return template.render(
        feed_name=feed_name,
        title=item.title or "No title",
        summary=summary,
        published=published,
        link=item.link or "#",
    ).strip()

import textwrap

import pytest

from rss_relay.config import (
    load_secrets,
    parse_app_config,
    parse_env_config,
    parse_feeds_config,
)
from rss_relay.models import RedditFeed, RedditSource, RssFeed


def _write(path, text):
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return str(path)


def test_parse_feeds_config_builds_variants(tmp_path):
    path = _write(
        tmp_path / "feeds.xml",
        """\
        <opml version="2.0">
          <body>
            <outline text="News">
              <outline type="rss" text="BBC News" xmlUrl="https://feeds.bbci.co.uk/news/rss.xml" />
            </outline>
            <outline type="reddit" text="Front" source="home" sort="new" />
            <outline type="reddit" text="Saved" source="saved" />
            <outline type="reddit" text="Py" source="subreddit" target="python" />
          </body>
        </opml>
        """,
    )

    feeds = parse_feeds_config(path)

    assert feeds == [
        RssFeed(name="BBC News", url="https://feeds.bbci.co.uk/news/rss.xml"),
        RedditFeed(name="Front", source=RedditSource.HOME, sort="new"),
        RedditFeed(name="Saved", source=RedditSource.SAVED),
        RedditFeed(name="Py", source=RedditSource.SUBREDDIT, target="python"),
    ]


@pytest.mark.parametrize(
    "outline, message",
    [
        ('<outline type="reddit" text="X" source="inbox" />', "unknown Reddit source"),
        ('<outline type="reddit" text="X" source="subreddit" />', "needs a 'target'"),
        ('<outline type="reddit" text="X" sort="sideways" />', "unknown sort"),
    ],
)
def test_parse_feeds_config_rejects_invalid_reddit_outlines(tmp_path, outline, message):
    path = _write(tmp_path / "feeds.xml", f"<opml><body>{outline}</body></opml>")

    with pytest.raises(ValueError, match=message):
        parse_feeds_config(path)


def test_parse_feeds_config_rejects_duplicate_names(tmp_path):
    path = _write(
        tmp_path / "feeds.xml",
        """\
        <opml><body>
          <outline type="rss" text="Same" xmlUrl="https://a.example/rss" />
          <outline type="rss" text="same " xmlUrl="https://b.example/rss" />
        </body></opml>
        """,
    )

    with pytest.raises(ValueError, match="Duplicate"):
        parse_feeds_config(path)


def test_parse_feeds_config_missing_body_raises(tmp_path):
    path = _write(tmp_path / "feeds.xml", "<opml version='2.0'></opml>")

    with pytest.raises(ValueError):
        parse_feeds_config(path)


def test_parse_app_config_defaults_and_paths(tmp_path):
    path = _write(
        tmp_path / "config.xml",
        """\
        <config>
          <feeds>feeds.xml</feeds>
          <env>env.xml</env>
          <check-interval-minutes>2</check-interval-minutes>
          <manual-limit>3</manual-limit>
          <logging><level>DEBUG</level><file>logs/app.log</file></logging>
          <database><connection-string>sqlite:///x.db</connection-string></database>
          <reddit><user-agent>ua/2</user-agent></reddit>
        </config>
        """,
    )

    config = parse_app_config(path)

    assert config.feeds_file == str((tmp_path / "feeds.xml").resolve())
    assert config.env_file == str((tmp_path / "env.xml").resolve())
    assert config.check_interval_minutes == 2
    assert config.limit == 10
    assert config.manual_limit == 3
    assert config.send_delay == 0.3
    assert config.logging.level == "DEBUG"
    assert config.logging.file == str((tmp_path / "logs" / "app.log").resolve())
    assert config.database.connection_string == "sqlite:///x.db"
    assert config.reddit.user_agent == "ua/2"
    assert config.reddit.scopes == "identity read history"


def test_parse_app_config_requires_feeds(tmp_path):
    path = _write(tmp_path / "config.xml", "<config></config>")

    with pytest.raises(ValueError, match="feeds"):
        parse_app_config(path)


def test_parse_app_config_keeps_absolute_and_expands_home_paths(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    absolute = tmp_path / "elsewhere" / "feeds.xml"
    path = _write(
        tmp_path / "config.xml",
        f"""\
        <config>
          <feeds> {absolute} </feeds>
          <logging><file>~/relay.log</file></logging>
        </config>
        """,
    )

    config = parse_app_config(path)

    assert config.feeds_file == str(absolute)
    assert config.logging.file == str(tmp_path / "home" / "relay.log")
    assert config.env_file is None


def test_parse_app_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_app_config(str(tmp_path / "missing.xml"))


def test_parse_env_config(tmp_path):
    path = _write(
        tmp_path / "env.xml",
        """\
        <environment>
          <variable name="TELEGRAM_BOT_TOKEN"> abc </variable>
          <variable name="EMPTY"></variable>
          <variable name="  ">orphan</variable>
        </environment>
        """,
    )

    assert parse_env_config(path) == {"TELEGRAM_BOT_TOKEN": "abc"}


def test_load_secrets_from_env(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tg")
    monkeypatch.setenv("REDDIT_CLIENT_ID", "id")
    monkeypatch.delenv("REDDIT_CLIENT_SECRET", raising=False)

    secrets = load_secrets()

    assert secrets.telegram_bot_token == "tg"
    assert secrets.reddit_client_id == "id"
    assert secrets.reddit_client_secret is None

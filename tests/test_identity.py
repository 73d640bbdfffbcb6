import pytest

from rss_relay.identity import (
    UNKNOWN_ITEM_ID,
    canonical_id,
    normalized_link,
    normalized_title,
)
from rss_relay.models import RawItem


def test_canonical_id_prefers_link_without_query_or_fragment():
    item = RawItem(
        title="Breaking story happened today",
        guid="g1",
        link="https://x.example/a?x=1#top",
    )
    assert canonical_id(item) == "https://x.example/a"


def test_canonical_id_falls_back_to_guid_then_title_then_sentinel():
    assert canonical_id(RawItem(title="Some title", guid="  g-42 ")) == "g-42"
    assert canonical_id(RawItem(title="  Some title  ")) == "Some title"
    assert canonical_id(RawItem(title="")) == UNKNOWN_ITEM_ID


def test_canonical_id_keeps_relative_links_verbatim():
    assert canonical_id(RawItem(title="t", link="/news/123?ref=rss")) == "/news/123?ref=rss"


def test_canonical_id_is_deterministic():
    item = RawItem(title="Title", guid="g", link="HTTPS://Example.com/Path?q=1")
    assert canonical_id(item) == canonical_id(item)
    assert canonical_id(item) == "https://example.com/Path"


def test_normalized_link_lowercases_and_strips_query():
    assert normalized_link("HTTPS://X.Example/A?x=2") == "https://x.example/a"
    assert normalized_link("https://x.example/a?x=1") == normalized_link(
        "https://x.example/a?x=2"
    )


@pytest.mark.parametrize("value", [None, "", "   "])
def test_normalized_link_handles_absent_values(value):
    assert normalized_link(value) is None


def test_normalized_title_excludes_short_titles():
    assert normalized_title("Short one") is None
    assert normalized_title("exactly10!") is None
    assert normalized_title("  Eleven Char  ") == "eleven char"
    assert normalized_title(None) is None

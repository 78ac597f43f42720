# parser/feed.py
# RSS 2.0 / Atom feeds -> RawItems, in document order.

import logging
from typing import List

import feedparser

from parser.items import RawItem, SourceParser, resolve_link
from parser.normalize import clean_text

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 1000


def _entry_item(entry, base_url: str, date_keys) -> RawItem | None:
    title = clean_text(entry.get("title", ""))
    link = (entry.get("link") or "").strip()
    if not (title and link):
        return None
    link = resolve_link(link, base_url)
    desc = entry.get("summary") or entry.get("description") or ""
    pub = ""
    for k in date_keys:
        if entry.get(k):
            pub = entry.get(k).strip()
            break
    guid = (entry.get("id") or "").strip() or link
    return RawItem(
        title=title,
        link=link,
        description=clean_text(desc, DESCRIPTION_LIMIT),
        pub_date=pub,
        guid=guid,
    )


class RSSParser(SourceParser):
    name = "rss"

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        d = feedparser.parse(body)
        if (d.get("version") or "").startswith("atom"):
            return []
        if d.get("bozo"):
            logger.debug(f"[RSS] tolerant parse of malformed feed from {base_url}: {d.get('bozo_exception')}")
        items = []
        for entry in d.entries:
            it = _entry_item(entry, base_url, ("published", "pubdate", "updated"))
            if it:
                items.append(it)
        return items


class AtomParser(SourceParser):
    name = "atom"

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        d = feedparser.parse(body)
        if not (d.get("version") or "").startswith("atom"):
            return []
        items = []
        for entry in d.entries:
            it = _entry_item(entry, base_url, ("published", "updated"))
            if it:
                items.append(it)
        return items


def parse_feed(xml: str, base_url: str) -> List[RawItem]:
    """RSS <item>s first; only when there are none, Atom <entry>s."""
    items = RSSParser().parse(xml, base_url)
    if not items:
        items = AtomParser().parse(xml, base_url)
    logger.info(f"[FEED] {base_url} -> {len(items)} item(s)")
    return items

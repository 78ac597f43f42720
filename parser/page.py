# parser/page.py
# Heuristic news-page scraper. State agency HTML has no common structure, so
# this is best-effort: missed items are acceptable, junk is bounded by the
# denylists and the minimum title length.

import re
import logging
from typing import Iterable, List, Optional, Set

from bs4 import BeautifulSoup

from parser.items import RawItem, SourceParser, resolve_link
from parser.normalize import decode_entities

logger = logging.getLogger(__name__)

BLOCK_CLASSES = ["news", "post", "article", "announcement", "bulletin", "update", "press-release", "release"]
LIST_CLASSES = ["news", "post", "item", "update"]

JUNK_TITLE_RE = re.compile(
    r"^(home|about|contact|menu|nav|skip|search|login|sign|directory|job|careers|employment|"
    r"public.records|privacy|terms|conditions|accessibility|facebook|twitter|instagram|youtube|"
    r"linkedin|social|media|contact.us|meet.the|priorities|newsletter|newsroom|commissioner|"
    r"meet.the.commissioner|press.releases|proclamations|executive.orders|submit.a.request|"
    r"request.an.award|attendance|employee.portal|farmland.preservation|board.of.agriculture|"
    r"boards.and.commissions|ncdacs.at.a.glance|website.feedback|disclaimer|open.budget|see.all)",
    re.I,
)
JUNK_PATH_RE = re.compile(
    r"/(divisions|programs|services|departments|offices|about|contact|directory|jobs|careers|"
    r"employment|public.records|privacy|terms|conditions|accessibility|social|media|newsroom|"
    r"newsletter|priorities|meet|commissioner|press-releases|proclamations|executive-orders|"
    r"request|submit|attendance|intranet|adfp|boards|departmentataglance|webform|disclaimer|"
    r"open-budget)/",
    re.I,
)
JUNK_SCHEME_RE = re.compile(r"^(mailto|tel|javascript):", re.I)
NEWS_PATH_RE = re.compile(r"/(news|announcements?|press|bulletins?|updates?|alerts?|notices?)/", re.I)
NEWS_TITLE_RE = re.compile(r"(news|announcement|press|bulletin|update|alert|notice)", re.I)
YEAR_RE = re.compile(r"\d{4}")
HEADING_RE = re.compile(r"^h[1-6]$")

POSTED_RE = re.compile(
    r"(?:posted|published|date|updated)[:\s]*"
    r"([A-Za-z]+\s+\d{1,2},?\s+\d{4}|\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2})",
    re.I,
)
BARE_DATE_RE = re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})")

DESCRIPTION_LIMIT = 500


def _class_re(words: Iterable[str]) -> re.Pattern:
    return re.compile("|".join(re.escape(w) for w in words), re.I)


def _text(el) -> str:
    return el.get_text(" ", strip=True) if el is not None else ""


def find_pub_date(block) -> str:
    txt = _text(block)
    m = POSTED_RE.search(txt)
    if m:
        return m.group(1).strip()
    t = block.find("time", attrs={"datetime": True})
    if t is not None:
        return t["datetime"].strip()
    m = BARE_DATE_RE.search(txt)
    return m.group(1) if m else ""


class HeuristicHTMLParser(SourceParser):
    """
    Try article tags, news-ish div classes, news-ish list items, then table
    rows, stopping once target_items candidates have been collected.
    """
    name = "html"

    def __init__(self, target_items: int = 20, min_title_length: int = 5,
                 extra_block_classes: Optional[Iterable[str]] = None):
        self.target_items = target_items
        self.min_title_length = min_title_length
        extra = list(extra_block_classes or [])
        self.div_re = _class_re(BLOCK_CLASSES + extra)
        self.li_re = _class_re(LIST_CLASSES + extra)

    def _blocks(self, soup):
        yield soup.find_all("article")
        yield soup.find_all("div", class_=self.div_re)
        yield soup.find_all("li", class_=self.li_re)
        yield soup.find_all("tr")

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        soup = BeautifulSoup(body, "lxml")
        items: List[RawItem] = []
        seen: Set[str] = set()
        for blocks in self._blocks(soup):
            for block in blocks:
                it = self._candidate(block, base_url, seen, len(items))
                if it:
                    items.append(it)
            if len(items) >= self.target_items:
                break
        return items

    def _candidate(self, block, base_url: str, seen: Set[str], have: int) -> Optional[RawItem]:
        a = block.find("a", href=True)
        if a is None:
            return None
        href = a["href"].strip()
        if not href or JUNK_SCHEME_RE.match(href):
            return None
        try:
            link = resolve_link(href, base_url)
        except ValueError:
            return None
        if link in seen:
            return None
        seen.add(link)

        title = _text(a)
        if len(title) < 5:
            title = _text(block.find(HEADING_RE))
        if not title or len(title) < self.min_title_length:
            return None
        if JUNK_TITLE_RE.match(title) or JUNK_PATH_RE.search(link):
            return None
        # short titles look like menu items unless they carry a year
        if len(title) < 10 and not YEAR_RE.search(title):
            return None
        likely_news = bool(NEWS_PATH_RE.search(link) or NEWS_TITLE_RE.search(title))
        if have >= 10 and not likely_news and not YEAR_RE.search(title):
            return None

        desc = _text(block.find("p"))[:DESCRIPTION_LIMIT]
        return RawItem(
            title=decode_entities(title),
            link=link,
            description=decode_entities(desc),
            pub_date=find_pub_date(block),
        )


def parse_page(html: str, base_url: str, **kwargs) -> List[RawItem]:
    items = HeuristicHTMLParser(**kwargs).parse(html, base_url)
    logger.info(f"[PAGE] {base_url} -> {len(items)} item(s)")
    return items

# parser/normalize.py
# Text cleanup shared by the feed and page parsers, plus publish-date parsing.

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

TAG_RE = re.compile(r"<[^>]*>")
WS_RE = re.compile(r"\s+")
CDATA_RE = re.compile(r"^\s*<!\[CDATA\[(.*?)\]\]>\s*$", re.S)
ENTITY_RE = re.compile(r"&[^;\s]+;")

# Fixed table: unknown entities are left as-is.
ENTITIES = {
    "&amp;": "&", "&lt;": "<", "&gt;": ">", "&quot;": '"',
    "&#39;": "'", "&nbsp;": " ", "&ndash;": "-", "&mdash;": "—",
    "&rsquo;": "'", "&lsquo;": "'", "&rdquo;": '"', "&ldquo;": '"',
}


def strip_html(txt: str) -> str:
    return WS_RE.sub(" ", TAG_RE.sub(" ", txt or "")).strip()


def strip_cdata(txt: str) -> str:
    m = CDATA_RE.match(txt or "")
    return m.group(1) if m else (txt or "")


def decode_entities(txt: str) -> str:
    return ENTITY_RE.sub(lambda m: ENTITIES.get(m.group(0), m.group(0)), txt or "")


def clean_text(txt: str, limit: Optional[int] = None) -> str:
    """CDATA -> tags -> whitespace -> entities, optionally truncated."""
    out = strip_html(strip_cdata(txt))
    if limit is not None:
        out = out[:limit]
    return decode_entities(out)


DATE_FORMATS = (
    "%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%m/%d/%Y", "%m/%d/%y",
    "%B %d, %Y", "%b %d, %Y", "%B %d %Y", "%b %d %Y", "%d %B %Y",
)


def to_iso_date(raw: Optional[str]) -> Optional[str]:
    """
    Best-effort publish date -> YYYY-MM-DD. Handles RFC 822 (RSS pubDate),
    ISO 8601 (Atom, <time datetime>) and the US formats agencies print.
    Returns None when nothing parses.
    """
    s = (raw or "").strip()
    if not s:
        return None
    try:
        dt = parsedate_to_datetime(s)
        if dt is not None:
            if dt.tzinfo is not None:
                dt = dt.astimezone(timezone.utc)
            return dt.date().isoformat()
    except (TypeError, ValueError, IndexError):
        pass
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc)
        return dt.date().isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            pass
    return None


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def effective_date(raw: Optional[str]) -> str:
    return to_iso_date(raw) or today_iso()

# parser/items.py
# Shared item type and the parser interface every source variant implements.

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List
from urllib.parse import urljoin

logger = logging.getLogger(__name__)


@dataclass
class RawItem:
    """One candidate article pulled out of a feed, page or API response."""
    title: str
    link: str
    description: str = ""
    pub_date: str = ""
    guid: str = ""
    # jurisdiction code the item belongs to when it differs from its source's
    jurisdiction: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.guid:
            self.guid = self.link

    @property
    def key(self) -> str:
        return self.guid or self.link


def resolve_link(link: str, base_url: str) -> str:
    link = (link or "").strip()
    if link.startswith("http"):
        return link
    return urljoin(base_url or "", link)


class SourceParser:
    """
    Turn a fetched body into RawItems. Implementations must not raise on
    malformed input: return whatever could be extracted.
    """
    name = "base"

    def parse(self, body: str, base_url: str) -> List[RawItem]:
        try:
            return self._parse(body or "", base_url)
        except Exception as e:
            logger.error(f"[PARSE] {self.name} failed for {base_url}: {e}")
            return []

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        raise NotImplementedError

# parser/federal_register.py
# Federal Register documents API (api/v1/documents.json) -> RawItems.

import json
import logging
from typing import List

from parser.items import RawItem, SourceParser
from parser.normalize import clean_text

logger = logging.getLogger(__name__)


def agency_names(agencies) -> List[str]:
    out = []
    for a in agencies or []:
        name = (a.get("name") or a.get("raw_name") or "") if isinstance(a, dict) else str(a or "")
        if name and name not in out:
            out.append(name)
    return out


class FederalRegisterParser(SourceParser):
    """Documents without a document_number are dropped: it is their only stable id."""
    name = "federal_register"

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        try:
            data = json.loads(body)
        except ValueError:
            logger.warning(f"[FEDREG] response from {base_url} is not JSON")
            return []
        results = data.get("results") if isinstance(data, dict) else None
        items = []
        for doc in results or []:
            if not isinstance(doc, dict):
                continue
            number = str(doc.get("document_number") or "").strip()
            if not number:
                continue
            html_url = doc.get("html_url") or f"https://www.federalregister.gov/d/{number}"
            items.append(RawItem(
                title=clean_text(doc.get("title") or "", 500) or "Untitled",
                link=html_url,
                description=clean_text(doc.get("abstract") or "", 2000),
                pub_date=doc.get("publication_date") or "",
                guid=number,
                extra={
                    "agencies": agency_names(doc.get("agencies")),
                    "federal_register_type": doc.get("type") or "",
                    "original_url": html_url,
                },
            ))
        return items

# parser/caselaw.py
# CourtListener v4 search API (type=o, opinions) -> RawItems.

import re
import json
import logging
from typing import Dict, List, Optional
from urllib.parse import parse_qs, quote_plus, urlparse

from parser.items import RawItem, SourceParser
from parser.normalize import clean_text

logger = logging.getLogger(__name__)

COURTLISTENER = "https://www.courtlistener.com"

# product -> keywords looked for in case name + snippet
PRODUCT_KEYWORDS: Dict[str, List[str]] = {
    "cannabis": ["cannabis", "marijuana", "weed", "marihuana"],
    "hemp": ["hemp", "cbd", "cannabidiol", "industrial hemp"],
    "delta-8": ["delta-8", "delta 8", "delta-8-thc"],
    "kratom": ["kratom", "mitragynine", "mitragyna"],
    "kava": ["kava", "kavain", "kavalactone"],
    "nicotine": ["nicotine", "tobacco", "vaping", "e-cigarette", "vape", "juul"],
    "psychedelics": ["psilocybin", "psychedelic", "mushroom", "mdma", "ketamine", "lsd",
                     "ayahuasca", "ibogaine", "mescaline"],
}

STATE_CODES = {
    "Alabama": "AL", "Alaska": "AK", "Arizona": "AZ", "Arkansas": "AR", "California": "CA",
    "Colorado": "CO", "Connecticut": "CT", "Delaware": "DE", "District of Columbia": "DC",
    "Florida": "FL", "Georgia": "GA", "Hawaii": "HI", "Idaho": "ID", "Illinois": "IL",
    "Indiana": "IN", "Iowa": "IA", "Kansas": "KS", "Kentucky": "KY", "Louisiana": "LA",
    "Maine": "ME", "Maryland": "MD", "Massachusetts": "MA", "Michigan": "MI", "Minnesota": "MN",
    "Mississippi": "MS", "Missouri": "MO", "Montana": "MT", "Nebraska": "NE", "Nevada": "NV",
    "New Hampshire": "NH", "New Jersey": "NJ", "New Mexico": "NM", "New York": "NY",
    "North Carolina": "NC", "North Dakota": "ND", "Ohio": "OH", "Oklahoma": "OK", "Oregon": "OR",
    "Pennsylvania": "PA", "Rhode Island": "RI", "South Carolina": "SC", "South Dakota": "SD",
    "Tennessee": "TN", "Texas": "TX", "Utah": "UT", "Vermont": "VT", "Virginia": "VA",
    "Washington": "WA", "West Virginia": "WV", "Wisconsin": "WI", "Wyoming": "WY",
}
# longest first so "West Virginia" wins over "Virginia"
STATE_RE = re.compile(
    r"\b(" + "|".join(re.escape(n) for n in sorted(STATE_CODES, key=len, reverse=True)) + r")\b", re.I)
FEDERAL_COURT_RE = re.compile(
    r"united states|district court|bankruptcy|court of appeals for the|federal claims|international trade", re.I)
_STATE_BY_LOWER = {k.lower(): v for k, v in STATE_CODES.items()}


def state_for_court(court: str, court_id: str = "") -> str:
    """State code for a state court, '' for federal or unrecognized courts."""
    if not court or court_id.startswith("scotus") or FEDERAL_COURT_RE.search(court):
        return ""
    m = STATE_RE.search(court)
    return _STATE_BY_LOWER[m.group(1).lower()] if m else ""


def infer_products(text: str, defaults=()) -> List[str]:
    lower = (text or "").lower()
    found = list(dict.fromkeys(defaults))
    for product, keywords in PRODUCT_KEYWORDS.items():
        if product not in found and any(k in lower for k in keywords):
            found.append(product)
    return found


def search_query(url: str) -> str:
    return (parse_qs(urlparse(url or "").query).get("q") or [""])[0]


class CourtListenerParser(SourceParser):
    """
    `query_products` maps a search query to the products it was run for;
    those seed the products inferred from each result's text.
    """
    name = "courtlistener"

    def __init__(self, query_products: Optional[Dict[str, List[str]]] = None):
        self.query_products = {k.lower(): list(v or ()) for k, v in (query_products or {}).items()}

    def _parse(self, body: str, base_url: str) -> List[RawItem]:
        try:
            data = json.loads(body)
        except ValueError:
            logger.warning(f"[CASELAW] response from {base_url} is not JSON")
            return []
        results = data.get("results") if isinstance(data, dict) else None
        query = search_query(base_url)
        defaults = self.query_products.get(query.lower(), [])
        items = []
        for r in results or []:
            if not isinstance(r, dict):
                continue
            name = (r.get("caseName") or r.get("caseNameFull") or "").strip()
            if not name:
                continue
            opinions = r.get("opinions") or [{}]
            snippet = clean_text((opinions[0] or {}).get("snippet", ""), 2000)
            filed = r.get("dateFiled") or ""
            cluster = str(r["cluster_id"]) if r.get("cluster_id") else ""
            docket = r.get("docketNumber") or ""
            court = r.get("court") or ""
            court_id = r.get("court_id") or ""
            path = r.get("absolute_url") or ""
            guid = cluster or docket or f"{name}-{filed}"
            if path:
                link = f"{COURTLISTENER}{path}"
            else:
                link = f"{COURTLISTENER}/?q={quote_plus(query or name)}&type=o#{quote_plus(guid)}"
            items.append(RawItem(
                title=name if len(name) <= 500 else name[:497] + "...",
                link=link,
                description=snippet,
                pub_date=filed,
                guid=guid,
                jurisdiction=state_for_court(court, court_id),
                extra={
                    "court": court,
                    "court_id": court_id,
                    "docket_number": docket,
                    "cluster_id": cluster or None,
                    "status": r.get("status") or "",
                    "products": infer_products(f"{name} {snippet}", defaults),
                    "search_query": query,
                },
            ))
        return items

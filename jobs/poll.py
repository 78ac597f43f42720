# jobs/poll.py
# One parameterized ingestion pipeline shared by every poller domain:
# registry -> fetch -> parse -> classify -> dedup/upsert -> run log.

import os
import sys
import time
import uuid
import json
import base64
import hashlib
import logging
import argparse
from functools import partial
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from crawler.fetch import fetch_text
from parser.items import RawItem
from parser.feed import parse_feed
from parser.page import parse_page
from parser.caselaw import CourtListenerParser
from parser.federal_register import FederalRegisterParser
from parser.classify import Classification, analyzed_at, build_classifier
from parser.normalize import effective_date
from rules.sources import (
    API, NEWS, RSS, ConfigError, DomainConfig, SourceEntry,
    domain_names, load_domain, pollers, select_entries,
)

log = logging.getLogger("poll")

MAX_ERRORS_REPORTED = 10
MAX_RECENT_ITEMS = 20
ID_HASH_CHARS = 43
LEGACY_ID_CHARS = 50
SOURCE_URL_KEYS = {RSS: "feedUrl", NEWS: "newsPageUrl", API: "apiUrl"}


def _sleep(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def normalize_session_id(session_id: Optional[str]) -> Optional[str]:
    """Keep a valid UUID; replace anything else with a fresh one. None stays None."""
    if session_id is None:
        return None
    try:
        return str(uuid.UUID(str(session_id)))
    except ValueError:
        return str(uuid.uuid4())


def run_status(errors: List[str], sources_attempted: int) -> str:
    if not errors:
        return "success"
    if len(errors) < sources_attempted:
        return "partial"
    return "error"


@dataclass
class PollRequest:
    state_code: Optional[str] = None
    full_scan: bool = False
    session_id: Optional[str] = None
    source_name: Optional[str] = None


@dataclass
class RunSummary:
    poller: str
    session_id: Optional[str] = None
    status: str = "success"
    records_processed: int = 0
    new_items_found: int = 0
    states_processed: int = 0
    sources_attempted: int = 0
    errors: List[str] = field(default_factory=list)
    recent_items: List[Dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "status": self.status,
            "recordsProcessed": self.records_processed,
            "newItemsFound": self.new_items_found,
            "statesProcessed": self.states_processed,
            "errors": self.errors[:MAX_ERRORS_REPORTED],
            "recentItems": self.recent_items[:MAX_RECENT_ITEMS],
            "sessionId": self.session_id,
        }


class ItemWriter:
    """
    Dedup + upsert. `seen` is loaded once per run from the store and grows as
    new ids are written, so a repeat later in the same run is not new.
    """

    def __init__(self, cfg: DomainConfig, store, seen: Set[str], full_scan: bool = False):
        self.cfg = cfg
        self.store = store
        self.seen = seen
        self.full_scan = full_scan

    def external_id(self, code: str, source_type: str, item: RawItem) -> str:
        if source_type == API:
            # structured sources carry their own stable id
            return f"{self.cfg.id_prefix}{item.key}"
        digest = hashlib.sha256(item.key.encode("utf-8")).digest()
        encoded = base64.urlsafe_b64encode(digest).decode("ascii")[:ID_HASH_CHARS]
        ext_id = f"{self.cfg.id_prefix}{code}-{source_type}-{encoded}"
        if ext_id not in self.seen:
            legacy = self.legacy_id(code, source_type, item)
            if legacy in self.seen:
                return legacy
        return ext_id

    def legacy_id(self, code: str, source_type: str, item: RawItem) -> str:
        """Truncated-base64 id of rows written before ids were hashed; only matched, never minted."""
        encoded = base64.b64encode(item.key.encode("utf-8")).decode("ascii")[:LEGACY_ID_CHARS]
        return f"{self.cfg.id_prefix}{code}-{source_type}-{encoded}"

    def is_known(self, external_id: str) -> bool:
        return external_id in self.seen

    def should_skip(self, external_id: str) -> bool:
        return self.is_known(external_id) and not self.full_scan

    def record(self, entry: SourceEntry, source_type: str, source_url: str, item: RawItem,
               c: Classification, jurisdiction_id, external_id: str) -> Dict[str, Any]:
        metadata = c.to_metadata()
        metadata.update(item.extra)
        metadata.update({
            "agencyName": entry.agency_name,
            "sourceType": source_type,
            SOURCE_URL_KEYS[source_type]: source_url,
            "analyzedAt": analyzed_at(),
        })
        return {
            "external_id": external_id,
            "title": item.title,
            "description": c.summary or item.description,
            "effective_date": effective_date(item.pub_date),
            "jurisdiction_id": jurisdiction_id,
            "source": self.cfg.tag_for(source_type),
            "url": item.link,
            "category": c.category,
            "sub_category": c.sub_category,
            "metadata": metadata,
        }

    def write(self, record: Dict[str, Any]) -> bool:
        """Upsert; returns True when the id was not seen before. Store errors propagate."""
        self.store.upsert_instrument(record)
        is_new = record["external_id"] not in self.seen
        self.seen.add(record["external_id"])
        return is_new


API_PARSERS = {
    "courtlistener": lambda cfg: CourtListenerParser(cfg.api.get("query_products")),
    "federal_register": lambda cfg: FederalRegisterParser(),
}


def parser_for(cfg: DomainConfig, source_type: str):
    if source_type == RSS:
        return parse_feed
    if source_type == NEWS:
        return partial(parse_page, **cfg.scraper)
    make = API_PARSERS.get(cfg.api.get("parser"))
    if make is None:
        raise ConfigError(f"{cfg.name}: unknown api parser {cfg.api.get('parser')!r}")
    return make(cfg).parse


def api_since(cfg: DomainConfig, store, full_scan: bool) -> str:
    """Lower date bound for incremental API sources."""
    default = str(cfg.api.get("default_since") or "2018-01-01")
    if full_scan:
        return default
    latest = store.latest_effective_date(cfg.seen_sources)
    if not latest:
        return default
    lookback = int(cfg.api.get("since_lookback_days") or 0)
    return (date.fromisoformat(latest[:10]) - timedelta(days=lookback)).isoformat()


def api_headers(cfg: DomainConfig) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    env = cfg.api.get("auth_env")
    token = os.getenv(env) if env else None
    if not token:
        return headers
    if cfg.api.get("auth_header"):
        headers[cfg.api["auth_header"]] = token
    else:
        headers["Authorization"] = f"{cfg.api.get('auth_scheme') or 'Token'} {token}"
    return headers


class PollRun:
    """State for a single invocation; not reusable."""

    def __init__(self, cfg: DomainConfig, store, request: PollRequest,
                 fetch: Callable[..., Optional[str]] = fetch_text, classifier=None,
                 sleep: Callable[[float], None] = None):
        self.cfg = cfg
        self.store = store
        self.request = request
        self.fetch = fetch
        self.classifier = classifier or build_classifier(cfg)
        self.sleep = sleep or _sleep
        self.summary = RunSummary(poller=cfg.poller, session_id=request.session_id)
        self.writer: Optional[ItemWriter] = None
        self._since: Optional[str] = None
        self._classified = 0
        self.jurisdictions: Dict[str, Any] = {}

    # ---- progress / run log ----

    def progress(self, status: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        r = self.request
        if not (r.session_id and r.source_name):
            return
        try:
            self.store.upsert_progress(r.session_id, r.source_name, status,
                                       self.summary.records_processed, metadata or {})
        except Exception as e:
            log.error(f"[PROGRESS] upsert failed :: {e}")
            self.summary.errors.append(f"progress_upsert:{e}")

    def write_run_log(self) -> None:
        s = self.summary
        try:
            self.store.insert_run_log(self.cfg.run_log_source, s.status, s.records_processed, {
                "poller": self.cfg.poller,
                "newItemsFound": s.new_items_found,
                "statesProcessed": s.states_processed,
                "errors": s.errors[:MAX_ERRORS_REPORTED],
                "recentItems": s.recent_items[:MAX_RECENT_ITEMS],
                "fullScan": self.request.full_scan,
                "stateCode": self.request.state_code or "all",
            })
        except Exception as e:
            log.error(f"[RUNLOG] insert failed :: {e}")
            s.errors.append(f"ingestion_log:{e}")

    # ---- pipeline ----

    def _fill_url(self, url: str) -> str:
        if "{since}" not in url:
            return url
        if self._since is None:
            self._since = api_since(self.cfg, self.store, self.request.full_scan)
        return url.replace("{since}", self._since)

    def _classify(self, item: RawItem, entry: SourceEntry) -> Classification:
        if getattr(self.classifier, "remote", False) and self._classified:
            self.sleep(self.cfg.classifier_delay_seconds)
        self._classified += 1
        code = item.jurisdiction or entry.code
        return self.classifier.classify(item.title, item.description, entry.agency_name, code)

    def _jurisdiction_id(self, item: RawItem, default):
        """An item's own jurisdiction when the store knows it, otherwise its source's."""
        if item.jurisdiction:
            return self.jurisdictions.get(item.jurisdiction, default)
        return default

    def process_source(self, entry: SourceEntry, jurisdiction_id, source_type: str, url: str,
                       run_links: Set[str]) -> None:
        s = self.summary
        url = self._fill_url(url) if source_type == API else url
        headers = api_headers(self.cfg) if source_type == API else None
        s.sources_attempted += 1

        body = self.fetch(url, headers=headers)
        if body is None:
            s.errors.append(f"{entry.code} {source_type} {url}: fetch failed")
            return

        items = parser_for(self.cfg, source_type)(body, url)
        log.info(f"[SRC] {entry.code} {source_type} {url} -> {len(items)} items")

        written = 0
        for item in items:
            if written >= self.cfg.max_items_per_source:
                break
            ext_id = self.writer.external_id(entry.code, source_type, item)
            # API results carry their own ids; links repeat across feeds and pages only
            run_key = item.key if source_type == API else item.link
            if run_key in run_links or self.writer.should_skip(ext_id):
                run_links.add(run_key)
                s.records_processed += 1
                continue
            if not self.classifier.is_relevant(item.title, item.description):
                log.debug(f"[SKIP] irrelevant :: {item.title[:80]}")
                s.records_processed += 1
                continue

            c = self._classify(item, entry)
            written += 1
            record = self.writer.record(entry, source_type, url, item, c,
                                        self._jurisdiction_id(item, jurisdiction_id), ext_id)
            try:
                is_new = self.writer.write(record)
            except Exception as e:
                log.error(f"[ERR] upsert failed {ext_id} :: {e}")
                s.errors.append(f"{entry.code} instrument_upsert_{source_type}:{e}")
                continue

            run_links.add(run_key)
            s.records_processed += 1
            if is_new:
                s.new_items_found += 1
                s.recent_items.append({
                    "state": item.jurisdiction or entry.code,
                    "title": item.title,
                    "type": c.document_type,
                    "urgency": c.urgency,
                    "isNew": True,
                    "link": item.link,
                })

    def process_entry(self, entry: SourceEntry, jurisdiction_id) -> None:
        run_links: Set[str] = set()
        for source_type, url in entry.sources():
            try:
                self.process_source(entry, jurisdiction_id, source_type, url, run_links)
            except Exception as e:
                log.exception(f"[ERR] {entry.code} {source_type} {url}")
                self.summary.errors.append(f"{entry.code} {source_type} {url}: {e}")

    def run(self) -> RunSummary:
        s = self.summary
        r = self.request
        log.info(f"[RUN] {self.cfg.poller} start state={r.state_code or 'all'} fullScan={r.full_scan}")
        self.progress("running")

        try:
            jurisdictions = self.store.jurisdiction_ids()
        except Exception as e:
            log.error(f"[ERR] jurisdiction lookup failed :: {e}")
            s.errors.append(f"jurisdiction:{e}")
            jurisdictions = {}
        try:
            seen = set(self.store.existing_external_ids(self.cfg.seen_sources))
        except Exception as e:
            log.error(f"[ERR] existing id lookup failed :: {e}")
            s.errors.append(f"existing_items:{e}")
            seen = set()
        self.jurisdictions = jurisdictions
        self.writer = ItemWriter(self.cfg, self.store, seen, r.full_scan)

        for entry in select_entries(self.cfg, r.state_code):
            jurisdiction_id = jurisdictions.get(entry.code)
            if jurisdiction_id is None:
                log.warning(f"[SKIP] no jurisdiction row for {entry.code}")
                continue
            self.process_entry(entry, jurisdiction_id)
            s.states_processed += 1
            self.progress("running", {"newItemsFound": s.new_items_found, "statesProcessed": entry.code})

        s.status = run_status(s.errors, s.sources_attempted)
        self.write_run_log()
        self.progress("completed", {
            "newItemsFound": s.new_items_found,
            "statesProcessed": s.states_processed,
            "errors": s.errors[:MAX_ERRORS_REPORTED],
        })
        log.info(f"[DONE] {self.cfg.poller} status={s.status} processed={s.records_processed} "
                 f"new={s.new_items_found} states={s.states_processed} errors={len(s.errors)}")
        return s


def resolve_domain(name: str) -> DomainConfig:
    """Accepts a domain key (kava) or a poller name (kava-poller)."""
    if name in domain_names():
        return load_domain(name)
    key = pollers().get(name)
    if key is None:
        raise ConfigError(f"Unknown poller: {name}")
    return load_domain(key)


def run_poller(cfg: DomainConfig, store, request: Optional[PollRequest] = None, **kwargs) -> RunSummary:
    request = request or PollRequest()
    request.session_id = normalize_session_id(request.session_id)
    return PollRun(cfg, store, request, **kwargs).run()


# -------------------- CLI --------------------

def main(argv=None) -> int:
    from api.db import CredentialError, InstrumentStore, require_write_access

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ap = argparse.ArgumentParser(description="Run one poller domain once.")
    ap.add_argument("poller", help="domain key or poller name, e.g. kava or kava-poller")
    ap.add_argument("--state", dest="state_code")
    ap.add_argument("--full-scan", action="store_true")
    ap.add_argument("--session-id")
    ap.add_argument("--source-name")
    args = ap.parse_args(argv)

    try:
        cfg = resolve_domain(args.poller)
        require_write_access()
    except (ConfigError, CredentialError) as e:
        log.error(f"[CONFIG] {e}")
        return 2

    request = PollRequest(args.state_code, args.full_scan, args.session_id, args.source_name)
    try:
        summary = run_poller(cfg, InstrumentStore(), request)
    except Exception:
        log.exception("Poller error")
        return 1
    print(json.dumps(summary.to_response(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

# rules/sources.py
# Loaders for the per-domain poller configs (rules/domains/*.yaml) and their
# source registries (rules/registry/*.yaml).

import os
import yaml
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Allow override via env; default to the directory this module lives in
RULES_DIR = os.getenv("POLLER_RULES_DIR", os.path.dirname(os.path.abspath(__file__)))

RSS, NEWS, API = "rss", "news", "api"


class ConfigError(Exception):
    """Missing or unusable configuration; nothing useful can run."""


@dataclass(frozen=True)
class SourceEntry:
    code: str
    agency: str
    agency_name: str
    rss_feeds: Tuple[str, ...] = ()
    news_pages: Tuple[str, ...] = ()
    api_urls: Tuple[str, ...] = ()

    def sources(self) -> Iterator[Tuple[str, str]]:
        """(source_type, url) pairs in processing order: rss, news, api."""
        for u in self.rss_feeds:
            yield RSS, u
        for u in self.news_pages:
            yield NEWS, u
        for u in self.api_urls:
            yield API, u


@dataclass
class DomainConfig:
    name: str
    poller: str
    registry: str
    run_log_source: str
    source_tags: Dict[str, str]
    seen_sources: List[str]
    id_prefix: str = ""
    max_items_per_source: int = 25
    classifier_delay_seconds: float = 1.0
    scraper: Dict[str, Any] = field(default_factory=dict)
    classifier: Dict[str, Any] = field(default_factory=dict)
    llm: Optional[Dict[str, Any]] = None
    api: Dict[str, Any] = field(default_factory=dict)

    def tag_for(self, source_type: str) -> str:
        return self.source_tags.get(source_type) or self.source_tags["default"]

    def entries(self) -> List[SourceEntry]:
        return load_registry(self.registry)


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def _domains_dir() -> str:
    return os.path.join(RULES_DIR, "domains")


@lru_cache(maxsize=None)
def load_registry(name: str) -> List[SourceEntry]:
    # Expected shape:
    # jurisdictions:
    #   - {code: VT, agency: ..., agency_name: ..., rss_feeds: [...], news_pages: [...]}
    path = name if os.path.isabs(name) else os.path.join(RULES_DIR, "registry", name)
    data = _read_yaml(path)
    out: List[SourceEntry] = []
    for j in data.get("jurisdictions") or []:
        if not isinstance(j, dict) or not j.get("code"):
            continue
        out.append(SourceEntry(
            code=str(j["code"]).upper(),
            agency=j.get("agency") or "",
            agency_name=j.get("agency_name") or str(j["code"]),
            rss_feeds=tuple(j.get("rss_feeds") or ()),
            news_pages=tuple(j.get("news_pages") or ()),
            api_urls=tuple(j.get("api_urls") or ()),
        ))
    return out


@lru_cache(maxsize=None)
def load_domain(name: str) -> DomainConfig:
    data = _read_yaml(os.path.join(_domains_dir(), f"{name}.yaml"))
    try:
        return DomainConfig(
            name=name,
            poller=data["poller"],
            registry=data["registry"],
            run_log_source=data["run_log_source"],
            source_tags=dict(data["source_tags"]),
            seen_sources=list(data.get("seen_sources") or data["source_tags"].values()),
            id_prefix=data.get("id_prefix") or "",
            max_items_per_source=int(data.get("max_items_per_source", 25)),
            classifier_delay_seconds=float(data.get("classifier_delay_seconds", 1.0)),
            scraper=dict(data.get("scraper") or {}),
            classifier=dict(data.get("classifier") or {}),
            llm=data.get("llm"),
            api=dict(data.get("api") or {}),
        )
    except KeyError as e:
        raise ConfigError(f"Domain config '{name}' is missing {e}")


def domain_names() -> List[str]:
    return sorted(f[:-5] for f in os.listdir(_domains_dir()) if f.endswith(".yaml"))


def pollers() -> Dict[str, str]:
    """poller endpoint name -> domain key"""
    return {load_domain(n).poller: n for n in domain_names()}


def select_entries(cfg: DomainConfig, state_code: Optional[str] = None) -> List[SourceEntry]:
    entries = cfg.entries()
    if state_code:
        code = state_code.strip().upper()
        entries = [e for e in entries if e.code == code]
    return entries

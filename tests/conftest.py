import os
import dataclasses

import pytest
import yaml

from rules.sources import load_domain

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def read_fixture(name: str) -> str:
    with open(os.path.join(FIXTURES, name), "r", encoding="utf-8") as f:
        return f.read()


class FakeStore:
    """In-memory stand-in for api.db.InstrumentStore."""

    def __init__(self, jurisdictions=None, existing=None, latest=None):
        self.jurisdictions = dict(jurisdictions if jurisdictions is not None else {"VT": 1, "ME": 2, "FEDERAL": 99})
        self.existing = set(existing or ())
        self.latest = latest
        self.rows = {}
        self.upserts = []
        self.run_logs = []
        self.progress = []
        self.fail_ids = set()
        self.seen_queries = []

    def jurisdiction_ids(self):
        return dict(self.jurisdictions)

    def existing_external_ids(self, sources):
        self.seen_queries.append(list(sources))
        return set(self.existing) | {k for k, r in self.rows.items() if r["source"] in sources}

    def latest_effective_date(self, sources):
        return self.latest

    def upsert_instrument(self, record):
        if record["external_id"] in self.fail_ids:
            raise RuntimeError("duplicate key value violates unique constraint")
        self.upserts.append(record)
        self.rows[record["external_id"]] = record

    def insert_run_log(self, source, status, records_fetched, metadata):
        self.run_logs.append({"source": source, "status": status, "records_fetched": records_fetched, "metadata": metadata})

    def upsert_progress(self, session_id, source_name, status, records_fetched=0, metadata=None):
        self.progress.append({"session_id": session_id, "source_name": source_name, "status": status,
                              "records_fetched": records_fetched, "metadata": metadata or {}})


class FakeFetch:
    """url -> body; anything unknown behaves like an unreachable source."""

    def __init__(self, pages):
        self.pages = dict(pages)
        self.calls = []

    def __call__(self, url, headers=None):
        self.calls.append((url, headers))
        return self.pages.get(url)


@pytest.fixture(autouse=True)
def _no_sleep_no_model(monkeypatch):
    monkeypatch.setattr("crawler.fetch._sleep", lambda s: None)
    monkeypatch.setattr("jobs.poll._sleep", lambda s: None)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def make_domain(tmp_path):
    """A real domain config pointed at a throwaway registry."""
    def _make(jurisdictions, domain="cannabis_hemp", **overrides):
        path = tmp_path / f"{domain}-registry-{len(list(tmp_path.iterdir()))}.yaml"
        path.write_text(yaml.safe_dump({"jurisdictions": jurisdictions}), encoding="utf-8")
        return dataclasses.replace(load_domain(domain), registry=str(path), **overrides)
    return _make

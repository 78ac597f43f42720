from conftest import read_fixture
from parser.federal_register import FederalRegisterParser, agency_names

SEARCH = "https://www.federalregister.gov/api/v1/documents.json?conditions[term]=hemp"


def test_documents_become_items():
    items = FederalRegisterParser().parse(read_fixture("federal_register.json"), SEARCH)
    assert [i.guid for i in items] == ["2024-05123", "2024-04411", "2024-09512"]
    first = items[0]
    assert first.title == "Domestic Hemp Production Program; Proposed Rule on Sampling and Testing"
    assert first.link.endswith("/2024-05123/domestic-hemp-production-program")
    assert first.pub_date == "2024-03-12"
    assert "<em>" not in first.description
    assert first.extra["agencies"] == ["Agriculture Department", "Agricultural Marketing Service"]
    assert first.extra["federal_register_type"] == "Proposed Rule"


def test_missing_url_and_abstract():
    scheduling = FederalRegisterParser().parse(read_fixture("federal_register.json"), SEARCH)[2]
    assert scheduling.link == "https://www.federalregister.gov/d/2024-09512"
    assert scheduling.description == ""
    assert scheduling.extra["agencies"] == ["Drug Enforcement Administration"]


def test_agency_names():
    assert agency_names([{"raw_name": "DEA"}, {"name": "FDA"}, "FDA", None]) == ["DEA", "FDA"]
    assert agency_names(None) == []


def test_non_json_yields_nothing():
    assert FederalRegisterParser().parse("Service Unavailable", SEARCH) == []
    assert FederalRegisterParser().parse('{"count": 0}', SEARCH) == []

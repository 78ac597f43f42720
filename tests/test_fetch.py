from unittest import mock

import pytest
import requests

from crawler import fetch


def _resp(status=200, text="ok"):
    r = mock.Mock()
    r.status_code = status
    r.ok = 200 <= status < 300
    r.text = text
    return r


@pytest.fixture
def sleeps(monkeypatch):
    waited = []
    monkeypatch.setattr("crawler.fetch._sleep", waited.append)
    return waited


def test_returns_body_on_success(sleeps):
    with mock.patch("requests.Session.get", return_value=_resp(200, "<rss/>")) as get:
        assert fetch.fetch_text("https://ccb.vermont.gov/feed") == "<rss/>"
    assert get.call_count == 1
    _, kwargs = get.call_args
    assert kwargs["timeout"] == fetch.TIMEOUT
    assert "Mozilla" in kwargs["headers"]["User-Agent"]
    assert sleeps == []


def test_retries_http_failure_then_succeeds(sleeps):
    with mock.patch("requests.Session.get", side_effect=[_resp(503), _resp(200, "body")]) as get:
        assert fetch.fetch_text("https://example.gov/news") == "body"
    assert get.call_count == 2
    assert sleeps == [1.0]


def test_gives_up_after_retries_with_linear_backoff(sleeps):
    with mock.patch("requests.Session.get", side_effect=requests.ConnectionError("reset")) as get:
        assert fetch.fetch_text("https://example.gov/down") is None
    assert get.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_zero_retries_means_one_attempt(sleeps):
    with mock.patch("requests.Session.get", return_value=_resp(404)) as get:
        assert fetch.fetch_text("https://example.gov/missing", max_retries=0) is None
    assert get.call_count == 1


def test_extra_headers_are_merged(sleeps):
    with mock.patch("requests.Session.get", return_value=_resp()) as get:
        fetch.fetch_text("https://www.courtlistener.com/api/rest/v4/search/", headers={"Authorization": "Token abc"})
    headers = get.call_args[1]["headers"]
    assert headers["Authorization"] == "Token abc"
    assert "User-Agent" in headers


def test_unexpected_error_is_swallowed(sleeps):
    with mock.patch("requests.Session.get", side_effect=ValueError("bad url")):
        assert fetch.fetch_text("not a url") is None

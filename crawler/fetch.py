# crawler/fetch.py
# Polite fetcher for agency feeds and news pages: browser-like headers,
# per-request timeout, bounded retries with linear backoff. Never raises.

import os
import time
import logging
from typing import Dict, Optional

import requests
from tenacity import (
    Retrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

logger = logging.getLogger(__name__)

# -------------------- config knobs --------------------

USER_AGENT = os.getenv(
    "POLLER_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
TIMEOUT = float(os.getenv("POLLER_FETCH_TIMEOUT", "15"))
# Default: verify TLS certificates. Set POLLER_VERIFY_TLS=false to disable (dev only).
VERIFY_TLS = os.getenv("POLLER_VERIFY_TLS", "true").lower() != "false"
DEFAULT_RETRIES = 2
BACKOFF_STEP = 1.0  # seconds; attempt N waits N * step


class FetchError(Exception):
    """Non-2xx answer from a source. Raised internally so tenacity retries it."""


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    h = {
        "User-Agent": USER_AGENT,
        "Accept": ACCEPT,
        "Accept-Language": "en-US,en;q=0.5",
    }
    if extra:
        h.update(extra)
    return h


def _get_once(session: requests.Session, url: str, headers: Dict[str, str]) -> str:
    r = session.get(url, headers=headers, timeout=TIMEOUT, verify=VERIFY_TLS)
    if not r.ok:
        raise FetchError(f"HTTP {r.status_code} for {url}")
    logger.debug(f"Fetch success for {url}: {r.status_code}")
    return r.text


def fetch_text(
    url: str,
    max_retries: int = DEFAULT_RETRIES,
    headers: Optional[Dict[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> Optional[str]:
    """
    GET a URL and return its body text, or None once retries are exhausted.
    Retries on HTTP failures and network errors, waiting 1s, 2s, ... between
    attempts. One dead source must never abort a whole poller run.
    """
    sess = session or requests.Session()
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_incrementing(start=BACKOFF_STEP, increment=BACKOFF_STEP),
        retry=retry_if_exception_type((FetchError, requests.RequestException)),
        sleep=_sleep,
        reraise=False,
    )
    try:
        return retrying(_get_once, sess, url, _headers(headers))
    except RetryError as e:
        last = e.last_attempt.exception() if e.last_attempt else None
        logger.warning(f"[FETCH] giving up on {url} after {max_retries + 1} attempts :: {last}")
        return None
    except Exception as e:
        # anything tenacity did not retry (bad URL scheme etc.)
        logger.warning(f"[FETCH] error for {url} :: {e}")
        return None
    finally:
        if session is None:
            sess.close()


# -------------------- manual test --------------------

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    for u in ["https://httpbin.org/html", "https://httpbin.org/status/503", "https://ccb.vermont.gov/feed"]:
        body = fetch_text(u)
        logger.info(f"{u} -> {'None' if body is None else f'{len(body)} chars'}")

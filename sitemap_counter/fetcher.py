# fetches raw sitemap bytes; parsing lives in parser.py
from __future__ import annotations
import logging
import threading
import time
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

from sitemap_counter.config import CounterConfig
from sitemap_counter.errors import (
    Cancelled,
    ClientError,
    FetchError,
    FetchTimeout,
    InvalidUrl,
    NetworkError,
    RedirectLoop,
    ServerError,
    TooLarge,
)
from sitemap_counter.filters import is_http_url

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
RETRYABLE = (FetchTimeout, ServerError, NetworkError)


def build_session(config: CounterConfig) -> requests.Session:
    """
    one pooled session shared by every worker thread
    - the pool is capped at max_concurrency and blocks instead of opening extra sockets
    - urllib3 retries are off, Fetcher.fetch does its own so 4xx/5xx can be told apart
    """
    s = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=config.max_concurrency,
        pool_maxsize=config.max_concurrency,
        pool_block=True,
        max_retries=0,
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.max_redirects = config.max_redirects
    s.headers.update(
        {
            "User-Agent": config.user_agent,
            "Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8",
            "Accept-Encoding": "gzip, deflate",
        }
    )
    return s


class Fetcher:
    def __init__(self, config: Optional[CounterConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or CounterConfig()
        self.session = session if session is not None else build_session(self.config)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes:
        """
        GET `url` and return the body bytes
        - timeouts, connection errors and 5xx are retried with exponential backoff
        - 4xx fails straight away with ClientError
        - raises a FetchError subclass on failure, never a requests exception
        """
        if not is_http_url(url):
            raise InvalidUrl(f"not an absolute http(s) url: {url!r}")

        retries = self.config.max_retries
        last_exc: FetchError | None = None
        for attempt in range(retries + 1):
            try:
                return self._fetch_once(url, cancel_event)
            except RETRYABLE as exc:
                last_exc = exc
                if attempt >= retries:
                    break
                wait = min(self.config.backoff_seconds * (2**attempt), self.config.max_backoff)
                logger.warning(
                    "Request failed (%s). Retrying in %.1fs: %s",
                    exc.reason,
                    wait,
                    url,
                )
                if cancel_event is not None:
                    if cancel_event.wait(wait):
                        raise Cancelled(f"cancelled while waiting to retry {url}") from exc
                else:
                    time.sleep(wait)
        if last_exc:
            raise last_exc
        raise RuntimeError("fetch failed without an exception")

    def _fetch_once(self, url: str, cancel_event: Optional[threading.Event]) -> bytes:
        cfg = self.config
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"cancelled before fetching {url}")

        deadline = time.monotonic() + cfg.timeout_per_fetch
        try:
            resp = self.session.get(
                url,
                timeout=(cfg.connect_timeout, cfg.timeout_per_fetch),
                stream=True,
                allow_redirects=True,
            )
        except requests.Timeout as exc:
            raise FetchTimeout(f"timed out fetching {url}") from exc
        except requests.TooManyRedirects as exc:
            raise RedirectLoop(f"more than {cfg.max_redirects} redirects for {url}") from exc
        except (requests.exceptions.InvalidURL, requests.exceptions.InvalidSchema, requests.exceptions.MissingSchema) as exc:
            raise InvalidUrl(f"cannot request {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(exc) from exc

        with resp:
            status = resp.status_code
            if 400 <= status < 500:
                raise ClientError(status, url)
            if status >= 500:
                raise ServerError(status, url)

            declared = resp.headers.get("Content-Length")
            # content-length is the encoded size; only trust it when the body isn't compressed
            if declared and declared.isdigit() and not resp.headers.get("Content-Encoding"):
                if int(declared) > cfg.max_body_bytes:
                    raise TooLarge(cfg.max_body_bytes, url)

            body = bytearray()
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise Cancelled(f"cancelled while reading {url}")
                    body.extend(chunk)
                    if len(body) > cfg.max_body_bytes:
                        raise TooLarge(cfg.max_body_bytes, url)
                    if time.monotonic() > deadline:
                        raise FetchTimeout(f"transfer of {url} exceeded {cfg.timeout_per_fetch}s")
            except requests.Timeout as exc:
                raise FetchTimeout(f"timed out reading {url}") from exc
            except requests.RequestException as exc:
                raise NetworkError(exc) from exc

        logger.debug("Fetched %d bytes from %s (status %s)", len(body), url, status)
        return bytes(body)

from __future__ import annotations
import threading
import time
from collections import Counter
from typing import Optional, Union

SM_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"


def urlset_xml(count: int, base: str = "https://example.com/page") -> bytes:
    entries = "".join(f"<url><loc>{base}{i}</loc></url>" for i in range(count))
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset xmlns="{SM_NS}">{entries}</urlset>'.encode()


def index_xml(*children: str) -> bytes:
    entries = "".join(f"<sitemap><loc>{c}</loc></sitemap>" for c in children)
    return f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex xmlns="{SM_NS}">{entries}</sitemapindex>'.encode()


Doc = Union[bytes, Exception]


class FakeFetcher:
    """
    serves canned documents by url, counts fetches per url
    an Exception value is raised instead of returned
    `delays` slows down individual urls, everything else waits `delay`
    """

    def __init__(self, docs: dict[str, Doc], delay: float = 0.0, delays: Optional[dict[str, float]] = None):
        self.docs = docs
        self.delay = delay
        self.delays = delays or {}
        self.calls: Counter[str] = Counter()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes:
        with self._lock:
            self.calls[url] += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            pause = self.delays.get(url, self.delay)
            if pause:
                time.sleep(pause)
            doc = self.docs[url]
            if isinstance(doc, Exception):
                raise doc
            return doc
        finally:
            with self._lock:
                self.active -= 1

from __future__ import annotations #annotations postpone the evaluation of annotations
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

ALLOWED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}

def canonicalize_url(url: str) -> str:
    """
    Normalize a sitemap URL so the same document is never fetched twice
    - lower-case scheme and host, drop default ports and fragments
    - strip the trailing slash from the path (the bare host becomes "/")
    - sort query params so a=1&b=2 and b=2&a=1 collapse

    examples

    "HTTPS://Example.COM:443/sitemaps/?b=2&a=1#top"
        -> "https://example.com/sitemaps?a=1&b=2"
    "https://example.com"  -> "https://example.com/"

    path casing is left alone: servers treat /Sitemap.xml and /sitemap.xml as different files
    """
    p = urlparse(url.strip())
    scheme = p.scheme.lower()
    host = (p.hostname or "").rstrip(".")
    netloc = host
    try:
        port = p.port
    except ValueError:
        port = None
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"
    if p.username:
        userinfo = p.username + (f":{p.password}" if p.password else "")
        netloc = f"{userinfo}@{netloc}"

    path = p.path.rstrip("/") or "/"

    q = parse_qsl(p.query, keep_blank_values=True)
    q.sort()
    query = urlencode(q)

    # correct format: (scheme, netloc, path, params, query, fragment)
    return urlunparse((scheme, netloc, path, p.params, query, ""))


def is_http_url(url: str) -> bool:
    p = urlparse(url.strip())
    return p.scheme.lower() in ALLOWED_SCHEMES and bool(p.hostname)

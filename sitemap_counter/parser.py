from __future__ import annotations
import logging
import zlib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from sitemap_counter.errors import DecompressError, Malformed, UnknownRoot

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
UTF8_BOM = b"\xef\xbb\xbf"
CHUNK_SIZE = 64 * 1024

INDEX_ROOT = "sitemapindex"
URLSET_ROOT = "urlset"
# root element -> the entry element it is allowed to contain
ENTRY_FOR_ROOT = {INDEX_ROOT: "sitemap", URLSET_ROOT: "url"}


@dataclass(frozen=True)
class Index:
    children: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UrlSet:
    count: int = 0


ParsedDocument = Union[Index, UrlSet]


def localname(tag: str) -> str:
    """'{http://www.sitemaps.org/schemas/sitemap/0.9}urlset' -> 'urlset'"""
    if "}" in tag:
        tag = tag.rsplit("}", 1)[-1]
    return tag.lower()


def is_gzip(data: bytes) -> bool:
    return data[:2] == GZIP_MAGIC


def iter_xml_chunks(data: bytes, max_bytes: Optional[int] = None) -> Iterator[bytes]:
    """
    yield the document in CHUNK_SIZE pieces, gunzipping on the fly when the payload is gzip
    - sitemap.xml.gz files arrive compressed even when the server doesn't set Content-Encoding
    - the decompressed size is capped at max_bytes so a small .gz can't expand without bound
    """
    if not is_gzip(data):
        for start in range(0, len(data), CHUNK_SIZE):
            yield data[start:start + CHUNK_SIZE]
        return

    # 16 + MAX_WBITS -> expect a gzip header and trailer
    d = zlib.decompressobj(16 + zlib.MAX_WBITS)
    total = 0
    pending = data
    try:
        while pending:
            out = d.decompress(pending, CHUNK_SIZE)
            pending = d.unconsumed_tail
            if out:
                total += len(out)
                if max_bytes is not None and total > max_bytes:
                    raise DecompressError(f"decompressed sitemap exceeds {max_bytes} bytes")
                yield out
            if d.eof:
                break
        tail = d.flush()
    except zlib.error as exc:
        raise DecompressError(f"invalid gzip payload: {exc}") from exc
    if tail:
        total += len(tail)
        if max_bytes is not None and total > max_bytes:
            raise DecompressError(f"decompressed sitemap exceeds {max_bytes} bytes")
        yield tail
    if not d.eof:
        raise DecompressError("truncated gzip payload")


class _SitemapScanner:
    """
    consumes pull-parser events for one document
    - only the element path is tracked: root -> entry -> loc
    - for a urlset nothing but a counter is kept; entries are cleared as soon as they close
    """

    def __init__(self) -> None:
        self.root: Optional[ET.Element] = None
        self.root_name: Optional[str] = None
        self.entry_name: Optional[str] = None
        self.path: list[str] = []
        self.count = 0
        self.children: list[str] = []

    def start(self, elem: ET.Element) -> None:
        name = localname(elem.tag)
        depth = len(self.path)
        if depth == 0:
            if name not in ENTRY_FOR_ROOT:
                raise UnknownRoot(name)
            self.root = elem
            self.root_name = name
            self.entry_name = ENTRY_FOR_ROOT[name]
        elif depth == 1 and name != self.entry_name and name in ENTRY_FOR_ROOT.values():
            # <sitemap> inside <urlset> or <url> inside <sitemapindex>
            raise Malformed(f"<{name}> entry inside <{self.root_name}>")
        self.path.append(name)

    def end(self, elem: ET.Element) -> None:
        name = self.path.pop()
        if name == "loc" and len(self.path) == 2 and self.path[1] == self.entry_name:
            loc = (elem.text or "").strip()
            if loc:
                if self.root_name == URLSET_ROOT:
                    self.count += 1
                else:
                    self.children.append(loc)
        elif len(self.path) == 1 and self.root is not None:
            # an entry just closed, drop it and everything under it
            self.root.clear()

    def result(self) -> ParsedDocument:
        if self.root_name == INDEX_ROOT:
            return Index(children=self.children)
        return UrlSet(count=self.count)


def classify(data: bytes, max_bytes: Optional[int] = None) -> ParsedDocument:
    """
    Decide whether `data` is a sitemap index or a url set, streaming instead of building a tree

    returns:
        - Index(children=[...]) with child sitemap urls in document order
        - UrlSet(count=N) with the number of <url><loc> entries

    an empty (or whitespace-only) document is an empty UrlSet
    raises Malformed, UnknownRoot or DecompressError
    """
    parser = ET.XMLPullParser(events=("start", "end"))
    scanner = _SitemapScanner()
    seen_content = False

    try:
        for chunk in iter_xml_chunks(data, max_bytes):
            if not seen_content:
                # expat rejects whitespace before the xml declaration
                chunk = chunk.lstrip()
                if chunk.startswith(UTF8_BOM):
                    chunk = chunk[len(UTF8_BOM):].lstrip()
                if not chunk:
                    continue
                seen_content = True
            parser.feed(chunk)
            for event, elem in parser.read_events():
                if event == "start":
                    scanner.start(elem)
                else:
                    scanner.end(elem)

        if not seen_content:
            return UrlSet(count=0)

        parser.close()
        for event, elem in parser.read_events():
            if event == "start":
                scanner.start(elem)
            else:
                scanner.end(elem)
    except ET.ParseError as exc:
        raise Malformed(f"invalid sitemap XML: {exc}") from exc

    if scanner.root_name is None:
        raise Malformed("no root element found")

    doc = scanner.result()
    if isinstance(doc, Index):
        logger.debug("Classified <%s>: %d child sitemaps", scanner.root_name, len(doc.children))
    else:
        logger.debug("Classified <%s>: %d urls", scanner.root_name, doc.count)
    return doc

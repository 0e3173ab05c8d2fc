from __future__ import annotations
import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Protocol
from urllib.parse import urljoin

from sitemap_counter.config import CounterConfig
from sitemap_counter.errors import (
    Cancelled,
    DepthExceeded,
    RootFailure,
    SitemapCountError,
    Unexpected,
)
from sitemap_counter.fetcher import Fetcher
from sitemap_counter.nodes import NodeKind, NodeStatus, NodeTable, SitemapNode
from sitemap_counter.parser import Index, ParsedDocument, UrlSet, classify
from sitemap_counter.progress import Completed, Discovered, Event, Failed
from sitemap_counter.report import Report, aggregate

logger = logging.getLogger(__name__)

# how often the coordinator wakes up to check for cancellation / the run deadline
POLL_INTERVAL = 0.1


class SupportsFetch(Protocol):
    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes: ...


class Traverser:
    """
    Walks a sitemap index tree and counts the urls in its leaves

    - a worklist (not recursion) seeded with the root; the NodeTable doubles as the visited set
    - up to max_concurrency fetch+classify jobs run on a thread pool
    - only the coordinating thread (the one calling run) updates node state from job results
    - a failed child is recorded and skipped; only a failed root raises (RootFailure)
    """

    def __init__(
        self,
        config: Optional[CounterConfig] = None,
        *,
        fetcher: Optional[SupportsFetch] = None,
        on_event: Optional[Callable[[Event], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or CounterConfig()
        self.fetcher = fetcher
        self.on_event = on_event
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, root_url: str) -> Report:
        started = time.monotonic()
        cfg = self.config
        table = NodeTable()
        root = table.discover(root_url, depth=0)
        if root is None:
            raise RuntimeError(f"fresh node table already holds {root_url}")
        self._emit(Discovered(root.url, 0))

        own_fetcher = self.fetcher is None
        fetcher = self.fetcher if self.fetcher is not None else Fetcher(cfg)
        # fifo + one level at a time keeps the queue ordered by depth
        work: deque[str] = deque([root.key])
        in_flight: dict[Future, str] = {}
        deadline = started + cfg.total_timeout if cfg.total_timeout else None

        logger.info("Counting sitemap %s (max_depth=%d, max_concurrency=%d)", root.url, cfg.max_depth, cfg.max_concurrency)
        try:
            try:
                with ThreadPoolExecutor(max_workers=cfg.max_concurrency, thread_name_prefix="sitemap") as pool:
                    try:
                        self._drain(table, work, in_flight, pool, fetcher, deadline)
                    except KeyboardInterrupt:
                        logger.warning("Interrupted, cancelling traversal")
                        self.cancel_event.set()
                    except RootFailure:
                        self.cancel_event.set()
                        raise
                    finally:
                        for fut in in_flight:
                            fut.cancel()
            except KeyboardInterrupt:
                # second Ctrl-C while the pool waits for in-flight fetches
                logger.warning("Interrupted while stopping workers")
                self.cancel_event.set()
        finally:
            if own_fetcher:
                fetcher.close()  # type: ignore[union-attr]

        cancelled = self.cancel_event.is_set()
        if cancelled:
            self._mark_cancelled(table)

        report = aggregate(table, root_url=root.url, cancelled=cancelled, elapsed=time.monotonic() - started)
        logger.info(
            "Counted %d urls in %d sitemaps (%d failed%s) in %.1fs",
            report.total,
            report.sitemap_count,
            len(report.failures),
            ", cancelled" if cancelled else "",
            report.elapsed,
        )
        return report

    def _drain(
        self,
        table: NodeTable,
        work: deque[str],
        in_flight: dict[Future, str],
        pool: ThreadPoolExecutor,
        fetcher: SupportsFetch,
        deadline: Optional[float],
    ) -> None:
        """
        dispatch and collect jobs until the queue is empty or the run is cancelled
        - a level only starts once every node of the level above has resolved, so a url
          listed by several indexes is always first seen at its shallowest depth and the
          depth guard gives the same answer whatever order fetches finish in
        """
        cfg = self.config
        level = 0
        while work or in_flight:
            if deadline is not None and time.monotonic() > deadline and not self.cancel_event.is_set():
                logger.warning("Run exceeded total_timeout of %ss, cancelling", cfg.total_timeout)
                self.cancel_event.set()
            if self.cancel_event.is_set():
                return

            while work and len(in_flight) < cfg.max_concurrency:
                node = table[work[0]]
                if in_flight and node.depth > level:
                    break
                work.popleft()
                if not table.claim(node.key):
                    continue
                level = node.depth
                self._trace("Fetching %s (depth %d)", node.url, node.depth)
                in_flight[pool.submit(self._process, fetcher, node.url)] = node.key

            done, _ = wait(in_flight, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for fut in done:
                key = in_flight.pop(fut)
                self._handle_result(table, work, key, fut)

    # runs on a worker thread: no node state is touched here
    def _process(self, fetcher: SupportsFetch, url: str) -> ParsedDocument:
        data = fetcher.fetch(url, self.cancel_event)
        self._trace("Fetched %s (%d bytes), classifying", url, len(data))
        return classify(data, max_bytes=self.config.max_body_bytes)

    def _handle_result(self, table: NodeTable, work: deque[str], key: str, fut: Future) -> None:
        node = table[key]
        try:
            doc = fut.result()
        except SitemapCountError as exc:
            self._on_error(table, node, exc)
            return
        except Exception as exc:
            logger.error("Unexpected error processing %s", node.url, exc_info=True)
            self._on_error(table, node, Unexpected(exc))
            return

        if isinstance(doc, UrlSet):
            table.transition(key, NodeStatus.PARSED, kind=NodeKind.URLSET, count=doc.count)
            table.transition(key, NodeStatus.COUNTED)
            table.add_count(key, doc.count)
            self._trace("Sitemap %s has %d urls", node.url, doc.count)
            self._emit(Completed(node.url, doc.count, NodeKind.URLSET.value))
            self._resolve_parent(table, node)
        elif isinstance(doc, Index):
            self._expand(table, work, node, doc)
        else:
            raise TypeError(f"unexpected document type {type(doc).__name__}")

    def _expand(self, table: NodeTable, work: deque[str], node: SitemapNode, doc: Index) -> None:
        child_depth = node.depth + 1
        keys: list[str] = []
        fresh: list[SitemapNode] = []
        for loc in doc.children:
            # sitemap locs should be absolute; resolve the odd relative one against the index
            child_url = urljoin(node.url, loc)
            child = table.discover(child_url, depth=child_depth, parent=node.key)
            if child is None:
                known = table.get(child_url)
                self._trace("Already seen %s, reusing its result", child_url)
                if known is not None and known.key not in keys:
                    keys.append(known.key)
                continue
            keys.append(child.key)
            fresh.append(child)

        table.transition(node.key, NodeStatus.PARSED, kind=NodeKind.INDEX, children=keys, outstanding=len(fresh))
        self._trace("Index %s lists %d sitemaps (%d new)", node.url, len(doc.children), len(fresh))

        for child in fresh:
            self._emit(Discovered(child.url, child.depth))
        for child in fresh:
            if child.depth > self.config.max_depth:
                self._fail(table, child, DepthExceeded(child.depth, self.config.max_depth))
            else:
                work.append(child.key)

        if not fresh:
            self._complete_index(table, node)

    def _on_error(self, table: NodeTable, node: SitemapNode, exc: SitemapCountError) -> None:
        if isinstance(exc, Cancelled) and self.cancel_event.is_set():
            # left for _mark_cancelled
            return
        if node.parent is None:
            raise RootFailure(node.url, exc) from exc
        self._fail(table, node, exc)

    def _fail(self, table: NodeTable, node: SitemapNode, exc: SitemapCountError) -> None:
        table.transition(node.key, NodeStatus.FAILED, error=exc)
        logger.warning("Sitemap failed: %s (%s: %s)", node.url, exc.reason, exc)
        self._emit(Failed(node.url, exc.reason))
        self._resolve_parent(table, node)

    def _resolve_parent(self, table: NodeTable, node: SitemapNode) -> None:
        # walk up while each parent index has just had its last child resolve
        current = node
        while current.parent is not None:
            parent = table.child_resolved(current.parent)
            if parent.outstanding > 0 or parent.status is not NodeStatus.PARSED:
                return
            self._complete_index(table, parent, propagate=False)
            current = parent

    def _complete_index(self, table: NodeTable, node: SitemapNode, propagate: bool = True) -> None:
        table.transition(node.key, NodeStatus.COUNTED)
        self._trace("Index %s resolved: %d urls below it", node.url, node.subtotal)
        self._emit(Completed(node.url, node.subtotal, NodeKind.INDEX.value))
        if propagate:
            self._resolve_parent(table, node)

    def _mark_cancelled(self, table: NodeTable) -> None:
        for node in table.unresolved():
            exc = Cancelled("traversal cancelled before this sitemap resolved")
            table.transition(node.key, NodeStatus.FAILED, error=exc)
            self._emit(Failed(node.url, exc.reason))

    def _emit(self, event: Event) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            logger.warning("Progress callback failed for %r", event, exc_info=True)

    def _trace(self, msg: str, *args) -> None:
        if self.config.debug:
            logger.debug(msg, *args)


def traverse(
    root_url: str,
    max_depth: Optional[int] = None,
    max_concurrency: Optional[int] = None,
    *,
    config: Optional[CounterConfig] = None,
    fetcher: Optional[SupportsFetch] = None,
    on_event: Optional[Callable[[Event], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Report:
    """
    count every url reachable from `root_url`
    max_depth / max_concurrency override the config (defaults 10 / 8)
    raises RootFailure when the root sitemap can't be fetched or parsed
    """
    cfg = (config or CounterConfig()).override(max_depth=max_depth, max_concurrency=max_concurrency)
    return Traverser(cfg, fetcher=fetcher, on_event=on_event, cancel_event=cancel_event).run(root_url)

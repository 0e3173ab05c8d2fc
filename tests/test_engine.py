import threading

import pytest

from conftest import FakeFetcher, index_xml, urlset_xml
from sitemap_counter import engine
from sitemap_counter.config import CounterConfig
from sitemap_counter.engine import Traverser, traverse
from sitemap_counter.errors import (
    Cancelled,
    ClientError,
    FetchTimeout,
    RootFailure,
    ServerError,
)
from sitemap_counter.progress import Completed, Discovered, Failed

ROOT = "https://example.com/sitemap_index.xml"
A = "https://example.com/a.xml"
B = "https://example.com/b.xml"
C = "https://example.com/c.xml"


def by_url(report):
    return {e.url: e for e in report.entries}


def test_index_with_one_failing_child():
    fetcher = FakeFetcher({ROOT: index_xml(A, B), A: urlset_xml(3), B: ServerError(500, B)})
    report = traverse(ROOT, fetcher=fetcher)

    assert report.total == 3
    assert report.partial_failure is True
    assert report.cancelled is False
    entries = by_url(report)
    assert entries[A].count == 3
    assert entries[B].failed
    assert entries[B].reason == "ServerError(500)"
    assert [f.url for f in report.failures] == [B]


def test_root_urlset_with_no_urls():
    report = traverse(ROOT, fetcher=FakeFetcher({ROOT: urlset_xml(0)}))
    assert report.total == 0
    assert report.partial_failure is False
    assert [(e.url, e.kind, e.count) for e in report.entries] == [(ROOT, "urlset", 0)]


def test_root_index_with_no_children():
    report = traverse(ROOT, fetcher=FakeFetcher({ROOT: index_xml()}))
    assert report.total == 0
    assert report.partial_failure is False
    assert report.entries[0].kind == "index"


def test_root_timeout_is_fatal():
    fetcher = FakeFetcher({ROOT: FetchTimeout("timed out")})
    with pytest.raises(RootFailure) as excinfo:
        traverse(ROOT, fetcher=fetcher)
    assert isinstance(excinfo.value.cause, FetchTimeout)
    assert excinfo.value.url == ROOT
    assert excinfo.value.reason == "RootFailure(Timeout)"


def test_root_parse_failure_is_fatal():
    with pytest.raises(RootFailure):
        traverse(ROOT, fetcher=FakeFetcher({ROOT: b"<html><body>hi</body></html>"}))


def test_nested_indexes_are_summed():
    fetcher = FakeFetcher(
        {
            ROOT: index_xml(A, B),
            A: index_xml(C),
            B: urlset_xml(5),
            C: urlset_xml(7),
        }
    )
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 12
    entries = by_url(report)
    assert entries[ROOT].count == 12
    assert entries[A].kind == "index"
    assert entries[A].count == 7
    assert entries[C].depth == 2


def test_duplicate_children_fetched_once():
    fetcher = FakeFetcher(
        {
            ROOT: index_xml(A, B, A, "https://EXAMPLE.com/a.xml", B + "/"),
            A: index_xml(B, C),
            B: urlset_xml(2),
            C: urlset_xml(4),
        }
    )
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 6
    assert all(n == 1 for n in fetcher.calls.values())
    assert report.sitemap_count == 4


def test_cycle_terminates_without_double_counting():
    fetcher = FakeFetcher(
        {
            ROOT: index_xml(A),
            A: index_xml(B, ROOT),
            B: index_xml(A, C),
            C: urlset_xml(9),
        }
    )
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 9
    assert report.partial_failure is False
    assert fetcher.calls[ROOT] == 1
    assert fetcher.calls[A] == 1


def test_self_reference_is_deduplicated():
    fetcher = FakeFetcher({ROOT: index_xml(ROOT, A), A: urlset_xml(1)})
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 1
    assert report.partial_failure is False
    assert fetcher.calls[ROOT] == 1


def test_depth_guard():
    d1 = "https://example.com/d1.xml"
    d2 = "https://example.com/d2.xml"
    leaf = "https://example.com/leaf.xml"
    fetcher = FakeFetcher({ROOT: index_xml(d1, A), d1: index_xml(d2), d2: index_xml(leaf), leaf: urlset_xml(5), A: urlset_xml(1)})
    report = traverse(ROOT, max_depth=1, fetcher=fetcher)

    entries = by_url(report)
    assert report.total == 1
    assert entries[d2].reason == "DepthExceeded"
    assert fetcher.calls[d2] == 0
    assert leaf not in entries
    assert report.partial_failure is True


# X sits at depth 2 through B but depth 3 through A -> C
DIAMOND_X = "https://example.com/x.xml"
DIAMOND = {ROOT: index_xml(A, B), A: index_xml(C), C: index_xml(DIAMOND_X), B: index_xml(DIAMOND_X), DIAMOND_X: urlset_xml(5)}


@pytest.mark.parametrize("slow", [None, A, B, C])
def test_depth_guard_uses_shallowest_path(slow):
    delays = {slow: 0.3} if slow else {}
    fetcher = FakeFetcher(DIAMOND, delays=delays)
    report = traverse(ROOT, max_depth=2, max_concurrency=4, fetcher=fetcher)

    entries = by_url(report)
    assert report.total == 5
    assert entries[DIAMOND_X].depth == 2
    assert entries[DIAMOND_X].count == 5
    assert not entries[DIAMOND_X].failed
    assert fetcher.calls[DIAMOND_X] == 1
    assert report.partial_failure is False


def test_depth_guard_total_independent_of_fetch_timing():
    totals = set()
    for slow in (A, B, C, DIAMOND_X):
        for delay in (0.0, 0.05, 0.2):
            fetcher = FakeFetcher(DIAMOND, delays={slow: delay})
            totals.add(traverse(ROOT, max_depth=2, max_concurrency=4, fetcher=fetcher).total)
    assert totals == {5}


def test_depth_guard_still_drops_only_deep_path():
    deep = "https://example.com/deep.xml"
    docs = {ROOT: index_xml(A, B), A: index_xml(C), C: index_xml(deep), B: urlset_xml(2), deep: urlset_xml(7)}
    fetcher = FakeFetcher(docs, delays={B: 0.2})
    report = traverse(ROOT, max_depth=2, max_concurrency=4, fetcher=fetcher)

    assert report.total == 2
    assert by_url(report)[deep].reason == "DepthExceeded"
    assert fetcher.calls[deep] == 0




def test_child_failures_are_isolated():
    bad_xml = "https://example.com/bad.xml"
    html = "https://example.com/html.xml"
    gone = "https://example.com/gone.xml"
    fetcher = FakeFetcher(
        {
            ROOT: index_xml(A, bad_xml, html, gone),
            A: urlset_xml(4),
            bad_xml: b"<urlset><url><loc>x</loc>",
            html: b"<html></html>",
            gone: ClientError(404, gone),
        }
    )
    report = traverse(ROOT, fetcher=fetcher)
    entries = by_url(report)
    assert report.total == 4
    assert entries[bad_xml].reason == "Malformed"
    assert entries[html].reason == "UnknownRoot(html)"
    assert entries[gone].reason == "ClientError(404)"
    assert entries[ROOT].failed is False


def test_unexpected_exception_is_isolated():
    fetcher = FakeFetcher({ROOT: index_xml(A, B), A: ValueError("boom"), B: urlset_xml(2)})
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 2
    assert by_url(report)[A].reason == "Unexpected(ValueError)"


def test_relative_child_locations_resolved():
    fetcher = FakeFetcher({ROOT: index_xml("/a.xml"), A: urlset_xml(3)})
    report = traverse(ROOT, fetcher=fetcher)
    assert report.total == 3
    assert fetcher.calls[A] == 1


def test_same_total_on_repeated_runs():
    docs = {ROOT: index_xml(A, B, C), A: urlset_xml(10), B: index_xml(C), C: urlset_xml(3)}
    totals = {traverse(ROOT, max_concurrency=3, fetcher=FakeFetcher(docs)).total for _ in range(5)}
    assert totals == {13}


def test_concurrency_is_bounded():
    leaves = [f"https://example.com/leaf{i}.xml" for i in range(20)]
    docs = {ROOT: index_xml(*leaves)}
    docs.update({leaf: urlset_xml(i) for i, leaf in enumerate(leaves)})
    fetcher = FakeFetcher(docs, delay=0.02)

    report = traverse(ROOT, max_concurrency=4, fetcher=fetcher)
    assert report.total == sum(range(20))
    assert 1 <= fetcher.max_active <= 4


def test_events_are_emitted():
    events = []
    fetcher = FakeFetcher({ROOT: index_xml(A, B), A: urlset_xml(3), B: ServerError(503, B)})
    traverse(ROOT, fetcher=fetcher, on_event=events.append)

    assert events[0] == Discovered(ROOT, 0)
    assert Discovered(A, 1) in events
    assert Completed(A, 3, "urlset") in events
    assert Failed(B, "ServerError(503)") in events
    # the index completes last, once both children resolved
    assert events[-1] == Completed(ROOT, 3, "index")


def test_broken_event_callback_does_not_break_count():
    def explode(event):
        raise RuntimeError("terminal went away")

    report = traverse(ROOT, fetcher=FakeFetcher({ROOT: index_xml(A), A: urlset_xml(2)}), on_event=explode)
    assert report.total == 2


class CancellingFetcher(FakeFetcher):
    """sets the cancel event when `trigger` is fetched, like a user interrupt mid-run"""

    def __init__(self, docs, trigger, cancel_event):
        super().__init__(docs)
        self.trigger = trigger
        self.cancel_event = cancel_event

    def fetch(self, url, cancel_event=None):
        if url == self.trigger:
            self.cancel_event.set()
            raise Cancelled("aborted")
        return super().fetch(url, cancel_event)


def test_cancellation_keeps_counted_nodes():
    cancel = threading.Event()
    fetcher = CancellingFetcher({ROOT: index_xml(A, B, C), A: urlset_xml(3), C: urlset_xml(5)}, B, cancel)
    report = traverse(ROOT, max_concurrency=1, fetcher=fetcher, cancel_event=cancel)

    entries = by_url(report)
    assert report.cancelled is True
    assert report.total == 3
    assert entries[A].count == 3
    assert entries[B].reason == "Cancelled"
    assert entries[C].reason == "Cancelled"
    assert fetcher.calls[C] == 0


def test_cancel_before_start():
    cancel = threading.Event()
    cancel.set()
    fetcher = FakeFetcher({ROOT: urlset_xml(3)})
    report = traverse(ROOT, fetcher=fetcher, cancel_event=cancel)
    assert report.cancelled is True
    assert report.total == 0
    assert fetcher.calls[ROOT] == 0


def test_total_timeout_cancels_run():
    leaves = [f"https://example.com/slow{i}.xml" for i in range(10)]
    docs = {ROOT: index_xml(*leaves)}
    docs.update({leaf: urlset_xml(1) for leaf in leaves})
    fetcher = FakeFetcher(docs, delay=0.1)

    config = CounterConfig(max_concurrency=1, total_timeout=0.25)
    report = Traverser(config, fetcher=fetcher).run(ROOT)
    assert report.cancelled is True
    assert report.total < 10


def test_traverser_cancel_method():
    traverser = Traverser(fetcher=FakeFetcher({ROOT: urlset_xml(1)}))
    traverser.cancel()
    assert traverser.run(ROOT).cancelled is True


def test_interrupt_while_stopping_workers(monkeypatch):
    class InterruptedOnExit(engine.ThreadPoolExecutor):
        def __exit__(self, *exc_info):
            super().__exit__(*exc_info)
            raise KeyboardInterrupt

    monkeypatch.setattr(engine, "ThreadPoolExecutor", InterruptedOnExit)
    fetcher = FakeFetcher({ROOT: index_xml(A), A: urlset_xml(4)})
    report = traverse(ROOT, fetcher=fetcher)

    assert report.cancelled is True
    assert report.total == 4


def test_interrupt_during_run_is_a_cancellation():
    class InterruptingFetcher(FakeFetcher):
        def fetch(self, url, cancel_event=None):
            if url == B:
                raise KeyboardInterrupt
            return super().fetch(url, cancel_event)

    fetcher = InterruptingFetcher({ROOT: index_xml(A, B), A: urlset_xml(3)})
    report = traverse(ROOT, max_concurrency=1, fetcher=fetcher)

    assert report.cancelled is True
    assert by_url(report)[B].reason == "Cancelled"

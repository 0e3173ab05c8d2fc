# sitemap_counter/report.py
from __future__ import annotations
import json
from dataclasses import dataclass, field, asdict
from typing import Iterable, Optional

from sitemap_counter.nodes import NodeKind, NodeStatus, SitemapNode


# one line of the per-sitemap breakdown
@dataclass(frozen=True)
class ReportEntry:
    url: str
    kind: str
    depth: int
    count: Optional[int] = None  # urlset: its urls, index: urls in its subtree
    reason: Optional[str] = None  # set only when the sitemap failed

    @property
    def failed(self) -> bool:
        return self.reason is not None


@dataclass(frozen=True)
class Report:
    root_url: str
    total: int = 0
    entries: list[ReportEntry] = field(default_factory=list)
    partial_failure: bool = False
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def failures(self) -> list[ReportEntry]:
        return [e for e in self.entries if e.failed]

    @property
    def sitemap_count(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict:
        return asdict(self)


def aggregate(
    node_table: Iterable[SitemapNode],
    *,
    root_url: str,
    cancelled: bool = False,
    elapsed: float = 0.0,
) -> Report:
    """
    Fold the finished node table into a Report (pure, does not touch the nodes)
    - total = sum over COUNTED url sets; indexes add nothing themselves
    - entries follow discovery order
    - partial_failure is set when any node failed
    """
    nodes = sorted(node_table, key=lambda n: n.order)

    total = 0
    entries: list[ReportEntry] = []
    partial = False
    for n in nodes:
        if n.status is NodeStatus.FAILED:
            partial = True
            entries.append(ReportEntry(url=n.url, kind=n.kind.value, depth=n.depth, reason=n.reason or "Unknown"))
            continue
        if n.kind is NodeKind.URLSET:
            count = n.count or 0
            total += count
        else:
            count = n.subtotal
        entries.append(ReportEntry(url=n.url, kind=n.kind.value, depth=n.depth, count=count))

    return Report(
        root_url=root_url,
        total=total,
        entries=entries,
        partial_failure=partial,
        cancelled=cancelled,
        elapsed=elapsed,
    )


def write_report_jsonl(path: str, report: Report) -> None:
    """one JSON object per sitemap, then a summary line"""
    with open(path, "w", encoding="utf-8") as f:
        for entry in report.entries:
            f.write(json.dumps(asdict(entry), ensure_ascii=False) + "\n")
        summary = {
            "root_url": report.root_url,
            "total": report.total,
            "sitemaps": report.sitemap_count,
            "partial_failure": report.partial_failure,
            "cancelled": report.cancelled,
            "elapsed": round(report.elapsed, 3),
        }
        f.write(json.dumps({"summary": summary}, ensure_ascii=False) + "\n")

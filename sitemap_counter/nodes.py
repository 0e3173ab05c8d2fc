# node table shared by the engine's coordinator and the report
from __future__ import annotations
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from sitemap_counter.errors import SitemapCountError
from sitemap_counter.filters import canonicalize_url


class NodeKind(Enum):
    UNKNOWN = "unknown"
    INDEX = "index"
    URLSET = "urlset"


class NodeStatus(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSED = "parsed"
    COUNTED = "counted"
    FAILED = "failed"


# status -> statuses it may move to; anything else is a bug in the engine
TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.FETCHING, NodeStatus.FAILED},
    NodeStatus.FETCHING: {NodeStatus.PARSED, NodeStatus.FAILED},
    NodeStatus.PARSED: {NodeStatus.COUNTED, NodeStatus.FAILED},
    NodeStatus.COUNTED: set(),
    NodeStatus.FAILED: set(),
}


@dataclass
class SitemapNode:
    key: str  # canonical url, the node's identity
    url: str  # url as first referenced, used for fetching and display
    depth: int
    order: int  # discovery index
    parent: Optional[str] = None
    kind: NodeKind = NodeKind.UNKNOWN
    status: NodeStatus = NodeStatus.PENDING
    count: Optional[int] = None
    error: Optional[SitemapCountError] = None
    children: list[str] = field(default_factory=list)
    outstanding: int = 0  # children introduced by this node that haven't resolved yet
    subtotal: int = 0  # urls counted so far under this node (urlset: its own count)

    @property
    def resolved(self) -> bool:
        return self.status in (NodeStatus.COUNTED, NodeStatus.FAILED)

    @property
    def reason(self) -> Optional[str]:
        return self.error.reason if self.error is not None else None


class NodeTable:
    """
    every sitemap seen during one run, keyed by canonical url
    - doubles as the visited set: a url is in the table from the moment it's discovered
    - discover/claim/transition go through one lock so a node is dispatched at most once
    """

    def __init__(self) -> None:
        self._nodes: dict[str, SitemapNode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[SitemapNode]:
        # dicts keep insertion order == discovery order
        with self._lock:
            nodes = list(self._nodes.values())
        return iter(nodes)

    def __contains__(self, url: str) -> bool:
        return canonicalize_url(url) in self._nodes

    def __getitem__(self, key: str) -> SitemapNode:
        return self._nodes[key]

    def get(self, url: str) -> Optional[SitemapNode]:
        return self._nodes.get(canonicalize_url(url))

    def discover(self, url: str, depth: int, parent: Optional[str] = None) -> Optional[SitemapNode]:
        """
        register `url`; returns the new node, or None when it was already known
        (already known = a duplicate or a cycle, the existing node's result is reused)
        """
        key = canonicalize_url(url)
        with self._lock:
            if key in self._nodes:
                return None
            node = SitemapNode(key=key, url=url.strip(), depth=depth, order=len(self._nodes), parent=parent)
            self._nodes[key] = node
            return node

    def claim(self, key: str) -> bool:
        """PENDING -> FETCHING; False if someone else already claimed it"""
        with self._lock:
            node = self._nodes[key]
            if node.status is not NodeStatus.PENDING:
                return False
            node.status = NodeStatus.FETCHING
            return True

    def transition(self, key: str, status: NodeStatus, **attrs) -> SitemapNode:
        with self._lock:
            node = self._nodes[key]
            if status not in TRANSITIONS[node.status]:
                raise RuntimeError(f"illegal transition {node.status.value} -> {status.value} for {node.url}")
            node.status = status
            for name, value in attrs.items():
                setattr(node, name, value)
            return node

    def child_resolved(self, parent_key: str) -> SitemapNode:
        with self._lock:
            parent = self._nodes[parent_key]
            parent.outstanding -= 1
            return parent

    def add_count(self, key: str, count: int) -> None:
        """credit `count` urls to a node and every ancestor along its parent links"""
        with self._lock:
            current: Optional[str] = key
            while current is not None:
                node = self._nodes[current]
                node.subtotal += count
                current = node.parent

    def unresolved(self) -> list[SitemapNode]:
        with self._lock:
            return [n for n in self._nodes.values() if not n.resolved]

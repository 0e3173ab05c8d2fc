from __future__ import annotations
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Union

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

logger = logging.getLogger(__name__)


# events flow one way: engine -> reporter
@dataclass(frozen=True)
class Discovered:
    url: str
    depth: int = 0


@dataclass(frozen=True)
class Completed:
    url: str
    count: int
    kind: str = "urlset"  # "urlset" or "index"; an index's count is its subtree total


@dataclass(frozen=True)
class Failed:
    url: str
    reason: str


Event = Union[Discovered, Completed, Failed]

_STOP = object()


class ProgressReporter:
    """
    Buffered event sink for the traversal engine

    - calling the reporter only enqueues the event, so a slow terminal never stalls the workers
    - a daemon thread drains the queue, keeps the running tallies and calls render()
    - render() errors are logged and swallowed; they never change the tallies or the count

    subclasses override render() and optionally finish()
    """

    def __init__(self) -> None:
        self.discovered = 0
        self.completed = 0
        self.failed = 0
        self.url_total = 0
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def __call__(self, event: Event) -> None:
        if self._thread is None:
            # not started: deliver inline
            self._apply(event)
            return
        self._queue.put(event)

    def start(self) -> "ProgressReporter":
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="progress-reporter", daemon=True)
            self._thread.start()
        return self

    def close(self) -> None:
        """drain whatever is buffered, then call finish()"""
        if self._thread is not None:
            self._queue.put(_STOP)
            self._thread.join()
            self._thread = None
        try:
            self.finish()
        except Exception:
            logger.warning("Progress reporter failed to finish", exc_info=True)

    def __enter__(self) -> "ProgressReporter":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._apply(event)  # type: ignore[arg-type]

    def _apply(self, event: Event) -> None:
        if isinstance(event, Discovered):
            self.discovered += 1
        elif isinstance(event, Completed):
            self.completed += 1
            if event.kind == "urlset":
                self.url_total += event.count
        elif isinstance(event, Failed):
            self.failed += 1
        try:
            self.render(event)
        except Exception:
            logger.warning("Progress rendering failed for %r", event, exc_info=True)

    @property
    def resolved(self) -> int:
        return self.completed + self.failed

    def render(self, event: Event) -> None:
        pass

    def finish(self) -> None:
        pass


class LoggingReporter(ProgressReporter):
    """one log line per event; used with --debug or when stderr isn't a terminal"""

    def render(self, event: Event) -> None:
        if isinstance(event, Discovered):
            logger.debug("Discovered sitemap (depth %d): %s", event.depth, event.url)
        elif isinstance(event, Completed):
            logger.info(
                "Counted %s: %d urls [%d/%d sitemaps, %d urls so far]",
                event.url,
                event.count,
                self.resolved,
                self.discovered,
                self.url_total,
            )
        else:
            logger.warning(
                "Failed %s: %s [%d/%d sitemaps]",
                event.url,
                event.reason,
                self.resolved,
                self.discovered,
            )


class RichProgressReporter(ProgressReporter):
    """live bar: sitemaps resolved / discovered plus the running url total"""

    def __init__(self, console: Optional[Console] = None) -> None:
        super().__init__()
        self.console = console or Console(stderr=True)
        self.progress = Progress(
            SpinnerColumn(style="green"),
            TextColumn("[bold]{task.description}"),
            BarColumn(complete_style="cyan", finished_style="blue"),
            MofNCompleteColumn(),
            TextColumn("sitemaps, [green]{task.fields[urls]}[/green] urls"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self._task = None

    def start(self) -> "RichProgressReporter":
        self.progress.start()
        self._task = self.progress.add_task("Counting", total=None, urls=0)
        super().start()
        return self

    def render(self, event: Event) -> None:
        if self._task is None:
            return
        self.progress.update(
            self._task,
            total=self.discovered,
            completed=self.resolved,
            urls=self.url_total,
        )
        if isinstance(event, Failed):
            self.progress.console.print(f"[yellow]Failed {event.url}: {event.reason}[/yellow]")

    def finish(self) -> None:
        if self._task is not None:
            self.progress.update(self._task, description="Done", completed=self.resolved)
        self.progress.stop()

from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import Optional, Sequence

# Allow running this file directly from the package dir.
if __package__ in (None, ""):
    repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    sys.path.insert(0, repo_root)

from sitemap_counter.config import load_config
from sitemap_counter.engine import Traverser
from sitemap_counter.errors import ConfigError, RootFailure
from sitemap_counter.progress import LoggingReporter, ProgressReporter, RichProgressReporter
from sitemap_counter.report import Report, write_report_jsonl

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _configure_logging(debug: bool) -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format="%(levelname)s %(message)s")
    # keep urllib3's connection chatter out of --debug output
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitemap-counter",
        description="Count every URL reachable from a sitemap, expanding sitemap indexes.",
    )
    parser.add_argument("sitemap_url", help="root sitemap (or sitemap index) URL")
    parser.add_argument("--debug", action="store_true", default=None, help="verbose per-sitemap tracing")
    parser.add_argument("--config", help="YAML file with counter options")
    parser.add_argument("--max-concurrency", type=int, help="parallel fetches (default 8)")
    parser.add_argument("--max-depth", type=int, help="deepest index level to expand (default 10)")
    parser.add_argument("--timeout", type=float, dest="timeout_per_fetch", help="per-fetch timeout in seconds")
    parser.add_argument("--total-timeout", type=float, help="give up on the whole run after this many seconds")
    parser.add_argument("--jsonl", help="also write the per-sitemap breakdown to this JSONL file")
    parser.add_argument("--no-progress", action="store_true", help="don't draw the progress bar")
    return parser


def _make_reporter(debug: bool, no_progress: bool) -> ProgressReporter:
    if debug or no_progress or not sys.stderr.isatty():
        return LoggingReporter()
    return RichProgressReporter()


def print_report(report: Report) -> None:
    print("\n📊 Results:")
    for entry in report.entries:
        if entry.failed:
            print(f"  {entry.url} - FAILED ({entry.reason})")
        elif entry.kind == "index":
            print(f"  {entry.url} - index, {entry.count} URLs below")
        else:
            print(f"  {entry.url} - {entry.count} URLs")
    print(f"\n📈 Total URLs found: {report.total}")
    if report.cancelled:
        print("⚠️  Run was cancelled; the total is partial.")
    elif report.partial_failure:
        print(f"⚠️  {len(report.failures)} sitemap(s) failed; the total only covers the ones that were counted.")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config).override(
            max_concurrency=args.max_concurrency,
            max_depth=args.max_depth,
            timeout_per_fetch=args.timeout_per_fetch,
            total_timeout=args.total_timeout,
            debug=args.debug,
        )
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    _configure_logging(config.debug)
    print(f"🌐 Fetching main sitemap from {args.sitemap_url}")
    reporter = _make_reporter(config.debug, args.no_progress)
    traverser = Traverser(config, on_event=reporter)
    try:
        with reporter:
            report = traverser.run(args.sitemap_url)
    except RootFailure as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    print_report(report)
    if args.jsonl:
        write_report_jsonl(args.jsonl, report)
        print(f"Wrote {report.sitemap_count} sitemap entries to {args.jsonl}")
    return EXIT_INTERRUPTED if report.cancelled else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

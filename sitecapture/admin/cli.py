"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Dict, List, Optional

from sitecapture.admin.status import failure_reasons, job_counts, summarise_metrics
from sitecapture.crawl.orchestrator import CrawlerSettings, crawl_url
from sitecapture.discovery.resolver import SitemapResolver, normalize_domain
from sitecapture.errors import ValidationError
from sitecapture.fetch.session import FetchSession
from sitecapture.observability.log import configure_logging
from sitecapture.orchestrator.jobs import JobKind
from sitecapture.storage.job_store import SqliteJobStore


def _load_settings(path: Path) -> Dict[str, object]:
    from sitecapture.main import load_settings

    if not path.exists():
        return {}
    return load_settings(path)


def cmd_summary(args: argparse.Namespace) -> None:
    store = SqliteJobStore(Path(args.database))
    counts = asyncio.run(job_counts(store, owner=args.owner))
    summary = {"jobs": counts, "metrics": summarise_metrics(Path(args.metrics))}
    print(json.dumps(summary, indent=2))


def cmd_failures(args: argparse.Namespace) -> None:
    store = SqliteJobStore(Path(args.database))
    reasons = asyncio.run(
        failure_reasons(store, kind=JobKind(args.kind), owner=args.owner, days=args.last)
    )
    print(json.dumps(reasons, indent=2))


def cmd_explain(args: argparse.Namespace) -> None:
    try:
        host = normalize_domain(args.domain)
    except ValidationError as exc:
        print(json.dumps({"domain": args.domain, "valid": False, "error": str(exc)}))
        return
    settings = _load_settings(Path(args.settings))
    crawler = CrawlerSettings.from_settings(settings)
    resolver = SitemapResolver(FetchSession(None))
    explanation = {
        "domain": args.domain,
        "valid": True,
        "host": host,
        "candidates": resolver.candidate_urls(host),
        "crawler_available": crawler.available(),
        "crawl_command": crawler.build_args(crawl_url(host), crawler.output_root / "<job id>"),
        "crawl_timeout_seconds": crawler.timeout,
    }
    print(json.dumps(explanation, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitecapture-admin", description="Administration commands")
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Count jobs per kind and status")
    summary.add_argument("--database", default="data/jobs.db")
    summary.add_argument("--metrics", default="data/metrics")
    summary.add_argument("--owner")

    failures = sub.add_parser("inspect-failures", help="Summarise error messages of failed jobs")
    failures.add_argument("--database", default="data/jobs.db")
    failures.add_argument("--kind", choices=[kind.value for kind in JobKind], default=JobKind.CRAWL.value)
    failures.add_argument("--owner")
    failures.add_argument("--last", type=int, default=7, help="Lookback window in days")

    explain = sub.add_parser("explain", help="Show what discovery and crawling would do for a domain")
    explain.add_argument("--domain", required=True)
    explain.add_argument("--settings", default="config/settings.toml")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "summary":
        cmd_summary(args)
        return
    if args.command == "inspect-failures":
        cmd_failures(args)
        return
    if args.command == "explain":
        cmd_explain(args)
        return


if __name__ == "__main__":
    main()

"""Analyze app metadata combos and optionally fetch their live rankings."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from comborank.config import settings
from comborank.core.exceptions import ValidationError
from comborank.core.logging import setup_logging
from comborank.integrations.itunes_search import ITunesSearchClient
from comborank.services.combos.analysis import ComboAnalysisReport, MetadataInput, analyze_metadata
from comborank.services.combos.priority import format_priority_breakdown
from comborank.services.rankings.cache_store import build_ranking_cache_store
from comborank.services.rankings.orchestrator import (
    MetadataRankingRefresh,
    RankingFetchOrchestrator,
    refresh_metadata_rankings,
)

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--title", default="", help="App title")
    parser.add_argument("--subtitle", default="", help="App subtitle")
    parser.add_argument("--keywords", default="", help="Comma-separated keywords field")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.combo_retained_limit,
        help="Maximum combos to keep (default: %(default)s)",
    )
    parser.add_argument(
        "--top",
        type=int,
        default=20,
        help="How many combos to print (default: %(default)s)",
    )
    parser.add_argument(
        "--candidate",
        action="append",
        default=[],
        help="Extra phrase to evaluate even if the metadata lacks it (repeatable)",
    )
    parser.add_argument("--breakdown", action="store_true", help="Print score breakdowns")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    parser.add_argument(
        "--app-id",
        help="Also fetch live rankings for this app id (uses the configured cache backend)",
    )
    parser.add_argument("--market", default="us", help="Market for ranking lookups")
    parser.add_argument(
        "--working-set",
        type=int,
        default=settings.fetch_working_set_size,
        help="Top combos to fetch rankings for (default: %(default)s)",
    )
    return parser.parse_args(argv)


def _report_payload(report: ComboAnalysisReport, top: int) -> dict[str, Any]:
    return {
        "stats": report.stats.to_dict(),
        "items": [analysis.to_dict() for analysis in report.analyses[:top]],
    }


def _print_report(report: ComboAnalysisReport, *, top: int, breakdown: bool) -> None:
    stats = report.stats
    print(
        f"Generated {stats.total_generated} combos, retained {stats.total_retained}"
        f"{' (limit reached)' if stats.limit_reached else ''}; "
        f"{stats.can_strengthen_count} can be strengthened"
    )
    for slug, count in stats.per_tier_counts.items():
        if count:
            print(f"  {slug:<26} {count}")
    print()
    for index, analysis in enumerate(report.analyses[:top], start=1):
        marker = " *" if analysis.can_strengthen else ""
        print(
            f"{index:>3}. {analysis.text:<40} {analysis.priority_score:>6.2f} "
            f"{analysis.tier.slug}{marker}"
        )
        if analysis.suggestion:
            print(f"     {analysis.suggestion}")
        if breakdown:
            for line in format_priority_breakdown(analysis).splitlines():
                print(f"     {line}")


async def _refresh(args: argparse.Namespace, metadata: MetadataInput) -> MetadataRankingRefresh:
    async with ITunesSearchClient() as search_client:
        orchestrator = RankingFetchOrchestrator(
            search_client=search_client,
            cache_store=build_ranking_cache_store(settings),
        )
        return await refresh_metadata_rankings(
            metadata,
            orchestrator,
            app_id=args.app_id,
            market=args.market,
            working_set=args.working_set,
            extra_candidates=args.candidate,
        )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.WARNING)
    metadata = MetadataInput(title=args.title, subtitle=args.subtitle, keywords=args.keywords)

    try:
        if args.app_id:
            refresh = asyncio.run(_refresh(args, metadata))
            report = refresh.report
            rankings = refresh.rankings.to_dict()
        else:
            report = analyze_metadata(metadata, extra_candidates=args.candidate, limit=args.limit)
            rankings = None
    except ValidationError as exc:
        print(f"Invalid input: {exc.message}", file=sys.stderr)
        return 1

    if args.json:
        payload = _report_payload(report, args.top)
        if rankings is not None:
            payload["rankings"] = rankings
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
        return 0

    _print_report(report, top=args.top, breakdown=args.breakdown)
    if rankings is not None:
        print()
        for entry in rankings["results"]:
            if entry["status"] == "ok":
                position = entry["position"] if entry["position"] is not None else "-"
                print(
                    f"  {entry['combo']:<40} #{position} of {entry['total_result_count']} "
                    f"({entry['source']})"
                )
            else:
                print(f"  {entry['combo']:<40} error {entry['error']['code']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
